"""
================================================================================
TEST: Configuration and Logging
================================================================================

Test Coverage:
    - load_config creates config.json from defaults when missing
    - user values deep-merge over defaults, missing keys written back
    - corrupt JSON falls back to defaults
    - set_run_context installs context-stamped handlers (none when imported)
    - ServiceContext built from config, owner locks time out as ConflictError
================================================================================
"""
import json
import logging

import pytest

from feedtree.core.context import ServiceContext
from feedtree.core.errors import ConflictError
from feedtree.utils import constants
from feedtree.utils.config import default_config, load_config
from feedtree.utils.logger import LOG_FORMAT, RunContextFilter, logger, set_run_context


class TestLoadConfig:
    def test_creates_defaults(self, tmp_path):
        path = tmp_path / 'configs' / 'config.json'

        config = load_config(path)

        assert config == default_config()
        assert json.loads(path.read_text()) == config

    def test_deep_merge_and_write_back(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'refresh': {'max_workers': 2}, 'custom': {'x': 1}}))

        config = load_config(path)

        assert config['refresh']['max_workers'] == 2
        assert config['refresh']['timeout_seconds'] == constants.FETCH_TIMEOUT_SECONDS
        assert config['custom'] == {'x': 1}
        saved = json.loads(path.read_text())
        assert saved['locks']['timeout_seconds'] == constants.OWNER_LOCK_TIMEOUT_SECONDS

    def test_corrupt_file_uses_defaults(self, tmp_path, caplog):
        path = tmp_path / 'config.json'
        path.write_text('{ not json')

        with caplog.at_level(logging.ERROR, logger='feedtree'):
            config = load_config(path)

        assert config == default_config()
        assert 'corrupted' in caplog.text
        assert path.read_text() == '{ not json'


class TestRunContext:
    @pytest.fixture(autouse=True)
    def _restore(self):
        yield
        set_run_context('imported')

    def test_context_handlers(self, tmp_path, monkeypatch):
        monkeypatch.setattr(constants, 'LOG_DIR', tmp_path / 'logs')

        set_run_context('test')

        assert len(logger.handlers) == 2
        for handler in logger.handlers:
            assert any(isinstance(f, RunContextFilter) for f in handler.filters)
            assert handler.formatter._fmt == LOG_FORMAT
        logger.info('hello from test')
        for handler in logger.handlers:
            handler.flush()
        logs = list((tmp_path / 'logs').glob('*.test.log'))
        assert len(logs) == 1
        assert '[test]: hello from test' in logs[0].read_text()

    def test_imported_context_adds_no_handlers(self, tmp_path, monkeypatch):
        monkeypatch.setattr(constants, 'LOG_DIR', tmp_path / 'logs')
        set_run_context('cli')

        set_run_context('imported')

        assert logger.handlers == []


class TestServiceContext:
    def test_from_config(self, config):
        ctx = ServiceContext.from_config(config)
        try:
            assert str(ctx.db_file) == config['database']['path']
            assert ctx.http.headers['User-Agent'] == config['refresh']['user_agent']
            assert ctx.now().tzinfo is not None
        finally:
            ctx.close()

    def test_session_creates_schema(self, context):
        with context.session() as db:
            tables = {row[0] for row in db.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        assert {'collections', 'collection_items'} <= tables

    def test_owner_lock_timeout_is_conflict(self, config, clock, http):
        config['locks']['timeout_seconds'] = 0.1
        holder = ServiceContext(config, clock=clock, http=http)
        waiter = ServiceContext(config, clock=clock, http=http)

        with holder.owner_lock(1):
            with pytest.raises(ConflictError):
                with waiter.owner_lock(1):
                    pass
            with waiter.owner_lock(2):
                pass
