"""
Service context shared by every component.

Holds what used to be process globals (the HTTP client, the database
location, the clock) so each component receives them explicitly:

    context = ServiceContext.from_config(load_config())
    with context.session() as db:
        ...
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import filelock
import requests

from feedtree.core.database import DatabaseManager
from feedtree.core.errors import ConflictError
from feedtree.core.models import utcnow

logger = logging.getLogger("feedtree")


class ServiceContext:
    """Explicitly constructed dependencies plus scoped acquisition helpers."""

    def __init__(self, config: dict, clock: Optional[Callable[[], datetime]] = None,
                 http: Optional[requests.Session] = None):
        self.config = config
        self.db_file = Path(config['database']['path'])
        self.busy_timeout = config['database']['busy_timeout_seconds']
        self.lock_dir = Path(config['locks']['dir'])
        self.lock_timeout = config['locks']['timeout_seconds']
        self.clock = clock or utcnow
        self.http = http or self._build_http_session(config)

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> 'ServiceContext':
        return cls(config, **kwargs)

    @staticmethod
    def _build_http_session(config: dict) -> requests.Session:
        session = requests.Session()
        session.headers.update({
            'User-Agent': config['refresh']['user_agent'],
            'Accept': 'application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8',
        })
        return session

    def now(self) -> datetime:
        return self.clock()

    @contextmanager
    def session(self):
        """Open a database connection for the duration of one operation."""
        db = DatabaseManager(self.db_file, busy_timeout=self.busy_timeout)
        try:
            yield db
        finally:
            db.close()

    @contextmanager
    def owner_lock(self, owner_id: int):
        """
        Serialize structural mutations of one owner's tree.

        A fresh FileLock per acquisition, so concurrent threads and processes
        each hold their own file descriptor and exclude one another.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        lock = filelock.FileLock(str(self.lock_dir / f"owner-{owner_id}.lock"), timeout=self.lock_timeout)
        try:
            lock.acquire()
        except filelock.Timeout:
            logger.warning(f"[LOCK] Timed out waiting for owner {owner_id} mutation lock")
            raise ConflictError(f"Another change to this tree is still in progress (owner {owner_id})")
        try:
            yield
        finally:
            lock.release()

    def close(self):
        self.http.close()
