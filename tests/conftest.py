"""
================================================================================
PYTEST CONFIGURATION
================================================================================

Shared fixtures for the feedtree test suite.

Global Fixtures:
    - config: default config pointed at a per-test tmp_path database/locks
    - clock: settable UTC clock (no test depends on wall time)
    - http: in-memory stand-in for requests.Session, routed by URL
    - context: ServiceContext wired to the three above
    - tree_store / mutations / refresh: core components over that context

Test Isolation Strategy:
    Every test gets its own SQLite file and lock directory under tmp_path.
    TEST_MODE=1 is set before feedtree is imported so retries never sleep.
================================================================================
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

os.environ['TEST_MODE'] = '1'

PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest
import requests

from feedtree.core.context import ServiceContext
from feedtree.core.models import CollectionSpec
from feedtree.core.mutations import MutationEngine
from feedtree.core.refresh import RefreshScheduler
from feedtree.core.tree import TreeStore
from feedtree.utils.config import default_config

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now=START):
        self.current = now

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeResponse:
    def __init__(self, status_code=200, content=b'', headers=None):
        self.status_code = status_code
        self.content = content if isinstance(content, bytes) else content.encode('utf-8')
        self.headers = headers or {'Content-Type': 'application/rss+xml; charset=utf-8'}


class FakeSession:
    """
    Routes GET by URL. A route is a FakeResponse, an exception instance, or a
    list of those consumed one per call (the last one repeats).
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.closed = False

    def route(self, url, *responses):
        self.routes[url] = list(responses)

    def get(self, url, timeout=None):
        self.calls.append(url)
        queue = self.routes.get(url)
        if not queue:
            raise requests.ConnectionError(f"No route to {url}")
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def close(self):
        self.closed = True


def rss(*items, title='Example Feed', description='Example description'):
    """Build an RSS 2.0 document. Each item is a dict of element name -> text."""
    entries = []
    for item in items:
        fields = ''.join(_rss_field(name, value) for name, value in item.items())
        entries.append(f"<item>{fields}</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/" '
        'xmlns:content="http://purl.org/rss/1.0/modules/content/">'
        f'<channel><title>{title}</title><link>https://example.com/</link>'
        f'<description>{description}</description>{"".join(entries)}</channel></rss>'
    )


def _rss_field(name, value):
    if name == 'media:thumbnail':
        return f'<media:thumbnail url="{value}"/>'
    if name == 'enclosure':
        return f'<enclosure url="{value}" type="image/jpeg" length="0"/>'
    if name == 'category':
        return ''.join(f'<category>{term}</category>' for term in value)
    if name == 'content:encoded':
        return f'<content:encoded><![CDATA[{value}]]></content:encoded>'
    return f'<{name}>{value}</{name}>'


def rss_items(count, prefix='https://example.com/post'):
    return [
        {
            'title': f'Post {i}',
            'link': f'{prefix}/{i}',
            'description': f'Summary {i}',
            'pubDate': f'Sun, 01 Mar 2026 0{i % 10}:00:00 GMT',
        }
        for i in range(1, count + 1)
    ]


@pytest.fixture
def config(tmp_path):
    cfg = default_config()
    cfg['database']['path'] = str(tmp_path / 'feedtree.db')
    cfg['locks']['dir'] = str(tmp_path / 'locks')
    cfg['locks']['timeout_seconds'] = 5
    cfg['refresh']['max_workers'] = 4
    return cfg


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def http():
    return FakeSession()


@pytest.fixture
def context(config, clock, http):
    ctx = ServiceContext(config, clock=clock, http=http)
    yield ctx
    ctx.close()


@pytest.fixture
def tree_store(context):
    return TreeStore(context)


@pytest.fixture
def mutations(context):
    return MutationEngine(context)


@pytest.fixture
def refresh(context):
    return RefreshScheduler(context)


@pytest.fixture
def make_collection(mutations):
    """Create a collection for owner 1 (or `owner`) with defaults for everything else."""

    def _make(title, parent_id=None, url=None, owner=1, **extra):
        spec = CollectionSpec(title=title, parent_id=parent_id, url=url, **extra)
        return mutations.create(owner, spec)

    return _make


@pytest.fixture
def feeds():
    return SimpleNamespace(rss=rss, items=rss_items, response=FakeResponse)
