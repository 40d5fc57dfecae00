"""
================================================================================
CORE MODULE - Collection Tree, Mutations and Refresh
================================================================================

Central package for the collection hierarchy and its persistence.

Exported Classes:
    DatabaseManager - SQLite collection/item storage
    ServiceContext - Config, clock, HTTP session and per-owner locks
    FeedTreeError and subclasses - Typed failures mapped to HTTP statuses

Note:
    TreeStore, MutationEngine and RefreshScheduler are imported from their
    modules directly (feedtree.core.tree / .mutations / .refresh) because
    refresh depends on feedtree.processors, which depends back on core.

Usage:
    from feedtree.core import ServiceContext, NotFoundError
    from feedtree.core.mutations import MutationEngine
================================================================================
"""

from feedtree.core.database import DatabaseManager
from feedtree.core.context import ServiceContext
from feedtree.core.errors import (
    FeedTreeError,
    ValidationError,
    NotFoundError,
    ConflictError,
    FetchError,
    IntegrityError,
)

__all__ = [
    'DatabaseManager',
    'ServiceContext',
    'FeedTreeError',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'FetchError',
    'IntegrityError',
]
