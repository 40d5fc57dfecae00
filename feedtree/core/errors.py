"""
Error taxonomy shared by the tree store, mutation engine, fetcher and
refresh scheduler. The request layer maps each class to its http_status.
"""

from typing import Optional


class FeedTreeError(Exception):
    """Base class for every expected failure raised by the core."""

    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FeedTreeError):
    """Malformed input (bad URL, unknown icon, cyclic move). No state change."""

    http_status = 400


class NotFoundError(FeedTreeError):
    """Collection or item missing, or not owned by the caller. No state change."""

    http_status = 404


class ConflictError(FeedTreeError):
    """The owner already has a collection with this feed URL. No state change."""

    http_status = 409


class FetchError(FeedTreeError):
    """
    Feed unreachable, answered non-2xx, or could not be parsed.

    kind is one of UNREACHABLE, HTTP_STATUS or INVALID_FEED.
    """

    http_status = 502

    UNREACHABLE = 'unreachable'
    HTTP_STATUS = 'http_status'
    INVALID_FEED = 'invalid_feed'

    def __init__(self, kind: str, url: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.status = status

    def __repr__(self):
        return f"FetchError(kind={self.kind!r}, url={self.url!r}, status={self.status!r})"


class IntegrityError(FeedTreeError):
    """A storage invariant was violated; the enclosing transaction is rolled back."""

    http_status = 500
