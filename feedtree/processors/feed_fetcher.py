"""
================================================================================
FEED FETCHER - Download and Normalize RSS/Atom Feeds
================================================================================

Retrieves a feed over the shared requests.Session and parses it with
feedparser into FeedItem candidates ready for reconciliation.

Failure Handling:
    fetch() never raises for network or feed problems. It returns a
    FetchResult whose error is a FetchError of kind:
        - unreachable   DNS/connection failure or timeout
        - http_status   non-2xx response
        - invalid_feed  body is not recognizable RSS/Atom
    A valid feed with zero entries is a success with no items.

Field Fallbacks:
    summary        <- summary, else description
    full_text      <- first content block, else summary
    date_published <- published, else updated (storage stamps first-seen
                      time when both are missing)
    date_updated   <- updated, else published
    thumbnail_url  <- media:thumbnail, media:content, image enclosure
    reading_time   <- ceil(words / WORDS_PER_MINUTE), at least 1

Probe:
    probe() validates a candidate URL for an owner without persisting
    anything; an URL the owner already follows is a ConflictError.
================================================================================
"""

import calendar
import io
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import feedparser
import requests
from bs4 import BeautifulSoup

from feedtree.core.context import ServiceContext
from feedtree.core.errors import ConflictError, FetchError
from feedtree.core.models import FeedItem, from_timestamp
from feedtree.processors.network_retry import NetworkRetry
from feedtree.processors.url_utils import normalize_url
from feedtree.utils.constants import WORDS_PER_MINUTE

logger = logging.getLogger("feedtree")

_NON_TEXT_TAGS = ['script', 'style', 'noscript', 'template']


def reading_time(text: str) -> int:
    """Whole minutes to read `text`, rounded up and never zero."""
    soup = BeautifulSoup(text or '', 'html.parser')
    for tag in soup(_NON_TEXT_TAGS):
        tag.decompose()
    words = soup.get_text(' ').split()
    return max(1, math.ceil(len(words) / WORDS_PER_MINUTE))


@dataclass
class FetchResult:
    url: str
    items: List[FeedItem] = field(default_factory=list)
    title: str = ''
    description: str = ''
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _struct_to_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    return from_timestamp(calendar.timegm(value))


def _first_url(entries, image_only: bool = False) -> Optional[str]:
    for media in entries or []:
        url = media.get('url') or media.get('href')
        if not url:
            continue
        if image_only:
            kind = media.get('type', '') or ''
            if not (kind.startswith('image/') or media.get('medium') == 'image'):
                continue
        return url
    return None


def _thumbnail(entry) -> Optional[str]:
    return (
        _first_url(entry.get('media_thumbnail'))
        or _first_url(entry.get('media_content'), image_only=True)
        or _first_url(entry.get('enclosures'), image_only=True)
    )


def _categories(entry) -> List[str]:
    terms = []
    for tag in entry.get('tags') or []:
        term = (tag.get('term') or tag.get('label') or '').strip()
        if term and term not in terms:
            terms.append(term)
    return terms


def entry_to_item(entry) -> Optional[FeedItem]:
    """Normalize one feedparser entry; None when it has no usable link."""
    url = (entry.get('link') or entry.get('id') or '').strip()
    if not url:
        return None

    summary = entry.get('summary') or entry.get('description') or ''
    content = entry.get('content') or []
    full_text = (content[0].get('value') if content else '') or summary

    published = _struct_to_datetime(entry.get('published_parsed'))
    updated = _struct_to_datetime(entry.get('updated_parsed'))

    return FeedItem(
        url=url,
        title=(entry.get('title') or '').strip() or url,
        summary=summary,
        full_text=full_text,
        thumbnail_url=_thumbnail(entry),
        date_published=published or updated,
        date_updated=updated or published,
        categories=_categories(entry),
        comments=entry.get('comments'),
        reading_time=reading_time(full_text),
    )


class FeedFetcher:
    """Fetches feeds through the context's shared HTTP session."""

    def __init__(self, context: ServiceContext):
        self.context = context
        self.timeout = context.config['refresh']['timeout_seconds']
        self.retry_attempts = context.config['refresh']['retry_attempts']

    def fetch(self, url: str) -> FetchResult:
        """Download and parse `url`. Failures come back in FetchResult.error."""
        try:
            response = NetworkRetry.run(
                lambda: self.context.http.get(url, timeout=self.timeout),
                retries=self.retry_attempts,
                context=f"Fetch {url}",
            )
        except requests.Timeout:
            return self._failure(url, FetchError.UNREACHABLE, f"Timed out after {self.timeout}s")
        except requests.RequestException as e:
            return self._failure(url, FetchError.UNREACHABLE, f"Unreachable: {e}")

        if not 200 <= response.status_code < 300:
            return self._failure(url, FetchError.HTTP_STATUS,
                                 f"HTTP {response.status_code}", status=response.status_code)

        headers = {k.lower(): v for k, v in response.headers.items()}
        return self.parse(url, response.content, headers)

    def parse(self, url: str, body: bytes, headers: Optional[Dict[str, str]] = None) -> FetchResult:
        parsed = feedparser.parse(io.BytesIO(body), response_headers=headers or {})
        if not parsed.get('version') and not parsed.entries:
            reason = parsed.get('bozo_exception') or 'not an RSS/Atom document'
            return self._failure(url, FetchError.INVALID_FEED, f"Invalid RSS/Atom feed: {reason}")

        items, seen = [], set()
        for entry in parsed.entries:
            item = entry_to_item(entry)
            if item is None or item.url in seen:
                continue
            seen.add(item.url)
            items.append(item)

        feed = parsed.get('feed', {})
        return FetchResult(
            url=url,
            items=items,
            title=feed.get('title', '') or '',
            description=feed.get('description') or feed.get('subtitle') or '',
        )

    def probe(self, owner_id: int, url: str) -> Dict[str, str]:
        """
        Check that `url` is a feed the owner does not follow yet.

        Raises:
            ValidationError: URL cannot be normalized
            ConflictError: owner already has a collection with this URL
            FetchError: feed unreachable, non-2xx or unparsable
        """
        normalized = normalize_url(url)
        with self.context.session() as db:
            if db.has_collection_with_url(owner_id, normalized):
                raise ConflictError("Duplicate feed URL.")

        result = self.fetch(normalized)
        if result.error is not None:
            raise result.error
        return {'title': result.title, 'description': result.description}

    def _failure(self, url: str, kind: str, message: str, status: Optional[int] = None) -> FetchResult:
        logger.warning(f"[FETCH] {url}: {message}")
        return FetchResult(url=url, error=FetchError(kind, url, message, status=status))
