"""Feed processing helpers

URL normalization, retry policy and the RSS/Atom fetcher. FeedFetcher is
imported from feedtree.processors.feed_fetcher directly.
"""

from feedtree.processors.url_utils import normalize_url, slugify
from feedtree.processors.network_retry import NetworkRetry

__all__ = [
    "normalize_url",
    "slugify",
    "NetworkRetry",
]
