"""
URL and slug helpers.

normalize_url() is the single place feed addresses are canonicalized, so that
duplicate detection and storage always compare the same form:
    - scheme defaults to http when missing, only http/https accepted
    - scheme and host lowercased
    - default ports (80/443) stripped
    - fragment dropped
    - trailing slash removed from the path
"""

import re
import unicodedata
from urllib.parse import urlsplit, urlunsplit

from feedtree.core.errors import ValidationError

DEFAULT_PORTS = {'http': 80, 'https': 443}
_HOST_RE = re.compile(r'^(\[[0-9a-f:.]+\]|[a-z0-9](?:[a-z0-9\-.]*[a-z0-9])?)$')
_SLUG_SEPARATOR_RE = re.compile(r'[^a-z0-9]+')


def normalize_url(url: str) -> str:
    """
    Canonicalize a feed URL.

    Raises:
        ValidationError: the value cannot be read as an http(s) URL
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("URL must be a non-empty string")

    raw = url.strip()
    if raw.startswith('//'):
        raw = 'http:' + raw
    elif '://' not in raw:
        raw = 'http://' + raw

    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as e:
        raise ValidationError(f"Invalid URL '{url}': {e}")

    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ValidationError(f"Unsupported URL scheme '{scheme}' in '{url}'")

    host = (parts.hostname or '').lower()
    if not host:
        raise ValidationError(f"URL '{url}' has no host")
    if ':' in host:
        host = f"[{host}]"
    if not _HOST_RE.match(host):
        raise ValidationError(f"URL '{url}' has an invalid host")

    netloc = host
    if parts.username:
        credentials = parts.username
        if parts.password:
            credentials += f":{parts.password}"
        netloc = f"{credentials}@{netloc}"
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    path = parts.path.rstrip('/')

    return urlunsplit((scheme, netloc, path, parts.query, ''))


def slugify(title: str) -> str:
    """Lowercase, ASCII-fold, and join alphanumeric runs with '-'."""
    folded = unicodedata.normalize('NFKD', title or '').encode('ascii', 'ignore').decode('ascii')
    slug = _SLUG_SEPARATOR_RE.sub('-', folded.lower()).strip('-')
    return slug or 'collection'
