"""
Domain records and their conversions.

Rows come out of SQLite as sqlite3.Row (snake_case, unix-second timestamps);
the request layer speaks camelCase dicts. Every conversion here maps every
field explicitly, with defaults spelled out, so nothing is renamed ad hoc.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from feedtree.utils.constants import (
    DEFAULT_ICON,
    DEFAULT_LAYOUT,
    DEFAULT_REFRESH_INTERVAL,
)


# ====================================================================================
# TIMESTAMP HELPERS
# ====================================================================================

def to_timestamp(value: Optional[datetime]) -> Optional[int]:
    """Aware (or UTC-naive) datetime -> unix seconds."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Unix seconds -> aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


# ====================================================================================
# RECORDS
# ====================================================================================

@dataclass
class CollectionSpec:
    """Caller-supplied fields for create/update (no id, slug or derived data)."""

    title: str
    icon: str = DEFAULT_ICON
    parent_id: Optional[int] = None
    description: Optional[str] = None
    url: Optional[str] = None
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    layout: str = DEFAULT_LAYOUT


@dataclass
class Collection:
    id: int
    owner_id: int
    title: str
    slug: str
    icon: str = DEFAULT_ICON
    parent_id: Optional[int] = None
    order: int = 0
    description: Optional[str] = None
    url: Optional[str] = None
    date_updated: Optional[datetime] = None
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    layout: str = DEFAULT_LAYOUT


@dataclass
class TreeNode:
    """A collection as placed in its owner's forest."""

    collection: Collection
    ancestors: List[int] = field(default_factory=list)
    depth: int = 0
    unread_count: int = 0

    @property
    def id(self) -> int:
        return self.collection.id


@dataclass
class FeedItem:
    """A candidate item produced by the fetcher, before reconciliation."""

    url: str
    title: str = ''
    summary: str = ''
    full_text: str = ''
    thumbnail_url: Optional[str] = None
    date_published: Optional[datetime] = None
    date_updated: Optional[datetime] = None
    categories: List[str] = field(default_factory=list)
    comments: Optional[str] = None
    reading_time: int = 1


@dataclass
class CollectionItem:
    id: int
    collection_id: int
    url: str
    title: str
    summary: str
    full_text: str
    thumbnail_url: Optional[str]
    date_published: Optional[datetime]
    date_updated: Optional[datetime]
    date_read: Optional[datetime]
    categories: List[str]
    comments: Optional[str]
    reading_time: int


# ====================================================================================
# ROW -> RECORD
# ====================================================================================

def collection_from_row(row) -> Collection:
    return Collection(
        id=row['id'],
        owner_id=row['owner_id'],
        title=row['title'],
        slug=row['slug'],
        icon=row['icon'] or DEFAULT_ICON,
        parent_id=row['parent_id'],
        order=row['order'],
        description=row['description'],
        url=row['url'],
        date_updated=from_timestamp(row['date_updated']),
        refresh_interval=row['refresh_interval'] if row['refresh_interval'] is not None else DEFAULT_REFRESH_INTERVAL,
        layout=row['layout'] or DEFAULT_LAYOUT,
    )


def item_from_row(row) -> CollectionItem:
    return CollectionItem(
        id=row['id'],
        collection_id=row['collection_id'],
        url=row['url'],
        title=row['title'] or '',
        summary=row['summary'] or '',
        full_text=row['full_text'] or '',
        thumbnail_url=row['thumbnail_url'],
        date_published=from_timestamp(row['date_published']),
        date_updated=from_timestamp(row['date_updated']),
        date_read=from_timestamp(row['date_read']),
        categories=json.loads(row['categories']) if row['categories'] else [],
        comments=row['comments'],
        reading_time=row['reading_time'] or 1,
    )


# ====================================================================================
# RECORD -> TRANSPORT
# ====================================================================================

def collection_to_dict(collection: Collection) -> Dict[str, Any]:
    return {
        'id': collection.id,
        'title': collection.title,
        'slug': collection.slug,
        'icon': collection.icon,
        'parentId': collection.parent_id,
        'order': collection.order,
        'description': collection.description,
        'url': collection.url,
        'dateUpdated': to_timestamp(collection.date_updated),
        'refreshInterval': collection.refresh_interval,
        'layout': collection.layout,
    }


def tree_node_to_dict(node: TreeNode) -> Dict[str, Any]:
    data = collection_to_dict(node.collection)
    data['parents'] = list(node.ancestors)
    data['level'] = node.depth
    data['unreadCount'] = node.unread_count
    return data


def item_to_dict(item: CollectionItem, include_full_text: bool = True) -> Dict[str, Any]:
    data = {
        'id': item.id,
        'collectionId': item.collection_id,
        'url': item.url,
        'title': item.title,
        'summary': item.summary,
        'thumbnailUrl': item.thumbnail_url,
        'datePublished': to_timestamp(item.date_published),
        'dateUpdated': to_timestamp(item.date_updated),
        'dateRead': to_timestamp(item.date_read),
        'categories': list(item.categories),
        'comments': item.comments,
        'readingTime': item.reading_time,
    }
    if include_full_text:
        data['fullText'] = item.full_text
    return data


def spec_from_dict(data: Dict[str, Any]) -> CollectionSpec:
    """Transport body -> CollectionSpec. Unknown keys are ignored."""
    refresh_interval = data.get('refreshInterval')
    return CollectionSpec(
        title=data.get('title', ''),
        icon=data.get('icon') or DEFAULT_ICON,
        parent_id=data.get('parentId'),
        description=data.get('description'),
        url=data.get('url') or None,
        refresh_interval=DEFAULT_REFRESH_INTERVAL if refresh_interval is None else refresh_interval,
        layout=data.get('layout') or DEFAULT_LAYOUT,
    )
