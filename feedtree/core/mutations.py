"""
================================================================================
MUTATION ENGINE - Structural Changes to the Collection Forest
================================================================================

Create, update, move and delete collections while keeping the tree valid.

Invariants Preserved:
    - Every sibling group's "order" is exactly 0..n-1 after each call
    - parent_id always names an existing collection of the same owner
    - No collection becomes its own ancestor (cyclic moves are rejected)

Renumbering:
    Orders are recomputed on an arena of sibling groups
    (parent id -> ordered child ids) and persisted as one batch write per
    changed group. The result is verified before COMMIT; a gap raises
    IntegrityError and the whole transaction rolls back.

Concurrency:
    Structural mutations hold the owner's FileLock and run inside one
    BEGIN IMMEDIATE transaction, so callers never observe partial state.
================================================================================
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from feedtree.core.context import ServiceContext
from feedtree.core.database import DatabaseManager
from feedtree.core.errors import ConflictError, IntegrityError, NotFoundError, ValidationError
from feedtree.core.models import Collection, CollectionSpec, TreeNode, to_timestamp
from feedtree.core.tree import build_tree, get_owned_collection
from feedtree.processors.url_utils import normalize_url, slugify
from feedtree.utils.constants import COLLECTION_ICONS, COLLECTION_LAYOUTS

logger = logging.getLogger("feedtree")


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_spec(spec: CollectionSpec) -> Optional[str]:
    """
    Reject malformed input before anything is written.

    Returns:
        The normalized feed URL, or None when the collection has no feed
    """
    if not isinstance(spec.title, str) or not spec.title.strip():
        raise ValidationError("Title is required")
    if spec.icon not in COLLECTION_ICONS:
        raise ValidationError(f"Unknown icon '{spec.icon}'")
    if spec.layout not in COLLECTION_LAYOUTS:
        raise ValidationError(f"Unknown layout '{spec.layout}'")
    if not _is_int(spec.refresh_interval) or spec.refresh_interval <= 0:
        raise ValidationError("refreshInterval must be a positive number of minutes")
    if spec.parent_id is not None and not _is_int(spec.parent_id):
        raise ValidationError("parentId must be an integer or null")
    return normalize_url(spec.url) if spec.url else None


def _sibling_groups(rows) -> Dict[tuple, List[int]]:
    """(owner_id, parent_id) -> child ids ordered by previous order, then id."""
    groups: Dict[tuple, List[int]] = {}
    for row in sorted(rows, key=lambda r: (r['order'], r['id'])):
        groups.setdefault((row['owner_id'], row['parent_id']), []).append(row['id'])
    return groups


def _persist_group(db: DatabaseManager, ids: List[int], current: Dict[int, int]):
    db.write_orders([(position, cid) for position, cid in enumerate(ids) if current.get(cid) != position])


class MutationEngine:
    """Write-side operations over the collection forest."""

    def __init__(self, context: ServiceContext,
                 on_created: Optional[Callable[[Collection], None]] = None):
        self.context = context
        self.on_created = on_created

    # --------------------------------------------------------------------------------
    # Create / update
    # --------------------------------------------------------------------------------

    def create(self, owner_id: int, spec: CollectionSpec) -> Collection:
        url = validate_spec(spec)

        with self.context.owner_lock(owner_id), self.context.session() as db:
            with db.transaction():
                if spec.parent_id is not None:
                    get_owned_collection(db, owner_id, spec.parent_id)
                if url and db.has_collection_with_url(owner_id, url):
                    raise ConflictError(f"Duplicate feed URL: {url}")

                new_id = db.insert_collection(
                    owner_id=owner_id,
                    title=spec.title.strip(),
                    slug=slugify(spec.title),
                    icon=spec.icon,
                    parent_id=spec.parent_id,
                    order=db.max_sibling_order(owner_id, spec.parent_id) + 1,
                    description=spec.description,
                    url=url,
                    refresh_interval=spec.refresh_interval,
                    layout=spec.layout,
                )
                self._recalculate(db, owner_id)
                collection = get_owned_collection(db, owner_id, new_id)

        logger.info(f"[TREE] Created collection {collection.id} '{collection.title}' for owner {owner_id}")
        if self.on_created is not None:
            self.on_created(collection)
        return collection

    def update(self, owner_id: int, collection_id: int, spec: CollectionSpec) -> Collection:
        """Replace title/icon/parent/description/url/refreshInterval; a new parent is a move."""
        url = validate_spec(spec)

        with self.context.owner_lock(owner_id), self.context.session() as db:
            with db.transaction():
                current = get_owned_collection(db, owner_id, collection_id)
                reparent = spec.parent_id != current.parent_id
                if reparent:
                    self._check_new_parent(db, owner_id, collection_id, spec.parent_id)
                if url and db.has_collection_with_url(owner_id, url, exclude_id=collection_id):
                    raise ConflictError(f"Duplicate feed URL: {url}")

                db.update_collection(
                    collection_id,
                    title=spec.title.strip(),
                    slug=slugify(spec.title),
                    icon=spec.icon,
                    parent_id=current.parent_id,
                    description=spec.description,
                    url=url,
                    refresh_interval=spec.refresh_interval,
                )
                if url != current.url:
                    db.set_date_updated(collection_id, None)
                if reparent:
                    self._place(db, owner_id, current, spec.parent_id, None)
                    self._verify_orders(db, owner_id)
                collection = get_owned_collection(db, owner_id, collection_id)

        logger.info(f"[TREE] Updated collection {collection_id} for owner {owner_id}")
        return collection

    def set_layout(self, owner_id: int, collection_id: int, layout: str):
        if layout not in COLLECTION_LAYOUTS:
            raise ValidationError(f"Unknown layout '{layout}'")
        with self.context.session() as db:
            with db.transaction():
                get_owned_collection(db, owner_id, collection_id)
                db.set_layout(collection_id, layout)

    # --------------------------------------------------------------------------------
    # Move / delete
    # --------------------------------------------------------------------------------

    def move(self, owner_id: int, collection_id: int, new_parent_id: Optional[int],
             new_order: int) -> List[TreeNode]:
        """
        Reparent and/or reorder a collection.

        After the call the node is at new_order (clamped to [0, childCount])
        among new_parent_id's children; old and new sibling groups are both
        renumbered 0..n-1.

        Returns:
            The owner's updated tree
        """
        if not _is_int(new_order):
            raise ValidationError("newOrder must be an integer")
        if new_parent_id is not None and not _is_int(new_parent_id):
            raise ValidationError("newParentId must be an integer or null")

        with self.context.owner_lock(owner_id), self.context.session() as db:
            with db.transaction():
                node = get_owned_collection(db, owner_id, collection_id)
                if new_parent_id != node.parent_id:
                    self._check_new_parent(db, owner_id, collection_id, new_parent_id)
                self._place(db, owner_id, node, new_parent_id, new_order)
                self._verify_orders(db, owner_id)
                tree = build_tree(db, owner_id)

        logger.info(f"[TREE] Moved collection {collection_id} under {new_parent_id} at {new_order}")
        return tree

    def delete(self, owner_id: int, collection_id: int) -> Set[int]:
        """Delete a collection, its descendants and their items. Returns the deleted ids."""
        with self.context.owner_lock(owner_id), self.context.session() as db:
            with db.transaction():
                get_owned_collection(db, owner_id, collection_id)
                deleted = db.select_descendant_ids(collection_id)
                db.delete_collection_cascade(collection_id)
                if db.select_descendant_ids(collection_id):
                    raise IntegrityError(f"Collection {collection_id} survived its own delete")
                self._recalculate(db, owner_id)

        logger.info(f"[TREE] Deleted {len(deleted)} collection(s) rooted at {collection_id}")
        return deleted

    def recalculate_order(self, owner_id: Optional[int] = None):
        """Repair every sibling group to 0..n-1 (one owner, or all owners when None)."""
        with self.context.session() as db:
            with db.transaction():
                self._recalculate(db, owner_id)

    # --------------------------------------------------------------------------------
    # Read state
    # --------------------------------------------------------------------------------

    def mark_as_read(self, owner_id: int, collection_id: int,
                     when: Optional[datetime] = None) -> Set[int]:
        """Mark every unread item of the subtree read. Returns the subtree ids."""
        when = when or self.context.now()
        with self.context.session() as db:
            with db.transaction():
                get_owned_collection(db, owner_id, collection_id)
                ids = db.select_descendant_ids(collection_id)
                marked = db.mark_items_read(ids, to_timestamp(when))

        logger.info(f"[READ] Marked {marked} item(s) read across {len(ids)} collection(s)")
        return ids

    def set_item_date_read(self, owner_id: int, collection_id: int, item_id: int,
                           when: Optional[datetime]):
        """Mark one item read at `when`, or unread when `when` is None."""
        with self.context.session() as db:
            with db.transaction():
                get_owned_collection(db, owner_id, collection_id)
                if not db.set_item_date_read(collection_id, item_id, to_timestamp(when)):
                    raise NotFoundError(f"Item {item_id} not found in collection {collection_id}")

    # --------------------------------------------------------------------------------
    # Internals (callers hold an open transaction)
    # --------------------------------------------------------------------------------

    def _check_new_parent(self, db: DatabaseManager, owner_id: int, collection_id: int,
                          new_parent_id: Optional[int]):
        if new_parent_id is None:
            return
        get_owned_collection(db, owner_id, new_parent_id)
        if new_parent_id in db.select_descendant_ids(collection_id):
            raise ValidationError("Cannot move a collection into itself or one of its descendants")

    def _place(self, db: DatabaseManager, owner_id: int, node: Collection,
               new_parent_id: Optional[int], new_order: Optional[int]):
        """Detach node from its sibling group and insert it into the target group."""
        rows = db.select_order_rows(owner_id)
        current = {row['id']: row['order'] for row in rows}
        groups = _sibling_groups(rows)

        source = groups[(owner_id, node.parent_id)]
        source.remove(node.id)
        target = groups.setdefault((owner_id, new_parent_id), [])
        position = len(target) if new_order is None else max(0, min(new_order, len(target)))
        target.insert(position, node.id)

        if new_parent_id != node.parent_id:
            db.set_parent(node.id, new_parent_id)
            _persist_group(db, source, current)
        _persist_group(db, target, current)

    def _recalculate(self, db: DatabaseManager, owner_id: Optional[int]):
        rows = db.select_order_rows(owner_id)
        current = {row['id']: row['order'] for row in rows}
        for ids in _sibling_groups(rows).values():
            _persist_group(db, ids, current)
        self._verify_orders(db, owner_id)

    def _verify_orders(self, db: DatabaseManager, owner_id: Optional[int]):
        groups: Dict[tuple, List[int]] = {}
        for row in db.select_order_rows(owner_id):
            groups.setdefault((row['owner_id'], row['parent_id']), []).append(row['order'])
        for (group_owner, parent_id), orders in groups.items():
            if sorted(orders) != list(range(len(orders))):
                logger.error(f"[TREE] Non-contiguous order under parent {parent_id} of owner {group_owner}: {sorted(orders)}")
                raise IntegrityError(f"Sibling order under parent {parent_id} is not contiguous")
