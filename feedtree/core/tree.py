"""
================================================================================
TREE STORE - Forest Materialization and Unread Aggregation
================================================================================

Turns the flat parent-pointer rows of one owner into an ordered forest.

Traversal:
    1. Fetch every collection of the owner with its unread count
    2. Build a children index (parent id -> child ids, by order)
    3. Walk breadth-first from the roots, carrying each node's ancestor chain
    4. Add each node's own unread count to every ancestor's badge
    5. Sort by depth ascending, then order, then id

Cycle Guard:
    A node whose id reappears in its own ancestor chain is not expanded.
    Mutations already prevent cycles; the guard keeps a corrupted table
    from looping forever.
================================================================================
"""

from typing import List, Optional, Set

from feedtree.core.context import ServiceContext
from feedtree.core.database import DatabaseManager
from feedtree.core.errors import NotFoundError, ValidationError
from feedtree.core.forest import build_children_index, walk_breadth_first
from feedtree.core.models import (
    Collection,
    CollectionItem,
    TreeNode,
    collection_from_row,
    item_from_row,
)


def build_tree(db: DatabaseManager, owner_id: int) -> List[TreeNode]:
    """Materialize one owner's forest from an open session."""
    rows = db.select_tree(owner_id)
    by_id = {row['id']: row for row in rows}
    children = build_children_index((row['id'], row['parent_id']) for row in rows)

    nodes = {}
    for node_id, ancestors in walk_breadth_first(children):
        nodes[node_id] = TreeNode(
            collection=collection_from_row(by_id[node_id]),
            ancestors=ancestors,
            depth=len(ancestors),
        )

    # A collection's badge counts its own unread items plus its whole subtree's
    for node in nodes.values():
        own_unread = by_id[node.id]['unread_count'] or 0
        node.unread_count += own_unread
        for ancestor_id in node.ancestors:
            nodes[ancestor_id].unread_count += own_unread

    return sorted(nodes.values(), key=lambda n: (n.depth, n.collection.order, n.collection.id))


def get_owned_collection(db: DatabaseManager, owner_id: int, collection_id: int) -> Collection:
    """Load a collection, hiding other owners' collections behind NotFoundError."""
    row = db.select_collection(collection_id)
    if row is None or row['owner_id'] != owner_id:
        raise NotFoundError(f"Collection {collection_id} not found")
    return collection_from_row(row)


class TreeStore:
    """Read-side operations over the collection forest."""

    def __init__(self, context: ServiceContext):
        self.context = context

    def list_tree(self, owner_id: int) -> List[TreeNode]:
        with self.context.session() as db:
            return build_tree(db, owner_id)

    def list_descendant_ids(self, root_id: int) -> Set[int]:
        """root_id plus all transitive descendants; empty when root_id is unknown."""
        with self.context.session() as db:
            return db.select_descendant_ids(root_id)

    def get_collection(self, owner_id: int, collection_id: int) -> Collection:
        with self.context.session() as db:
            return get_owned_collection(db, owner_id, collection_id)

    def list_items(self, owner_id: int, collection_id: Optional[int] = None,
                   limit: int = 50, offset: int = 0) -> List[CollectionItem]:
        """Items of a collection's subtree, or of every collection when collection_id is None."""
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        with self.context.session() as db:
            scope = None
            if collection_id is not None:
                get_owned_collection(db, owner_id, collection_id)
                scope = db.select_descendant_ids(collection_id)
            return [item_from_row(row) for row in db.select_items(owner_id, scope, limit, offset)]

    def get_item(self, owner_id: int, collection_id: int, item_id: int) -> CollectionItem:
        with self.context.session() as db:
            get_owned_collection(db, owner_id, collection_id)
            row = db.select_item(collection_id, item_id)
            if row is None:
                raise NotFoundError(f"Item {item_id} not found in collection {collection_id}")
            return item_from_row(row)
