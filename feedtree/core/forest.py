"""
In-memory forest helpers over flat (id, parent_id) pairs.

Used instead of recursive SQL: the caller fetches the flat parent-pointer
list once and all closure computations happen here.
"""

from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple


def build_children_index(pairs: Iterable[Tuple[int, Optional[int]]]) -> Dict[Optional[int], List[int]]:
    """Map parent id (None for roots) -> child ids, in input order."""
    index: Dict[Optional[int], List[int]] = {}
    for node_id, parent_id in pairs:
        index.setdefault(parent_id, []).append(node_id)
    return index


def descendants(children: Dict[Optional[int], List[int]], root_id: int) -> Set[int]:
    """root_id plus every transitive child. Stops on revisits, so cycles terminate."""
    seen = {root_id}
    queue = deque([root_id])
    while queue:
        current = queue.popleft()
        for child in children.get(current, []):
            if child in seen:
                continue
            seen.add(child)
            queue.append(child)
    return seen


def walk_breadth_first(children: Dict[Optional[int], List[int]]) -> List[Tuple[int, List[int]]]:
    """
    Walk from the roots, yielding (id, ancestors) with ancestors root-first.

    A child whose id already appears in its own ancestor chain is skipped, and
    every node is visited at most once.
    """
    result = []
    visited = set()
    queue = deque((root, []) for root in children.get(None, []))
    while queue:
        node_id, ancestors = queue.popleft()
        if node_id in visited or node_id in ancestors:
            continue
        visited.add(node_id)
        result.append((node_id, ancestors))
        chain = ancestors + [node_id]
        for child in children.get(node_id, []):
            if child not in chain:
                queue.append((child, chain))
    return result
