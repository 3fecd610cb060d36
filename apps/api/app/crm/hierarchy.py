"""Cycle detection for self-referencing parent links.

The functions here take a ``parent_of`` lookup instead of a session so the
same walk serves accounts, companies and plain dictionaries in tests.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterator

ParentLookup = Callable[[uuid.UUID], "uuid.UUID | None"]


def iter_ancestors(node_id: uuid.UUID, parent_of: ParentLookup, *, max_depth: int = 1000) -> Iterator[uuid.UUID]:
    """Yield the ancestors of ``node_id``, nearest first.

    The walk stops at a root, after ``max_depth`` hops, or when it reaches a
    node it has already yielded (a loop that was stored before validation
    existed).
    """
    visited: set[uuid.UUID] = {node_id}
    current = parent_of(node_id)
    depth = 0
    while current is not None and current not in visited and depth < max_depth:
        yield current
        visited.add(current)
        current = parent_of(current)
        depth += 1


def would_create_cycle(
    node_id: uuid.UUID | None,
    candidate_parent_id: uuid.UUID | None,
    parent_of: ParentLookup,
    *,
    max_depth: int = 1000,
) -> bool:
    if node_id is None or candidate_parent_id is None:
        return False
    if candidate_parent_id == node_id:
        return True

    visited: set[uuid.UUID] = set()
    current: uuid.UUID | None = candidate_parent_id
    depth = 0
    while current is not None:
        if current == node_id:
            return True
        if current in visited:
            return False
        if depth >= max_depth:
            # Chain deeper than any real hierarchy; refuse rather than guess.
            return True
        visited.add(current)
        current = parent_of(current)
        depth += 1
    return False
