"""Tag and studio hierarchy expansion.

Parent graphs come from upstream data that users edit freely, so they may
contain cycles. Expansion is a breadth-first walk with a visited set and a
node limit; hitting the limit stops the walk and returns what was found.
"""

import logging
from collections import defaultdict
from typing import Hashable, Iterable

from peek.core.errors import InvariantViolation
from peek.query.identity import CompositeKey

logger = logging.getLogger(__name__)


class _ExpansionLimit(InvariantViolation):
    def __init__(self, message: str, partial: list):
        super().__init__(message)
        self.partial = partial


def build_children_map(parent_links: Iterable[tuple[Hashable, Hashable]]) -> dict:
    """Invert (child, parent) links into parent -> tuple of children."""
    children = defaultdict(list)
    for child, parent in parent_links:
        if child == parent:
            continue
        if child not in children[parent]:
            children[parent].append(child)
    return {parent: tuple(kids) for parent, kids in children.items()}


def _walk(ids: list, depth: int, children_map: dict, node_limit: int | None) -> list:
    result = []
    visited = set()
    for node in ids:
        if node not in visited:
            visited.add(node)
            result.append(node)

    frontier = list(result)
    level = 0
    while frontier and (depth < 0 or level < depth):
        next_frontier = []
        for node in frontier:
            for child in children_map.get(node, ()):
                if child in visited:
                    continue
                visited.add(child)
                result.append(child)
                next_frontier.append(child)
                if node_limit is not None and len(visited) > node_limit:
                    raise _ExpansionLimit(
                        f"Hierarchy expansion exceeded {node_limit} nodes", result
                    )
        frontier = next_frontier
        level += 1
    return result


def expand(ids: Iterable, depth: int | None, children_map: dict, node_limit: int | None = None) -> list:
    """ids plus descendants within `depth` hops. None/0 returns ids unchanged; negative is unbounded."""
    ids = list(ids)
    if not depth:
        return ids
    try:
        return _walk(ids, depth, children_map, node_limit)
    except _ExpansionLimit as e:
        logger.warning(f"{e} - returning partial closure of {len(e.partial)} nodes")
        return e.partial


def expand_keys(
    keys: Iterable[CompositeKey],
    depth: int | None,
    children_map: dict,
    bare_children_map: dict,
    node_limit: int | None = None,
) -> tuple[CompositeKey, ...]:
    """Expand composite references, keeping each reference's instance scope.

    children_map is keyed by (id, instance_id) and lists (child_id, instance_id)
    pairs; bare_children_map is keyed by id across all instances.
    """
    keys = list(keys)
    if not depth:
        return tuple(keys)

    result = []
    seen = set()

    def add(key):
        if key not in seen:
            seen.add(key)
            result.append(key)

    for key in keys:
        if key.is_bare:
            for node in expand([key.id], depth, bare_children_map, node_limit):
                add(CompositeKey(node))
        else:
            for node_id, instance_id in expand([(key.id, key.instance_id)], depth, children_map, node_limit):
                add(CompositeKey(node_id, instance_id))
    return tuple(result)
