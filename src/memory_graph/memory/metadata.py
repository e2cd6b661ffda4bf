"""Bounded, cycle-safe snapshots of provider-supplied metadata.

Categorization providers may hand back arbitrarily nested or even
self-referential structures.  The engine treats that payload as an opaque
blob: it is copied once, into plain JSON-compatible values, by an
explicit-stack traversal that cannot exhaust the interpreter stack.  Each
source container is copied at most once and a node budget caps the total
size, so diamond-shaped graphs stay linear.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, List, Set, Tuple, Union

DEFAULT_MAX_DEPTH = 32
DEFAULT_MAX_NODES = 10_000
CYCLE_MARKER = "<cycle>"
TRUNCATED_MARKER = "<truncated>"
SHARED_MARKER = "<shared>"

_Container = Union[Dict[str, Any], List[Any]]
_Frame = Tuple[Any, _Container, Union[str, int], int, FrozenSet[int]]


def _scalar(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    return repr(value)


def snapshot_metadata(
    value: Any,
    max_depth: int = DEFAULT_MAX_DEPTH,
    max_nodes: int = DEFAULT_MAX_NODES,
) -> Any:
    """Return a JSON-compatible copy of *value*.

    Containers nested deeper than *max_depth* are replaced by
    :data:`TRUNCATED_MARKER`; a container that appears inside itself is
    replaced by :data:`CYCLE_MARKER`.  A container reached a second time
    through another path is copied only at its first position (in document
    order) and replaced by :data:`SHARED_MARKER` afterwards.  Once
    *max_nodes* values have been copied the rest become
    :data:`TRUNCATED_MARKER`.  Unknown objects are stored as their ``repr``.
    """
    root: Dict[str, Any] = {}
    stack: List[_Frame] = [(value, root, "value", 0, frozenset())]
    copied: Set[int] = set()
    budget = max_nodes

    while stack:
        src, parent, key, depth, ancestors = stack.pop()

        if budget <= 0:
            parent[key] = TRUNCATED_MARKER  # type: ignore[index]
            continue
        budget -= 1

        is_mapping = isinstance(src, Mapping)
        if not is_mapping and not isinstance(src, (list, tuple, set, frozenset)):
            parent[key] = _scalar(src)  # type: ignore[index]
            continue

        marker = id(src)
        if marker in ancestors:
            parent[key] = CYCLE_MARKER  # type: ignore[index]
            continue
        if marker in copied:
            parent[key] = SHARED_MARKER  # type: ignore[index]
            continue
        if depth >= max_depth:
            parent[key] = TRUNCATED_MARKER  # type: ignore[index]
            continue

        if not src:
            parent[key] = {} if is_mapping else []  # type: ignore[index]
            continue

        copied.add(marker)
        scope = ancestors | {marker}
        # Children are pushed in reverse so they pop in document order.
        if is_mapping:
            items = list(src.items())
            out_map: Dict[str, Any] = {str(k): None for k, _ in items}
            parent[key] = out_map  # type: ignore[index]
            for k, v in reversed(items):
                stack.append((v, out_map, str(k), depth + 1, scope))
        else:
            elements = list(src)
            out_list: List[Any] = [None] * len(elements)
            parent[key] = out_list  # type: ignore[index]
            for i in range(len(elements) - 1, -1, -1):
                stack.append((elements[i], out_list, i, depth + 1, scope))

    return root["value"]
