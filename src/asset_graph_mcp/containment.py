"""Group containment for asset-graph-mcp.

Group membership is never stored by the user directly: it is re-derived
from spatial overlap every time a node is moved or resized.  Groups are
processed smallest first so a node inside two nested groups ends up in
the inner one, and a group can only adopt groups smaller than itself.

The resolved node list keeps the graph's parent-before-child ordering:
groups come first, largest to smallest, followed by every other node in
its original relative order.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .errors import PreconditionViolated
from .models import GroupNode, Position, absolute_position
from .spatial import BoundingBox, SpatialIndex

logger = logging.getLogger(__name__)


def position_relative_to(node, other, nodes_by_id: dict[str, Any]) -> Position:
    """Position of ``node`` relative to ``other`` (absolute when ``other`` is None)."""
    absolute = absolute_position(node, nodes_by_id)
    if other is None:
        return absolute
    origin = absolute_position(other, nodes_by_id)
    return Position(x=absolute.x - origin.x, y=absolute.y - origin.y)


def absolute_bounding_box(node, nodes_by_id: dict[str, Any]) -> Optional[BoundingBox]:
    """Absolute box of a node from its measured size, or None if unmeasured."""
    if node.measured is None:
        return None
    position = absolute_position(node, nodes_by_id)
    return BoundingBox(
        min_x=position.x,
        min_y=position.y,
        max_x=position.x + node.measured.width,
        max_y=position.y + node.measured.height,
    )


def resolve_containment(nodes: list) -> list:
    """Re-derive ``parent_id`` for every node from group overlap.

    Returns new node objects; the input list and its nodes are left as they
    were.  Running it twice in a row gives the same result.

    Raises:
        PreconditionViolated: a node has not been measured yet.
    """
    unmeasured = [node.id for node in nodes if node.measured is None]
    if unmeasured:
        logger.error(f"Containment requested before measurement of {len(unmeasured)} node(s)")
        raise PreconditionViolated(
            f"Nodes have no measured size: {', '.join(unmeasured)}"
        )

    nodes_by_id = {node.id: node for node in nodes}
    groups = [node for node in nodes if isinstance(node, GroupNode)]
    others = [node for node in nodes if not isinstance(node, GroupNode)]

    # smallest first; sorted() is stable for equal areas
    groups = sorted(groups, key=lambda group: group.measured.width * group.measured.height)

    index: SpatialIndex = SpatialIndex(lambda node: absolute_bounding_box(node, nodes_by_id))
    index.load(nodes)

    parent_of: dict[str, str] = {}
    processed: set[str] = set()
    for group in groups:
        bbox = absolute_bounding_box(group, nodes_by_id)
        for candidate in index.search(bbox):
            if candidate.id == group.id or candidate.id in parent_of:
                continue
            # a group may only adopt groups already processed, i.e. smaller ones
            if isinstance(candidate, GroupNode) and candidate.id not in processed:
                continue
            parent_of[candidate.id] = group.id
        processed.add(group.id)

    def reparent(node):
        parent_id = parent_of.get(node.id)
        parent = nodes_by_id[parent_id] if parent_id else None
        return node.model_copy(
            deep=True,
            update={
                "parent_id": parent_id,
                "position": position_relative_to(node, parent, nodes_by_id),
            },
        )

    resolved = [reparent(group) for group in reversed(groups)]
    resolved.extend(reparent(node) for node in others)
    logger.debug(f"Resolved containment for {len(groups)} group(s), {len(parent_of)} child node(s)")
    return resolved
