"""
Auto-positioning for asset-graph-mcp.

Two layouts are offered:

  1. Tree layout: a variable-size tidy tree.  Every node with no incoming
     edge roots a hierarchy; children sit one level gap to the right of
     their parent and are packed vertically as tight as their subtrees
     allow.  A parent is centred on its first and last child.
  2. Layered layout: a Sugiyama layered drawing (through grandalf) for
     arbitrary connected subgraphs, flowing left to right (``LR``) or top
     to bottom (``TB``).

Both take node sizes and return top-left positions in absolute canvas
coordinates.  Neither raises for bad spacing input; out-of-range values
fall back to the defaults below.

Spacing constants:
  - Layered: 80px between nodes of a rank, 140px between ranks, 40px margins
  - Tree: 40px between siblings, 140px between levels, 80px between trees
  - Nodes without a usable size are treated as 360 x 240
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from grandalf.graphs import Edge as GraphEdge, Graph, Vertex
from grandalf.layouts import SugiyamaLayout
from pydantic import BaseModel, ValidationInfo, field_validator

logger = logging.getLogger(__name__)


# --- Spacing constants ---

DEFAULT_DIRECTION = "LR"
DIRECTIONS = ("LR", "TB")

DEFAULT_NODE_WIDTH = 360
DEFAULT_NODE_HEIGHT = 240

DEFAULT_NODE_SEP = 80
DEFAULT_RANK_SEP = 140
DEFAULT_MARGIN_X = 40
DEFAULT_MARGIN_Y = 40

DEFAULT_SIBLING_GAP = 40
DEFAULT_LEVEL_GAP = 140
DEFAULT_TREE_SPACING = 80


@dataclass
class LayoutNode:
    """A node to be positioned, with its on-screen size."""
    id: str
    width: float = DEFAULT_NODE_WIDTH
    height: float = DEFAULT_NODE_HEIGHT


@dataclass
class LayoutEdge:
    """A directed edge between layout nodes."""
    source: str
    target: str


@dataclass
class LayoutPosition:
    """Computed top-left position for a node."""
    x: float
    y: float


def _finite_non_negative(cls, value: Any, info: ValidationInfo) -> float:
    default = cls.model_fields[info.field_name].default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number) or number < 0:
        return default
    return number


class LayoutSpacing(BaseModel):
    """Spacing for the layered layout.  Unusable values fall back to defaults."""
    node_sep: float = DEFAULT_NODE_SEP
    rank_sep: float = DEFAULT_RANK_SEP
    margin_x: float = DEFAULT_MARGIN_X
    margin_y: float = DEFAULT_MARGIN_Y

    @field_validator("*", mode="before")
    @classmethod
    def _clamp(cls, value: Any, info: ValidationInfo) -> float:
        return _finite_non_negative(cls, value, info)


class TreeLayoutOptions(BaseModel):
    """Spacing for the tree layout.  Unusable values fall back to defaults."""
    sibling_gap: float = DEFAULT_SIBLING_GAP
    level_gap: float = DEFAULT_LEVEL_GAP
    tree_spacing: float = DEFAULT_TREE_SPACING

    @field_validator("*", mode="before")
    @classmethod
    def _clamp(cls, value: Any, info: ValidationInfo) -> float:
        return _finite_non_negative(cls, value, info)


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------

def _read_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _read_positive(value: Any, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) and number > 0 else fallback


def _read_finite(value: Any, fallback: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def normalize_direction(direction: Any) -> str:
    value = _read_string(direction)
    value = value.upper() if value else None
    return value if value in DIRECTIONS else DEFAULT_DIRECTION


def normalize_node_ids(node_ids: Optional[Iterable[Any]]) -> list[str]:
    """Strip, de-duplicate and sort node ids."""
    return sorted({node_id for node_id in map(_read_string, node_ids or ()) if node_id})


def _read_layout_nodes(nodes: Iterable[LayoutNode]) -> list[LayoutNode]:
    """De-duplicate by id (first wins) and replace unusable sizes."""
    result: list[LayoutNode] = []
    seen: set[str] = set()
    for node in nodes or ():
        node_id = _read_string(getattr(node, "id", None))
        if not node_id or node_id in seen:
            continue
        seen.add(node_id)
        result.append(LayoutNode(
            id=node_id,
            width=_read_positive(getattr(node, "width", None), DEFAULT_NODE_WIDTH),
            height=_read_positive(getattr(node, "height", None), DEFAULT_NODE_HEIGHT),
        ))
    return result


def _read_edges(edges: Iterable[Any], known_ids: set[str]) -> list[tuple[str, str]]:
    """Edges between known nodes, in input order, without duplicates or self loops."""
    result: list[tuple[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for edge in edges or ():
        source = _read_string(getattr(edge, "source", None))
        target = _read_string(getattr(edge, "target", None))
        if source not in known_ids or target not in known_ids or source == target:
            continue
        if (source, target) in seen:
            continue
        seen.add((source, target))
        result.append((source, target))
    return result


def _read_origin(origin: Optional[LayoutPosition]) -> tuple[float, float]:
    if origin is None:
        return 0.0, 0.0
    return _read_finite(getattr(origin, "x", 0.0)), _read_finite(getattr(origin, "y", 0.0))


# ---------------------------------------------------------------------------
# Selection helpers
# ---------------------------------------------------------------------------

def collect_descendant_ids(
    seed_ids: Iterable[str],
    edges: Iterable[Any],
    allowed_ids: Optional[Iterable[str]] = None,
) -> list[str]:
    """
    Seeds plus everything reachable from them, breadth-first.

    Seeds are sorted and de-duplicated first.  When ``allowed_ids`` is given
    (and not empty) seeds outside it are dropped and only edges with both
    ends inside it are followed.
    """
    seeds = normalize_node_ids(seed_ids)
    if not seeds:
        return []

    allowed = set(normalize_node_ids(allowed_ids)) or None

    children: dict[str, list[str]] = {}
    for edge in edges or ():
        source = _read_string(getattr(edge, "source", None))
        target = _read_string(getattr(edge, "target", None))
        if not source or not target:
            continue
        if allowed is not None and (source not in allowed or target not in allowed):
            continue
        targets = children.setdefault(source, [])
        if target not in targets:
            targets.append(target)

    visited = [seed for seed in seeds if allowed is None or seed in allowed]
    seen = set(visited)
    pending = deque(visited)
    while pending:
        current = pending.popleft()
        for child in children.get(current, ()):
            if child in seen:
                continue
            seen.add(child)
            visited.append(child)
            pending.append(child)
    return visited


def layout_origin_from_positions(positions: Iterable[Any]) -> LayoutPosition:
    """Top-left corner (min x, min y) of the given positions, ignoring non-finite ones."""
    min_x = math.inf
    min_y = math.inf
    for position in positions or ():
        x = _read_finite(getattr(position, "x", None), math.nan)
        y = _read_finite(getattr(position, "y", None), math.nan)
        if math.isnan(x) or math.isnan(y):
            continue
        min_x = min(min_x, x)
        min_y = min(min_y, y)
    if not math.isfinite(min_x) or not math.isfinite(min_y):
        return LayoutPosition(x=0.0, y=0.0)
    return LayoutPosition(x=min_x, y=min_y)


# ---------------------------------------------------------------------------
# Tree layout
# ---------------------------------------------------------------------------

@dataclass
class _Box:
    """A placed node inside a subtree.

    ``x`` is absolute (depth axis).  ``center`` is the breadth-axis centre
    relative to the subtree root.
    """
    id: str
    x: float
    width: float
    height: float
    center: float

    @property
    def top(self) -> float:
        return self.center - self.height / 2

    @property
    def bottom(self) -> float:
        return self.center + self.height / 2

    def shares_depth(self, other: "_Box") -> bool:
        return self.x < other.x + other.width and other.x < self.x + self.width


def layout_tree(
    nodes: list[LayoutNode],
    edges: list[Any],
    options: Optional[TreeLayoutOptions] = None,
    origin: Optional[LayoutPosition] = None,
) -> dict[str, LayoutPosition]:
    """
    Tidy-tree layout of every hierarchy in ``nodes``.

    Roots are the nodes without an incoming edge, in input order; children
    follow edge order.  A node reachable along more than one path is placed
    under the first parent that reaches it.  Nodes left over because they
    sit on a cycle root their own trees.  Separate trees are stacked
    top to bottom, ``tree_spacing`` apart.
    """
    layout_nodes = _read_layout_nodes(nodes)
    if not layout_nodes:
        return {}

    opts = options or TreeLayoutOptions()
    origin_x, origin_y = _read_origin(origin)
    node_map = {node.id: node for node in layout_nodes}
    edge_pairs = _read_edges(edges, set(node_map))

    children: dict[str, list[str]] = {node.id: [] for node in layout_nodes}
    has_parent: set[str] = set()
    for source, target in edge_pairs:
        children[source].append(target)
        has_parent.add(target)

    roots = [node.id for node in layout_nodes if node.id not in has_parent]
    placed: set[str] = set()
    positions: dict[str, LayoutPosition] = {}
    offset = origin_y

    def place_tree(root_id: str) -> None:
        nonlocal offset
        boxes = _layout_subtree(root_id, origin_x, node_map, children, placed, opts)
        top = min(box.top for box in boxes)
        bottom = max(box.bottom for box in boxes)
        for box in boxes:
            positions[box.id] = LayoutPosition(x=box.x, y=offset + box.top - top)
        offset += bottom - top + opts.tree_spacing

    for root_id in roots:
        place_tree(root_id)
    for node in layout_nodes:
        if node.id not in placed:
            place_tree(node.id)

    logger.debug(f"Tree layout placed {len(positions)} node(s) in {len(roots)} root tree(s)")
    return positions


def _layout_subtree(
    node_id: str,
    x: float,
    node_map: dict[str, LayoutNode],
    children: dict[str, list[str]],
    placed: set[str],
    opts: TreeLayoutOptions,
) -> list[_Box]:
    node = node_map[node_id]
    placed.add(node_id)
    child_x = x + node.width + opts.level_gap

    # pre-order claim so a node reached twice belongs to its first parent
    child_ids = []
    for child_id in children[node_id]:
        if child_id not in placed:
            placed.add(child_id)
            child_ids.append(child_id)

    packed: list[_Box] = []
    child_centers: list[float] = []
    for child_id in child_ids:
        placed.discard(child_id)
        subtree = _layout_subtree(child_id, child_x, node_map, children, placed, opts)
        shift = 0.0
        if packed:
            shift = max(
                (
                    other.bottom + opts.sibling_gap - box.top
                    for box in subtree
                    for other in packed
                    if box.shares_depth(other)
                ),
                default=packed[-1].bottom + opts.sibling_gap - subtree[0].top,
            )
        for box in subtree:
            box.center += shift
        child_centers.append(subtree[0].center)
        packed.extend(subtree)

    mid = (child_centers[0] + child_centers[-1]) / 2 if child_centers else 0.0
    for box in packed:
        box.center -= mid

    return [_Box(id=node_id, x=x, width=node.width, height=node.height, center=0.0)] + packed


# ---------------------------------------------------------------------------
# Layered layout
# ---------------------------------------------------------------------------

class _VertexView:
    """Size holder grandalf's SugiyamaLayout reads and fills ``xy`` on."""

    def __init__(self, w: float, h: float) -> None:
        self.w = w
        self.h = h
        # centre, set by the layout
        self.xy = (0.0, 0.0)


def layout_directed_graph(
    nodes: list[LayoutNode],
    edges: list[Any],
    direction: str = DEFAULT_DIRECTION,
    spacing: Optional[LayoutSpacing] = None,
    origin: Optional[LayoutPosition] = None,
) -> dict[str, LayoutPosition]:
    """
    Layered layout of arbitrary subgraphs with per-node sizes.

    Nodes are laid out in id order.  Disconnected components sit side by
    side across the flow direction, ``node_sep`` apart.  The drawing starts
    at ``(margin_x, margin_y)`` offset by ``origin``.
    """
    layout_nodes = sorted(_read_layout_nodes(nodes), key=lambda node: node.id)
    if not layout_nodes:
        return {}

    spacing = spacing or LayoutSpacing()
    horizontal = normalize_direction(direction) == "LR"
    origin_x, origin_y = _read_origin(origin)
    node_map = {node.id: node for node in layout_nodes}

    # grandalf lays ranks along its y axis; for LR both axes are swapped
    vertices: dict[str, Vertex] = {}
    for node in layout_nodes:
        vertex = Vertex(node.id)
        if horizontal:
            vertex.view = _VertexView(node.height, node.width)
        else:
            vertex.view = _VertexView(node.width, node.height)
        vertices[node.id] = vertex

    graph_edges = [
        GraphEdge(vertices[source], vertices[target])
        for source, target in _read_edges(edges, set(node_map))
    ]
    graph = Graph(list(vertices.values()), graph_edges)

    components = sorted(
        graph.C,
        key=lambda component: min(vertex.data for vertex in component.sV),
    )

    positions: dict[str, LayoutPosition] = {}
    offset = spacing.margin_y if horizontal else spacing.margin_x
    for component in components:
        centers = _draw_component(component, spacing)
        boxes = {}
        for node_id, (gx, gy) in centers.items():
            node = node_map[node_id]
            cx, cy = (gy, gx) if horizontal else (gx, gy)
            boxes[node_id] = (cx - node.width / 2, cy - node.height / 2, node)

        min_x = min(left for left, _, _ in boxes.values())
        min_y = min(top for _, top, _ in boxes.values())
        if horizontal:
            shift_x = spacing.margin_x - min_x
            shift_y = offset - min_y
            extent = max(top + node.height for _, top, node in boxes.values()) - min_y
        else:
            shift_x = offset - min_x
            shift_y = spacing.margin_y - min_y
            extent = max(left + node.width for left, _, node in boxes.values()) - min_x

        for node_id in sorted(boxes):
            left, top, _ = boxes[node_id]
            positions[node_id] = LayoutPosition(
                x=left + shift_x + origin_x,
                y=top + shift_y + origin_y,
            )
        offset += extent + spacing.node_sep

    logger.debug(
        f"Layered layout placed {len(positions)} node(s) in {len(components)} component(s)"
    )
    return positions


def _draw_component(component, spacing: LayoutSpacing) -> dict[str, tuple[float, float]]:
    """Run Sugiyama on one connected component; returns centre per node id."""
    vertices = list(component.sV)
    if len(vertices) == 1:
        return {vertices[0].data: (0.0, 0.0)}

    sug = SugiyamaLayout(component)
    sug.xspace = spacing.node_sep
    sug.yspace = spacing.rank_sep
    roots = sorted(
        (vertex for vertex in vertices if not vertex.e_in()),
        key=lambda vertex: vertex.data,
    )
    sug.init_all(roots=roots or None)
    sug.draw()
    return {vertex.data: tuple(vertex.view.xy) for vertex in vertices}


def layout_directed_graph_uniform(
    node_ids: Iterable[str],
    edges: list[Any],
    direction: str = DEFAULT_DIRECTION,
    node_width: float = DEFAULT_NODE_WIDTH,
    node_height: float = DEFAULT_NODE_HEIGHT,
    spacing: Optional[LayoutSpacing] = None,
    origin: Optional[LayoutPosition] = None,
) -> dict[str, LayoutPosition]:
    """Layered layout where every node has the same size."""
    width = _read_positive(node_width, DEFAULT_NODE_WIDTH)
    height = _read_positive(node_height, DEFAULT_NODE_HEIGHT)
    nodes = [
        LayoutNode(id=node_id, width=width, height=height)
        for node_id in normalize_node_ids(node_ids)
    ]
    return layout_directed_graph(nodes, edges, direction, spacing, origin)
