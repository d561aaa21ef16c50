# tests/test_organize.py
"""
Tests for auto-positioning (asset_graph_mcp/organize.py).

Covers:
    • Tree layout geometry (depth to the right, parent centred on children)
    • Layered layout (ranks, components side by side, margins, origin)
    • Boundaries: empty input, single node
    • Determinism
    • Spacing clamping and size fallbacks
    • Descendant collection and layout origin
"""
import math

import pytest

from asset_graph_mcp.models import Position
from asset_graph_mcp.organize import (
    LayoutEdge,
    LayoutNode,
    LayoutPosition,
    LayoutSpacing,
    TreeLayoutOptions,
    collect_descendant_ids,
    layout_directed_graph,
    layout_directed_graph_uniform,
    layout_origin_from_positions,
    layout_tree,
    normalize_direction,
)


def _nodes(*ids, width=100, height=50):
    return [LayoutNode(id=node_id, width=width, height=height) for node_id in ids]


def _edges(*pairs):
    return [LayoutEdge(source=source, target=target) for source, target in pairs]


def _xy(positions):
    return {node_id: (pos.x, pos.y) for node_id, pos in positions.items()}


@pytest.fixture
def branching():
    """
    A ─▶ B ─▶ D
      ╰▶ C
    """
    return _nodes("A", "B", "C", "D"), _edges(("A", "B"), ("A", "C"), ("B", "D"))


# ═════════════════════════════════════════════════════════════════
#  TREE LAYOUT
# ═════════════════════════════════════════════════════════════════

class TestTreeLayout:

    def test_empty(self):
        assert layout_tree([], []) == {}

    def test_single_node_at_origin(self):
        positions = layout_tree(_nodes("A"), [], origin=LayoutPosition(x=30, y=-20))
        assert _xy(positions) == {"A": (30, -20)}

    def test_parent_centred_on_children(self):
        positions = layout_tree(_nodes("A", "B", "C"), _edges(("A", "B"), ("A", "C")))
        # children one node width plus the level gap to the right, 40px apart
        assert _xy(positions) == {"A": (0, 45), "B": (240, 0), "C": (240, 90)}

    def test_depth_grows_left_to_right(self, branching):
        positions = layout_tree(*branching)
        assert positions["A"].x < positions["B"].x < positions["D"].x
        assert positions["B"].x == positions["C"].x

    def test_siblings_do_not_overlap(self, branching):
        nodes, edges = branching
        positions = layout_tree(nodes, edges)
        for upper, lower in (("B", "C"), ("D", "C")):
            assert positions[upper].y + 50 <= positions[lower].y

    def test_disjoint_trees_stacked(self):
        positions = layout_tree(_nodes("A", "B"), [])
        assert _xy(positions) == {"A": (0, 0), "B": (0, 130)}

    def test_variable_sizes(self):
        nodes = [LayoutNode("A", 100, 200), LayoutNode("B", 300, 20), LayoutNode("C", 50, 20)]
        positions = layout_tree(nodes, _edges(("A", "B"), ("A", "C")))
        # B is wide: C still starts at the same depth, right after A
        assert positions["B"].x == positions["C"].x == 240
        # A's vertical centre sits between its children's centres
        a_center = positions["A"].y + 100
        assert a_center == pytest.approx((positions["B"].y + 10 + positions["C"].y + 10) / 2)

    def test_node_reached_twice_placed_once(self):
        positions = layout_tree(
            _nodes("A", "B", "C"),
            _edges(("A", "B"), ("A", "C"), ("B", "C")),
        )
        assert set(positions) == {"A", "B", "C"}
        assert positions["B"].x == positions["C"].x

    def test_cycle_without_root_still_placed(self):
        positions = layout_tree(_nodes("A", "B"), _edges(("A", "B"), ("B", "A")))
        assert set(positions) == {"A", "B"}

    def test_custom_gaps(self):
        options = TreeLayoutOptions(sibling_gap=10, level_gap=20, tree_spacing=5)
        positions = layout_tree(_nodes("A", "B", "C"), _edges(("A", "B"), ("A", "C")), options)
        assert _xy(positions) == {"A": (0, 30), "B": (120, 0), "C": (120, 60)}

    def test_deterministic(self, branching):
        assert _xy(layout_tree(*branching)) == _xy(layout_tree(*branching))


# ═════════════════════════════════════════════════════════════════
#  LAYERED LAYOUT
# ═════════════════════════════════════════════════════════════════

class TestLayeredLayout:

    def test_empty(self):
        assert layout_directed_graph([], []) == {}

    def test_single_node_at_margin_plus_origin(self):
        positions = layout_directed_graph(_nodes("A"), [], origin=LayoutPosition(x=100, y=200))
        assert _xy(positions) == {"A": (140, 240)}

    def test_left_to_right_ranks(self):
        positions = layout_directed_graph(_nodes("A", "B"), _edges(("A", "B")), "LR")
        assert positions["A"].x == 40
        assert positions["B"].x > positions["A"].x + 100
        assert min(positions["A"].y, positions["B"].y) == 40

    def test_top_to_bottom_ranks(self):
        positions = layout_directed_graph(_nodes("A", "B"), _edges(("A", "B")), "TB")
        assert positions["A"].y == 40
        assert positions["B"].y > positions["A"].y + 50

    def test_components_side_by_side(self):
        positions = layout_directed_graph(_nodes("Y", "X"), [], "LR")
        # sorted by id, stacked across the flow with node_sep between them
        assert _xy(positions) == {"X": (40, 40), "Y": (40, 170)}

    def test_unknown_duplicate_and_self_edges_dropped(self):
        edges = _edges(("A", "B"), ("A", "B"), ("A", "ghost"), ("B", "B"))
        positions = layout_directed_graph(_nodes("A", "B"), edges)
        assert set(positions) == {"A", "B"}

    def test_cycle(self):
        positions = layout_directed_graph(_nodes("A", "B", "C"), _edges(("A", "B"), ("B", "C"), ("C", "A")))
        assert set(positions) == {"A", "B", "C"}

    def test_deterministic(self, branching):
        nodes, edges = branching
        first = layout_directed_graph(nodes, edges, "TB")
        second = layout_directed_graph(list(reversed(nodes)), edges, "TB")
        assert _xy(first) == _xy(second)

    def test_unknown_direction_falls_back_to_lr(self, branching):
        nodes, edges = branching
        assert _xy(layout_directed_graph(nodes, edges, "diagonal")) == _xy(layout_directed_graph(nodes, edges, "LR"))

    def test_uniform_sizes(self):
        positions = layout_directed_graph_uniform(["b", "a", "a", " "], [], node_width=50, node_height=20)
        assert _xy(positions) == {"a": (40, 40), "b": (40, 140)}


# ═════════════════════════════════════════════════════════════════
#  CLAMPING + NORMALIZATION
# ═════════════════════════════════════════════════════════════════

class TestClamping:

    def test_bad_spacing_falls_back_to_defaults(self):
        spacing = LayoutSpacing(node_sep=-5, rank_sep=float("nan"), margin_x="wide", margin_y=10)
        assert (spacing.node_sep, spacing.rank_sep, spacing.margin_x, spacing.margin_y) == (80, 140, 40, 10)

    def test_bad_tree_options_fall_back(self):
        options = TreeLayoutOptions(sibling_gap=math.inf, level_gap=None, tree_spacing=0)
        assert (options.sibling_gap, options.level_gap, options.tree_spacing) == (40, 140, 0)

    def test_unusable_sizes_use_defaults(self):
        positions = layout_tree([LayoutNode("A", 0, -1), LayoutNode("B", 100, 50)], [])
        assert positions["B"].y == 240 + 80

    def test_normalize_direction(self):
        assert normalize_direction(" tb ") == "TB"
        assert normalize_direction("lr") == "LR"
        assert normalize_direction(None) == "LR"


# ═════════════════════════════════════════════════════════════════
#  SELECTION HELPERS
# ═════════════════════════════════════════════════════════════════

class TestSelection:

    @pytest.fixture
    def edges(self):
        return _edges(("A", "B"), ("B", "C"), ("C", "A"), ("D", "E"))

    def test_descendants_breadth_first(self, edges):
        assert collect_descendant_ids(["D", "A"], edges) == ["A", "D", "B", "E", "C"]

    def test_descendants_follow_cycles_once(self, edges):
        assert collect_descendant_ids(["B"], edges) == ["B", "C", "A"]

    def test_allowed_ids_filter_edges(self, edges):
        assert collect_descendant_ids(["B"], edges, allowed_ids=["A", "B"]) == ["B"]

    def test_excluded_seed_contributes_nothing(self, edges):
        assert collect_descendant_ids(["C", "D"], edges, allowed_ids=["D", "E"]) == ["D", "E"]

    def test_no_seeds(self, edges):
        assert collect_descendant_ids([], edges) == []
        assert collect_descendant_ids(["", None], edges) == []

    def test_origin_from_positions(self):
        origin = layout_origin_from_positions([
            Position(x=10, y=20),
            LayoutPosition(x=-5, y=30),
            LayoutPosition(x=math.nan, y=-100),
        ])
        assert (origin.x, origin.y) == (-5, 20)

    def test_origin_without_finite_positions(self):
        origin = layout_origin_from_positions([LayoutPosition(x=math.inf, y=0)])
        assert (origin.x, origin.y) == (0, 0)
        assert layout_origin_from_positions([]) == LayoutPosition(x=0, y=0)
