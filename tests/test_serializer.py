# tests/test_serializer.py
"""
Tests for the document serializer (asset_graph_mcp/serializer.py).

Covers:
    • Pin multiplicity in the emitted body
    • Metadata bookkeeping ($Nodes, $FloatingNodes, $Groups, $Comments, $Links)
    • Completeness: every node written exactly once
    • Cycle detection
    • Round trips through the parser
"""
import json

import pytest

from asset_graph_mcp.errors import CycleDetected, DuplicateMapKey
from asset_graph_mcp.models import (
    CommentNode,
    DataNode,
    Edge,
    GroupNode,
    LinkNode,
    NodeGraph,
    NodePin,
    Position,
    RawJsonNode,
)
from asset_graph_mcp.parser import parse_document, parse_document_text
from asset_graph_mcp.serializer import serialize_graph, serialize_graph_text


META = "$NodeEditorMetadata"


def _all_written_ids(document: dict) -> list:
    """Every $NodeID in the body, floating nodes, groups and comments."""
    found = []

    def walk(value):
        if isinstance(value, dict):
            if "$NodeID" in value:
                found.append(value["$NodeID"])
            for key, child in value.items():
                if key != META:
                    walk(child)
        elif isinstance(value, list):
            for child in value:
                walk(child)

    walk({key: value for key, value in document.items() if key != META})
    walk(document[META]["$FloatingNodes"])
    found.extend(group["$NodeID"] for group in document[META]["$Groups"])
    found.extend(comment["$NodeID"] for comment in document[META]["$Comments"])
    return found


# ═════════════════════════════════════════════════════════════════
#  BODY
# ═════════════════════════════════════════════════════════════════

class TestBody:

    def test_single_child_example(self, simple_graph):
        document = serialize_graph(simple_graph)
        body = {key: value for key, value in document.items() if key != META}
        assert body == {"$NodeID": "A", "b_field": {"$NodeID": "B"}}
        assert set(document[META]["$Nodes"]) == {"A", "B"}
        assert document[META]["$Nodes"]["B"]["$Position"] == {"$x": 400.0, "$y": 0.0}
        assert document[META]["$FloatingNodes"] == []

    def test_metadata_lists_always_present(self, simple_graph):
        metadata = serialize_graph(simple_graph)[META]
        assert metadata["$Links"] == {}
        assert metadata["$Groups"] == []
        assert metadata["$Comments"] == []
        assert "$WorkspaceID" not in metadata

    def test_workspace_id(self, simple_graph):
        assert serialize_graph(simple_graph, "Biomes")[META]["$WorkspaceID"] == "Biomes"

    def test_multiple_pin_is_ordered_list(self, context, document):
        out = serialize_graph(parse_document(document, context))
        assert [layer["$NodeID"] for layer in out["Layers"]] == ["Layer-1", "Layer-2"]

    def test_map_pin_keys_use_title_then_id(self, context, document):
        graph = parse_document(document, context)
        graph.get_node("Prop-1").title_override = None
        out = serialize_graph(graph)
        assert list(out["Props"]) == ["Prop-1"]

        graph.get_node("Prop-1").title_override = "Birch"
        assert list(serialize_graph(graph)["Props"]) == ["Birch"]

    def test_map_pin_children_with_same_title_rejected(self):
        parent = DataNode(
            id="A",
            template_id="A",
            output_pins=[NodePin(schema_key="Props", type="map")],
        )
        first = RawJsonNode(id="P1", title_override="Oak")
        second = RawJsonNode(id="P2", title_override="Oak")
        graph = NodeGraph(
            root_node_id="A",
            nodes=[parent, first, second],
            edges=[
                Edge(source="A", source_handle="Props", target="P1"),
                Edge(source="A", source_handle="Props", target="P2"),
            ],
        )
        with pytest.raises(DuplicateMapKey) as excinfo:
            serialize_graph(graph)
        assert (excinfo.value.node_id, excinfo.value.pin, excinfo.value.key) == ("A", "Props", "Oak")

    def test_map_pin_key_follows_link(self):
        parent = DataNode(
            id="A",
            template_id="A",
            output_pins=[NodePin(schema_key="Props", type="map")],
        )
        link = LinkNode(id="Link-1", title_override="reroute")
        prop = RawJsonNode(id="P1", title_override="Oak", data={"v": 1})
        graph = NodeGraph(
            root_node_id="A",
            nodes=[parent, link, prop],
            edges=[
                Edge(source="A", source_handle="Props", target="Link-1"),
                Edge(source="Link-1", source_handle="output", target="P1"),
            ],
        )
        assert serialize_graph(graph)["Props"] == {"Oak": {"$NodeID": "P1", "v": 1}}

    def test_empty_pin_omitted(self, context, document):
        document["Layers"] = []
        out = serialize_graph(parse_document(document, context))
        assert "Layers" not in out

    def test_fields_constants_and_unparsed_written(self, context, document):
        out = serialize_graph(parse_document(document, context))
        assert out["Type"] == "Biome"
        assert out["Name"] == "Forest"
        assert out["Extra"] == {"keep": True}
        assert out["Terrain"]["Type"] == "Constant"

    def test_raw_json_blob_merged(self):
        root = RawJsonNode(id="Generic-1", data={"Anything": [1, 2]}, comment="raw")
        out = serialize_graph(NodeGraph(root_node_id="Generic-1", nodes=[root]))
        assert out["Anything"] == [1, 2]
        assert out["$Comment"] == "raw"

    def test_title_written_to_node_metadata(self, context, document):
        out = serialize_graph(parse_document(document, context))
        assert out[META]["$Nodes"]["Prop-1"]["$Title"] == "Oak"
        assert "$Title" not in out[META]["$Nodes"]["Layer-1"]


# ═════════════════════════════════════════════════════════════════
#  METADATA NODES
# ═════════════════════════════════════════════════════════════════

class TestMetadataNodes:

    def test_groups_and_comments_only_in_metadata(self, simple_graph):
        group = GroupNode(id="Group-1", position=Position(x=-50, y=-50), width=900, height=300)
        comment = CommentNode(
            id="Comment-1", position=Position(x=10, y=10), width=100, height=50, text="hi"
        )
        inner = simple_graph.get_node("B").model_copy(
            update={"parent_id": "Group-1", "position": Position(x=450, y=50)}
        )
        graph = NodeGraph(
            root_node_id="A",
            nodes=[group, simple_graph.get_node("A"), inner, comment],
            edges=simple_graph.edges,
        )
        out = serialize_graph(graph)
        assert out[META]["$Groups"] == [{
            "$NodeID": "Group-1",
            "$Position": {"$x": -50.0, "$y": -50.0},
            "$width": 900.0,
            "$height": 300.0,
            "$name": "Group",
        }]
        assert out[META]["$Comments"][0]["$text"] == "hi"
        assert out[META]["$Comments"][0]["$fontSize"] == 13
        # child positions are written as absolute coordinates
        assert out[META]["$Nodes"]["B"]["$Position"] == {"$x": 400.0, "$y": 0.0}

    def test_floating_subgraph_written_from_its_top(self):
        root = RawJsonNode(id="Generic-root")
        parent = DataNode(
            id="Node-1",
            template_id="Node",
            output_pins=[NodePin(schema_key="Next", type="single")],
        )
        child = RawJsonNode(id="Generic-child", data={"v": 1})
        # the child is listed first, the serializer still starts at Node-1
        graph = NodeGraph(
            root_node_id="Generic-root",
            nodes=[root, child, parent],
            edges=[Edge(source="Node-1", source_handle="Next", target="Generic-child")],
        )
        floating = serialize_graph(graph)[META]["$FloatingNodes"]
        assert floating == [{"$NodeID": "Node-1", "Next": {"$NodeID": "Generic-child", "v": 1}}]

    def test_link_recorded_and_skipped_in_body(self, simple_graph):
        link = LinkNode(id="Link-1", position=Position(x=200, y=20), title_override="reroute")
        graph = NodeGraph(
            root_node_id="A",
            nodes=[*simple_graph.nodes, link],
            edges=[
                Edge(source="A", source_handle="b_field", target="Link-1"),
                Edge(source="Link-1", source_handle="output", target="B"),
            ],
        )
        out = serialize_graph(graph)
        assert out["b_field"] == {"$NodeID": "B"}
        assert out[META]["$Links"]["Link-1"] == {
            "$Position": {"$x": 200.0, "$y": 20.0},
            "$Title": "reroute",
            "sourceEndpoint": "A:b_field",
            "outputConnections": ["B:input"],
        }


# ═════════════════════════════════════════════════════════════════
#  COMPLETENESS + CYCLES
# ═════════════════════════════════════════════════════════════════

class TestCompleteness:

    def test_every_node_written_once(self, context, document):
        graph = parse_document(document, context)
        written = _all_written_ids(serialize_graph(graph))
        assert sorted(written) == sorted(node.id for node in graph.nodes)

    def test_cycle_from_root_raises(self):
        nodes = [
            DataNode(
                id=node_id,
                template_id="Node",
                output_pins=[NodePin(schema_key="Next", type="single")],
            )
            for node_id in ("Node-1", "Node-2")
        ]
        graph = NodeGraph(
            root_node_id="Node-1",
            nodes=nodes,
            edges=[
                Edge(source="Node-1", source_handle="Next", target="Node-2"),
                Edge(source="Node-2", source_handle="Next", target="Node-1"),
            ],
        )
        with pytest.raises(CycleDetected) as excinfo:
            serialize_graph(graph)
        assert excinfo.value.node_id == "Node-1"
        assert "Circular reference detected for node Node-1" in str(excinfo.value)

    def test_detached_cycle_raises(self, simple_graph):
        loop = [
            DataNode(
                id=node_id,
                template_id="Node",
                output_pins=[NodePin(schema_key="Next", type="single")],
            )
            for node_id in ("Node-1", "Node-2")
        ]
        graph = NodeGraph(
            root_node_id="A",
            nodes=[*simple_graph.nodes, *loop],
            edges=[
                *simple_graph.edges,
                Edge(source="Node-1", source_handle="Next", target="Node-2"),
                Edge(source="Node-2", source_handle="Next", target="Node-1"),
            ],
        )
        with pytest.raises(CycleDetected):
            serialize_graph(graph)


# ═════════════════════════════════════════════════════════════════
#  ROUND TRIP
# ═════════════════════════════════════════════════════════════════

class TestRoundTrip:

    def test_parse_serialize_parse(self, context, document_text):
        first = parse_document_text(document_text, context)
        text = serialize_graph_text(first, context.root_menu_name)
        second = parse_document_text(text, context)
        assert second.model_dump() == first.model_dump()

    def test_serialize_parse_serialize(self, context, document):
        once = serialize_graph(parse_document(document, context), "Biomes")
        twice = serialize_graph(parse_document(once, context), "Biomes")
        assert twice == once

    def test_null_field_survives_round_trip(self, context, document):
        document["Name"] = None
        first = parse_document(document, context)
        assert first.get_root_node().fields_by_schema_key["Name"] is None

        text = serialize_graph_text(first)
        assert json.loads(text)["Name"] is None
        second = parse_document_text(text, context)
        assert second.model_dump() == first.model_dump()

    def test_links_survive_round_trip(self, context, document):
        document[META]["$Links"] = {
            "Link-1": {
                "$Position": {"$x": 250, "$y": 0},
                "sourceEndpoint": "Biome-root:Terrain",
                "outputConnections": ["ConstantDensity-1:input"],
            },
        }
        first = parse_document(document, context)
        second = parse_document_text(serialize_graph_text(first), context)
        assert second.model_dump() == first.model_dump()

    def test_text_is_tab_indented_json(self, simple_graph):
        text = serialize_graph_text(simple_graph)
        assert json.loads(text)["$NodeID"] == "A"
        assert "\n\t\"" in text
