# tests/conftest.py
"""
Shared test fixtures.
Workspace: the biome catalog in workspaces/biome.yaml.
Sample document: a biome root with one of each pin multiplicity, a group
around the layers and a floating layer.
"""
import copy
import json
from pathlib import Path

import pytest

from asset_graph_mcp.models import (
    DataNode,
    Edge,
    NodeGraph,
    NodePin,
    Position,
    RawJsonNode,
)
from asset_graph_mcp.parser import load_workspace_file


WORKSPACE_PATH = Path(__file__).parent.parent / "workspaces" / "biome.yaml"


# ── Sample document ──────────────────────────────────────────────
#
#   Biome-root ─Terrain─▶ ConstantDensity-1
#              ─Layers──▶ Layer-1, Layer-2
#              ─Props───▶ "Oak": Prop-1
#   floating: Layer-9
#   group: Group-1 around both layers
_DOCUMENT = {
    "$NodeID": "Biome-root",
    "Type": "Biome",
    "Name": "Forest",
    "Weight": 2.5,
    "Terrain": {"$NodeID": "ConstantDensity-1", "Type": "Constant", "Value": 0.25},
    "Layers": [
        {"$NodeID": "Layer-1", "Material": "Grass", "Depth": 1},
        {"$NodeID": "Layer-2", "Material": "Dirt", "Depth": 3},
    ],
    "Props": {
        "Oak": {"$NodeID": "Prop-1", "Model": "oak.blockymodel", "Chance": 0.3},
    },
    "Extra": {"keep": True},
    "$NodeEditorMetadata": {
        "$Nodes": {
            "Biome-root": {"$Position": {"$x": 0, "$y": 0}},
            "ConstantDensity-1": {"$Position": {"$x": 500, "$y": 0}},
            "Layer-1": {"$Position": {"$x": 500, "$y": 300}},
            "Layer-2": {"$Position": {"$x": 500, "$y": 600}},
            "Prop-1": {"$Position": {"$x": 500, "$y": 900}, "$Title": "Oak"},
            "Layer-9": {"$Position": {"$x": 1200, "$y": 0}},
        },
        "$FloatingNodes": [
            {"$NodeID": "Layer-9", "Material": "Sand", "Depth": 2},
        ],
        "$Links": {},
        "$Groups": [
            {
                "$NodeID": "Group-1",
                "$Position": {"$x": 450, "$y": 250},
                "$width": 500,
                "$height": 650,
                "$name": "Layers",
            },
        ],
        "$Comments": [],
        "$WorkspaceID": "Biomes",
    },
}


@pytest.fixture
def context():
    """The biome workspace catalog."""
    return load_workspace_file(str(WORKSPACE_PATH))


@pytest.fixture
def document() -> dict:
    """A fresh copy of the sample biome document."""
    return copy.deepcopy(_DOCUMENT)


@pytest.fixture
def document_text(document) -> str:
    return json.dumps(document, indent="\t")


@pytest.fixture
def simple_graph() -> NodeGraph:
    """
    Two-node graph built in code, no workspace needed:

        A --b_field--> B
    """
    a = DataNode(
        id="A",
        template_id="A",
        output_pins=[NodePin(schema_key="b_field", type="single")],
        position=Position(x=0, y=0),
    )
    b = RawJsonNode(id="B", position=Position(x=400, y=0))
    return NodeGraph(
        root_node_id="A",
        nodes=[a, b],
        edges=[Edge(source="A", source_handle="b_field", target="B")],
    )
