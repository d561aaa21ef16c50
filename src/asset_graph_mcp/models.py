"""
Data models for asset-graph-mcp: the node graph ontology.

An asset document is edited as a flat list of nodes plus directed edges.
Every node belongs to exactly one of five kinds:

    DataNode      an object in the asset document matched to a template
    RawJsonNode   an object no template matches, carried as an opaque blob
    LinkNode      a reroute point sitting on one pin connection
    GroupNode     a named rectangle that visually contains other nodes
    CommentNode   a free-text rectangle

DataNode and RawJsonNode make up the document body.  Link, Group and Comment
nodes only exist in the editor metadata side-block.

Edges go from a source node's output pin (identified by the pin's schema key)
to the target node's single input handle.  Pins carry a multiplicity:

    single    at most one child, serialized as the child object
    multiple  ordered children, serialized as a list
    map       keyed children, serialized as an object keyed by title

Positions are relative to ``parent_id`` when it is set (always a GroupNode)
and absolute otherwise.  ``measured`` is the on-screen size reported by the
renderer; it is ``None`` until the node has been drawn once.

This module also holds the **workspace context**, the template catalog the
parser uses to decide which document objects are DataNodes.
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


DATA_NODE_TYPE = "DataNode"
RAW_JSON_NODE_TYPE = "RawJsonNode"
LINK_NODE_TYPE = "LinkNode"
GROUP_NODE_TYPE = "GroupNode"
COMMENT_NODE_TYPE = "CommentNode"

INPUT_HANDLE_ID = "input"
LINK_OUTPUT_HANDLE_ID = "output"

DEFAULT_FONT_SIZE = 13
MIN_FONT_SIZE = 8
MAX_FONT_SIZE = 128

PinType = Literal["single", "multiple", "map"]


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

class Position(BaseModel):
    """A point on the canvas (top-left corner of a node)."""
    x: float = 0.0
    y: float = 0.0


class Size(BaseModel):
    """A measured width/height pair."""
    width: float
    height: float


# ---------------------------------------------------------------------------
# Workspace templates
# ---------------------------------------------------------------------------

class NodePin(BaseModel):
    """An output pin declared by a template.

    ``schema_key`` is the document key the pin's children are stored under.
    ``local_id`` is the pin's short name inside the template; it is only
    used to resolve link endpoints written by other tools.
    """
    schema_key: str
    type: PinType = "single"
    local_id: Optional[str] = None
    label: Optional[str] = None


class NodeField(BaseModel):
    """A scalar field declared by a template, with its default value."""
    schema_key: str
    type: str = "string"
    label: Optional[str] = None
    value: Any = None


class NodeTemplate(BaseModel):
    """A structural template that document objects are matched against.

    Attributes:
        template_id:          Unique template name, also the prefix of the
                              node ids generated for it (``Biome-<uuid>``).
        child_types:          Pin schema key -> template id or variant kind
                              id that children on that pin are parsed as.
        fields_by_schema_key: Scalar fields with their defaults.
        output_pins:          Ordered output pins.
        schema_constants:     Keys whose value is fixed by the schema
                              (e.g. ``Type: Biome``); re-emitted on save.
    """
    template_id: str
    default_title: Optional[str] = None
    category: Optional[str] = None
    child_types: dict[str, str] = Field(default_factory=dict)
    fields_by_schema_key: dict[str, NodeField] = Field(default_factory=dict)
    output_pins: list[NodePin] = Field(default_factory=list)
    schema_constants: dict[str, Any] = Field(default_factory=dict)


class VariantKind(BaseModel):
    """A polymorphic slot: the value of ``variant_field_name`` picks the template."""
    variant_field_name: str
    variants: dict[str, str] = Field(default_factory=dict)


class WorkspaceContext(BaseModel):
    """The template catalog for one kind of asset document.

    ``root_template_or_variant_id`` is the declared type of the document
    root.  ``root_menu_name`` is written back as ``$WorkspaceID``.
    """
    root_template_or_variant_id: Optional[str] = None
    root_menu_name: Optional[str] = None
    node_templates_by_id: dict[str, NodeTemplate] = Field(default_factory=dict)
    variant_kinds_by_id: dict[str, VariantKind] = Field(default_factory=dict)

    def get_template(self, template_id: Optional[str]) -> Optional[NodeTemplate]:
        if not template_id:
            return None
        return self.node_templates_by_id.get(template_id)

    def get_variant_kind(self, variant_id: Optional[str]) -> Optional[VariantKind]:
        if not variant_id:
            return None
        return self.variant_kinds_by_id.get(variant_id)


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

class NodeBase(BaseModel):
    """Attributes shared by every node kind."""
    id: str
    position: Position = Field(default_factory=Position)
    measured: Optional[Size] = None
    parent_id: Optional[str] = None


class DataNode(NodeBase):
    """A document object matched to a template.

    ``fields_by_schema_key`` holds the scalar values; ``unparsed_metadata``
    keeps ordinary keys the template does not know about so they survive a
    round trip.
    """
    type: Literal["DataNode"] = DATA_NODE_TYPE
    template_id: str
    output_pins: list[NodePin] = Field(default_factory=list)
    child_types: dict[str, str] = Field(default_factory=dict)
    fields_by_schema_key: dict[str, Any] = Field(default_factory=dict)
    schema_constants: dict[str, Any] = Field(default_factory=dict)
    unparsed_metadata: dict[str, Any] = Field(default_factory=dict)
    title_override: Optional[str] = None
    comment: Optional[str] = None

    @classmethod
    def from_template(cls, template: NodeTemplate, node_id: str) -> "DataNode":
        """Create a node carrying deep copies of the template's declarations."""
        return cls(
            id=node_id,
            template_id=template.template_id,
            output_pins=[pin.model_copy() for pin in template.output_pins],
            child_types=dict(template.child_types),
            fields_by_schema_key={
                key: field.model_copy(deep=True).value
                for key, field in template.fields_by_schema_key.items()
            },
            schema_constants=dict(template.schema_constants),
        )

    def get_output_pin(self, schema_key: str) -> Optional[NodePin]:
        for pin in self.output_pins:
            if pin.schema_key == schema_key:
                return pin
        return None

    def get_label(self) -> str:
        return self.title_override if self.title_override else self.id


class RawJsonNode(NodeBase):
    """A document object with no matching template, kept verbatim."""
    type: Literal["RawJsonNode"] = RAW_JSON_NODE_TYPE
    data: dict[str, Any] = Field(default_factory=dict)
    title_override: Optional[str] = None
    comment: Optional[str] = None

    def get_label(self) -> str:
        return self.title_override if self.title_override else self.id


class LinkNode(NodeBase):
    """A reroute point: one inbound connection, one outbound connection."""
    type: Literal["LinkNode"] = LINK_NODE_TYPE
    title_override: Optional[str] = None

    def get_label(self) -> str:
        return self.title_override if self.title_override else self.id


class GroupNode(NodeBase):
    """A named rectangle; nodes overlapping it become its children."""
    type: Literal["GroupNode"] = GROUP_NODE_TYPE
    width: float
    height: float
    name: str = "Group"

    @property
    def area(self) -> float:
        return self.width * self.height


class CommentNode(NodeBase):
    """A free-text note drawn as a rectangle on the canvas."""
    type: Literal["CommentNode"] = COMMENT_NODE_TYPE
    width: float
    height: float
    name: str = "Comment"
    text: str = ""
    font_size: float = DEFAULT_FONT_SIZE

    @field_validator("font_size", mode="before")
    @classmethod
    def _clamp_font_size(cls, value: Any) -> float:
        if value is None:
            return DEFAULT_FONT_SIZE
        try:
            size = float(value)
        except (TypeError, ValueError):
            return DEFAULT_FONT_SIZE
        if not math.isfinite(size):
            return DEFAULT_FONT_SIZE
        return min(MAX_FONT_SIZE, max(MIN_FONT_SIZE, size))


Node = Annotated[
    Union[DataNode, RawJsonNode, LinkNode, GroupNode, CommentNode],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------

class Edge(BaseModel):
    """A directed connection from ``source``'s pin to ``target``'s input.

    ``source_handle`` is the pin's schema key, or ``"output"`` when the
    source is a LinkNode.  The id is derived from the endpoints when not
    given.
    """
    source: str
    source_handle: str
    target: str
    target_handle: str = INPUT_HANDLE_ID
    id: str = ""

    @model_validator(mode="after")
    def _default_id(self) -> "Edge":
        if not self.id:
            self.id = edge_id_for(self.source, self.source_handle, self.target)
        return self


def edge_id_for(source: str, source_handle: str, target: str) -> str:
    return f"{source}:{source_handle}-{target}"


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

class NodeGraph(BaseModel):
    """The in-memory graph edited by the session.

    Construction enforces the structural invariants: unique ids, edges that
    reference existing nodes, no fan-out on ``single`` pins or link outputs,
    and parents (GroupNodes) listed before their children.

    The graph keeps a ``_node_map`` for O(1) lookups.  Call ``reindex()``
    after replacing ``nodes`` in place.
    """
    root_node_id: str
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    _node_map: dict[str, Any] = {}

    @model_validator(mode="after")
    def _check_integrity(self) -> "NodeGraph":
        nodes_by_id: dict[str, Any] = {}
        for node in self.nodes:
            if node.id in nodes_by_id:
                raise ValueError(f"Duplicate node id {node.id!r}")
            if node.parent_id is not None:
                parent = nodes_by_id.get(node.parent_id)
                if not isinstance(parent, GroupNode):
                    raise ValueError(
                        f"Node {node.id!r} has parent {node.parent_id!r} which is not "
                        f"a group listed before it"
                    )
            nodes_by_id[node.id] = node

        if self.root_node_id not in nodes_by_id:
            raise ValueError(f"Root node {self.root_node_id!r} is not in the graph")

        pin_usage: set[tuple[str, str]] = set()
        for edge in self.edges:
            source = nodes_by_id.get(edge.source)
            if source is None or edge.target not in nodes_by_id:
                raise ValueError(f"Edge {edge.id!r} references an unknown node")
            if _is_single_handle(source, edge.source_handle):
                key = (edge.source, edge.source_handle)
                if key in pin_usage:
                    raise ValueError(
                        f"Pin {edge.source_handle!r} on {edge.source!r} is single "
                        f"but has more than one connection"
                    )
                pin_usage.add(key)
        return self

    def model_post_init(self, __context: Any) -> None:
        self.reindex()

    def reindex(self) -> None:
        """Rebuild the id lookup after ``nodes`` changed."""
        self._node_map = {node.id: node for node in self.nodes}

    def get_node(self, node_id: Optional[str]):
        if node_id is None:
            return None
        return self._node_map.get(node_id)

    def get_root_node(self):
        return self.get_node(self.root_node_id)

    def outgoing_for_handle(self, node_id: str, handle: str) -> list[Edge]:
        return [
            edge for edge in self.edges
            if edge.source == node_id and edge.source_handle == handle
        ]

    def incoming(self, node_id: str) -> Optional[Edge]:
        """The edge feeding a node's input handle, if any (the last one wins)."""
        found = None
        for edge in self.edges:
            if edge.target == node_id:
                found = edge
        return found


def absolute_position(node, nodes_by_id: dict[str, Any]) -> Position:
    """Walk the parent chain to turn a relative position into an absolute one."""
    x, y = node.position.x, node.position.y
    seen = {node.id}
    parent = nodes_by_id.get(node.parent_id) if node.parent_id else None
    while parent is not None and parent.id not in seen:
        seen.add(parent.id)
        x += parent.position.x
        y += parent.position.y
        parent = nodes_by_id.get(parent.parent_id) if parent.parent_id else None
    return Position(x=x, y=y)


def _is_single_handle(node, handle: str) -> bool:
    if isinstance(node, LinkNode):
        return handle == LINK_OUTPUT_HANDLE_ID
    if isinstance(node, DataNode):
        pin = node.get_output_pin(handle)
        return pin is not None and pin.type == "single"
    return False
