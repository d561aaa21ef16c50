"""Editing session for asset-graph-mcp.

An ``EditorSession`` owns one asset document: its text, its version stamp
and the graph parsed from it.  It speaks the host/editor message protocol

    inbound   {"type": "ready"}
              {"type": "apply", "text": ..., "sourceVersion": 3}
    outbound  {"type": "update", "text": ..., "version": 4}
              {"type": "error", "message": ...}

and applies graph mutations.  Every mutation works on a copy of the graph;
the copy only replaces the current graph once it has been validated and
serialized, so a failing edit leaves both graph and text as they were.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Callable, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .containment import resolve_containment
from .errors import AssetGraphError, DuplicateMapKey, PreconditionViolated, StaleEdit
from .models import (
    CommentNode,
    DataNode,
    Edge,
    GroupNode,
    LinkNode,
    NodeGraph,
    Position,
    Size,
    WorkspaceContext,
    absolute_position,
    INPUT_HANDLE_ID,
    LINK_OUTPUT_HANDLE_ID,
)
from .organize import (
    DEFAULT_NODE_HEIGHT,
    DEFAULT_NODE_WIDTH,
    LayoutNode,
    LayoutPosition,
    LayoutSpacing,
    TreeLayoutOptions,
    collect_descendant_ids,
    layout_directed_graph,
    layout_origin_from_positions,
    layout_tree,
)
from .parser import create_node_id, parse_document_text
from .serializer import serialize_graph_text

logger = logging.getLogger(__name__)

STALE_EDIT_MESSAGE = "The file changed in another editor. Please retry."


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class ReadyMessage(BaseModel):
    type: Literal["ready"] = "ready"


class ApplyMessage(BaseModel):
    """Replace the document with ``text``, written against ``source_version``."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["apply"] = "apply"
    text: str
    source_version: Optional[int] = Field(default=None, alias="sourceVersion")


class UpdateMessage(BaseModel):
    type: Literal["update"] = "update"
    text: str
    version: int


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str


InboundMessage = Annotated[Union[ReadyMessage, ApplyMessage], Field(discriminator="type")]

_inbound_adapter = TypeAdapter(InboundMessage)


def parse_message(payload: Any) -> Union[ReadyMessage, ApplyMessage]:
    """Validate a raw inbound message (a dict or its JSON text)."""
    if isinstance(payload, (str, bytes)):
        return _inbound_adapter.validate_json(payload)
    return _inbound_adapter.validate_python(payload)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class EditorSession:
    """One open asset document and its graph."""

    def __init__(self, context: Optional[WorkspaceContext] = None, text: str = "", version: int = 0):
        self.context = context or WorkspaceContext()
        self.text = text
        self.version = version
        self.graph: Optional[NodeGraph] = None
        if text.strip():
            self.graph = parse_document_text(text, self.context)

    # --- protocol ---

    def handle_message(self, message: Any) -> list[BaseModel]:
        """Answer one inbound message with the outbound messages to send back."""
        if not isinstance(message, (ReadyMessage, ApplyMessage)):
            try:
                message = parse_message(message)
            except ValidationError as e:
                logger.error(f"Rejected message: {e}")
                return [ErrorMessage(message=f"Invalid message: {e}")]

        if isinstance(message, ReadyMessage):
            return [self.update_message()]

        try:
            return [self.apply(message.text, message.source_version)]
        except StaleEdit as e:
            logger.error(f"Version mismatch applying edit: {e}")
            return [ErrorMessage(message=STALE_EDIT_MESSAGE), self.update_message()]
        except AssetGraphError as e:
            logger.error(f"Rejected edit: {e}")
            return [ErrorMessage(message=str(e))]

    def update_message(self) -> UpdateMessage:
        return UpdateMessage(text=self.text, version=self.version)

    def apply(self, text: str, source_version: Optional[int] = None) -> UpdateMessage:
        """Replace the document text after checking the version stamp.

        Raises:
            StaleEdit: ``source_version`` is given and is not the current version.
            MalformedDocument: ``text`` does not parse; nothing is changed.
        """
        if source_version is not None and source_version != self.version:
            raise StaleEdit(self.version, source_version)
        return self.external_change(text)

    def external_change(self, text: str) -> UpdateMessage:
        """Re-parse after the document changed outside the session.

        On failure the previous graph and text are kept and the error
        propagates.
        """
        graph = parse_document_text(text, self.context)
        self.graph = graph
        self.text = text
        self.version += 1
        logger.info(f"Document replaced: {len(graph.nodes)} node(s), version {self.version}")
        return self.update_message()

    def commit(self) -> UpdateMessage:
        """Serialize the current graph and store it as the document text."""
        return self._commit(self._require_graph())

    # --- mutations ---

    def add_node(self, node) -> UpdateMessage:
        def change(graph: NodeGraph) -> None:
            if isinstance(node, GroupNode):
                graph.nodes.insert(0, node)
            else:
                graph.nodes.append(node)
        return self._mutate(change)

    def add_template_node(self, template_id: str, x: float = 0.0, y: float = 0.0) -> DataNode:
        """Create a DataNode from a workspace template and add it."""
        template = self.context.get_template(template_id)
        if template is None:
            raise KeyError(f"Unknown template {template_id!r}")
        node = DataNode.from_template(template, create_node_id(template.template_id))
        node.position = Position(x=x, y=y)
        self.add_node(node)
        return node

    def move_node(self, node_id: str, x: float, y: float) -> UpdateMessage:
        """Move a node to an absolute canvas position."""
        def change(graph: NodeGraph) -> None:
            node = self._find(graph, node_id)
            node.position = _relative_to_parent(graph, node, Position(x=x, y=y))
            self._reparent(graph)
        return self._mutate(change)

    def resize_node(self, node_id: str, width: float, height: float) -> UpdateMessage:
        def change(graph: NodeGraph) -> None:
            node = self._find(graph, node_id)
            if isinstance(node, (GroupNode, CommentNode)):
                node.width = width
                node.height = height
            node.measured = Size(width=width, height=height)
            self._reparent(graph)
        return self._mutate(change)

    def measure(self, sizes: dict[str, Any]) -> UpdateMessage:
        """Record on-screen sizes reported by the renderer.

        ``sizes`` maps node id to a ``Size`` or a ``(width, height)`` pair.
        Ids not in the graph are ignored.
        """
        def change(graph: NodeGraph) -> None:
            for node in graph.nodes:
                size = sizes.get(node.id)
                if size is None:
                    continue
                if not isinstance(size, Size):
                    width, height = size
                    size = Size(width=width, height=height)
                node.measured = size
            self._reparent(graph)
        return self._mutate(change)

    def connect(self, source: str, source_handle: str, target: str) -> UpdateMessage:
        """Connect ``source``'s pin to ``target``'s input.

        A target has one input, so any edge already feeding it is replaced;
        so is the existing edge on a ``single`` pin or a link output.
        """
        def change(graph: NodeGraph) -> None:
            source_node = self._find(graph, source)
            target_node = self._find(graph, target)
            if isinstance(target_node, (GroupNode, CommentNode)):
                raise ValueError(f"Node {target!r} has no input")

            if isinstance(source_node, LinkNode):
                if source_handle != LINK_OUTPUT_HANDLE_ID:
                    raise ValueError(f"Link {source!r} only has an {LINK_OUTPUT_HANDLE_ID!r} handle")
                single = True
            elif isinstance(source_node, DataNode):
                pin = source_node.get_output_pin(source_handle)
                if pin is None:
                    raise ValueError(f"Node {source!r} has no pin {source_handle!r}")
                single = pin.type == "single"
                if pin.type == "map":
                    _check_map_key(graph, source, source_handle, target)
            else:
                raise ValueError(f"Node {source!r} has no output pins")

            graph.edges = [
                edge for edge in graph.edges
                if edge.target != target
                and not (single and edge.source == source and edge.source_handle == source_handle)
            ]
            graph.edges.append(Edge(
                source=source,
                source_handle=source_handle,
                target=target,
                target_handle=INPUT_HANDLE_ID,
            ))
        return self._mutate(change)

    def disconnect(self, edge_id: str) -> UpdateMessage:
        def change(graph: NodeGraph) -> None:
            remaining = [edge for edge in graph.edges if edge.id != edge_id]
            if len(remaining) == len(graph.edges):
                raise KeyError(f"Unknown edge {edge_id!r}")
            graph.edges = remaining
        return self._mutate(change)

    def delete_nodes(self, node_ids: Iterable[str]) -> UpdateMessage:
        """Delete nodes and every edge touching them.

        Children of a deleted group keep their place on the canvas.
        """
        doomed = set(node_ids)

        def change(graph: NodeGraph) -> None:
            if graph.root_node_id in doomed:
                raise ValueError("The root node cannot be deleted")
            nodes_by_id = {node.id: node for node in graph.nodes}
            for node in graph.nodes:
                if node.parent_id in doomed:
                    node.position = absolute_position(node, nodes_by_id)
                    node.parent_id = None
            graph.nodes = [node for node in graph.nodes if node.id not in doomed]
            graph.edges = [
                edge for edge in graph.edges
                if edge.source not in doomed and edge.target not in doomed
            ]
            self._reparent(graph)
        return self._mutate(change)

    def auto_position(
        self,
        node_ids: Optional[Iterable[str]] = None,
        algorithm: str = "tree",
        direction: str = "LR",
        spacing: Optional[LayoutSpacing] = None,
        tree_options: Optional[TreeLayoutOptions] = None,
    ) -> UpdateMessage:
        """Lay out the whole graph, or a selection and everything below it.

        The laid-out nodes keep the top-left corner they currently occupy.
        Groups and comments are never moved.
        """
        def change(graph: NodeGraph) -> None:
            nodes_by_id = {node.id: node for node in graph.nodes}
            layoutable = [node for node in graph.nodes if not isinstance(node, (GroupNode, CommentNode))]
            if node_ids is None:
                selected = [node.id for node in layoutable]
            else:
                selected = collect_descendant_ids(
                    node_ids, graph.edges, allowed_ids=[node.id for node in layoutable]
                )
            if not selected:
                return

            selected_set = set(selected)
            layout_nodes = [
                LayoutNode(
                    id=node.id,
                    width=node.measured.width if node.measured else DEFAULT_NODE_WIDTH,
                    height=node.measured.height if node.measured else DEFAULT_NODE_HEIGHT,
                )
                for node in layoutable
                if node.id in selected_set
            ]
            origin = layout_origin_from_positions(
                absolute_position(nodes_by_id[node_id], nodes_by_id) for node_id in selected
            )

            if algorithm == "layered":
                spacing_ = spacing or LayoutSpacing()
                # the layered drawing starts one margin in from its origin
                origin = LayoutPosition(x=origin.x - spacing_.margin_x, y=origin.y - spacing_.margin_y)
                positions = layout_directed_graph(layout_nodes, graph.edges, direction, spacing_, origin)
            elif algorithm == "tree":
                positions = layout_tree(layout_nodes, graph.edges, tree_options, origin)
            else:
                raise ValueError(f"Unknown layout algorithm {algorithm!r}")

            for node_id, position in positions.items():
                node = nodes_by_id[node_id]
                node.position = _relative_to_parent(graph, node, Position(x=position.x, y=position.y))
            self._reparent(graph)
            logger.info(f"Auto-positioned {len(positions)} node(s) with the {algorithm} layout")
        return self._mutate(change)

    # --- internals ---

    def _require_graph(self) -> NodeGraph:
        if self.graph is None:
            raise PreconditionViolated("No document is loaded")
        return self.graph

    def _mutate(self, change: Callable[[NodeGraph], None]) -> UpdateMessage:
        working = self._require_graph().model_copy(deep=True)
        change(working)
        candidate = NodeGraph(
            root_node_id=working.root_node_id,
            nodes=working.nodes,
            edges=working.edges,
        )
        return self._commit(candidate)

    def _commit(self, graph: NodeGraph) -> UpdateMessage:
        text = serialize_graph_text(graph, workspace_id=self.context.root_menu_name)
        self.graph = graph
        self.text = text
        self.version += 1
        return self.update_message()

    @staticmethod
    def _find(graph: NodeGraph, node_id: str):
        for node in graph.nodes:
            if node.id == node_id:
                return node
        raise KeyError(f"Unknown node {node_id!r}")

    @staticmethod
    def _reparent(graph: NodeGraph) -> None:
        """Re-derive group membership once every node has a size."""
        if any(node.measured is None for node in graph.nodes):
            return
        graph.nodes = resolve_containment(graph.nodes)


def _relative_to_parent(graph: NodeGraph, node, absolute: Position) -> Position:
    parent = next((other for other in graph.nodes if other.id == node.parent_id), None)
    if parent is None:
        return absolute
    nodes_by_id = {other.id: other for other in graph.nodes}
    origin = absolute_position(parent, nodes_by_id)
    return Position(x=absolute.x - origin.x, y=absolute.y - origin.y)


def _check_map_key(graph: NodeGraph, source: str, handle: str, target: str) -> None:
    """A map pin writes children under their labels, which must stay unique."""
    label = graph.get_node(target).get_label()
    for edge in graph.outgoing_for_handle(source, handle):
        if edge.target != target and graph.get_node(edge.target).get_label() == label:
            raise DuplicateMapKey(source, handle, label)
