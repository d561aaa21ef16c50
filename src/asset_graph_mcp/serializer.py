"""Asset document serializer for asset-graph-mcp.

The inverse of ``parser``: walks the graph depth-first from the root and
rebuilds the nested JSON document, collecting everything without a field
meaning into ``$NodeEditorMetadata``.

Each node is visited exactly once.  Reaching a node that was already
written means the pin connections form a cycle, which the document format
cannot represent, so ``CycleDetected`` is raised instead of truncating.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from .errors import CycleDetected, DuplicateMapKey, MalformedDocument
from .models import (
    CommentNode,
    DataNode,
    Edge,
    GroupNode,
    LinkNode,
    NodeGraph,
    RawJsonNode,
    absolute_position,
    INPUT_HANDLE_ID,
    LINK_OUTPUT_HANDLE_ID,
)
from .parser import (
    COMMENT_KEY,
    COMMENTS_KEY,
    FLOATING_NODES_KEY,
    GROUPS_KEY,
    LINKS_KEY,
    METADATA_KEY,
    NODE_ID_KEY,
    NODES_KEY,
    POSITION_KEY,
    TITLE_KEY,
    WORKSPACE_ID_KEY,
)


def serialize_graph(graph: NodeGraph, workspace_id: Optional[str] = None) -> dict:
    """Serialize a NodeGraph into the asset document structure."""
    return _DocumentSerializer(graph).serialize(workspace_id)


def serialize_graph_text(graph: NodeGraph, workspace_id: Optional[str] = None) -> str:
    """Serialize a NodeGraph to document text (tab-indented JSON)."""
    return json.dumps(serialize_graph(graph, workspace_id), indent="\t", ensure_ascii=False)


class _DocumentSerializer:
    """Single-use serializer state."""

    def __init__(self, graph: NodeGraph):
        self.graph = graph
        self.nodes_by_id = {node.id: node for node in graph.nodes}
        # insertion-ordered "set" of ids not written yet
        self.unprocessed: dict[str, None] = {node.id: None for node in graph.nodes}

        # source -> handle -> [target]
        self.outgoing: dict[str, dict[str, list[str]]] = {}
        # target -> edge
        self.incoming: dict[str, Edge] = {}
        for edge in graph.edges:
            self.outgoing.setdefault(edge.source, {}).setdefault(edge.source_handle, []).append(edge.target)
            self.incoming[edge.target] = edge

        self.metadata: dict[str, Any] = {
            NODES_KEY: {},
            FLOATING_NODES_KEY: [],
            LINKS_KEY: {},
            GROUPS_KEY: [],
            COMMENTS_KEY: [],
        }

    def serialize(self, workspace_id: Optional[str]) -> dict:
        root_json = self._serialize_node(self.graph.root_node_id)
        if root_json is None:
            raise MalformedDocument(
                f"Root node {self.graph.root_node_id} does not produce a document object."
            )

        while self.unprocessed:
            node_id = next(iter(self.unprocessed))
            # only the top of a detached subgraph goes into $FloatingNodes
            serialized = self._serialize_node(self._find_detached_root(node_id))
            if serialized is not None:
                self.metadata[FLOATING_NODES_KEY].append(serialized)

        if workspace_id:
            self.metadata[WORKSPACE_ID_KEY] = workspace_id

        return {**root_json, METADATA_KEY: self.metadata}

    def _find_detached_root(self, node_id: str) -> str:
        seen = {node_id}
        current = node_id
        while True:
            edge = self.incoming.get(current)
            if edge is None or edge.source not in self.unprocessed or edge.source in seen:
                return current
            current = edge.source
            seen.add(current)

    def _serialize_node(self, node_id: str) -> Optional[dict]:
        if node_id not in self.unprocessed:
            raise CycleDetected(node_id)
        del self.unprocessed[node_id]

        node = self.nodes_by_id[node_id]
        if isinstance(node, DataNode):
            return self._serialize_data_node(node)
        if isinstance(node, RawJsonNode):
            return self._serialize_raw_json_node(node)
        if isinstance(node, LinkNode):
            return self._serialize_link_node(node)
        if isinstance(node, GroupNode):
            self.metadata[GROUPS_KEY].append({
                NODE_ID_KEY: node.id,
                POSITION_KEY: self._position_json(node),
                "$width": node.width,
                "$height": node.height,
                "$name": node.name,
            })
            return None
        if isinstance(node, CommentNode):
            self.metadata[COMMENTS_KEY].append({
                NODE_ID_KEY: node.id,
                POSITION_KEY: self._position_json(node),
                "$width": node.width,
                "$height": node.height,
                "$name": node.name,
                "$text": node.text,
                "$fontSize": node.font_size,
            })
            return None
        raise TypeError(f"Unsupported node type {type(node).__name__}")

    def _serialize_data_node(self, node: DataNode) -> dict:
        data: dict[str, Any] = {NODE_ID_KEY: node.id}
        if node.comment is not None:
            data[COMMENT_KEY] = node.comment

        connections = self.outgoing.get(node.id, {})
        for pin in node.output_pins:
            target_ids = connections.get(pin.schema_key, [])
            if not target_ids:
                continue

            if pin.type == "single":
                child = self._serialize_node(target_ids[0])
                if child is not None:
                    data[pin.schema_key] = child
            elif pin.type == "multiple":
                children = [self._serialize_node(target_id) for target_id in target_ids]
                children = [child for child in children if child is not None]
                if children:
                    data[pin.schema_key] = children
            else:
                keyed: dict[str, Any] = {}
                for target_id in target_ids:
                    key = self._map_key(target_id)
                    child = self._serialize_node(target_id)
                    if child is None:
                        continue
                    if key in keyed:
                        raise DuplicateMapKey(node.id, pin.schema_key, key)
                    keyed[key] = child
                if keyed:
                    data[pin.schema_key] = keyed

        data.update(node.fields_by_schema_key)
        data.update(node.unparsed_metadata)
        data.update(node.schema_constants)

        self._record_node_metadata(node)
        return data

    def _serialize_raw_json_node(self, node: RawJsonNode) -> dict:
        data: dict[str, Any] = {NODE_ID_KEY: node.id}
        if node.comment is not None:
            data[COMMENT_KEY] = node.comment
        data.update(node.data)
        self._record_node_metadata(node)
        return data

    def _serialize_link_node(self, node: LinkNode) -> Optional[dict]:
        """Record the link in ``$Links`` and write its downstream node inline."""
        entry: dict[str, Any] = {POSITION_KEY: self._position_json(node)}
        if node.title_override is not None:
            entry[TITLE_KEY] = node.title_override

        incoming = self.incoming.get(node.id)
        if incoming is not None:
            entry["sourceEndpoint"] = f"{incoming.source}:{incoming.source_handle}"

        target_ids = self.outgoing.get(node.id, {}).get(LINK_OUTPUT_HANDLE_ID, [])
        entry["outputConnections"] = [f"{target_id}:{INPUT_HANDLE_ID}" for target_id in target_ids]
        self.metadata[LINKS_KEY][node.id] = entry

        if not target_ids:
            return None
        return self._serialize_node(target_ids[0])

    def _map_key(self, target_id: str) -> str:
        """Key for a ``map`` pin child: its title override, else its id.

        Links are followed to the node they point at.
        """
        node = self.nodes_by_id[target_id]
        seen = set()
        while isinstance(node, LinkNode) and node.id not in seen:
            seen.add(node.id)
            next_ids = self.outgoing.get(node.id, {}).get(LINK_OUTPUT_HANDLE_ID, [])
            if not next_ids:
                break
            node = self.nodes_by_id[next_ids[0]]
        return node.get_label()

    def _record_node_metadata(self, node) -> None:
        entry: dict[str, Any] = {POSITION_KEY: self._position_json(node)}
        if node.title_override is not None:
            entry[TITLE_KEY] = node.title_override
        self.metadata[NODES_KEY][node.id] = entry

    def _position_json(self, node) -> dict[str, float]:
        position = absolute_position(node, self.nodes_by_id)
        return {"$x": position.x, "$y": position.y}
