"""Asset document parser for asset-graph-mcp.

Turns the persisted JSON asset document into a ``NodeGraph``:

1. The document body is walked from the root through every template pin,
   creating one DataNode (template matched) or RawJsonNode (no template)
   per object and one edge per pin connection.
2. ``$NodeEditorMetadata`` is then applied: floating nodes, positions and
   title overrides, link reroutes, groups and comments.

Also loads the workspace template catalog from YAML.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from .errors import MalformedDocument, MalformedWorkspace
from .models import (
    CommentNode,
    DataNode,
    Edge,
    GroupNode,
    LinkNode,
    NodeField,
    NodeGraph,
    NodePin,
    NodeTemplate,
    Position,
    RawJsonNode,
    VariantKind,
    WorkspaceContext,
    INPUT_HANDLE_ID,
    LINK_OUTPUT_HANDLE_ID,
)

logger = logging.getLogger(__name__)

NODE_ID_KEY = "$NodeID"
LEGACY_NODE_ID_KEY = "$NodeId"
COMMENT_KEY = "$Comment"
POSITION_KEY = "$Position"
TITLE_KEY = "$Title"
METADATA_KEY = "$NodeEditorMetadata"
NODES_KEY = "$Nodes"
FLOATING_NODES_KEY = "$FloatingNodes"
LINKS_KEY = "$Links"
GROUPS_KEY = "$Groups"
COMMENTS_KEY = "$Comments"
WORKSPACE_ID_KEY = "$WorkspaceID"


def create_node_id(prefix: str) -> str:
    """Generate a node id in the ``<Template>-<uuid>`` form the editor uses."""
    return f"{prefix}-{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_document_text(text: str, context: Optional[WorkspaceContext] = None) -> NodeGraph:
    """Parse asset document text (JSON) into a NodeGraph."""
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedDocument(f"Document is not valid JSON: {e}") from e
    return parse_document(document, context)


def parse_document(document: Any, context: Optional[WorkspaceContext] = None) -> NodeGraph:
    """Parse an already decoded asset document into a NodeGraph."""
    if not isinstance(document, dict):
        raise MalformedDocument("Document must be a JSON object.")
    return _DocumentParser(context or WorkspaceContext()).parse(document)


# ---------------------------------------------------------------------------
# Body + metadata parsing
# ---------------------------------------------------------------------------

class _DocumentParser:
    """Single-use parser state: the nodes and edges collected so far."""

    def __init__(self, context: WorkspaceContext):
        self.context = context
        self.nodes: list = []
        self.edges: list[Edge] = []
        self.nodes_by_id: dict[str, Any] = {}

    def parse(self, document: dict) -> NodeGraph:
        root_id = self._parse_object(document, self.context.root_template_or_variant_id, "$")

        metadata = document.get(METADATA_KEY)
        if metadata is not None:
            if not isinstance(metadata, dict):
                raise MalformedDocument(f"{METADATA_KEY} must be an object.")
            self._parse_metadata(metadata)

        # older base-game documents keep groups at the top level
        for index, group_json in enumerate(_read_list(document, GROUPS_KEY, "$")):
            self._add_node(self._parse_group(group_json, f"$.{GROUPS_KEY}[{index}]"))

        try:
            return NodeGraph(root_node_id=root_id, nodes=self.nodes, edges=self.edges)
        except ValidationError as e:
            raise MalformedDocument(f"Document does not form a valid graph: {e}") from e

    # --- nodes ---

    def _add_node(self, node) -> None:
        if node.id in self.nodes_by_id:
            raise MalformedDocument(f"Duplicate node id {node.id!r}")
        self.nodes.append(node)
        self.nodes_by_id[node.id] = node

    def _add_edge(self, source: str, handle: str, target: str) -> Edge:
        edge = Edge(source=source, source_handle=handle, target=target)
        self.edges.append(edge)
        return edge

    def _resolve_template(
        self,
        local_root: dict,
        declared_id: Optional[str],
        node_id: Optional[str],
        path: str,
    ) -> Optional[NodeTemplate]:
        """Pick the template for a document object.

        Precedence: variant kind field value, then the declared template id,
        then the prefix of the node id.  ``None`` means raw JSON.
        """
        template_id = None
        variant_kind = self.context.get_variant_kind(declared_id)
        if variant_kind:
            variant_value = local_root.get(variant_kind.variant_field_name)
            if isinstance(variant_value, str):
                template_id = variant_kind.variants.get(variant_value)
        elif declared_id:
            if self.context.get_template(declared_id) is None:
                raise MalformedDocument(
                    f"Declared type {declared_id!r} at {path} is neither a template "
                    f"nor a variant kind."
                )
            template_id = declared_id

        if template_id is None and node_id and "-" in node_id:
            # ids look like Biome-1b0c..., the prefix names the template
            template_id = node_id[:node_id.index("-")]

        return self.context.get_template(template_id)

    def _parse_object(self, local_root: Any, declared_id: Optional[str], path: str) -> str:
        if not isinstance(local_root, dict):
            raise MalformedDocument(f"Expected an object at {path}, got {type(local_root).__name__}.")

        node_id = _read_node_id(local_root, path)
        position = _read_position(local_root.get(POSITION_KEY), path) if POSITION_KEY in local_root else Position()
        comment = _read_optional_string(local_root, COMMENT_KEY, path)
        template = self._resolve_template(local_root, declared_id, node_id, path)

        if template is None:
            node = RawJsonNode(
                id=node_id or create_node_id("Generic"),
                position=position,
                data={key: value for key, value in local_root.items() if not key.startswith("$")},
                comment=comment,
            )
            self._add_node(node)
            return node.id

        node = DataNode.from_template(template, node_id or create_node_id(template.template_id))
        node.position = position
        node.comment = comment
        self._add_node(node)

        unprocessed = [key for key in local_root if not key.startswith("$")]

        for pin in template.output_pins:
            key = pin.schema_key
            if key in unprocessed:
                unprocessed.remove(key)
            value = local_root.get(key)
            if value is None:
                continue
            child_type = template.child_types.get(key)
            child_path = f"{path}.{key}"

            if pin.type == "single":
                child_id = self._parse_object(value, child_type, child_path)
                self._add_edge(node.id, key, child_id)
            elif pin.type == "multiple":
                if not isinstance(value, list):
                    raise MalformedDocument(f"Expected a list at {child_path}.")
                for index, child in enumerate(value):
                    child_id = self._parse_object(child, child_type, f"{child_path}[{index}]")
                    self._add_edge(node.id, key, child_id)
            else:
                if not isinstance(value, dict):
                    raise MalformedDocument(f"Expected an object of children at {child_path}.")
                for child_key, child in value.items():
                    child_id = self._parse_object(child, child_type, f"{child_path}.{child_key}")
                    self.nodes_by_id[child_id].title_override = child_key
                    self._add_edge(node.id, key, child_id)

        for key in template.fields_by_schema_key:
            if key in unprocessed:
                unprocessed.remove(key)
            if key in local_root:
                node.fields_by_schema_key[key] = local_root[key]

        for key in unprocessed:
            if key in template.schema_constants:
                if local_root[key] != template.schema_constants[key]:
                    logger.warning(
                        f"Constant {key!r} at {path} is {local_root[key]!r}, template "
                        f"{template.template_id!r} expects {template.schema_constants[key]!r}"
                    )
                continue
            node.unparsed_metadata[key] = local_root[key]

        return node.id

    # --- metadata ---

    def _parse_metadata(self, metadata: dict) -> None:
        path = f"$.{METADATA_KEY}"

        for index, node_json in enumerate(_read_list(metadata, FLOATING_NODES_KEY, path)):
            self._parse_object(node_json, None, f"{path}.{FLOATING_NODES_KEY}[{index}]")

        for node_id, info in _read_dict(metadata, NODES_KEY, path).items():
            info_path = f"{path}.{NODES_KEY}.{node_id}"
            if not isinstance(info, dict):
                raise MalformedDocument(f"Expected an object at {info_path}.")
            node = self.nodes_by_id.get(node_id)
            if node is None:
                logger.warning(f"Metadata saved for node {node_id} but the node was not found.")
                continue
            if POSITION_KEY not in info:
                raise MalformedDocument(f"Missing {POSITION_KEY} for node {node_id}.")
            node.position = _read_position(info[POSITION_KEY], info_path)
            title = info.get(TITLE_KEY)
            if isinstance(title, str) and hasattr(node, "title_override"):
                node.title_override = title

        self._parse_links(_read_dict(metadata, LINKS_KEY, path), f"{path}.{LINKS_KEY}")

        for index, group_json in enumerate(_read_list(metadata, GROUPS_KEY, path)):
            self._add_node(self._parse_group(group_json, f"{path}.{GROUPS_KEY}[{index}]"))

        for index, comment_json in enumerate(_read_list(metadata, COMMENTS_KEY, path)):
            self._add_node(self._parse_comment(comment_json, f"{path}.{COMMENTS_KEY}[{index}]"))

    def _parse_links(self, links: dict, path: str) -> None:
        """Create LinkNodes and reroute the body connections they sit on.

        A connection ``S.pin -> L1 -> L2 -> T`` is stored inline as
        ``S.pin -> T``.  Each link records its upstream endpoint and its
        next hop, so chains are followed from their head regardless of the
        order the links were saved in.
        """
        sources: dict[str, Optional[tuple[str, str]]] = {}
        next_hops: dict[str, Optional[str]] = {}

        for link_id, link_json in links.items():
            link_path = f"{path}.{link_id}"
            if not isinstance(link_json, dict):
                raise MalformedDocument(f"Expected an object at {link_path}.")
            if POSITION_KEY not in link_json:
                raise MalformedDocument(f"Missing {POSITION_KEY} for link {link_id}.")
            title = link_json.get(TITLE_KEY)
            self._add_node(LinkNode(
                id=link_id,
                position=_read_position(link_json[POSITION_KEY], link_path),
                title_override=title if isinstance(title, str) else None,
            ))
            sources[link_id] = _read_endpoint(link_json.get("sourceEndpoint"))
            outputs = link_json.get("outputConnections") or []
            if not isinstance(outputs, list):
                raise MalformedDocument(f"outputConnections must be a list at {link_path}.")
            if len(outputs) > 1:
                raise MalformedDocument(f"Link {link_id} has more than one output connection.")
            endpoint = _read_endpoint(outputs[0]) if outputs else None
            next_hops[link_id] = endpoint[0] if endpoint else None

        visited: set[str] = set()
        heads = [link_id for link_id, source in sources.items() if not source or source[0] not in sources]
        # links whose upstream link never claimed them are treated as heads too
        heads += [link_id for link_id in sources if link_id not in heads]

        for head in heads:
            if head in visited:
                continue
            chain = []
            current = head
            while current in sources and current not in visited:
                visited.add(current)
                chain.append(current)
                current = next_hops[current]
            final_target = current if current in self.nodes_by_id and current not in sources else None

            source = sources[head]
            if source and source[0] not in sources:
                self._attach_link_source(head, source, final_target)
            for upstream, downstream in zip(chain, chain[1:]):
                self._add_edge(upstream, LINK_OUTPUT_HANDLE_ID, downstream)
            if final_target is not None:
                self._add_edge(chain[-1], LINK_OUTPUT_HANDLE_ID, final_target)

    def _attach_link_source(self, link_id: str, source: tuple[str, str], final_target: Optional[str]) -> None:
        source_id, pin_id = source
        source_node = self.nodes_by_id.get(source_id)
        if source_node is None:
            logger.warning(f"Link source node {source_id} not found.")
            return

        handle = pin_id
        if isinstance(source_node, DataNode):
            for pin in source_node.output_pins:
                if pin.schema_key == pin_id or pin.local_id == pin_id:
                    handle = pin.schema_key
                    break

        if final_target is not None:
            for index, edge in enumerate(self.edges):
                if edge.source == source_id and edge.source_handle == handle and edge.target == final_target:
                    self.edges[index] = Edge(source=source_id, source_handle=handle, target=link_id)
                    return
            logger.warning(
                f"Link {link_id} expects connection {source_id}:{handle} -> {final_target} "
                f"which is not in the document."
            )
            return

        # dangling link: the connection only exists in metadata
        self._add_edge(source_id, handle, link_id)

    def _parse_group(self, group_json: Any, path: str) -> GroupNode:
        group_json = _require_rect(group_json, path)
        return GroupNode(
            id=_read_node_id(group_json, path) or create_node_id("Group"),
            position=_read_position(group_json[POSITION_KEY], path),
            width=group_json["$width"],
            height=group_json["$height"],
            name=_read_optional_string(group_json, "$name", path) or "Group",
        )

    def _parse_comment(self, comment_json: Any, path: str) -> CommentNode:
        comment_json = _require_rect(comment_json, path)
        return CommentNode(
            id=_read_node_id(comment_json, path) or create_node_id("Comment"),
            position=_read_position(comment_json[POSITION_KEY], path),
            width=comment_json["$width"],
            height=comment_json["$height"],
            name=_read_optional_string(comment_json, "$name", path) or "Comment",
            text=_read_optional_string(comment_json, "$text", path) or "",
            font_size=comment_json.get("$fontSize"),
        )


# ---------------------------------------------------------------------------
# Value readers
# ---------------------------------------------------------------------------

def _read_node_id(data: dict, path: str) -> Optional[str]:
    node_id = data.get(NODE_ID_KEY, data.get(LEGACY_NODE_ID_KEY))
    if node_id is None:
        return None
    if not isinstance(node_id, str) or not node_id:
        raise MalformedDocument(f"Node id at {path} must be a non-empty string.")
    return node_id


def _read_position(value: Any, path: str) -> Position:
    if not isinstance(value, dict):
        raise MalformedDocument(f"{POSITION_KEY} at {path} must be an object.")
    x, y = value.get("$x"), value.get("$y")
    if not _is_number(x) or not _is_number(y):
        raise MalformedDocument(f"{POSITION_KEY} at {path} needs numeric $x and $y.")
    return Position(x=float(x), y=float(y))


def _read_optional_string(data: dict, key: str, path: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedDocument(f"{key} at {path} must be a string.")
    return value


def _read_list(data: dict, key: str, path: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedDocument(f"{key} at {path} must be a list.")
    return value


def _read_dict(data: dict, key: str, path: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedDocument(f"{key} at {path} must be an object.")
    return value


def _read_endpoint(value: Any) -> Optional[tuple[str, str]]:
    """Split a ``nodeId:pinId`` endpoint string."""
    if not isinstance(value, str) or not value:
        return None
    node_id, _, pin_id = value.rpartition(":")
    if not node_id:
        return (value, INPUT_HANDLE_ID)
    return (node_id, pin_id)


def _require_rect(data: Any, path: str) -> dict:
    if not isinstance(data, dict):
        raise MalformedDocument(f"Expected an object at {path}.")
    if POSITION_KEY not in data:
        raise MalformedDocument(f"Missing {POSITION_KEY} at {path}.")
    for key in ("$width", "$height"):
        if not _is_number(data.get(key)):
            raise MalformedDocument(f"Missing numeric {key} at {path}.")
    return data


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


# ---------------------------------------------------------------------------
# Workspace templates (YAML)
# ---------------------------------------------------------------------------

def load_workspace_yaml(yaml_str: str) -> WorkspaceContext:
    """Parse a YAML template catalog into a WorkspaceContext.

    Example:
        workspace:
          root: Biome
          menu_name: Biomes
          templates:
            - id: Biome
              constants: {Type: Biome}
              fields:
                - {key: Name, type: string, value: ""}
              pins:
                - {key: Terrain, type: single, child: Density}
          variant_kinds:
            Density:
              field: Type
              variants: {Constant: ConstantDensity}
    """
    try:
        data = yaml.safe_load(yaml_str)
    except yaml.YAMLError as e:
        raise MalformedWorkspace(f"Workspace catalog is not valid YAML: {e}") from e
    if not data:
        raise MalformedWorkspace("Empty YAML input")
    if isinstance(data, dict) and "workspace" in data:
        data = data["workspace"]
    if not isinstance(data, dict):
        raise MalformedWorkspace("Workspace catalog must be a mapping.")

    try:
        templates: dict[str, NodeTemplate] = {}
        for template_data in data.get("templates") or []:
            template = _parse_template(template_data)
            templates[template.template_id] = template

        variant_kinds = {
            kind_id: VariantKind(
                variant_field_name=kind_data["field"],
                variants=kind_data.get("variants") or {},
            )
            for kind_id, kind_data in (data.get("variant_kinds") or {}).items()
        }

        return WorkspaceContext(
            root_template_or_variant_id=data.get("root"),
            root_menu_name=data.get("menu_name"),
            node_templates_by_id=templates,
            variant_kinds_by_id=variant_kinds,
        )
    except KeyError as e:
        raise MalformedWorkspace(f"Workspace catalog entry is missing {e}") from e
    except (AttributeError, TypeError, ValidationError) as e:
        raise MalformedWorkspace(f"Workspace catalog has an unusable shape: {e}") from e


def load_workspace_file(path: str) -> WorkspaceContext:
    """Parse a YAML template catalog file into a WorkspaceContext."""
    return load_workspace_yaml(Path(path).read_text(encoding="utf-8"))


def _parse_template(data: dict) -> NodeTemplate:
    """Parse a single template from YAML data."""
    pins = []
    child_types = {}
    for pin_data in data.get("pins", []):
        pins.append(NodePin(
            schema_key=pin_data["key"],
            type=pin_data.get("type", "single"),
            local_id=pin_data.get("local_id"),
            label=pin_data.get("label"),
        ))
        if pin_data.get("child"):
            child_types[pin_data["key"]] = pin_data["child"]

    fields = {}
    for field_data in data.get("fields", []):
        fields[field_data["key"]] = NodeField(
            schema_key=field_data["key"],
            type=field_data.get("type", "string"),
            label=field_data.get("label"),
            value=field_data.get("value"),
        )

    return NodeTemplate(
        template_id=data["id"],
        default_title=data.get("title"),
        category=data.get("category"),
        child_types=child_types,
        fields_by_schema_key=fields,
        output_pins=pins,
        schema_constants=data.get("constants") or {},
    )
