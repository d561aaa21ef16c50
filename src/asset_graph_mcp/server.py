"""Asset-graph MCP server: tools for editing asset documents as node graphs."""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from pydantic import ValidationError

from .containment import resolve_containment
from .errors import AssetGraphError
from .models import NodeGraph, WorkspaceContext
from .organize import LayoutSpacing, TreeLayoutOptions, collect_descendant_ids
from .parser import load_workspace_file, parse_document_text
from .serializer import serialize_graph_text
from .session import EditorSession

logger = logging.getLogger(__name__)


# --- Constants ---
TEMPLATES_ENV = "ASSET_GRAPH_TEMPLATES"
WORKSPACES_DIR = Path(os.environ.get("ASSET_GRAPH_WORKSPACES", Path(__file__).parent.parent.parent / "workspaces"))

server = Server("asset-graph-mcp")


def _load_context(args: dict) -> WorkspaceContext:
    """Workspace catalog named in the arguments, else from the environment, else empty."""
    name = args.get("workspace")
    if name:
        path = Path(name)
        if not path.exists():
            path = _find_workspace(name)
            if path is None:
                raise FileNotFoundError(f"Workspace not found: {name}")
        return load_workspace_file(str(path))

    env_path = os.environ.get(TEMPLATES_ENV)
    if env_path:
        return load_workspace_file(env_path)
    return WorkspaceContext()


def _find_workspace(name: str) -> Optional[Path]:
    for ext in [".yaml", ".yml"]:
        path = WORKSPACES_DIR / f"{name}{ext}"
        if path.exists():
            return path
    return None


def _text(payload) -> list[TextContent]:
    if not isinstance(payload, str):
        payload = json.dumps(payload, indent=2)
    return [TextContent(type="text", text=payload)]


_WORKSPACE_PROPERTY = {
    "type": "string",
    "description": (
        "Workspace template catalog: a name from the workspaces directory or a YAML "
        f"path. Defaults to the catalog in ${TEMPLATES_ENV}."
    ),
}

_DOCUMENT_PROPERTY = {
    "type": "string",
    "description": "Asset document JSON text, including its $NodeEditorMetadata block.",
}


# --- Tool definitions ---

@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="parse_document",
            description=(
                "Parse an asset document into its node graph. Returns the graph as JSON: "
                "root_node_id, nodes (DataNode, RawJsonNode, LinkNode, GroupNode, CommentNode) "
                "and edges from output pins to inputs."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "text": _DOCUMENT_PROPERTY,
                    "workspace": _WORKSPACE_PROPERTY,
                },
                "required": ["text"],
            },
        ),
        Tool(
            name="serialize_graph",
            description=(
                "Serialize a node graph (as returned by parse_document) back into asset "
                "document text. Fails if pin connections form a cycle."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "graph": {"type": "object", "description": "Node graph JSON."},
                    "workspace": _WORKSPACE_PROPERTY,
                },
                "required": ["graph"],
            },
        ),
        Tool(
            name="auto_position",
            description=(
                "Auto-position the nodes of an asset document and return the updated text. "
                "Lays out the whole graph, or the given nodes and everything connected "
                "below them, keeping their current top-left corner."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "text": _DOCUMENT_PROPERTY,
                    "workspace": _WORKSPACE_PROPERTY,
                    "node_ids": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Selection to lay out. Default: every node.",
                    },
                    "algorithm": {
                        "type": "string",
                        "enum": ["tree", "layered"],
                        "description": "'tree' (tidy tree, default) or 'layered' (Sugiyama).",
                        "default": "tree",
                    },
                    "direction": {
                        "type": "string",
                        "enum": ["LR", "TB"],
                        "description": "Flow direction for the layered layout. Default: LR.",
                        "default": "LR",
                    },
                    "sizes": {
                        "type": "object",
                        "description": (
                            "Measured node sizes: {node_id: {width, height}}. "
                            "Unmeasured nodes are treated as 360x240."
                        ),
                    },
                    "spacing": {
                        "type": "object",
                        "description": (
                            "Layered spacing {node_sep, rank_sep, margin_x, margin_y} or tree "
                            "spacing {sibling_gap, level_gap, tree_spacing}."
                        ),
                    },
                },
                "required": ["text"],
            },
        ),
        Tool(
            name="resolve_containment",
            description=(
                "Re-derive group membership from overlap. Takes a node graph whose nodes all "
                "carry a measured size and returns the nodes with parent_id and "
                "parent-relative positions, groups first."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "graph": {"type": "object", "description": "Node graph JSON with measured sizes."},
                },
                "required": ["graph"],
            },
        ),
        Tool(
            name="collect_descendants",
            description="List the given nodes plus every node reachable from them, breadth-first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "text": _DOCUMENT_PROPERTY,
                    "workspace": _WORKSPACE_PROPERTY,
                    "node_ids": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["text", "node_ids"],
            },
        ),
        Tool(
            name="list_workspaces",
            description="List the workspace template catalogs available by name.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="get_workspace",
            description="Get the YAML of a workspace template catalog by name.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Workspace name"},
                },
                "required": ["name"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    if name == "parse_document":
        return await _parse_document(arguments)
    elif name == "serialize_graph":
        return await _serialize_graph(arguments)
    elif name == "auto_position":
        return await _auto_position(arguments)
    elif name == "resolve_containment":
        return await _resolve_containment(arguments)
    elif name == "collect_descendants":
        return await _collect_descendants(arguments)
    elif name == "list_workspaces":
        return await _list_workspaces(arguments)
    elif name == "get_workspace":
        return await _get_workspace(arguments)
    else:
        return _text(f"Unknown tool: {name}")


async def _parse_document(args: dict) -> list[TextContent]:
    """Parse document text into graph JSON."""
    try:
        graph = parse_document_text(args["text"], _load_context(args))
    except (AssetGraphError, OSError) as e:
        return _text(f"Failed to parse document: {e}")
    return _text(graph.model_dump(mode="json"))


async def _serialize_graph(args: dict) -> list[TextContent]:
    """Serialize graph JSON into document text."""
    try:
        context = _load_context(args)
        graph = NodeGraph.model_validate(args["graph"])
        text = serialize_graph_text(graph, workspace_id=context.root_menu_name)
    except ValidationError as e:
        return _text(f"Invalid graph: {e}")
    except (AssetGraphError, OSError) as e:
        return _text(f"Failed to serialize graph: {e}")
    return _text(text)


async def _auto_position(args: dict) -> list[TextContent]:
    """Run a layout over the document and return the re-serialized text."""
    algorithm = args.get("algorithm", "tree")
    spacing = args.get("spacing") or {}

    try:
        session = EditorSession(_load_context(args), args["text"])
        sizes = {
            node_id: (size["width"], size["height"])
            for node_id, size in (args.get("sizes") or {}).items()
        }
        if sizes:
            session.measure(sizes)
        update = session.auto_position(
            node_ids=args.get("node_ids"),
            algorithm=algorithm,
            direction=args.get("direction", "LR"),
            spacing=LayoutSpacing(**spacing) if algorithm == "layered" else None,
            tree_options=TreeLayoutOptions(**spacing) if algorithm == "tree" else None,
        )
    except (AssetGraphError, ValidationError, KeyError, ValueError, OSError) as e:
        return _text(f"Failed to auto-position: {e}")

    logger.info(f"auto_position ({algorithm}) produced version {update.version}")
    return _text(update.text)


async def _resolve_containment(args: dict) -> list[TextContent]:
    """Assign group parents from overlap."""
    try:
        graph = NodeGraph.model_validate(args["graph"])
        nodes = resolve_containment(graph.nodes)
    except ValidationError as e:
        return _text(f"Invalid graph: {e}")
    except AssetGraphError as e:
        return _text(f"Failed to resolve containment: {e}")
    return _text({"nodes": [node.model_dump(mode="json") for node in nodes]})


async def _collect_descendants(args: dict) -> list[TextContent]:
    """Selection plus everything below it."""
    try:
        graph = parse_document_text(args["text"], _load_context(args))
    except (AssetGraphError, OSError) as e:
        return _text(f"Failed to parse document: {e}")
    node_ids = collect_descendant_ids(args.get("node_ids", []), graph.edges)
    return _text({"node_ids": node_ids})


async def _list_workspaces(args: dict) -> list[TextContent]:
    """List available workspace catalog files."""
    workspaces = []

    if WORKSPACES_DIR.exists():
        for f in sorted(WORKSPACES_DIR.glob("*.yaml")) + sorted(WORKSPACES_DIR.glob("*.yml")):
            workspaces.append({
                "name": f.stem,
                "path": str(f),
            })

    return _text({"workspaces": workspaces})


async def _get_workspace(args: dict) -> list[TextContent]:
    """Get workspace catalog content by name."""
    name = args["name"]
    path = _find_workspace(name)
    if path is None:
        return _text(f"Workspace not found: {name}")
    return _text(path.read_text(encoding="utf-8"))


def main():
    """Entry point for the MCP server."""
    import asyncio
    # stdout carries the MCP stream
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )
    asyncio.run(_run())


async def _run():
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


if __name__ == "__main__":
    main()
