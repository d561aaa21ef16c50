"""Error taxonomy for asset-graph-mcp.

    MalformedDocument     the asset document could not be turned into a graph
    MalformedWorkspace    the YAML template catalog has an unusable shape
    DuplicateMapKey       two children of one map pin would be written under one key
    CycleDetected         serialization reached a node twice from the root
    PreconditionViolated  containment was asked to run before sizes were measured
    StaleEdit             an apply request carried an outdated version stamp

Parse and serialize failures are fatal to the operation that raised them;
``StaleEdit`` is recoverable by re-fetching the document and retrying.
"""

from __future__ import annotations

from typing import Optional


class AssetGraphError(Exception):
    """Base class for every error raised by the package."""


class MalformedDocument(AssetGraphError, ValueError):
    """Raised when the asset document has a shape the parser cannot map."""


class MalformedWorkspace(AssetGraphError, ValueError):
    """Raised when a template catalog cannot be turned into a WorkspaceContext."""


class CycleDetected(AssetGraphError):
    """Raised when a node is reached twice while serializing from the root."""

    def __init__(self, node_id: str):
        super().__init__(f"Circular reference detected for node {node_id}")
        self.node_id = node_id


class PreconditionViolated(AssetGraphError):
    """Raised when containment runs before every node has a measured size."""


class StaleEdit(AssetGraphError):
    """Raised when an apply request's version does not match the document."""

    def __init__(self, expected: int, received: Optional[int]):
        super().__init__(
            f"Document version mismatch: expected {expected}, received {received}"
        )
        self.expected = expected
        self.received = received


class DuplicateMapKey(AssetGraphError, ValueError):
    """Raised when two children of a ``map`` pin share a key."""

    def __init__(self, node_id: str, pin: str, key: str):
        super().__init__(f"Pin {pin!r} on node {node_id} has more than one child keyed {key!r}")
        self.node_id = node_id
        self.pin = pin
        self.key = key
