"""Spatial index for bounding-box collision queries over the node set.

Nodes are bucketed into a uniform grid keyed by cell coordinates.  A query
visits only the cells its box touches and then checks each candidate box
exactly.  Boxes that merely touch along an edge count as intersecting.

The grid cell size adapts to the loaded boxes (average of the larger box
side, floored so the largest box spans at most 64 cells per axis).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, Optional, TypeVar


T = TypeVar("T")

DEFAULT_CELL_SIZE = 256.0


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in absolute canvas coordinates."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def intersects(self, other: "BoundingBox") -> bool:
        return (
            self.min_x <= other.max_x
            and other.min_x <= self.max_x
            and self.min_y <= other.max_y
            and other.min_y <= self.max_y
        )

    def contains(self, other: "BoundingBox") -> bool:
        return (
            self.min_x <= other.min_x
            and self.min_y <= other.min_y
            and other.max_x <= self.max_x
            and other.max_y <= self.max_y
        )

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y


class SpatialIndex(Generic[T]):
    """Grid-bucketed index answering "which items overlap this box?".

    ``to_bbox`` maps an item to its box, or ``None`` when the item has no
    size yet; such items are left out of the index.  Query results keep
    the order in which items were loaded.
    """

    def __init__(self, to_bbox: Callable[[T], Optional[BoundingBox]]):
        self._to_bbox = to_bbox
        self._cell_size = DEFAULT_CELL_SIZE
        self._items: list[tuple[T, BoundingBox]] = []
        self._cells: dict[tuple[int, int], list[int]] = {}

    def __len__(self) -> int:
        return len(self._items)

    def load(self, items: Iterable[T]) -> "SpatialIndex[T]":
        """Bulk-load items, replacing any previous contents."""
        entries: list[tuple[T, BoundingBox]] = []
        for item in items:
            bbox = self._to_bbox(item)
            if bbox is None or not _is_finite_box(bbox):
                continue
            entries.append((item, bbox))

        self._items = entries
        self._cells = {}
        self._cell_size = _pick_cell_size(bbox for _, bbox in entries)

        for index, (_, bbox) in enumerate(entries):
            for cell in self._cells_for(bbox):
                self._cells.setdefault(cell, []).append(index)
        return self

    def search(self, bbox: BoundingBox) -> list[T]:
        """Return every loaded item whose box intersects ``bbox``."""
        if not self._items or not _is_finite_box(bbox):
            return []

        hits: set[int] = set()
        for cell in self._cells_for(bbox):
            for index in self._cells.get(cell, ()):
                if index in hits:
                    continue
                if self._items[index][1].intersects(bbox):
                    hits.add(index)

        return [self._items[index][0] for index in sorted(hits)]

    def _cells_for(self, bbox: BoundingBox) -> Iterable[tuple[int, int]]:
        size = self._cell_size
        x0 = math.floor(bbox.min_x / size)
        x1 = math.floor(bbox.max_x / size)
        y0 = math.floor(bbox.min_y / size)
        y1 = math.floor(bbox.max_y / size)
        for cx in range(x0, x1 + 1):
            for cy in range(y0, y1 + 1):
                yield (cx, cy)


def _is_finite_box(bbox: BoundingBox) -> bool:
    return all(
        math.isfinite(value)
        for value in (bbox.min_x, bbox.min_y, bbox.max_x, bbox.max_y)
    )


def _pick_cell_size(boxes: Iterable[BoundingBox]) -> float:
    sides = [max(box.width, box.height) for box in boxes]
    if not sides:
        return DEFAULT_CELL_SIZE
    # at most 64 cells along either side of the largest box
    size = max(sum(sides) / len(sides), max(sides) / 64)
    return size if size > 1 else DEFAULT_CELL_SIZE
