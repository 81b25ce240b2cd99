"""Bounding-box index over activities and sections.

The index is a bulk-loaded shapely ``STRtree``.  It is immutable once built,
so updates only mark the index dirty; the next query rebuilds a complete new
tree and swaps it in with a single reference assignment.  Queries therefore
see either the previous tree or the new one, never a partial build.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np
import shapely
from shapely.strtree import STRtree

from .models import Bounds, id_sort_key

BoundsLoader = Callable[[], Dict[str, Bounds]]


@dataclass(slots=True)
class _Snapshot:
    ids: Tuple[str, ...]
    bounds: Tuple[Bounds, ...]
    tree: Optional[STRtree]


def build_tree(bounds: Sequence[Bounds]) -> Optional[STRtree]:
    """Bulk-load an STRtree over (lng, lat) boxes; ``None`` when empty."""

    if not bounds:
        return None
    arr = np.asarray([b.as_tuple() for b in bounds], dtype=float)
    boxes = shapely.box(arr[:, 2], arr[:, 0], arr[:, 3], arr[:, 1])
    return STRtree(boxes)


def query_tree(
    tree: Optional[STRtree], entries: Sequence[Bounds], viewport: Bounds
) -> List[int]:
    """Indices of ``entries`` whose box intersects ``viewport`` (edges inclusive).

    The tree returns envelope candidates; they are confirmed against the
    exact rectangles so degenerate (point or line) boxes behave like any
    other.
    """

    if tree is None:
        return []
    query_box = shapely.box(
        viewport.min_lng, viewport.min_lat, viewport.max_lng, viewport.max_lat
    )
    candidates = tree.query(query_box)
    return sorted(int(i) for i in candidates if entries[int(i)].intersects(viewport))


class SpatialIndex:
    """Lazily rebuilt id -> bounds index."""

    def __init__(self, loader: BoundsLoader, name: str = "index") -> None:
        self._loader = loader
        self._name = name
        self._lock = RLock()
        self._dirty = True
        self._snapshot = _Snapshot((), (), None)
        self._log = logging.getLogger(self.__class__.__name__)

    def mark_dirty(self) -> None:
        self._dirty = True

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def _current(self) -> _Snapshot:
        if not self._dirty:
            return self._snapshot
        with self._lock:
            if self._dirty:
                # Clear first so a mark_dirty racing the load triggers a rebuild.
                self._dirty = False
                try:
                    loaded = self._loader()
                    ordered = sorted(loaded, key=id_sort_key)
                    bounds = tuple(loaded[i] for i in ordered)
                    snapshot = _Snapshot(tuple(ordered), bounds, build_tree(bounds))
                except Exception:
                    self._dirty = True
                    raise
                self._snapshot = snapshot
                self._log.debug("Rebuilt %s with %d entries", self._name, len(ordered))
            return self._snapshot

    def query(self, viewport: Bounds) -> List[str]:
        snapshot = self._current()
        return [
            snapshot.ids[i] for i in query_tree(snapshot.tree, snapshot.bounds, viewport)
        ]

    def bounds(self) -> Dict[str, Bounds]:
        snapshot = self._current()
        return dict(zip(snapshot.ids, snapshot.bounds))

    def __len__(self) -> int:
        return len(self._current().ids)


class ReverseIndex:
    """Activity id -> ids of the derived entities that depend on it."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._by_activity: Dict[str, Set[str]] = {}

    def rebuild(self, memberships: Iterable[Tuple[str, Iterable[str]]]) -> None:
        """Replace the index from ``(entity_id, activity_ids)`` pairs."""

        fresh: Dict[str, Set[str]] = {}
        for entity_id, activity_ids in memberships:
            for activity_id in activity_ids:
                fresh.setdefault(activity_id, set()).add(entity_id)
        with self._lock:
            self._by_activity = fresh

    def get(self, activity_id: str) -> List[str]:
        with self._lock:
            return sorted(self._by_activity.get(activity_id, ()))
