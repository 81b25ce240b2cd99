"""Transitive clustering of pairwise shared runs into section candidates."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Sequence, Tuple

from ..geometry.traversal import SharedRun
from ..models import id_sort_key


class UnionFind:
    """Disjoint-set forest with path compression and union by size."""

    def __init__(self) -> None:
        self._parent: Dict[Hashable, Hashable] = {}
        self._size: Dict[Hashable, int] = {}

    def add(self, item: Hashable) -> None:
        if item not in self._parent:
            self._parent[item] = item
            self._size[item] = 1

    def find(self, item: Hashable) -> Hashable:
        self.add(item)
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: Hashable, b: Hashable) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        if self._size[root_a] < self._size[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        self._size[root_a] += self._size[root_b]

    def groups(self) -> List[List[Hashable]]:
        buckets: Dict[Hashable, List[Hashable]] = {}
        for item in self._parent:
            buckets.setdefault(self.find(item), []).append(item)
        return list(buckets.values())


@dataclass(slots=True)
class PairOverlap:
    """A shared run between two specific activities."""

    a_id: str
    b_id: str
    run: SharedRun


@dataclass(slots=True)
class ClusterCandidate:
    """Activities (and their merged index ranges) sharing one stretch."""

    portions: Dict[str, List[Tuple[int, int]]] = field(default_factory=dict)

    @property
    def activity_ids(self) -> List[str]:
        return sorted(self.portions, key=id_sort_key)

    @property
    def visit_count(self) -> int:
        return sum(len(ranges) for ranges in self.portions.values())


def ranges_overlap(a: Tuple[int, int], b: Tuple[int, int], min_ratio: float) -> bool:
    """True when two inclusive index ranges overlap by ``min_ratio`` of the shorter."""

    lo = max(a[0], b[0])
    hi = min(a[1], b[1])
    if hi < lo:
        return False
    shorter = min(a[1] - a[0], b[1] - b[0]) + 1
    return (hi - lo + 1) >= min_ratio * shorter


def merge_ranges(ranges: Sequence[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Union overlapping or touching inclusive ranges."""

    merged: List[Tuple[int, int]] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def cluster_overlaps(
    overlaps: Sequence[PairOverlap], *, min_overlap_ratio: float
) -> List[ClusterCandidate]:
    """Join pairwise overlaps that describe the same stretch of road.

    Each overlap contributes one index range on each of its two activities.
    Two overlaps are joined when they share an activity and their ranges on
    that activity overlap, so A~B plus B~C chains into one A/B/C candidate.
    """

    uf = UnionFind()
    per_activity: Dict[str, List[Tuple[int, Tuple[int, int]]]] = {}
    for idx, overlap in enumerate(overlaps):
        uf.add(idx)
        run = overlap.run
        per_activity.setdefault(overlap.a_id, []).append((idx, (run.a_start, run.a_end)))
        per_activity.setdefault(overlap.b_id, []).append((idx, (run.b_start, run.b_end)))

    for entries in per_activity.values():
        entries.sort(key=lambda item: item[1])
        for i, (idx_i, range_i) in enumerate(entries):
            for idx_j, range_j in entries[i + 1 :]:
                if range_j[0] > range_i[1]:
                    break
                if ranges_overlap(range_i, range_j, min_overlap_ratio):
                    uf.union(idx_i, idx_j)

    candidates: List[ClusterCandidate] = []
    for members in uf.groups():
        raw: Dict[str, List[Tuple[int, int]]] = {}
        for idx in members:
            overlap = overlaps[idx]
            run = overlap.run
            raw.setdefault(overlap.a_id, []).append((run.a_start, run.a_end))
            raw.setdefault(overlap.b_id, []).append((run.b_start, run.b_end))
        candidates.append(
            ClusterCandidate(
                portions={aid: merge_ranges(ranges) for aid, ranges in raw.items()}
            )
        )
    candidates.sort(key=lambda c: (-c.visit_count, [id_sort_key(a) for a in c.activity_ids]))
    return candidates
