"""Benchmark the section detection pipeline over synthetic activities."""

from __future__ import annotations

import argparse
import math
import statistics
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import numpy as np

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Late imports rely on the adjusted sys.path above.
from route_engine.geometry.preprocessing import track_length_m  # noqa: E402
from route_engine.sections.detector import (  # noqa: E402
    ProgressReporter,
    SectionDetector,
)
from route_engine.storage import TrackInput, TrackStore  # noqa: E402

BASE_LAT = 45.0
BASE_LNG = 7.0
METERS_PER_DEG_LAT = 111_320.0


class PhaseTimer(ProgressReporter):
    """Records wall-clock time spent in each detection phase."""

    def __init__(self) -> None:
        self.durations: Dict[str, float] = {}
        self._phase: str | None = None
        self._started = 0.0

    def enter_phase(self, phase: str, total: int = 0) -> None:
        self._close()
        self._phase = phase
        self._started = time.perf_counter()

    def _close(self) -> None:
        if self._phase is not None:
            self.durations[self._phase] = time.perf_counter() - self._started
            self._phase = None

    def finish(self) -> Dict[str, float]:
        self._close()
        return self.durations


@dataclass(slots=True)
class BenchmarkSummary:
    """Aggregated statistics for multiple benchmark iterations."""

    activity_count: int
    points_per_activity: int
    iterations: int
    sections_found: int
    mean_phase_ms: Dict[str, float]
    mean_total_ms: float
    worst_total_ms: float


def _to_latlon(xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    lat = BASE_LAT + ys / METERS_PER_DEG_LAT
    lng = BASE_LNG + xs / (METERS_PER_DEG_LAT * math.cos(math.radians(BASE_LAT)))
    return np.column_stack((lat, lng))


def _build_activity(index: int, points: int, rng: np.random.Generator) -> np.ndarray:
    """A shared 3 km straight followed by a private detour per activity."""

    shared = points // 2
    xs = np.linspace(0.0, 3000.0, shared)
    ys = np.zeros(shared)
    angle = (index * 0.7) % (2 * math.pi)
    tail = points - shared
    steps = np.linspace(0.0, 3000.0, tail + 1)[1:]
    xs = np.concatenate((xs, 3000.0 + steps * math.cos(angle)))
    ys = np.concatenate((ys, steps * math.sin(angle)))
    noise = rng.normal(0.0, 3.0, size=(points, 2))
    return _to_latlon(xs + noise[:, 0], ys + noise[:, 1])


def _populate(store: TrackStore, activities: int, points: int, seed: int) -> None:
    rng = np.random.default_rng(seed)
    batch = []
    for idx in range(activities):
        track = _build_activity(idx, points, rng)
        batch.append(
            TrackInput(
                id=str(1000 + idx),
                sport_type="Run",
                points=track,
                distance_m=track_length_m(track),
            )
        )
    store.upsert_activities(batch)


def run_benchmark(activities: int, points: int, iterations: int) -> BenchmarkSummary:
    """Detect sections repeatedly over the same store and aggregate timings."""

    if activities < 2:
        raise ValueError("activities must be at least 2")
    if points < 20:
        raise ValueError("points must be at least 20")
    if iterations <= 0:
        raise ValueError("iterations must be positive")

    store = TrackStore(":memory:")
    try:
        _populate(store, activities, points, seed=7)
        detector = SectionDetector(store)
        runs: List[Dict[str, float]] = []
        found = 0
        for _ in range(iterations):
            timer = PhaseTimer()
            sections = detector.detect(reporter=timer)
            runs.append(timer.finish())
            found = len(sections)
    finally:
        store.close()

    phases = sorted({name for run in runs for name in run})
    totals = [sum(run.values()) for run in runs]
    return BenchmarkSummary(
        activity_count=activities,
        points_per_activity=points,
        iterations=iterations,
        sections_found=found,
        mean_phase_ms={
            name: statistics.fmean(run.get(name, 0.0) for run in runs) * 1000.0
            for name in phases
        },
        mean_total_ms=statistics.fmean(totals) * 1000.0,
        worst_total_ms=max(totals) * 1000.0,
    )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Benchmark multiscale section detection on synthetic tracks",
    )
    parser.add_argument("--activities", type=int, default=20, help="Number of activities")
    parser.add_argument("--points", type=int, default=600, help="GPS points per activity")
    parser.add_argument("--iterations", type=int, default=3, help="Repetitions for averaging")
    return parser.parse_args()


def main() -> None:
    """Entry point when running the module as a script."""

    args = _parse_args()
    summary = run_benchmark(args.activities, args.points, args.iterations)
    print(f"activities: {summary.activity_count}")
    print(f"points_per_activity: {summary.points_per_activity}")
    print(f"iterations: {summary.iterations}")
    print(f"sections_found: {summary.sections_found}")
    for name, value in summary.mean_phase_ms.items():
        print(f"mean_{name}_ms: {value:.3f}")
    print(f"mean_total_ms: {summary.mean_total_ms:.3f}")
    print(f"worst_total_ms: {summary.worst_total_ms:.3f}")


if __name__ == "__main__":
    main()
