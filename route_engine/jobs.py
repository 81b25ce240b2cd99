"""Background section detection with polling and cooperative cancellation."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional

from .sections.detector import (
    PHASE_CANCELLED,
    PHASE_COMPLETE,
    PHASE_ERROR,
    PHASE_LOADING,
    TERMINAL_PHASES,
    DetectionCancelled,
    ProgressReporter,
    SectionDetector,
)
from .models import Section

CommitCallback = Callable[[List[Section]], None]


@dataclass(slots=True)
class DetectionProgress:
    """Snapshot of a job's state as seen by pollers."""

    phase: str
    completed: int
    total: int
    error: Optional[str] = None


class DetectionJob(ProgressReporter):
    """One detection run; state is written by the job thread only.

    ``commit`` receives the finished sections and persists them. It is
    called after a last cancellation check, so a cancelled job never
    writes anything.
    """

    def __init__(
        self,
        detector: SectionDetector,
        commit: CommitCallback,
        *,
        sport_filter: Optional[str] = None,
        pinned: Optional[Mapping[str, str]] = None,
        names: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.detector = detector
        self.sport_filter = sport_filter
        self._commit = commit
        self._pinned = dict(pinned or {})
        self._names = dict(names or {})
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._phase = PHASE_LOADING
        self._completed = 0
        self._total = 0
        self._error: Optional[str] = None
        self.sections: List[Section] = []
        self._log = logging.getLogger(self.__class__.__name__)

    # ProgressReporter hooks ---------------------------------------------
    def enter_phase(self, phase: str, total: int = 0) -> None:
        if self._cancel_event.is_set():
            raise DetectionCancelled(phase)
        with self._lock:
            self._phase = phase
            self._completed = 0
            self._total = max(0, int(total))
        self._log.info("Section detection: %s (%d items)", phase, total)

    def advance(self, count: int = 1) -> None:
        with self._lock:
            self._completed += count

    # ----------------------------------------------------------------------
    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def phase(self) -> str:
        with self._lock:
            return self._phase

    @property
    def done(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def progress(self) -> DetectionProgress:
        with self._lock:
            return DetectionProgress(self._phase, self._completed, self._total, self._error)

    def _finish(self, phase: str, error: Optional[str] = None) -> None:
        with self._lock:
            self._phase = phase
            self._error = error
            if phase == PHASE_COMPLETE:
                self._completed = self._total

    def run(self) -> str:
        """Execute every phase on the calling thread; returns the terminal phase."""

        try:
            sections = self.detector.detect(
                self.sport_filter,
                pinned=self._pinned,
                names=self._names,
                reporter=self,
            )
            if self._cancel_event.is_set():
                raise DetectionCancelled("commit")
            self._commit(sections)
            self.sections = sections
        except DetectionCancelled as exc:
            self._log.info("Section detection cancelled before %s", exc)
            self._finish(PHASE_CANCELLED)
        except Exception as exc:
            self._log.error("Section detection failed: %s", exc, exc_info=True)
            self._finish(PHASE_ERROR, str(exc))
        else:
            self._finish(PHASE_COMPLETE)
        return self.phase


class DetectionRunner:
    """Runs at most one :class:`DetectionJob` at a time on a worker thread."""

    def __init__(self) -> None:
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._job: Optional[DetectionJob] = None
        self._future: Optional[Future] = None
        self._log = logging.getLogger(self.__class__.__name__)

    def start(self, job: DetectionJob) -> bool:
        """Submit ``job``; False when another job is still running."""

        with self._lock:
            if self._job is not None and not self._job.done:
                self._log.warning("Section detection already running; start ignored")
                return False
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="section-detection"
                )
            self._job = job
            self._future = self._executor.submit(job.run)
            return True

    @property
    def job(self) -> Optional[DetectionJob]:
        return self._job

    def running(self) -> bool:
        job = self._job
        return job is not None and not job.done

    def cancel(self) -> bool:
        job = self._job
        if job is None or job.done:
            return False
        job.cancel()
        return True

    def wait(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until the current job ends; returns its terminal phase."""

        future = self._future
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self) -> None:
        with self._lock:
            if self._job is not None:
                self._job.cancel()
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None
