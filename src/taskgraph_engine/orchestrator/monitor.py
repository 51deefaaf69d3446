"""Heartbeat Monitor: polled watchdog over running executions."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from taskgraph_engine.errors import ErrorKind

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class _Beat:
    last: float
    persisted_at: float
    note: str | None = None


class ProgressTracker:
    """Thread-safe last-progress register written by execution units."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._beats: dict[str, _Beat] = {}

    def start(self, task_id: str) -> None:
        now = self._clock()
        with self._lock:
            self._beats[task_id] = _Beat(last=now, persisted_at=now)

    def touch(self, task_id: str, note: str | None = None) -> None:
        now = self._clock()
        with self._lock:
            beat = self._beats.get(task_id)
            if beat is None:
                return
            beat.last = now
            if note:
                beat.note = note

    def last_progress(self, task_id: str) -> float | None:
        with self._lock:
            beat = self._beats.get(task_id)
            return beat.last if beat is not None else None

    def discard(self, task_id: str) -> None:
        with self._lock:
            self._beats.pop(task_id, None)

    def take_unpersisted(self, min_interval_seconds: float) -> list[tuple[str, str | None]]:
        """Tasks with progress newer than their last persisted beat, rate limited."""

        now = self._clock()
        due: list[tuple[str, str | None]] = []
        with self._lock:
            for task_id, beat in self._beats.items():
                if beat.last <= beat.persisted_at:
                    continue
                if now - beat.persisted_at < min_interval_seconds:
                    continue
                beat.persisted_at = now
                due.append((task_id, beat.note))
                beat.note = None
        return due


@dataclass(slots=True, frozen=True)
class StallDetection:
    """A running execution that must be force-terminated."""

    task_id: str
    kind: ErrorKind
    silent_seconds: float
    elapsed_seconds: float

    @property
    def reason(self) -> str:
        if self.kind == ErrorKind.EXECUTION_TIMEOUT:
            return f"{self.kind.value}: running for {self.elapsed_seconds:.0f}s"
        return f"{self.kind.value}: no progress for {self.silent_seconds:.0f}s"


@dataclass(slots=True)
class _Watch:
    started: float
    timeout_seconds: float


class HeartbeatMonitor:
    """Compares each task's last progress against ``clock()``; never interrupts."""

    def __init__(
        self,
        tracker: ProgressTracker,
        *,
        stall_threshold_seconds: float,
        clock: Clock = time.monotonic,
    ) -> None:
        self.tracker = tracker
        self.stall_threshold_seconds = stall_threshold_seconds
        self._clock = clock
        self._watches: dict[str, _Watch] = {}
        self._lock = threading.Lock()

    def watch(self, task_id: str, *, timeout_seconds: float) -> None:
        """Start both clocks for ``task_id``; called once its unit begins executing."""

        self.tracker.start(task_id)
        with self._lock:
            self._watches[task_id] = _Watch(started=self._clock(), timeout_seconds=timeout_seconds)

    def unwatch(self, task_id: str) -> None:
        with self._lock:
            self._watches.pop(task_id, None)
        self.tracker.discard(task_id)

    def watched(self) -> list[str]:
        with self._lock:
            return list(self._watches)

    def check(self) -> list[StallDetection]:
        now = self._clock()
        detections: list[StallDetection] = []
        with self._lock:
            watches = list(self._watches.items())
        for task_id, watch in watches:
            last = self.tracker.last_progress(task_id)
            silent = now - (last if last is not None else watch.started)
            elapsed = now - watch.started
            if silent >= self.stall_threshold_seconds:
                kind = ErrorKind.STALL_TIMEOUT
            elif elapsed >= watch.timeout_seconds:
                kind = ErrorKind.EXECUTION_TIMEOUT
            else:
                continue
            detection = StallDetection(
                task_id=task_id,
                kind=kind,
                silent_seconds=silent,
                elapsed_seconds=elapsed,
            )
            logger.warning("Task %s flagged by monitor: %s", task_id, detection.reason)
            detections.append(detection)
        return detections
