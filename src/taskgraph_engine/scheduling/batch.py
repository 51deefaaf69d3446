"""Batch Scheduler: greedy file-disjoint packing behind phase barriers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from taskgraph_engine.graph.models import TaskStatus
from taskgraph_engine.scheduling.resolver import Candidate, DependencyResolver
from taskgraph_engine.state import GraphState

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Batch:
    """Tasks admitted together on one scheduling tick."""

    phase: int | None
    candidates: tuple[Candidate, ...] = field(default_factory=tuple)

    @property
    def task_ids(self) -> tuple[str, ...]:
        return tuple(candidate.task_id for candidate in self.candidates)

    def __bool__(self) -> bool:
        return bool(self.candidates)


class BatchScheduler:
    """Best-effort set packing, not an exact solver."""

    def __init__(self, resolver: DependencyResolver, *, max_parallelism: int) -> None:
        if max_parallelism <= 0:
            raise ValueError("max_parallelism must be > 0")
        self.resolver = resolver
        self.max_parallelism = max_parallelism

    @staticmethod
    def open_phase(state: GraphState) -> int | None:
        """Lowest phase that still has non-terminal work; ``None`` when all is done."""

        phases = [task.spec.phase for task in state.tasks.values() if not task.status.is_terminal]
        return min(phases) if phases else None

    def next_batch(
        self,
        state: GraphState,
        *,
        held_slots: int = 0,
        held_files: frozenset[str] = frozenset(),
        held_tasks: frozenset[str] = frozenset(),
    ) -> Batch:
        """Pack the next batch.

        ``held_*`` describe abandoned units that are still alive: they occupy
        worker slots and keep their files locked until they exit, and their
        tasks are not dispatched again in the meantime.
        """

        phase = self.open_phase(state)
        if phase is None:
            return Batch(phase=None)

        running = state.with_status(TaskStatus.RUNNING)
        slots = self.max_parallelism - len(running) - held_slots
        if slots <= 0:
            return Batch(phase=phase)

        taken = set(self.resolver.running_files(state)) | held_files
        accepted: list[Candidate] = []
        for candidate in self.resolver.ranked(state):
            if len(accepted) >= slots:
                break
            if candidate.task.spec.phase != phase or candidate.task_id in held_tasks:
                continue
            if not taken.isdisjoint(candidate.task.files):
                continue
            accepted.append(candidate)
            taken.update(candidate.task.files)

        if accepted:
            logger.debug(
                "Batch for phase %d: %s (running=%d)",
                phase,
                ", ".join(candidate.task_id for candidate in accepted),
                len(running),
            )
        return Batch(phase=phase, candidates=tuple(accepted))
