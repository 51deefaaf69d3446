"""Derived task-graph snapshot and the pure audit-event reducer.

The audit log is the only source of truth. ``apply_event`` folds one event
into an immutable snapshot and ``replay`` folds a whole log from empty, so a
live cache maintained by the repository and a cold replay always agree.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from taskgraph_engine.graph.models import Attempt, AuditEvent, TaskSpec, TaskStatus


class EventType(str, Enum):
    """Audit event kinds."""

    TASK_REGISTERED = "task_registered"
    TASK_REDEFINED = "task_redefined"
    DISPATCHED = "dispatched"
    PROGRESS = "progress"
    ATTEMPT_RECORDED = "attempt_recorded"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"
    REQUEUED = "requeued"
    BLOCKED = "blocked"
    DUPLICATE_ANALYSIS_SKIPPED = "duplicate_analysis_skipped"


_S = TaskStatus
_TRANSITIONS: dict[str, tuple[frozenset[TaskStatus], TaskStatus]] = {
    EventType.DISPATCHED.value: (frozenset({_S.PENDING}), _S.RUNNING),
    EventType.PROGRESS.value: (frozenset({_S.RUNNING}), _S.RUNNING),
    EventType.ATTEMPT_RECORDED.value: (frozenset({_S.RUNNING}), _S.RUNNING),
    EventType.COMPLETED.value: (frozenset({_S.RUNNING}), _S.COMPLETE),
    EventType.FAILED.value: (frozenset({_S.RUNNING}), _S.ERROR),
    EventType.STALLED.value: (frozenset({_S.RUNNING}), _S.STUCK),
    EventType.REQUEUED.value: (frozenset({_S.STUCK, _S.ERROR}), _S.PENDING),
    EventType.BLOCKED.value: (
        frozenset({_S.PENDING, _S.RUNNING, _S.STUCK, _S.ERROR}),
        _S.BLOCKED,
    ),
}


class InvalidTransition(RuntimeError):
    """An event does not fit the task's current status."""


@dataclass(slots=True, frozen=True)
class TaskState:
    """Projection of one task's audit history."""

    task_id: str
    spec: TaskSpec
    status: TaskStatus
    phase_name: str
    attempt: int = 0
    tier: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    last_progress: datetime | None = None
    completed_at: datetime | None = None
    backend: str | None = None
    last_error: str | None = None
    last_error_kind: str | None = None
    confidences: tuple[int, ...] = ()
    attempts: tuple[Attempt, ...] = ()
    diagnosis: str | None = None
    blocked_reason: str | None = None
    skipped_tiers: tuple[int, ...] = ()

    @property
    def files(self) -> frozenset[str]:
        return self.spec.files

    @property
    def final_confidence(self) -> int | None:
        return self.confidences[-1] if self.confidences else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "spec": self.spec.to_document(),
            "phase": self.spec.phase,
            "phase_name": self.phase_name,
            "status": self.status.value,
            "attempt": self.attempt,
            "tier": self.tier,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "last_progress": _iso(self.last_progress),
            "completed_at": _iso(self.completed_at),
            "backend": self.backend,
            "last_error": self.last_error,
            "last_error_kind": self.last_error_kind,
            "confidences": list(self.confidences),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "diagnosis": self.diagnosis,
            "blocked_reason": self.blocked_reason,
            "skipped_tiers": list(self.skipped_tiers),
        }


@dataclass(slots=True, frozen=True)
class GraphState:
    """Snapshot of every registered task, ordered by registration."""

    tasks: dict[str, TaskState] = field(default_factory=dict)
    last_sequence: int = 0

    def get(self, task_id: str) -> TaskState | None:
        return self.tasks.get(task_id)

    def with_status(self, *statuses: TaskStatus) -> list[TaskState]:
        wanted = set(statuses)
        return [task for task in self.tasks.values() if task.status in wanted]

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.tasks.values():
            counts[task.status.value] += 1
        return counts

    def all_complete(self) -> bool:
        return all(task.status == TaskStatus.COMPLETE for task in self.tasks.values())

    def all_terminal(self) -> bool:
        return all(task.status.is_terminal for task in self.tasks.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_sequence": self.last_sequence,
            "tasks": {task_id: task.to_dict() for task_id, task in self.tasks.items()},
        }


def replay(events: Iterable[AuditEvent]) -> GraphState:
    """Fold an ordered event stream from the empty state."""

    state = GraphState()
    for event in events:
        state = apply_event(state, event)
    return state


def find_replay_mismatches(events: Sequence[AuditEvent]) -> list[str]:
    """Cross-check a log: ordering, legality, and per-task replay against the full fold.

    Each task's projection depends only on its own events, so folding a task's
    events in isolation must produce the same state as the full replay.
    """

    problems: list[str] = []
    previous = 0
    for event in events:
        if event.sequence is None or event.sequence <= previous:
            problems.append(f"Event sequence out of order at #{event.sequence}")
        previous = event.sequence or previous
    try:
        full = replay(events)
    except InvalidTransition as error:
        return [*problems, f"Log does not replay: {error}"]

    by_task: dict[str, list[AuditEvent]] = {}
    for event in events:
        by_task.setdefault(event.task_id, []).append(event)
    for task_id, task_events in by_task.items():
        isolated = replay(task_events).tasks.get(task_id)
        if isolated != full.tasks.get(task_id):
            problems.append(f"Task {task_id}: isolated replay differs from full replay")
    return problems


def apply_event(state: GraphState, event: AuditEvent) -> GraphState:  # noqa: C901
    """Return the snapshot that results from applying ``event`` to ``state``."""

    event_type = event.event_type
    current = state.tasks.get(event.task_id)
    details = event.details

    if event_type == EventType.TASK_REGISTERED.value:
        if current is not None:
            raise InvalidTransition(f"Task {event.task_id} is already registered")
        if event.status_to not in {TaskStatus.PENDING, TaskStatus.COMPLETE}:
            raise InvalidTransition(
                f"Task {event.task_id} cannot be registered as {event.status_to}",
            )
        phase = int(details.get("phase", 0))
        updated = TaskState(
            task_id=event.task_id,
            spec=TaskSpec.from_document(details["task"], phase=phase),
            status=event.status_to,
            phase_name=str(details.get("phase_name") or f"phase-{phase}"),
            created_at=event.created_at,
            completed_at=event.created_at if event.status_to == TaskStatus.COMPLETE else None,
        )
        return _with_task(state, updated, event)

    if current is None:
        raise InvalidTransition(f"Event {event_type} for unknown task {event.task_id}")

    if event_type == EventType.TASK_REDEFINED.value:
        phase = int(details.get("phase", current.spec.phase))
        updated = replace(
            current,
            spec=TaskSpec.from_document(details["task"], phase=phase),
            phase_name=str(details.get("phase_name") or current.phase_name),
        )
        return _with_task(state, updated, event)

    if event_type == EventType.DUPLICATE_ANALYSIS_SKIPPED.value:
        updated = replace(
            current,
            tier=int(details["to_tier"]),
            skipped_tiers=(*current.skipped_tiers, int(details["from_tier"])),
        )
        return _with_task(state, updated, event)

    if event_type not in _TRANSITIONS:
        raise InvalidTransition(f"Unknown event type: {event_type}")
    allowed_from, target = _TRANSITIONS[event_type]
    if current.status not in allowed_from:
        raise InvalidTransition(
            f"Task {event.task_id}: {event_type} not allowed from {current.status.value}",
        )
    if event.status_to is not None and event.status_to != target:
        raise InvalidTransition(
            f"Task {event.task_id}: {event_type} must move to {target.value}, "
            f"got {event.status_to.value}",
        )

    updated = replace(current, status=target)
    if event_type == EventType.DISPATCHED.value:
        updated = replace(
            updated,
            started_at=event.created_at,
            last_progress=event.created_at,
            completed_at=None,
            backend=details.get("backend"),
            tier=int(details.get("tier", current.tier)),
        )
    elif event_type == EventType.PROGRESS.value:
        updated = replace(updated, last_progress=event.created_at)
    elif event_type == EventType.ATTEMPT_RECORDED.value:
        attempt = Attempt.from_dict(details["attempt"])
        next_tier = details.get("next_tier")
        updated = replace(
            updated,
            attempt=attempt.attempt_no,
            attempts=(*current.attempts, attempt),
            confidences=(*current.confidences, attempt.confidence),
            tier=current.tier if next_tier is None else int(next_tier),
        )
    elif event_type == EventType.COMPLETED.value:
        updated = replace(
            updated,
            completed_at=event.created_at,
            last_error=None,
            last_error_kind=None,
        )
    elif event_type in {EventType.FAILED.value, EventType.STALLED.value}:
        updated = replace(
            updated,
            last_error=event.reason,
            last_error_kind=details.get("error_kind"),
        )
    elif event_type == EventType.REQUEUED.value:
        updated = replace(updated, tier=int(details.get("tier", current.tier)))
    elif event_type == EventType.BLOCKED.value:
        updated = replace(
            updated,
            blocked_reason=event.reason,
            diagnosis=details.get("diagnosis"),
            completed_at=event.created_at,
        )
    return _with_task(state, updated, event)


def _with_task(state: GraphState, task: TaskState, event: AuditEvent) -> GraphState:
    tasks = dict(state.tasks)
    tasks[task.task_id] = task
    return GraphState(
        tasks=tasks,
        last_sequence=event.sequence if event.sequence is not None else state.last_sequence,
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
