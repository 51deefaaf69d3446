"""Domain models for task graphs, attempts and audit events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_MAX_ATTEMPTS = 5
COMPLEXITY_RANK = {"low": 0, "medium": 1, "high": 2}
DEFAULT_COMPLEXITY = "medium"


class TaskStatus(str, Enum):
    """Task lifecycle states; `status` on a task is a projection of the audit log."""

    PENDING = "pending"
    RUNNING = "running"
    STUCK = "stuck"
    ERROR = "error"
    COMPLETE = "complete"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETE, TaskStatus.BLOCKED}


class OutcomeResult(str, Enum):
    """Backend self-reported result."""

    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"


@dataclass(slots=True, frozen=True)
class TaskSpec:
    """Immutable task definition as declared in the graph document."""

    task_id: str
    subject: str
    phase: int
    description: str = ""
    files: frozenset[str] = frozenset()
    depends_on: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    complexity: str = DEFAULT_COMPLEXITY
    verification: tuple[str, ...] = ()
    max_attempts: int | None = None
    backend: str | None = None
    setup: str | None = None
    initially_complete: bool = False

    @property
    def complexity_rank(self) -> int:
        return COMPLEXITY_RANK.get(self.complexity, COMPLEXITY_RANK[DEFAULT_COMPLEXITY])

    def effective_max_attempts(self, default: int = DEFAULT_MAX_ATTEMPTS) -> int:
        return self.max_attempts if self.max_attempts is not None else default

    def to_document(self) -> dict[str, Any]:
        """Serialize into the graph document task shape."""

        payload: dict[str, Any] = {
            "id": self.task_id,
            "subject": self.subject,
            "description": self.description,
            "files": sorted(self.files),
            "dependsOn": list(self.depends_on),
            "tags": list(self.tags),
            "complexity": self.complexity,
            "verification": list(self.verification),
        }
        if self.max_attempts is not None:
            payload["maxAttempts"] = self.max_attempts
        if self.backend is not None:
            payload["backend"] = self.backend
        if self.setup is not None:
            payload["setup"] = self.setup
        if self.initially_complete:
            payload["status"] = TaskStatus.COMPLETE.value
        return payload

    @classmethod
    def from_document(cls, payload: dict[str, Any], *, phase: int) -> TaskSpec:
        """Build from an already validated document entry."""

        return cls(
            task_id=str(payload["id"]),
            subject=str(payload["subject"]),
            phase=phase,
            description=str(payload.get("description") or ""),
            files=frozenset(str(item) for item in payload.get("files") or ()),
            depends_on=tuple(dict.fromkeys(str(item) for item in payload.get("dependsOn") or ())),
            tags=tuple(str(item) for item in payload.get("tags") or ()),
            complexity=str(payload.get("complexity") or DEFAULT_COMPLEXITY).lower(),
            verification=tuple(str(item) for item in payload.get("verification") or ()),
            max_attempts=(
                int(payload["maxAttempts"]) if payload.get("maxAttempts") is not None else None
            ),
            backend=payload.get("backend"),
            setup=payload.get("setup"),
            initially_complete=str(payload.get("status") or "").lower()
            in {"complete", "completed"},
        )


@dataclass(slots=True, frozen=True)
class Phase:
    """Ordered barrier grouping of tasks."""

    index: int
    name: str
    task_ids: tuple[str, ...]


@dataclass(slots=True)
class TaskGraph:
    """Validated in-memory task graph."""

    phases: list[Phase]
    tasks: dict[str, TaskSpec]

    def dependents(self) -> dict[str, list[str]]:
        """Reverse adjacency: task id -> ids that depend on it."""

        reverse: dict[str, list[str]] = {task_id: [] for task_id in self.tasks}
        for task in self.tasks.values():
            for dep in task.depends_on:
                reverse[dep].append(task.task_id)
        return reverse

    def to_document(self) -> dict[str, Any]:
        return {
            "phases": [
                {
                    "name": phase.name,
                    "tasks": [self.tasks[task_id].to_document() for task_id in phase.task_ids],
                }
                for phase in self.phases
            ],
        }


@dataclass(slots=True, frozen=True)
class CheckResult:
    """One verification command result."""

    command: str
    exit_code: int | None
    passed: bool
    duration_ms: int
    stdout_path: str | None = None
    stderr_path: str | None = None
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "passed": self.passed,
            "duration_ms": self.duration_ms,
            "stdout_path": self.stdout_path,
            "stderr_path": self.stderr_path,
            "timed_out": self.timed_out,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CheckResult:
        return cls(
            command=str(payload["command"]),
            exit_code=payload.get("exit_code"),
            passed=bool(payload["passed"]),
            duration_ms=int(payload.get("duration_ms") or 0),
            stdout_path=payload.get("stdout_path"),
            stderr_path=payload.get("stderr_path"),
            timed_out=bool(payload.get("timed_out", False)),
        )


@dataclass(slots=True, frozen=True)
class Proposal:
    """One backend call made while executing an attempt."""

    backend: str
    mode: str
    result: OutcomeResult
    confidence: int
    rationale: str
    log_ref: str | None = None
    root_cause: str | None = None
    recommendation: str | None = None
    questions: tuple[str, ...] = ()
    artifacts: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "mode": self.mode,
            "result": self.result.value,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "log_ref": self.log_ref,
            "root_cause": self.root_cause,
            "recommendation": self.recommendation,
            "questions": list(self.questions),
            "artifacts": list(self.artifacts),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Proposal:
        return cls(
            backend=str(payload["backend"]),
            mode=str(payload["mode"]),
            result=OutcomeResult(payload["result"]),
            confidence=int(payload["confidence"]),
            rationale=str(payload.get("rationale") or ""),
            log_ref=payload.get("log_ref"),
            root_cause=payload.get("root_cause"),
            recommendation=payload.get("recommendation"),
            questions=tuple(payload.get("questions") or ()),
            artifacts=tuple(payload.get("artifacts") or ()),
        )


@dataclass(slots=True, frozen=True)
class Attempt:
    """Immutable record of one execution of a task."""

    task_id: str
    attempt_no: int
    tier: int
    backend: str
    started_at: datetime
    finished_at: datetime
    outcome: str
    confidence: int
    rationale: str
    log_ref: str | None
    error_kind: str | None = None
    error_summary: str | None = None
    proposals: tuple[Proposal, ...] = ()
    checks: tuple[CheckResult, ...] = ()
    fingerprint: str | None = None
    root_cause: str | None = None
    recommendation: str | None = None
    questions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "attempt_no": self.attempt_no,
            "tier": self.tier,
            "backend": self.backend,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "outcome": self.outcome,
            "confidence": self.confidence,
            "rationale": self.rationale,
            "log_ref": self.log_ref,
            "error_kind": self.error_kind,
            "error_summary": self.error_summary,
            "proposals": [proposal.to_dict() for proposal in self.proposals],
            "checks": [check.to_dict() for check in self.checks],
            "fingerprint": self.fingerprint,
            "root_cause": self.root_cause,
            "recommendation": self.recommendation,
            "questions": list(self.questions),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Attempt:
        return cls(
            task_id=str(payload["task_id"]),
            attempt_no=int(payload["attempt_no"]),
            tier=int(payload["tier"]),
            backend=str(payload["backend"]),
            started_at=datetime.fromisoformat(payload["started_at"]),
            finished_at=datetime.fromisoformat(payload["finished_at"]),
            outcome=str(payload["outcome"]),
            confidence=int(payload["confidence"]),
            rationale=str(payload.get("rationale") or ""),
            log_ref=payload.get("log_ref"),
            error_kind=payload.get("error_kind"),
            error_summary=payload.get("error_summary"),
            proposals=tuple(Proposal.from_dict(item) for item in payload.get("proposals") or ()),
            checks=tuple(CheckResult.from_dict(item) for item in payload.get("checks") or ()),
            fingerprint=payload.get("fingerprint"),
            root_cause=payload.get("root_cause"),
            recommendation=payload.get("recommendation"),
            questions=tuple(payload.get("questions") or ()),
        )


@dataclass(slots=True, frozen=True)
class AuditEvent:
    """Append-only audit log entry; the sole source of truth for task state."""

    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    actor: str
    reason: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
    sequence: int | None = None
