"""Backend interface for task execution."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from taskgraph_engine.graph.models import OutcomeResult, Proposal, TaskSpec


class ExecutionMode(str, Enum):
    """What a backend call is asked to do."""

    IMPLEMENT = "implement"
    PROPOSE = "propose"
    ANALYZE = "analyze"


@dataclass(slots=True)
class ExecutionContext:
    """Inputs for one backend call, plus its progress and cancel channels."""

    task_id: str
    attempt_no: int
    tier: int
    mode: ExecutionMode
    prompt: str
    workdir: Path
    workspace_root: Path
    manifest_path: Path | None = None
    model: str = ""
    history: tuple[dict[str, Any], ...] = ()
    gathered: dict[str, Any] = field(default_factory=dict)
    proposals: tuple[Proposal, ...] = ()
    root_cause: str | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    progress_callback: Callable[[str | None], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def report_progress(self, note: str | None = None) -> None:
        """Heartbeat; any call resets the stall timer for this task."""

        if self.progress_callback is not None:
            self.progress_callback(note)


@dataclass(slots=True)
class Outcome:
    """Backend-reported outcome; ``confidence`` is mandatory (0-100)."""

    result: OutcomeResult
    confidence: int
    rationale: str = ""
    artifacts: tuple[str, ...] = ()
    log_ref: str | None = None
    root_cause: str | None = None
    recommendation: str | None = None
    questions: tuple[str, ...] = ()
    exit_code: int | None = None
    timed_out: bool = False
    cancelled: bool = False
    error_kind: str | None = None
    error_summary: str | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"confidence must be within 0..100, got {self.confidence}")

    @property
    def succeeded(self) -> bool:
        return self.result == OutcomeResult.SUCCESS

    def to_proposal(self, *, backend: str, mode: ExecutionMode) -> Proposal:
        return Proposal(
            backend=backend,
            mode=mode.value,
            result=self.result,
            confidence=self.confidence,
            rationale=self.rationale,
            log_ref=self.log_ref,
            root_cause=self.root_cause,
            recommendation=self.recommendation,
            questions=self.questions,
            artifacts=self.artifacts,
        )


class ExecutionBackend(Protocol):
    """Protocol implemented by every pluggable executor."""

    def execute(
        self,
        task: TaskSpec,
        context: ExecutionContext,
        timeout_seconds: float,
    ) -> Outcome:
        """Attempt the task and report an outcome with a confidence score."""
