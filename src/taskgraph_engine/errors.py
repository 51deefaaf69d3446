"""Error taxonomy shared by the store, dispatcher and escalation council."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Persisted failure kinds recorded on attempts and audit events."""

    VALIDATION = "validation_error"
    VERIFICATION_FAILURE = "verification_failure"
    STALL_TIMEOUT = "stall_timeout"
    EXECUTION_TIMEOUT = "execution_timeout"
    BACKEND_ERROR = "backend_error"
    LOW_CONFIDENCE = "low_confidence"
    TERMINAL_BLOCKED = "terminal_blocked"


class TaskGraphError(RuntimeError):
    """Base class for engine errors."""

    kind: ErrorKind = ErrorKind.BACKEND_ERROR


class ValidationError(TaskGraphError):
    """Malformed task graph; lists every problem found in a single pass."""

    kind = ErrorKind.VALIDATION

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        listing = "\n".join(f"  - {problem}" for problem in self.problems)
        super().__init__(f"Task graph is invalid ({len(self.problems)} problem(s)):\n{listing}")


class VerificationFailure(TaskGraphError):
    """Post-execution checks failed for a task."""

    kind = ErrorKind.VERIFICATION_FAILURE

    def __init__(self, task_id: str, command: str, exit_code: int | None) -> None:
        super().__init__(
            f"Verification failed for task {task_id}: {command!r} exited with {exit_code}",
        )
        self.task_id = task_id
        self.command = command
        self.exit_code = exit_code


class StallTimeout(TaskGraphError):
    """No progress signal arrived within the stall threshold."""

    kind = ErrorKind.STALL_TIMEOUT

    def __init__(self, task_id: str, silent_seconds: float) -> None:
        super().__init__(f"Task {task_id} stalled: no progress for {silent_seconds:.0f}s")
        self.task_id = task_id
        self.silent_seconds = silent_seconds


class BackendError(TaskGraphError):
    """Backend execution error with retryability hint."""

    kind = ErrorKind.BACKEND_ERROR

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class TerminalBlocked(TaskGraphError):
    """Escalation exhausted; the task needs a human."""

    kind = ErrorKind.TERMINAL_BLOCKED

    def __init__(self, task_id: str, diagnosis: str) -> None:
        super().__init__(f"Task {task_id} is blocked after exhausting escalation")
        self.task_id = task_id
        self.diagnosis = diagnosis
