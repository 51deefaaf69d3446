"""Verification runner: mandatory post-execution checks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from pathlib import Path

from taskgraph_engine.graph.models import CheckResult
from taskgraph_engine.orchestrator.process import run_polled_process

logger = logging.getLogger(__name__)


class VerificationRunner:
    """Run check commands against the workspace; exit code 0 means pass."""

    def __init__(self, *, workspace_root: Path, command_timeout_seconds: float) -> None:
        self.workspace_root = workspace_root
        self.command_timeout_seconds = command_timeout_seconds

    def run(
        self,
        commands: Sequence[str],
        *,
        log_dir: Path,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[], None] | None = None,
    ) -> tuple[CheckResult, ...]:
        results: list[CheckResult] = []
        for index, command in enumerate(commands, start=1):
            if cancel_event is not None and cancel_event.is_set():
                break
            stdout_path = log_dir / f"check-{index:02d}.stdout.log"
            stderr_path = log_dir / f"check-{index:02d}.stderr.log"
            try:
                process = run_polled_process(
                    command,
                    cwd=self.workspace_root,
                    env=None,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                    timeout_seconds=self.command_timeout_seconds,
                    cancel_event=cancel_event,
                    on_progress=on_progress,
                    shell=True,
                )
            except OSError as error:
                logger.warning("Verification command failed to start: %s (%s)", command, error)
                stderr_path.write_text(f"failed to start: {error}\n", "utf-8")
                results.append(
                    CheckResult(
                        command=command,
                        exit_code=None,
                        passed=False,
                        duration_ms=0,
                        stdout_path=str(stdout_path),
                        stderr_path=str(stderr_path),
                    ),
                )
                continue

            passed = process.exit_code == 0 and not process.timed_out and not process.cancelled
            results.append(
                CheckResult(
                    command=command,
                    exit_code=process.exit_code,
                    passed=passed,
                    duration_ms=process.duration_ms,
                    stdout_path=str(stdout_path),
                    stderr_path=str(stderr_path),
                    timed_out=process.timed_out,
                ),
            )
            if not passed:
                logger.warning(
                    "Verification check failed: %s (exit=%s timed_out=%s)",
                    command,
                    process.exit_code,
                    process.timed_out,
                )
        return tuple(results)


def all_passed(checks: Sequence[CheckResult]) -> bool:
    return all(check.passed for check in checks)


def first_failure(checks: Sequence[CheckResult]) -> CheckResult | None:
    return next((check for check in checks if not check.passed), None)
