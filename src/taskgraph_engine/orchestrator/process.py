"""Polled subprocess runner shared by CLI backends and verification."""

from __future__ import annotations

import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

POLL_INTERVAL_SECONDS = 0.1
TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True)
class ProcessResult:
    """Execution metadata for one subprocess."""

    exit_code: int | None
    timed_out: bool
    cancelled: bool
    duration_ms: int
    stdout_path: Path
    stderr_path: Path


def run_polled_process(  # noqa: PLR0913
    run_args: str | list[str],
    *,
    cwd: Path,
    env: dict[str, str] | None,
    stdout_path: Path,
    stderr_path: Path,
    timeout_seconds: float,
    cancel_event: threading.Event | None = None,
    on_progress: Callable[[], None] | None = None,
    shell: bool = False,
) -> ProcessResult:
    """Run a command, reporting output growth as progress.

    The process is terminated when ``cancel_event`` is set or the wall-clock
    timeout elapses. ``FileNotFoundError``/``OSError`` from start-up propagate.
    """

    stdout_path.parent.mkdir(parents=True, exist_ok=True)
    stderr_path.parent.mkdir(parents=True, exist_ok=True)
    started = time.monotonic()
    with (
        stdout_path.open("w", encoding="utf-8") as stdout_handle,
        stderr_path.open("w", encoding="utf-8") as stderr_handle,
    ):
        process = subprocess.Popen(  # noqa: S603
            run_args,
            cwd=cwd,
            env=env,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
            shell=shell,
        )
        last_size = 0
        while True:
            returncode = process.poll()
            if returncode is not None:
                return _result(returncode, started, stdout_path, stderr_path)

            size = _output_size(stdout_path, stderr_path)
            if size != last_size:
                last_size = size
                if on_progress is not None:
                    on_progress()

            if cancel_event is not None and cancel_event.is_set():
                terminate_process(process)
                return _result(
                    None,
                    started,
                    stdout_path,
                    stderr_path,
                    cancelled=True,
                )

            if time.monotonic() - started >= timeout_seconds:
                terminate_process(process)
                return _result(
                    TIMEOUT_EXIT_CODE,
                    started,
                    stdout_path,
                    stderr_path,
                    timed_out=True,
                )

            time.sleep(POLL_INTERVAL_SECONDS)


def terminate_process(process: subprocess.Popen[str] | subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def read_tail(path: Path, limit: int = 65_536) -> str:
    """Best-effort read of the last ``limit`` characters of a log file."""

    try:
        text = path.read_text("utf-8", errors="replace")
    except FileNotFoundError:
        return ""
    return text[-limit:]


def _output_size(*paths: Path) -> int:
    total = 0
    for path in paths:
        try:
            total += path.stat().st_size
        except FileNotFoundError:
            continue
    return total


def _result(  # noqa: PLR0913
    exit_code: int | None,
    started: float,
    stdout_path: Path,
    stderr_path: Path,
    *,
    timed_out: bool = False,
    cancelled: bool = False,
) -> ProcessResult:
    return ProcessResult(
        exit_code=exit_code,
        timed_out=timed_out,
        cancelled=cancelled,
        duration_ms=int((time.monotonic() - started) * 1000),
        stdout_path=stdout_path,
        stderr_path=stderr_path,
    )
