"""Execution Dispatcher: concurrent execution units and safe backend calls."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar

from taskgraph_engine.errors import BackendError, ErrorKind
from taskgraph_engine.graph.models import OutcomeResult, TaskSpec
from taskgraph_engine.orchestrator.backend.base import ExecutionContext, Outcome
from taskgraph_engine.orchestrator.backend.registry import BackendRegistry
from taskgraph_engine.storage.common import utc_now

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")


@dataclass(slots=True)
class ExecutionHandle(Generic[ResultT]):
    """One in-flight execution unit."""

    task_id: str
    attempt_no: int
    tier: int
    backend: str
    future: Future[ResultT]
    cancel_event: threading.Event
    files: frozenset[str] = frozenset()
    started_at: datetime = field(default_factory=utc_now)


class ExecutionDispatcher(Generic[ResultT]):
    """Runs one execution unit per task; the coordinator never blocks on a unit.

    An abandoned unit keeps running until its backend notices the cancel event,
    but its result is never returned by ``finished``. Until it exits it is
    reported by ``lingering`` so the scheduler keeps its slot and files held.
    """

    def __init__(self, registry: BackendRegistry, *, max_workers: int) -> None:
        self.registry = registry
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="taskgraph-exec",
        )
        self._handles: dict[str, ExecutionHandle[ResultT]] = {}
        self._abandoned: list[ExecutionHandle[ResultT]] = []

    def submit(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        attempt_no: int,
        tier: int,
        backend: str,
        unit: Callable[[threading.Event], ResultT],
        files: frozenset[str] = frozenset(),
    ) -> ExecutionHandle[ResultT]:
        if task_id in self._handles:
            raise RuntimeError(f"Task {task_id} already has a live execution")
        cancel_event = threading.Event()
        future = self._executor.submit(unit, cancel_event)
        handle = ExecutionHandle(
            task_id=task_id,
            attempt_no=attempt_no,
            tier=tier,
            backend=backend,
            future=future,
            cancel_event=cancel_event,
            files=files,
        )
        self._handles[task_id] = handle
        return handle

    def live(self) -> list[ExecutionHandle[ResultT]]:
        return list(self._handles.values())

    def get(self, task_id: str) -> ExecutionHandle[ResultT] | None:
        return self._handles.get(task_id)

    def finished(self) -> list[tuple[ExecutionHandle[ResultT], ResultT | BaseException]]:
        """Pop completed units with their result or the exception they raised."""

        done: list[tuple[ExecutionHandle[ResultT], ResultT | BaseException]] = []
        for task_id, handle in list(self._handles.items()):
            if not handle.future.done():
                continue
            del self._handles[task_id]
            error = handle.future.exception()
            done.append((handle, error if error is not None else handle.future.result()))
        self._prune_abandoned()
        return done

    def lingering(self) -> list[ExecutionHandle[ResultT]]:
        """Abandoned units whose threads have not exited yet."""

        self._prune_abandoned()
        return list(self._abandoned)

    def _prune_abandoned(self) -> None:
        self._abandoned = [handle for handle in self._abandoned if not handle.future.done()]

    def abandon(self, task_id: str) -> ExecutionHandle[ResultT] | None:
        """Hard-cancel a unit and forget it; its eventual result is discarded."""

        handle = self._handles.pop(task_id, None)
        if handle is None:
            return None
        handle.cancel_event.set()
        handle.future.cancel()
        if not handle.future.done():
            self._abandoned.append(handle)
        logger.info("Abandoned execution of %s (attempt %d)", task_id, handle.attempt_no)
        return handle

    def wait(self, timeout: float) -> None:
        """Block until a unit finishes or ``timeout`` elapses."""

        futures = [handle.future for handle in self._handles.values()]
        if futures:
            wait(futures, timeout=timeout, return_when=FIRST_COMPLETED)
        elif timeout > 0:
            threading.Event().wait(timeout)

    def shutdown(self, *, cancel: bool = True) -> None:
        if cancel:
            for task_id in list(self._handles):
                self.abandon(task_id)
        self._executor.shutdown(wait=not cancel, cancel_futures=cancel)

    def call(
        self,
        backend_name: str,
        task: TaskSpec,
        context: ExecutionContext,
        timeout_seconds: float,
    ) -> Outcome:
        """Invoke one backend; every exception becomes a failed Outcome."""

        try:
            backend = self.registry.get(backend_name)
        except KeyError as error:
            return _error_outcome(str(error), context=context, transient=False)
        try:
            outcome = backend.execute(task, context, timeout_seconds)
        except BackendError as error:
            logger.warning("Backend %s failed on %s: %s", backend_name, task.task_id, error)
            return _error_outcome(str(error), context=context, transient=error.transient)
        except Exception as error:  # noqa: BLE001
            logger.exception("Backend %s raised while executing %s", backend_name, task.task_id)
            return _error_outcome(
                f"{type(error).__name__}: {error}",
                context=context,
                transient=False,
            )
        if outcome.log_ref is None:
            outcome.log_ref = str(context.workdir)
        return outcome


def _error_outcome(message: str, *, context: ExecutionContext, transient: bool) -> Outcome:
    return Outcome(
        result=OutcomeResult.FAILURE,
        confidence=0,
        rationale=message,
        log_ref=str(context.workdir),
        error_kind=ErrorKind.BACKEND_ERROR.value,
        error_summary=f"{message} (transient)" if transient else message,
    )
