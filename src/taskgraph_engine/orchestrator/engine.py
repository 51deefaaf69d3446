"""Coordinator loop: the only writer of task state."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

from taskgraph_engine.config import Settings
from taskgraph_engine.errors import ErrorKind, StallTimeout, TerminalBlocked, ValidationError
from taskgraph_engine.graph.models import Attempt, AuditEvent, TaskGraph, TaskStatus
from taskgraph_engine.graph.store import TaskGraphStore
from taskgraph_engine.orchestrator.backend.registry import BackendRegistry
from taskgraph_engine.orchestrator.context import ContextGatherer
from taskgraph_engine.orchestrator.dispatcher import ExecutionDispatcher, ExecutionHandle
from taskgraph_engine.orchestrator.escalation import (
    TERMINAL,
    AttemptReport,
    EscalationCouncil,
    SkippedTier,
    next_tier,
    synthesize_diagnosis,
)
from taskgraph_engine.orchestrator.monitor import (
    Clock,
    HeartbeatMonitor,
    ProgressTracker,
    StallDetection,
)
from taskgraph_engine.orchestrator.process import read_tail
from taskgraph_engine.orchestrator.routing import BackendRouter
from taskgraph_engine.orchestrator.verification import VerificationRunner
from taskgraph_engine.orchestrator.workdir import AttemptWorkdirManager
from taskgraph_engine.scheduling import BatchScheduler, DependencyResolver
from taskgraph_engine.state import EventType, GraphState, TaskState
from taskgraph_engine.storage.common import utc_now
from taskgraph_engine.storage.repository import AuditLogRepository, new_event

logger = logging.getLogger(__name__)

UPSTREAM_BLOCKED_PREFIX = "upstream_blocked:"
_PARTIAL_OUTPUT_CHARS = 2_000


@dataclass(slots=True)
class RunSummary:
    """Aggregate coordinator counters for CLI reporting."""

    ticks: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    stalled: int = 0
    requeued: int = 0
    blocked: int = 0
    stopped_reason: str = ""


@dataclass(slots=True)
class TickReport:
    """What one coordinator tick changed."""

    registered: list[str] = field(default_factory=list)
    dispatched: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    stalled: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)

    def add_to(self, summary: RunSummary) -> None:
        summary.ticks += 1
        summary.dispatched += len(self.dispatched)
        summary.completed += len(self.completed)
        summary.failed += len(self.failed)
        summary.stalled += len(self.stalled)
        summary.requeued += len(self.requeued)
        summary.blocked += len(self.blocked)


class TaskGraphEngine:
    """Single coordinating loop over resolver, dispatcher, monitor and council.

    Execution units only produce results; every audit event is appended here, one
    atomic batch per state change, so no two writers ever race on a task.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: AuditLogRepository,
        graph_store: TaskGraphStore,
        registry: BackendRegistry,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.graph_store = graph_store
        self.registry = registry

        monitor_kwargs = {} if clock is None else {"clock": clock}
        self.tracker = ProgressTracker(**monitor_kwargs)
        self.monitor = HeartbeatMonitor(
            self.tracker,
            stall_threshold_seconds=settings.monitor.stall_threshold_seconds,
            **monitor_kwargs,
        )
        self.resolver = DependencyResolver()
        self.scheduler = BatchScheduler(
            self.resolver,
            max_parallelism=settings.scheduler.max_parallelism,
        )
        self.dispatcher: ExecutionDispatcher[AttemptReport] = ExecutionDispatcher(
            registry,
            max_workers=settings.scheduler.max_parallelism,
        )
        self.router = BackendRouter(settings.backends)
        self.workdirs = AttemptWorkdirManager(settings.workdir_root)
        self.council = EscalationCouncil(
            settings=settings,
            dispatcher=self.dispatcher,
            router=self.router,
            verifier=VerificationRunner(
                workspace_root=settings.workspace_root,
                command_timeout_seconds=settings.verification.command_timeout_seconds,
            ),
            gatherer=ContextGatherer(
                workspace_root=settings.workspace_root,
                max_files=settings.escalation.context_max_files,
                max_bytes_per_file=settings.escalation.context_max_bytes_per_file,
                exclude=(settings.workdir_root, settings.db_path),
            ),
            workdirs=self.workdirs,
        )
        self.max_iterations = settings.scheduler.max_iterations or None
        self._graph: TaskGraph | None = None
        self._resync_needed = False
        self._dispatch_count = 0
        self._stop_requested = False
        self._bootstrapped = False

    def bootstrap(self) -> TickReport:
        """Register the task source and recover executions orphaned by a restart."""

        report = TickReport()
        self._graph = self.graph_store.load()
        self._sync_graph(self._graph, report)
        self._recover_orphans(report)
        self._propagate_upstream_blocks(report)
        self._bootstrapped = True
        return report

    def tick(self) -> TickReport:
        """One pass: reload, persist progress, collect, watchdog, propagate, dispatch."""

        if not self._bootstrapped:
            self.bootstrap()
        report = TickReport()
        self._reload_if_changed(report)
        self._persist_progress()
        self._collect_finished(report)
        self._handle_stalls(report)
        self._propagate_upstream_blocks(report)
        self._dispatch(report)
        return report

    def run(self, *, max_iterations: int | None = None) -> RunSummary:
        """Drive the graph until every task is terminal, a stop, or a dispatch limit."""

        if max_iterations is not None:
            self.max_iterations = max_iterations or None
        summary = RunSummary()
        with self._signal_handlers():
            try:
                self.bootstrap().add_to(summary)
                while True:
                    report = self.tick()
                    report.add_to(summary)
                    reason = self._stop_reason(report)
                    if reason:
                        summary.stopped_reason = reason
                        break
                    self.dispatcher.wait(self.settings.scheduler.tick_seconds)
            finally:
                self.dispatcher.shutdown(cancel=True)
        logger.info(
            "Run finished (%s): dispatched=%d completed=%d failed=%d stalled=%d blocked=%d",
            summary.stopped_reason,
            summary.dispatched,
            summary.completed,
            summary.failed,
            summary.stalled,
            summary.blocked,
        )
        return summary

    def request_stop(self, *, signal_name: str | None = None) -> None:
        if self._stop_requested:
            return
        self._stop_requested = True
        if signal_name:
            logger.info("Received %s, stopping after the current tick", signal_name)

    def _stop_reason(self, report: TickReport) -> str:
        live = self.dispatcher.live()
        if self._stop_requested:
            return "stop requested"
        if live:
            return ""
        state = self.repository.snapshot()
        if state.all_terminal():
            return "all tasks terminal"
        if self._iterations_exhausted():
            return "max iterations reached"
        if self.dispatcher.lingering():
            return ""
        if not report.dispatched:
            logger.warning(
                "No runnable work left while tasks remain open: %s",
                ", ".join(
                    task.task_id for task in state.tasks.values() if not task.status.is_terminal
                ),
            )
            return "no runnable work"
        return ""

    def _iterations_exhausted(self) -> bool:
        return self.max_iterations is not None and self._dispatch_count >= self.max_iterations

    # graph source

    def _sync_graph(self, graph: TaskGraph, report: TickReport) -> None:
        state = self.repository.snapshot()
        events: list[AuditEvent] = []
        deferred = False
        for phase in graph.phases:
            for task_id in phase.task_ids:
                spec = graph.tasks[task_id]
                details = {
                    "task": spec.to_document(),
                    "phase": spec.phase,
                    "phase_name": phase.name,
                }
                existing = state.get(task_id)
                if existing is None:
                    events.append(
                        new_event(
                            task_id=task_id,
                            event_type=EventType.TASK_REGISTERED.value,
                            status_from=None,
                            status_to=(
                                TaskStatus.COMPLETE
                                if spec.initially_complete
                                else TaskStatus.PENDING
                            ),
                            actor="store",
                            reason="registered from task source",
                            details=details,
                        ),
                    )
                    report.registered.append(task_id)
                    continue
                if existing.spec == spec and existing.phase_name == phase.name:
                    continue
                if existing.status == TaskStatus.RUNNING:
                    deferred = True
                    continue
                events.append(
                    new_event(
                        task_id=task_id,
                        event_type=EventType.TASK_REDEFINED.value,
                        status_from=existing.status,
                        status_to=existing.status,
                        actor="store",
                        reason="definition changed in task source",
                        details=details,
                    ),
                )
        if events:
            self.repository.append_many(events)
            logger.info("Synchronized task source: %d event(s)", len(events))
        self._resync_needed = deferred

    def _reload_if_changed(self, report: TickReport) -> None:
        if self.graph_store.changed_since_load():
            try:
                self._graph = self.graph_store.load()
            except ValidationError as error:
                logger.warning("Ignoring invalid edit of %s: %s", self.graph_store.path, error)
                self.graph_store.acknowledge()
                return
            self._sync_graph(self._graph, report)
        elif self._resync_needed and self._graph is not None:
            self._sync_graph(self._graph, report)

    # execution results

    def _persist_progress(self) -> None:
        due = self.tracker.take_unpersisted(self.settings.monitor.progress_persist_seconds)
        if not due:
            return
        state = self.repository.snapshot()
        events = [
            new_event(
                task_id=task_id,
                event_type=EventType.PROGRESS.value,
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.RUNNING,
                actor="backend",
                reason=note or "progress",
                details={"note": note} if note else None,
            )
            for task_id, note in due
            if (task := state.get(task_id)) is not None and task.status == TaskStatus.RUNNING
        ]
        if events:
            self.repository.append_many(events)

    def _collect_finished(self, report: TickReport) -> None:
        for handle, result in self.dispatcher.finished():
            self.monitor.unwatch(handle.task_id)
            task = self.repository.snapshot().get(handle.task_id)
            if (
                task is None
                or task.status != TaskStatus.RUNNING
                or task.attempt + 1 != handle.attempt_no
            ):
                logger.warning(
                    "Discarding stale result for %s attempt %d",
                    handle.task_id,
                    handle.attempt_no,
                )
                continue
            if isinstance(result, BaseException):
                logger.error(
                    "Execution unit for %s raised unexpectedly",
                    handle.task_id,
                    exc_info=result,
                )
                attempt = self._synthetic_attempt(
                    handle,
                    outcome="failure",
                    error_kind=ErrorKind.BACKEND_ERROR.value,
                    error_summary=f"{type(result).__name__}: {result}",
                )
                self._record_execution(task, attempt, completed=False, report=report)
                continue
            self._record_execution(
                task,
                result.attempt,
                completed=result.completed,
                skipped=result.skipped,
                report=report,
            )

    def _handle_stalls(self, report: TickReport) -> None:
        for detection in self.monitor.check():
            handle = self.dispatcher.abandon(detection.task_id)
            self.monitor.unwatch(detection.task_id)
            task = self.repository.snapshot().get(detection.task_id)
            if handle is None or task is None or task.status != TaskStatus.RUNNING:
                continue
            if detection.kind == ErrorKind.STALL_TIMEOUT:
                logger.warning("%s", StallTimeout(task.task_id, detection.silent_seconds))
            else:
                logger.warning("Task %s force-terminated: %s", task.task_id, detection.reason)
            attempt = self._synthetic_attempt(
                handle,
                outcome="stalled"
                if detection.kind == ErrorKind.STALL_TIMEOUT
                else "timed_out",
                error_kind=detection.kind.value,
                error_summary=detection.reason,
            )
            self._record_execution(
                task,
                attempt,
                completed=False,
                stall=detection,
                report=report,
            )

    def _recover_orphans(self, report: TickReport) -> None:
        """Running tasks without a live unit were cut off by a restart; treat as stalls."""

        state = self.repository.snapshot()
        for task in state.with_status(TaskStatus.RUNNING):
            if self.dispatcher.get(task.task_id) is not None:
                continue
            attempt_no = task.attempt + 1
            reason = f"{ErrorKind.STALL_TIMEOUT.value}: execution orphaned by coordinator restart"
            logger.warning(
                "Recovering orphaned execution of %s (attempt %d)",
                task.task_id,
                attempt_no,
            )
            attempt = Attempt(
                task_id=task.task_id,
                attempt_no=attempt_no,
                tier=task.tier,
                backend=task.backend or "unknown",
                started_at=task.started_at or utc_now(),
                finished_at=utc_now(),
                outcome="interrupted",
                confidence=0,
                rationale="",
                log_ref=str(self.workdirs.attempt_dir(task.task_id, attempt_no)),
                error_kind=ErrorKind.STALL_TIMEOUT.value,
                error_summary=reason,
            )
            self._record_execution(
                task,
                attempt,
                completed=False,
                stall_reason=reason,
                report=report,
            )

    def _synthetic_attempt(
        self,
        handle: ExecutionHandle[AttemptReport],
        *,
        outcome: str,
        error_kind: str,
        error_summary: str,
    ) -> Attempt:
        return Attempt(
            task_id=handle.task_id,
            attempt_no=handle.attempt_no,
            tier=handle.tier,
            backend=handle.backend,
            started_at=handle.started_at,
            finished_at=utc_now(),
            outcome=outcome,
            confidence=0,
            rationale="",
            log_ref=str(self.workdirs.attempt_dir(handle.task_id, handle.attempt_no)),
            error_kind=error_kind,
            error_summary=error_summary,
        )

    def _record_execution(  # noqa: PLR0913
        self,
        task: TaskState,
        attempt: Attempt,
        *,
        completed: bool,
        report: TickReport,
        skipped: list[SkippedTier] | None = None,
        stall: StallDetection | None = None,
        stall_reason: str | None = None,
    ) -> None:
        """Append the whole consequence of one execution as a single atomic batch."""

        task_id = task.task_id
        events: list[AuditEvent] = [
            new_event(
                task_id=task_id,
                event_type=EventType.DUPLICATE_ANALYSIS_SKIPPED.value,
                status_from=None,
                status_to=None,
                actor="council",
                reason=f"inputs identical to an earlier attempt; tier {skip.from_tier} skipped",
                details={
                    "from_tier": skip.from_tier,
                    "to_tier": skip.to_tier,
                    "fingerprint": skip.fingerprint,
                },
            )
            for skip in skipped or ()
        ]

        if completed:
            events.append(self._attempt_event(attempt, next_tier_value=None))
            events.append(
                new_event(
                    task_id=task_id,
                    event_type=EventType.COMPLETED.value,
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.COMPLETE,
                    actor="verifier",
                    reason=f"verified at tier {attempt.tier} with confidence {attempt.confidence}",
                    details={"confidence": attempt.confidence, "backend": attempt.backend},
                ),
            )
            self.repository.append_many(events)
            report.completed.append(task_id)
            logger.info(
                "Task %s complete (attempt %d, tier %d, confidence %d)",
                task_id,
                attempt.attempt_no,
                attempt.tier,
                attempt.confidence,
            )
            return

        max_attempts = task.spec.effective_max_attempts(self.settings.escalation.max_attempts)
        upcoming = next_tier(
            attempt.tier,
            [proposal.confidence for proposal in attempt.proposals],
            attempt.attempt_no,
            max_attempts,
            self.council.thresholds,
        )
        events.append(
            self._attempt_event(
                attempt,
                next_tier_value=None if upcoming is TERMINAL else upcoming,
            ),
        )

        if stall is not None or stall_reason is not None:
            reason = stall.reason if stall is not None else str(stall_reason)
            error_kind = stall.kind.value if stall is not None else ErrorKind.STALL_TIMEOUT.value
            events.append(
                new_event(
                    task_id=task_id,
                    event_type=EventType.STALLED.value,
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.STUCK,
                    actor="monitor",
                    reason=reason,
                    details={
                        "error_kind": error_kind,
                        "partial_output": self._partial_output(attempt),
                    },
                ),
            )
            interim = TaskStatus.STUCK
            report.stalled.append(task_id)
        else:
            error_kind = attempt.error_kind or ErrorKind.BACKEND_ERROR.value
            events.append(
                new_event(
                    task_id=task_id,
                    event_type=EventType.FAILED.value,
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.ERROR,
                    actor=(
                        "verifier"
                        if error_kind == ErrorKind.VERIFICATION_FAILURE.value
                        else "dispatcher"
                    ),
                    reason=f"{error_kind}: {attempt.error_summary or attempt.outcome}",
                    details={"error_kind": error_kind, "outcome": attempt.outcome},
                ),
            )
            interim = TaskStatus.ERROR
            report.failed.append(task_id)

        if upcoming is TERMINAL:
            diagnosis = synthesize_diagnosis(
                task.spec,
                (*task.attempts, attempt),
                max_attempts=max_attempts,
            )
            blocked = TerminalBlocked(task_id, diagnosis)
            events.append(
                new_event(
                    task_id=task_id,
                    event_type=EventType.BLOCKED.value,
                    status_from=interim,
                    status_to=TaskStatus.BLOCKED,
                    actor="council",
                    reason=blocked.kind.value,
                    details={
                        "diagnosis": blocked.diagnosis,
                        "attempts": attempt.attempt_no,
                        "final_confidence": attempt.confidence,
                    },
                ),
            )
            report.blocked.append(task_id)
            state = self.repository.snapshot()
            dependents = self._upstream_block_events(state, {task_id: task_id}, exclude={task_id})
            events.extend(dependents)
            report.blocked.extend(event.task_id for event in dependents)
            logger.warning("%s (%d attempt(s))", blocked, attempt.attempt_no)
        else:
            events.append(
                new_event(
                    task_id=task_id,
                    event_type=EventType.REQUEUED.value,
                    status_from=interim,
                    status_to=TaskStatus.PENDING,
                    actor="council",
                    reason=f"retry at tier {upcoming}",
                    details={"tier": upcoming},
                ),
            )
            report.requeued.append(task_id)
            logger.info(
                "Task %s attempt %d failed (%s), requeued at tier %d",
                task_id,
                attempt.attempt_no,
                attempt.error_kind,
                upcoming,
            )
        self.repository.append_many(events)

    def _attempt_event(self, attempt: Attempt, *, next_tier_value: int | None) -> AuditEvent:
        return new_event(
            task_id=attempt.task_id,
            event_type=EventType.ATTEMPT_RECORDED.value,
            status_from=TaskStatus.RUNNING,
            status_to=TaskStatus.RUNNING,
            actor="dispatcher",
            reason=f"attempt {attempt.attempt_no} {attempt.outcome}",
            details={"attempt": attempt.to_dict(), "next_tier": next_tier_value},
        )

    @staticmethod
    def _partial_output(attempt: Attempt) -> str:
        if not attempt.log_ref:
            return ""
        logs = sorted(Path(attempt.log_ref).glob("*/output/agent_stdout.log"))
        return read_tail(logs[-1], _PARTIAL_OUTPUT_CHARS) if logs else ""

    # blocking

    def _propagate_upstream_blocks(self, report: TickReport) -> None:
        state = self.repository.snapshot()
        roots = {
            task.task_id: _block_root(task)
            for task in state.with_status(TaskStatus.BLOCKED)
        }
        events = self._upstream_block_events(state, roots, exclude=set())
        if events:
            self.repository.append_many(events)
            report.blocked.extend(event.task_id for event in events)

    @staticmethod
    def _upstream_block_events(
        state: GraphState,
        roots: dict[str, str],
        *,
        exclude: set[str],
    ) -> list[AuditEvent]:
        """Block every pending task that transitively depends on a blocked one."""

        dependents: dict[str, list[str]] = {task_id: [] for task_id in state.tasks}
        for task in state.tasks.values():
            for dep in task.spec.depends_on:
                if dep in dependents:
                    dependents[dep].append(task.task_id)

        origin: dict[str, str] = {}
        queue = list(roots)
        while queue:
            current = queue.pop(0)
            root = roots.get(current) or origin[current]
            for child in dependents.get(current, ()):
                if child in origin or child in roots or child in exclude:
                    continue
                if state.tasks[child].status != TaskStatus.PENDING:
                    continue
                origin[child] = root
                queue.append(child)

        return [
            new_event(
                task_id=task_id,
                event_type=EventType.BLOCKED.value,
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.BLOCKED,
                actor="council",
                reason=f"{UPSTREAM_BLOCKED_PREFIX}{root}",
                details={"upstream": root},
            )
            for task_id, root in origin.items()
        ]

    # dispatch

    def _dispatch(self, report: TickReport) -> None:
        if self._stop_requested or self._iterations_exhausted():
            return
        lingering = self.dispatcher.lingering()
        batch = self.scheduler.next_batch(
            self.repository.snapshot(),
            held_slots=len(lingering),
            held_files=frozenset().union(*(handle.files for handle in lingering)),
            held_tasks=frozenset(handle.task_id for handle in lingering),
        )
        for candidate in batch.candidates:
            if self._iterations_exhausted():
                break
            task = candidate.task
            attempt_no = task.attempt + 1
            tier = task.tier
            routing = self.router.resolve(task.spec) if tier == 0 else None
            backend = routing.backend if routing is not None else self.council.tier_backend(
                task.spec,
                tier,
            )
            details: dict[str, object] = {
                "attempt_no": attempt_no,
                "tier": tier,
                "backend": backend,
                "unblock_count": candidate.unblock_count,
                "batch": list(batch.task_ids),
                "phase": batch.phase,
            }
            if routing is not None:
                details["routing"] = routing.to_metadata()
            self.repository.append(
                new_event(
                    task_id=task.task_id,
                    event_type=EventType.DISPATCHED.value,
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.RUNNING,
                    actor="scheduler",
                    reason=f"attempt {attempt_no} at tier {tier}",
                    details=details,
                ),
            )
            running = self.repository.snapshot().get(task.task_id)
            self.dispatcher.submit(
                task_id=task.task_id,
                attempt_no=attempt_no,
                tier=tier,
                backend=backend,
                unit=partial(self._execute, running, attempt_no, tier),
                files=task.files,
            )
            self._dispatch_count += 1
            report.dispatched.append(task.task_id)
            logger.info(
                "Dispatched %s attempt %d at tier %d via %s",
                task.task_id,
                attempt_no,
                tier,
                backend,
            )

    def _execute(
        self,
        task: TaskState,
        attempt_no: int,
        tier: int,
        cancel_event: threading.Event,
    ) -> AttemptReport:
        # The clock starts when a worker picks the unit up, not at submit time.
        if not cancel_event.is_set():
            self.monitor.watch(
                task.task_id,
                timeout_seconds=self.settings.monitor.timeout_for(task.spec.complexity),
            )
        return self.council.run_attempt(
            task,
            attempt_no=attempt_no,
            tier=tier,
            cancel_event=cancel_event,
            on_progress=partial(self.tracker.touch, task.task_id),
        )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _block_root(task: TaskState) -> str:
    reason = task.blocked_reason or ""
    if reason.startswith(UPSTREAM_BLOCKED_PREFIX):
        return reason[len(UPSTREAM_BLOCKED_PREFIX) :]
    return task.task_id
