"""Escalation Council: tier policy and the per-tier execution flows."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from taskgraph_engine.config import Settings
from taskgraph_engine.errors import ErrorKind, VerificationFailure
from taskgraph_engine.graph.models import Attempt, Proposal, TaskSpec
from taskgraph_engine.orchestrator.backend.base import ExecutionContext, ExecutionMode, Outcome
from taskgraph_engine.orchestrator.context import ContextGatherer, input_fingerprint
from taskgraph_engine.orchestrator.dispatcher import ExecutionDispatcher
from taskgraph_engine.orchestrator.routing import BackendRouter
from taskgraph_engine.orchestrator.verification import VerificationRunner, first_failure
from taskgraph_engine.orchestrator.workdir import AttemptWorkdirManager
from taskgraph_engine.state import TaskState
from taskgraph_engine.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_TIER = 4


class Terminal(Enum):
    """Escalation is exhausted."""

    TERMINAL = "terminal"


TERMINAL = Terminal.TERMINAL


@dataclass(slots=True, frozen=True)
class TierThresholds:
    accept: int = 70
    skip: int = 60


def next_tier(
    current_tier: int,
    confidences: Sequence[int],
    attempts_used: int,
    max_attempts: int,
    thresholds: TierThresholds = TierThresholds(),
) -> int | Terminal:
    """Tier for the next execution, or ``TERMINAL`` once attempts are used up.

    A low best confidence at Tier 0/1 jumps straight to Tier 2. Executions that
    produced no confidence at all (stalls, timeouts) advance one tier.
    """

    if attempts_used >= max_attempts:
        return TERMINAL
    if current_tier in (0, 1) and confidences and max(confidences) < thresholds.skip:
        return 2
    return min(current_tier + 1, MAX_TIER)


@dataclass(slots=True)
class SkippedTier:
    from_tier: int
    to_tier: int
    fingerprint: str


@dataclass(slots=True)
class AttemptReport:
    """What an execution unit hands back to the coordinator."""

    attempt: Attempt
    completed: bool
    skipped: list[SkippedTier] = field(default_factory=list)


class EscalationCouncil:
    """Runs one attempt of a task at a given tier, then verifies it."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        dispatcher: ExecutionDispatcher[AttemptReport],
        router: BackendRouter,
        verifier: VerificationRunner,
        gatherer: ContextGatherer,
        workdirs: AttemptWorkdirManager,
    ) -> None:
        self.settings = settings
        self.dispatcher = dispatcher
        self.router = router
        self.verifier = verifier
        self.gatherer = gatherer
        self.workdirs = workdirs

    @property
    def thresholds(self) -> TierThresholds:
        return TierThresholds(
            accept=self.settings.escalation.accept_threshold,
            skip=self.settings.escalation.skip_threshold,
        )

    def tier_backend(self, task: TaskSpec, tier: int) -> str:
        """Name of the backend that implements at ``tier`` (for dispatch events)."""

        roles = self.settings.backends
        if tier == 0:
            return self.router.resolve(task).backend
        if tier == 1:
            return "+".join(roles.parallel[:2])
        if tier == 2:
            return roles.deep
        return roles.synthesizer

    def run_attempt(
        self,
        task: TaskState,
        *,
        attempt_no: int,
        tier: int,
        cancel_event: threading.Event,
        on_progress: Callable[[str | None], None],
    ) -> AttemptReport:
        started_at = utc_now()
        spec = task.spec
        prior = task.attempts
        questions = _open_questions(prior)
        gathered: dict[str, Any] = {}
        skipped: list[SkippedTier] = []

        if tier >= 1:
            gathered = self.gatherer.gather(spec, questions)
        fingerprint = input_fingerprint(
            task=spec,
            gathered=gathered,
            prior_rationales=[attempt.rationale for attempt in prior],
        )
        if tier < MAX_TIER and _seen(prior, fingerprint):
            advanced = tier + 1
            logger.info(
                "Task %s: inputs identical to an earlier attempt, tier %d skipped for %d",
                spec.task_id,
                tier,
                advanced,
            )
            skipped.append(SkippedTier(from_tier=tier, to_tier=advanced, fingerprint=fingerprint))
            tier = advanced

        session = _AttemptSession(
            council=self,
            task=spec,
            attempt_no=attempt_no,
            tier=tier,
            history=tuple(attempt.to_dict() for attempt in prior),
            gathered=gathered,
            cancel_event=cancel_event,
            on_progress=on_progress,
        )
        setup_failure = self._run_setup(spec, attempt_no, cancel_event, on_progress)
        if setup_failure is not None:
            adopted, backend = None, "setup"
        else:
            seed = _latest_root_cause(prior)
            flow = {
                0: self._tier0,
                1: self._tier1,
                2: self._tier2,
                3: self._tier3,
                4: self._tier4,
            }[tier]
            adopted, backend = flow(session, seed)

        checks = ()
        if adopted is not None and not cancel_event.is_set():
            commands = spec.verification or self.settings.verification.default_commands
            checks = self.verifier.run(
                commands,
                log_dir=self.workdirs.verification_dir(spec.task_id, attempt_no),
                cancel_event=cancel_event,
                on_progress=lambda: on_progress("verification output"),
            )

        outcome, error_kind, error_summary = self._judge(
            spec.task_id,
            adopted,
            checks,
            setup_failure,
        )
        proposals = tuple(session.proposals)
        attempt = Attempt(
            task_id=spec.task_id,
            attempt_no=attempt_no,
            tier=tier,
            backend=backend,
            started_at=started_at,
            finished_at=utc_now(),
            outcome=outcome,
            confidence=adopted.confidence if adopted is not None else _best_confidence(proposals),
            rationale=adopted.rationale if adopted is not None else _summary_rationale(proposals),
            log_ref=str(self.workdirs.attempt_dir(spec.task_id, attempt_no)),
            error_kind=error_kind,
            error_summary=error_summary,
            proposals=proposals,
            checks=checks,
            fingerprint=fingerprint,
            root_cause=_pick_root_cause(proposals),
            recommendation=_pick_recommendation(proposals),
            questions=_collect_questions(proposals),
        )
        return AttemptReport(attempt=attempt, completed=error_kind is None, skipped=skipped)

    def _judge(
        self,
        task_id: str,
        adopted: Outcome | None,
        checks: Sequence[Any],
        setup_failure: str | None,
    ) -> tuple[str, str | None, str | None]:
        accept = self.settings.escalation.accept_threshold
        if setup_failure is not None:
            return "failure", ErrorKind.BACKEND_ERROR.value, setup_failure
        if adopted is None:
            return (
                "failure",
                ErrorKind.LOW_CONFIDENCE.value,
                f"no proposal reached confidence {accept}",
            )
        if adopted.cancelled:
            return "cancelled", ErrorKind.STALL_TIMEOUT.value, "execution cancelled"
        if not adopted.succeeded:
            return (
                adopted.result.value,
                adopted.error_kind or ErrorKind.BACKEND_ERROR.value,
                adopted.error_summary or f"backend reported {adopted.result.value}",
            )
        failed = first_failure(checks)
        if failed is not None:
            failure = VerificationFailure(task_id, failed.command, failed.exit_code)
            return (
                "failure",
                failure.kind.value,
                str(failure) + (" (timed out)" if failed.timed_out else ""),
            )
        if (
            self.settings.escalation.require_confidence_for_completion
            and adopted.confidence < accept
        ):
            return (
                "failure",
                ErrorKind.LOW_CONFIDENCE.value,
                f"confidence {adopted.confidence} below {accept}",
            )
        return "success", None, None

    def _run_setup(
        self,
        spec: TaskSpec,
        attempt_no: int,
        cancel_event: threading.Event,
        on_progress: Callable[[str | None], None],
    ) -> str | None:
        if not spec.setup:
            return None
        log_dir = self.workdirs.attempt_dir(spec.task_id, attempt_no) / "setup"
        checks = self.verifier.run(
            [spec.setup],
            log_dir=log_dir,
            cancel_event=cancel_event,
            on_progress=lambda: on_progress("setup output"),
        )
        failed = first_failure(checks)
        if failed is None:
            return None
        return f"setup {failed.command!r} exited with {failed.exit_code}"

    def _tier0(self, session: _AttemptSession, seed: str | None) -> tuple[Outcome | None, str]:
        backend = self.router.resolve(session.task).backend
        return session.call(backend, ExecutionMode.IMPLEMENT, root_cause=seed), backend

    def _tier1(self, session: _AttemptSession, seed: str | None) -> tuple[Outcome | None, str]:
        pair = list(self.settings.backends.parallel[:2])
        outcomes = session.parallel(pair, ExecutionMode.PROPOSE, root_cause=seed)
        viable = [
            (outcome.confidence, -position, backend)
            for position, (backend, outcome) in enumerate(zip(pair, outcomes, strict=True))
            if outcome.succeeded
        ]
        if not viable:
            return None, "+".join(pair)
        confidence, _, backend = max(viable)
        if confidence < self.thresholds.accept:
            logger.info(
                "Task %s tier 1: best proposal %s at %d is below %d",
                session.task.task_id,
                backend,
                confidence,
                self.thresholds.accept,
            )
            return None, "+".join(pair)
        proposals = tuple(session.proposals)
        return (
            session.call(backend, ExecutionMode.IMPLEMENT, proposals=proposals, root_cause=seed),
            backend,
        )

    def _tier2(self, session: _AttemptSession, seed: str | None) -> tuple[Outcome | None, str]:
        deep = self.settings.backends.deep
        return session.call(deep, ExecutionMode.IMPLEMENT, root_cause=seed), deep

    def _tier3(self, session: _AttemptSession, seed: str | None) -> tuple[Outcome | None, str]:
        council = list(self.settings.backends.council)
        session.parallel(council, ExecutionMode.PROPOSE, root_cause=seed)
        synthesizer = self.settings.backends.synthesizer
        proposals = tuple(p for p in session.proposals if p.mode == ExecutionMode.PROPOSE.value)
        return (
            session.call(
                synthesizer,
                ExecutionMode.IMPLEMENT,
                proposals=proposals,
                root_cause=seed,
            ),
            synthesizer,
        )

    def _tier4(self, session: _AttemptSession, seed: str | None) -> tuple[Outcome | None, str]:
        analysis = session.call(
            self.settings.backends.deep,
            ExecutionMode.ANALYZE,
            root_cause=seed,
        )
        if session.cancel_event.is_set():
            return analysis, self.settings.backends.deep
        new_seed = analysis.root_cause or analysis.rationale or seed
        return self._tier3(session, new_seed)


class _AttemptSession:
    """Backend calls made during one attempt, numbered in call order."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        council: EscalationCouncil,
        task: TaskSpec,
        attempt_no: int,
        tier: int,
        history: tuple[dict[str, Any], ...],
        gathered: dict[str, Any],
        cancel_event: threading.Event,
        on_progress: Callable[[str | None], None],
    ) -> None:
        self.council = council
        self.task = task
        self.attempt_no = attempt_no
        self.tier = tier
        self.history = history
        self.gathered = gathered
        self.cancel_event = cancel_event
        self.on_progress = on_progress
        self.proposals: list[Proposal] = []
        self._lock = threading.Lock()
        self._call_index = 0

    def call(
        self,
        backend: str,
        mode: ExecutionMode,
        *,
        proposals: tuple[Proposal, ...] = (),
        root_cause: str | None = None,
    ) -> Outcome:
        settings = self.council.settings
        with self._lock:
            self._call_index += 1
            call_index = self._call_index
        prompt = build_prompt(
            task=self.task,
            mode=mode,
            tier=self.tier,
            root_cause=root_cause,
            proposals=proposals,
            history_size=len(self.history),
        )
        materialized = self.council.workdirs.materialize_call(
            task=self.task,
            attempt_no=self.attempt_no,
            tier=self.tier,
            call_index=call_index,
            backend=backend,
            mode=mode.value,
            prompt=prompt,
            context_payload={
                "history": list(self.history),
                "gathered": self.gathered,
                "proposals": [proposal.to_dict() for proposal in proposals],
                "root_cause": root_cause,
            },
            workspace_root=settings.workspace_root,
        )
        context = ExecutionContext(
            task_id=self.task.task_id,
            attempt_no=self.attempt_no,
            tier=self.tier,
            mode=mode,
            prompt=prompt,
            workdir=materialized.workdir,
            workspace_root=settings.workspace_root,
            manifest_path=materialized.manifest_path,
            model=self.council.dispatcher.registry.model_for(backend),
            history=self.history,
            gathered=self.gathered,
            proposals=proposals,
            root_cause=root_cause,
            cancel_event=self.cancel_event,
            progress_callback=self.on_progress,
        )
        self.on_progress(f"{backend} {mode.value} started")
        timeout = settings.monitor.timeout_for(self.task.complexity)
        outcome = self.council.dispatcher.call(backend, self.task, context, timeout)
        with self._lock:
            self.proposals.append(outcome.to_proposal(backend=backend, mode=mode))
        return outcome

    def parallel(
        self,
        backends: Sequence[str],
        mode: ExecutionMode,
        *,
        root_cause: str | None,
    ) -> list[Outcome]:
        with ThreadPoolExecutor(
            max_workers=max(1, len(backends)),
            thread_name_prefix="taskgraph-council",
        ) as pool:
            futures = [
                pool.submit(self.call, backend, mode, root_cause=root_cause)
                for backend in backends
            ]
            return [future.result() for future in futures]


_MODE_INSTRUCTIONS = {
    ExecutionMode.IMPLEMENT: "Implement the task in the workspace.",
    ExecutionMode.PROPOSE: (
        "Do not modify the workspace. Propose an approach and score how confident you are "
        "that it will pass verification."
    ),
    ExecutionMode.ANALYZE: (
        "Do not modify the workspace. Analyze why earlier attempts failed and report a "
        "root cause, a recommendation and the questions whose answers would raise confidence."
    ),
}


def build_prompt(  # noqa: PLR0913
    *,
    task: TaskSpec,
    mode: ExecutionMode,
    tier: int,
    root_cause: str | None,
    proposals: Sequence[Proposal],
    history_size: int,
) -> str:
    lines = [
        f"Task {task.task_id}: {task.subject}",
        "",
        task.description or "(no description)",
        "",
        f"Escalation tier: {tier}. {_MODE_INSTRUCTIONS[mode]}",
    ]
    if task.files:
        lines.append(f"Only touch these files: {', '.join(sorted(task.files))}")
    if task.verification:
        lines.append("Verification commands that must pass:")
        lines.extend(f"  - {command}" for command in task.verification)
    if history_size:
        lines.append(f"{history_size} earlier attempt(s) failed; see history in context.json.")
    if root_cause:
        lines.extend(["", f"Suspected root cause: {root_cause}"])
    if proposals:
        lines.extend(["", "Proposals to choose from (see context.json for details):"])
        lines.extend(
            f"  - {proposal.backend} ({proposal.confidence}): {proposal.rationale}"
            for proposal in proposals
        )
    return "\n".join(lines)


def synthesize_diagnosis(
    spec: TaskSpec,
    attempts: Sequence[Attempt],
    *,
    max_attempts: int,
) -> str:
    """Human-readable summary retained on a blocked task."""

    lines = [f"Task {spec.task_id} blocked after {len(attempts)} attempt(s) (max {max_attempts})."]
    for attempt in attempts:
        scores = ", ".join(f"{p.backend}/{p.mode}={p.confidence}" for p in attempt.proposals)
        lines.append(
            f"- attempt {attempt.attempt_no} tier {attempt.tier} via {attempt.backend}: "
            f"{attempt.outcome} confidence={attempt.confidence}"
            + (f" [{scores}]" if scores else "")
            + (f" {attempt.error_kind}: {attempt.error_summary}" if attempt.error_kind else ""),
        )
    root_cause = _latest_root_cause(attempts)
    if root_cause:
        lines.append(f"Last root cause: {root_cause}")
    recommendation = next(
        (a.recommendation for a in reversed(attempts) if a.recommendation),
        None,
    )
    if recommendation:
        lines.append(f"Recommendation: {recommendation}")
    questions = _open_questions(attempts)
    if questions:
        lines.append("Unanswered questions:")
        lines.extend(f"  - {question}" for question in questions)
    if attempts and attempts[-1].log_ref:
        lines.append(f"Logs: {Path(attempts[-1].log_ref).parent}")
    return "\n".join(lines)


def _seen(prior: Sequence[Attempt], fingerprint: str) -> bool:
    return any(attempt.fingerprint == fingerprint for attempt in prior)


def _open_questions(attempts: Sequence[Attempt]) -> tuple[str, ...]:
    return attempts[-1].questions if attempts else ()


def _latest_root_cause(attempts: Sequence[Attempt]) -> str | None:
    return next((a.root_cause for a in reversed(attempts) if a.root_cause), None)


def _best_confidence(proposals: Sequence[Proposal]) -> int:
    return max((proposal.confidence for proposal in proposals), default=0)


def _summary_rationale(proposals: Sequence[Proposal]) -> str:
    return "; ".join(f"{p.backend}: {p.rationale}" for p in proposals if p.rationale)


def _pick_root_cause(proposals: Sequence[Proposal]) -> str | None:
    analyses = [p for p in proposals if p.mode == ExecutionMode.ANALYZE.value and p.root_cause]
    if analyses:
        return analyses[-1].root_cause
    return next((p.root_cause for p in reversed(proposals) if p.root_cause), None)


def _pick_recommendation(proposals: Sequence[Proposal]) -> str | None:
    return next((p.recommendation for p in reversed(proposals) if p.recommendation), None)


def _collect_questions(proposals: Sequence[Proposal]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(q for p in proposals for q in p.questions))
