"""Text rendering for run summaries, task listings and audit inspection."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from taskgraph_engine.graph.models import AuditEvent, TaskStatus
from taskgraph_engine.orchestrator.engine import RunSummary
from taskgraph_engine.state import GraphState, TaskState
from taskgraph_engine.storage.common import utc_now


def render_run_summary(summary: RunSummary, state: GraphState, *, db_path: object) -> list[str]:
    """Per-task outcome lines; blocked tasks carry their final confidence."""

    lines = [
        "Run summary: "
        f"stopped={summary.stopped_reason or '-'} dispatched={summary.dispatched} "
        f"completed={summary.completed} failed={summary.failed} stalled={summary.stalled} "
        f"requeued={summary.requeued} blocked={summary.blocked}",
        render_counts(state),
    ]
    for task in state.tasks.values():
        line = (
            f"  {task.task_id} status={task.status.value} attempts={task.attempt} "
            f"tier={task.tier}"
        )
        if task.status == TaskStatus.BLOCKED:
            confidence = task.final_confidence
            line += f" final_confidence={confidence if confidence is not None else '-'}"
            line += f" reason={task.blocked_reason or '-'}"
        elif task.last_error and task.status != TaskStatus.COMPLETE:
            line += f" last_error={task.last_error}"
        lines.append(line)
    lines.append(f"Audit log: {db_path} (taskgraph inspect --task-id <id>)")
    return lines


def render_counts(state: GraphState) -> str:
    counts = state.counts()
    body = " ".join(f"{status}={count}" for status, count in counts.items())
    return f"Tasks: total={len(state.tasks)} {body}"


def render_task_list(tasks: Sequence[TaskState]) -> list[str]:
    lines = [f"Tasks: {len(tasks)}"]
    for task in tasks:
        confidence = task.final_confidence
        lines.append(
            f"  {task.task_id} phase={task.phase_name} status={task.status.value} "
            f"attempt={task.attempt} tier={task.tier} "
            f"confidence={confidence if confidence is not None else '-'} "
            f"subject={task.spec.subject}",
        )
    return lines


def render_task_details(task: TaskState, events: Sequence[AuditEvent]) -> list[str]:
    spec = task.spec
    lines = [
        f"Task: {task.task_id}",
        f"Subject: {spec.subject}",
        f"Phase: {task.phase_name} ({spec.phase})",
        f"Status: {task.status.value}",
        f"Attempt: {task.attempt} Tier: {task.tier}",
        f"Depends on: {', '.join(spec.depends_on) or '-'}",
        f"Files: {', '.join(sorted(spec.files)) or '-'}",
        f"Confidences: {', '.join(str(value) for value in task.confidences) or '-'}",
        f"Skipped tiers: {', '.join(str(tier) for tier in task.skipped_tiers) or '-'}",
        f"Last error: {task.last_error or '-'}",
        f"Blocked reason: {task.blocked_reason or '-'}",
    ]
    for attempt in task.attempts:
        lines.append(
            f"  attempt {attempt.attempt_no} tier={attempt.tier} backend={attempt.backend} "
            f"outcome={attempt.outcome} confidence={attempt.confidence} "
            f"error={attempt.error_kind or '-'} logs={attempt.log_ref or '-'}",
        )
        for proposal in attempt.proposals:
            lines.append(
                f"    {proposal.backend}/{proposal.mode} {proposal.result.value} "
                f"confidence={proposal.confidence} "
                f"artifacts={', '.join(proposal.artifacts) or '-'}",
            )
        for check in attempt.checks:
            lines.append(
                f"    check {'ok' if check.passed else 'FAILED'} exit={check.exit_code} "
                f"{check.command}",
            )
    if task.diagnosis:
        lines.append("Diagnosis:")
        lines.extend(f"  {line}" for line in task.diagnosis.splitlines())
    lines.append(f"Events: {len(events)}")
    for event in events:
        lines.append(
            f"  #{event.sequence} {event.created_at.isoformat()} {event.event_type} "
            f"{event.status_from.value if event.status_from else '-'} -> "
            f"{event.status_to.value if event.status_to else '-'} "
            f"actor={event.actor} {event.reason}".rstrip(),
        )
    return lines


# Board and status scripts read the flat `tasks` list with these status words.
_EXPORT_STATUS = {
    TaskStatus.PENDING: "pending",
    TaskStatus.RUNNING: "in_progress",
    TaskStatus.STUCK: "in_progress",
    TaskStatus.ERROR: "failed",
    TaskStatus.COMPLETE: "completed",
    TaskStatus.BLOCKED: "blocked",
}


def export_document(state: GraphState) -> dict[str, Any]:
    """Snapshot as a flat task graph document, with runtime status per task.

    ``blockedBy`` lists only dependencies that are not complete yet and ``sprint``
    numbers phases from 1; ``dependsOn`` keeps the full dependency list so the
    export loads back as a graph with the same phases.
    """

    tasks: list[dict[str, Any]] = []
    ordered = sorted(state.tasks.values(), key=lambda task: task.spec.phase)
    for task in ordered:
        entry = task.spec.to_document()
        entry.update(
            {
                "status": _EXPORT_STATUS[task.status],
                "engineStatus": task.status.value,
                "blockedBy": [
                    dep
                    for dep in task.spec.depends_on
                    if dep not in state.tasks or state.tasks[dep].status != TaskStatus.COMPLETE
                ],
                "sprint": task.spec.phase + 1,
                "phase": task.phase_name,
                "attempt": task.attempt,
                "tier": task.tier,
                "confidences": list(task.confidences),
                "lastError": task.last_error,
            },
        )
        if task.blocked_reason:
            entry["blockedReason"] = task.blocked_reason
        tasks.append(entry)
    counts = state.counts()
    return {
        "meta": {
            "exportedAt": utc_now().isoformat(),
            "counts": {
                "total": len(tasks),
                "completed": counts[TaskStatus.COMPLETE.value],
                "blocked": counts[TaskStatus.BLOCKED.value],
                "readyToStart": sum(1 for task in tasks if not task["blockedBy"]),
            },
        },
        "tasks": tasks,
    }
