from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from taskgraph_engine.graph.models import TaskStatus
from taskgraph_engine.state import EventType, InvalidTransition, find_replay_mismatches
from taskgraph_engine.storage.repository import AuditLogRepository, new_event

pytestmark = [
    allure.epic("Audit Log"),
    allure.feature("Persist & Replay"),
]


def _registered(task_id: str, *, depends_on: tuple[str, ...] = ()):
    return new_event(
        task_id=task_id,
        event_type=EventType.TASK_REGISTERED.value,
        status_from=None,
        status_to=TaskStatus.PENDING,
        actor="store",
        reason="registered from task source",
        details={
            "task": {"id": task_id, "subject": f"Do {task_id}", "dependsOn": list(depends_on)},
            "phase": 0,
            "phase_name": "main",
        },
    )


def _dispatched(task_id: str):
    return new_event(
        task_id=task_id,
        event_type=EventType.DISPATCHED.value,
        status_from=TaskStatus.PENDING,
        status_to=TaskStatus.RUNNING,
        actor="scheduler",
        details={"attempt_no": 1, "tier": 0, "backend": "claude"},
    )


def test_schema_is_migrated_to_head(tmp_path: Path) -> None:
    repository = AuditLogRepository(tmp_path / "nested" / "audit.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        triggers = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'trigger' ORDER BY name"),
        ).scalars().all()
    assert version == "20261017_0001"
    assert triggers == ["audit_events_no_delete", "audit_events_no_update"]
    repository.close()


def test_events_cannot_be_updated_or_deleted(repository: AuditLogRepository) -> None:
    repository.append(_registered("A"))

    with pytest.raises(DBAPIError, match="append-only"):
        with repository.engine.begin() as connection:
            connection.execute(text("UPDATE audit_events SET actor = 'someone'"))
    with pytest.raises(DBAPIError, match="append-only"):
        with repository.engine.begin() as connection:
            connection.execute(text("DELETE FROM audit_events"))

    assert len(repository.list_events()) == 1


def test_illegal_transition_rolls_back_the_whole_batch(repository: AuditLogRepository) -> None:
    repository.append(_registered("A"))
    completed_while_pending = new_event(
        task_id="A",
        event_type=EventType.COMPLETED.value,
        status_from=TaskStatus.PENDING,
        status_to=TaskStatus.COMPLETE,
        actor="verifier",
    )

    with pytest.raises(InvalidTransition):
        repository.append_many([_dispatched("A"), _registered("B"), completed_while_pending])

    assert [event.task_id for event in repository.list_events()] == ["A"]
    assert repository.snapshot().tasks["A"].status == TaskStatus.PENDING
    assert "B" not in repository.snapshot().tasks


def test_replay_matches_live_snapshot(settings, repository: AuditLogRepository) -> None:
    repository.append_many([_registered("A"), _registered("B", depends_on=("A",))])
    repository.append(_dispatched("A"))
    repository.append(
        new_event(
            task_id="A",
            event_type=EventType.PROGRESS.value,
            status_from=TaskStatus.RUNNING,
            status_to=TaskStatus.RUNNING,
            actor="backend",
            reason="compiling",
        ),
    )

    live = repository.snapshot()
    fresh = AuditLogRepository(settings.db_path)
    try:
        assert fresh.snapshot() == live
        assert fresh.replay() == live
    finally:
        fresh.close()
    assert live.last_sequence == 4
    assert live.tasks["A"].status == TaskStatus.RUNNING
    assert live.tasks["B"].spec.depends_on == ("A",)


def test_unknown_task_and_double_registration_are_rejected(
    repository: AuditLogRepository,
) -> None:
    with pytest.raises(InvalidTransition, match="unknown task"):
        repository.append(_dispatched("ghost"))

    repository.append(_registered("A"))
    with pytest.raises(InvalidTransition, match="already registered"):
        repository.append(_registered("A"))


def test_replay_check_reports_tampered_logs(repository: AuditLogRepository) -> None:
    repository.append_many([_registered("A"), _registered("B")])
    repository.append(_dispatched("A"))
    events = repository.list_events()

    assert find_replay_mismatches(events) == []

    reordered = [events[1], events[0], events[2]]
    assert any("out of order" in problem for problem in find_replay_mismatches(reordered))

    duplicated_dispatch = [*events, replace(events[2], sequence=99)]
    problems = find_replay_mismatches(duplicated_dispatch)
    assert any(problem.startswith("Log does not replay") for problem in problems)
