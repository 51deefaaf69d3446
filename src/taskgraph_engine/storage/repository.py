"""Append-only audit log repository with a replay-derived snapshot cache."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from sqlmodel import Session, col, select

from taskgraph_engine.graph.models import AuditEvent, TaskStatus
from taskgraph_engine.state import GraphState, apply_event, replay
from taskgraph_engine.storage.alembic_runner import upgrade_head
from taskgraph_engine.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from taskgraph_engine.storage.sqlmodel_models import AuditEventRow

logger = logging.getLogger(__name__)


class AuditLogRepository:
    """Audit persistence facade backed by SQLModel + SQLite.

    ``append`` writes events in one transaction and folds them into the live
    snapshot with the same reducer ``replay`` uses, so the cache never drifts
    from the log.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._lock = threading.Lock()
        self._state: GraphState | None = None

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def append(self, event: AuditEvent) -> AuditEvent:
        """Atomically persist one event and return it with its sequence."""

        return self.append_many([event])[0]

    def append_many(self, events: Sequence[AuditEvent]) -> list[AuditEvent]:
        """Persist several events in one transaction; all or none are written.

        Every event is checked against the current snapshot before commit, so an
        illegal transition raises ``InvalidTransition`` and nothing is stored.
        """

        with self._lock:
            state = self._load_state()
            stored: list[AuditEvent] = []
            with Session(self.engine) as session:
                for event in events:
                    normalized = _normalize(event)
                    row = AuditEventRow(
                        task_id=normalized.task_id,
                        event_type=normalized.event_type,
                        status_from=_status_value(normalized.status_from),
                        status_to=_status_value(normalized.status_to),
                        actor=normalized.actor,
                        reason=normalized.reason,
                        details_json=json.dumps(
                            normalized.details,
                            ensure_ascii=False,
                            sort_keys=True,
                        )
                        if normalized.details
                        else None,
                        created_at=to_db_datetime(normalized.created_at),
                    )
                    session.add(row)
                    session.flush()
                    with_sequence = replace(normalized, sequence=row.sequence)
                    state = apply_event(state, with_sequence)
                    stored.append(with_sequence)
                session.commit()
            self._state = state

        for event in stored:
            logger.debug(
                "audit #%s %s %s %s->%s (%s)",
                event.sequence,
                event.task_id,
                event.event_type,
                _status_value(event.status_from),
                _status_value(event.status_to),
                event.actor,
            )
        return stored

    def list_events(self, *, task_id: str | None = None) -> list[AuditEvent]:
        """Read events in append order, optionally for one task."""

        with Session(self.engine) as session:
            statement = select(AuditEventRow)
            if task_id is not None:
                statement = statement.where(AuditEventRow.task_id == task_id)
            rows = session.exec(statement.order_by(col(AuditEventRow.sequence).asc())).all()
            return [_to_event(row) for row in rows]

    def snapshot(self) -> GraphState:
        """Current derived state (cached, rebuilt from the log on first use)."""

        with self._lock:
            return self._load_state()

    def replay(self) -> GraphState:
        """Rebuild the snapshot from an empty state, bypassing the cache."""

        return replay(self.list_events())

    def _load_state(self) -> GraphState:
        if self._state is None:
            self._state = self.replay()
            logger.debug(
                "Rebuilt snapshot from audit log: tasks=%d last_sequence=%d",
                len(self._state.tasks),
                self._state.last_sequence,
            )
        return self._state


def new_event(  # noqa: PLR0913
    *,
    task_id: str,
    event_type: str,
    status_from: TaskStatus | None,
    status_to: TaskStatus | None,
    actor: str,
    reason: str = "",
    details: dict[str, object] | None = None,
) -> AuditEvent:
    """Build an unsaved event stamped with the current time."""

    return AuditEvent(
        task_id=task_id,
        event_type=event_type,
        status_from=status_from,
        status_to=status_to,
        actor=actor,
        reason=reason,
        created_at=utc_now(),
        details=dict(details or {}),
    )


def _normalize(event: AuditEvent) -> AuditEvent:
    """Make the in-memory event identical to what a later read returns."""

    details = json.loads(json.dumps(event.details, ensure_ascii=False)) if event.details else {}
    return replace(
        event,
        created_at=to_utc_aware(to_db_datetime(event.created_at)),
        details=details,
    )


def _status_value(status: TaskStatus | None) -> str | None:
    return status.value if status is not None else None


def _to_event(row: AuditEventRow) -> AuditEvent:
    return AuditEvent(
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        actor=row.actor,
        reason=row.reason,
        created_at=to_utc_aware(row.created_at),
        details=json.loads(row.details_json) if row.details_json else {},
        sequence=row.sequence,
    )
