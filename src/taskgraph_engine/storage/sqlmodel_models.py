"""SQLModel ORM tables for the audit log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class AuditEventRow(SQLModel, table=True):
    """One immutable audit event; the migration forbids UPDATE and DELETE."""

    __tablename__ = "audit_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_audit_events_task_sequence", "task_id", "sequence"),)

    sequence: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    actor: str
    reason: str = ""
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
