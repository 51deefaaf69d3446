"""Backend-selection policy for Tier-0 execution."""

from __future__ import annotations

from dataclasses import dataclass

from taskgraph_engine.config import BackendSettings
from taskgraph_engine.graph.models import TaskSpec
from taskgraph_engine.storage.common import utc_now

ROUTING_SCHEMA_VERSION = 1
FRONTEND_TAGS = frozenset(
    {"ui", "components", "frontend", "design", "css", "styles", "layout", "view"},
)
BACKEND_TAGS = frozenset(
    {"core", "engine", "api", "backend", "data", "worker", "db", "database", "server"},
)


@dataclass(slots=True)
class FrozenRouting:
    """Resolved routing stored in the dispatch event."""

    schema_version: int
    backend: str
    policy: str
    reason: str
    resolved_at: str

    def to_metadata(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "backend": self.backend,
            "policy": self.policy,
            "reason": self.reason,
            "resolved_at": self.resolved_at,
        }


class BackendRouter:
    """Pick the first backend for a task from its tags or a fixed policy."""

    def __init__(self, settings: BackendSettings) -> None:
        self.settings = settings

    def resolve(self, task: TaskSpec) -> FrozenRouting:
        backend, reason = self._select(task)
        return FrozenRouting(
            schema_version=ROUTING_SCHEMA_VERSION,
            backend=backend,
            policy=self.settings.routing_policy,
            reason=reason,
            resolved_at=utc_now().isoformat(),
        )

    def _select(self, task: TaskSpec) -> tuple[str, str]:
        if task.backend:
            return task.backend.strip().lower(), "task_override"
        if self.settings.routing_policy == "fixed" and self.settings.fixed_backend:
            return self.settings.fixed_backend, "fixed_policy"

        tags = {tag.strip().lower() for tag in task.tags}
        is_frontend = bool(tags & FRONTEND_TAGS)
        is_backend = bool(tags & BACKEND_TAGS)
        if is_frontend and is_backend:
            return self.settings.frontend_backend, "mixed_tags"
        if is_frontend:
            return self.settings.frontend_backend, "frontend_tags"
        if is_backend:
            return self.settings.backend_backend, "backend_tags"
        return self.settings.fast, "default_fast"
