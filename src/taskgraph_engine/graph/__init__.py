"""Task graph document model, validation and compilation."""

from taskgraph_engine.graph.models import (
    Attempt,
    AuditEvent,
    CheckResult,
    Phase,
    Proposal,
    TaskGraph,
    TaskSpec,
    TaskStatus,
)
from taskgraph_engine.graph.store import TaskGraphStore, load_graph, save_graph_document

__all__ = [
    "Attempt",
    "AuditEvent",
    "CheckResult",
    "Phase",
    "Proposal",
    "TaskGraph",
    "TaskGraphStore",
    "TaskSpec",
    "TaskStatus",
    "load_graph",
    "save_graph_document",
]
