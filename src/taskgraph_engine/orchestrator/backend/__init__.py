"""Execution backend implementations."""

from taskgraph_engine.orchestrator.backend.base import (
    ExecutionBackend,
    ExecutionContext,
    ExecutionMode,
    Outcome,
)
from taskgraph_engine.orchestrator.backend.cli_backend import CliAgentBackend
from taskgraph_engine.orchestrator.backend.registry import BackendRegistry

__all__ = [
    "BackendRegistry",
    "CliAgentBackend",
    "ExecutionBackend",
    "ExecutionContext",
    "ExecutionMode",
    "Outcome",
]
