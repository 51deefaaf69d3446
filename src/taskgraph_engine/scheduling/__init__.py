"""Dependency resolution and parallel-safe batch selection."""

from taskgraph_engine.scheduling.batch import Batch, BatchScheduler
from taskgraph_engine.scheduling.resolver import Candidate, DependencyResolver

__all__ = ["Batch", "BatchScheduler", "Candidate", "DependencyResolver"]
