"""Dependency-graph task orchestration with self-healing execution."""

__version__ = "0.1.0"
