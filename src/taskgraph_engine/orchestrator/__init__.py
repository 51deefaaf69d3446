"""Execution, monitoring and escalation of task graph work."""
