"""Dependency Resolver: unblocked-task detection and leverage ranking."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from taskgraph_engine.graph.models import TaskStatus
from taskgraph_engine.state import GraphState, TaskState


@dataclass(slots=True, frozen=True)
class Candidate:
    """Unblocked task with its ranking inputs."""

    task: TaskState
    unblock_count: int

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def sort_key(self) -> tuple[int, int, str]:
        return (-self.unblock_count, self.task.spec.complexity_rank, self.task.task_id)


class DependencyResolver:
    """Stateless queries over a graph snapshot.

    File locks are never stored: they are derived from the ``running`` tasks of
    the snapshot passed in, on every call.
    """

    @staticmethod
    def running_files(state: GraphState) -> frozenset[str]:
        files: set[str] = set()
        for task in state.tasks.values():
            if task.status == TaskStatus.RUNNING:
                files.update(task.files)
        return frozenset(files)

    def is_unblocked(
        self,
        task: TaskState,
        state: GraphState,
        running_files: frozenset[str] | None = None,
    ) -> bool:
        """Pending, every dependency complete, and no file shared with running work."""

        if task.status != TaskStatus.PENDING:
            return False
        for dep in task.spec.depends_on:
            dep_state = state.tasks.get(dep)
            if dep_state is None or dep_state.status != TaskStatus.COMPLETE:
                return False
        locked = self.running_files(state) if running_files is None else running_files
        return locked.isdisjoint(task.files)

    def unblocked(self, state: GraphState) -> list[TaskState]:
        locked = self.running_files(state)
        return [
            task for task in state.tasks.values() if self.is_unblocked(task, state, locked)
        ]

    def ranked(self, state: GraphState) -> list[Candidate]:
        """Unblocked tasks, highest leverage first, then simpler, then by id."""

        counts = self.unblock_counts(state)
        candidates = [
            Candidate(task=task, unblock_count=counts.get(task.task_id, 0))
            for task in self.unblocked(state)
        ]
        candidates.sort(key=lambda candidate: candidate.sort_key)
        return candidates

    @staticmethod
    def unblock_counts(state: GraphState) -> dict[str, int]:
        """Number of non-terminal transitive dependents per task.

        Descendant sets are Python-int bitsets filled in reverse topological order.
        """

        ids = list(state.tasks)
        bit = {task_id: 1 << position for position, task_id in enumerate(ids)}
        dependents: dict[str, list[str]] = {task_id: [] for task_id in ids}
        indegree = dict.fromkeys(ids, 0)
        for task in state.tasks.values():
            for dep in task.spec.depends_on:
                if dep in dependents:
                    dependents[dep].append(task.task_id)
                    indegree[task.task_id] += 1

        queue = deque(task_id for task_id in ids if indegree[task_id] == 0)
        order: list[str] = []
        while queue:
            task_id = queue.popleft()
            order.append(task_id)
            for child in dependents[task_id]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    queue.append(child)

        live_mask = 0
        for task in state.tasks.values():
            if not task.status.is_terminal:
                live_mask |= bit[task.task_id]

        descendants: dict[str, int] = {}
        for task_id in reversed(order):
            mask = 0
            for child in dependents[task_id]:
                mask |= bit[child] | descendants.get(child, 0)
            descendants[task_id] = mask
        return {
            task_id: (descendants.get(task_id, 0) & live_mask).bit_count() for task_id in ids
        }
