"""Task Graph Store: load, validate and atomically save graph documents."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from taskgraph_engine.errors import ValidationError
from taskgraph_engine.graph.models import COMPLEXITY_RANK, Phase, TaskGraph, TaskSpec
from taskgraph_engine.graph.plan_compiler import compile_plan

logger = logging.getLogger(__name__)

REQUIRED_TASK_FIELDS = ("id", "subject")
_LIST_FIELDS = ("files", "dependsOn", "tags", "verification")
_STRING_FIELDS = ("subject", "description", "complexity", "backend", "setup", "status")
_LEGACY_ALIASES = {"blockedBy": "dependsOn", "allowedPaths": "files"}
PLAN_SUFFIXES = (".md", ".markdown")


def load_graph(path: Path, *, infer_dependencies: bool = False) -> TaskGraph:
    """Read and validate a graph document (JSON, or a markdown plan) from disk."""

    try:
        text = path.read_text("utf-8")
        if path.suffix.lower() in PLAN_SUFFIXES:
            return validate_document(compile_plan(text, infer_dependencies=infer_dependencies))
        payload = json.loads(text)
    except FileNotFoundError as error:
        raise ValidationError([f"Task source not found: {path}"]) from error
    except json.JSONDecodeError as error:
        raise ValidationError([f"Task source is not valid JSON: {path}: {error}"]) from error
    return validate_document(payload)


def validate_document(payload: object) -> TaskGraph:  # noqa: C901
    """Validate a parsed document, collecting every problem before failing."""

    problems: list[str] = []
    raw_phases = _split_phases(payload, problems)

    phases: list[Phase] = []
    tasks: dict[str, TaskSpec] = {}
    seen_ids: set[str] = set()
    for phase_index, (phase_name, raw_tasks) in enumerate(raw_phases):
        phase_ids: list[str] = []
        for position, raw_task in enumerate(raw_tasks):
            where = f"phase {phase_name!r} task #{position + 1}"
            entry = _normalize_task(raw_task, where=where, problems=problems)
            if entry is None:
                continue
            task_id = str(entry["id"])
            if task_id in seen_ids:
                problems.append(f"Duplicate task id: {task_id}")
                continue
            seen_ids.add(task_id)
            phase_ids.append(task_id)
            tasks[task_id] = TaskSpec.from_document(entry, phase=phase_index)
        phases.append(Phase(index=phase_index, name=phase_name, task_ids=tuple(phase_ids)))

    for task in tasks.values():
        for dep in task.depends_on:
            if dep not in tasks:
                problems.append(f"Task {task.task_id} depends on unknown task: {dep}")
            elif tasks[dep].phase > task.phase:
                problems.append(
                    f"Task {task.task_id} (phase {task.phase}) depends on {dep} "
                    f"in later phase {tasks[dep].phase}",
                )

    for component in find_cycles(tasks):
        problems.append(f"Dependency cycle among tasks: {', '.join(component)}")

    if problems:
        raise ValidationError(problems)
    return TaskGraph(phases=phases, tasks=tasks)


def find_cycles(tasks: dict[str, TaskSpec]) -> list[list[str]]:
    """Return every strongly connected component that forms a cycle.

    Iterative Tarjan over ``depends_on`` edges; unknown references are ignored.
    """

    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    cycles: list[list[str]] = []
    counter = 0

    for root in tasks:
        if root in index_of:
            continue
        work: list[tuple[str, int]] = [(root, 0)]
        while work:
            node, edge_pos = work.pop()
            if edge_pos == 0:
                index_of[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            edges = [dep for dep in tasks[node].depends_on if dep in tasks]
            if edge_pos < len(edges):
                work.append((node, edge_pos + 1))
                child = edges[edge_pos]
                if child not in index_of:
                    work.append((child, 0))
                elif child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
                continue
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in tasks[node].depends_on:
                    cycles.append(sorted(component))
    return cycles


def save_graph_document(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON via temp file + fsync + atomic rename; the old file survives a crash."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=False))
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class TaskGraphStore:
    """File-backed graph source that tracks external edits by mtime."""

    def __init__(self, path: Path, *, infer_dependencies: bool = False) -> None:
        self.path = path
        self.infer_dependencies = infer_dependencies
        self._loaded_mtime_ns: int | None = None

    def load(self) -> TaskGraph:
        graph = load_graph(self.path, infer_dependencies=self.infer_dependencies)
        self._loaded_mtime_ns = self._current_mtime_ns()
        logger.info(
            "Loaded task graph %s: phases=%d tasks=%d",
            self.path,
            len(graph.phases),
            len(graph.tasks),
        )
        return graph

    def acknowledge(self) -> None:
        """Accept the current file version without loading it (after a rejected edit)."""

        self._loaded_mtime_ns = self._current_mtime_ns()

    def changed_since_load(self) -> bool:
        current = self._current_mtime_ns()
        return current is not None and current != self._loaded_mtime_ns

    def _current_mtime_ns(self) -> int | None:
        try:
            return self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return None


def _split_phases(payload: object, problems: list[str]) -> list[tuple[str, list[object]]]:
    if not isinstance(payload, dict):
        problems.append("Task graph document must be a JSON object")
        return []

    if "phases" in payload:
        raw_phases = payload["phases"]
        if not isinstance(raw_phases, list):
            problems.append("'phases' must be a list")
            return []
        result: list[tuple[str, list[object]]] = []
        for position, raw_phase in enumerate(raw_phases):
            if not isinstance(raw_phase, dict):
                problems.append(f"Phase #{position + 1} must be an object")
                continue
            name = str(raw_phase.get("name") or f"phase-{position}")
            raw_tasks = raw_phase.get("tasks")
            if not isinstance(raw_tasks, list):
                problems.append(f"Phase {name!r} is missing a 'tasks' list")
                continue
            result.append((name, raw_tasks))
        return result

    if "tasks" in payload:
        raw_tasks = payload["tasks"]
        if not isinstance(raw_tasks, list):
            problems.append("'tasks' must be a list")
            return []
        return _group_flat_tasks_by_sprint(raw_tasks)

    problems.append("Task graph document needs a 'phases' or 'tasks' list")
    return []


def _group_flat_tasks_by_sprint(raw_tasks: list[object]) -> list[tuple[str, list[object]]]:
    """Flat task lists become one phase per sprint number (tasks without one go first)."""

    groups: dict[int, list[object]] = {}
    for raw_task in raw_tasks:
        sprint = raw_task.get("sprint") if isinstance(raw_task, dict) else None
        key = sprint if isinstance(sprint, int) else -1
        groups.setdefault(key, []).append(raw_task)
    if len(groups) == 1:
        return [("default", next(iter(groups.values())))]
    return [
        ("default" if key < 0 else f"sprint-{key}", groups[key]) for key in sorted(groups)
    ]


def _normalize_task(
    raw_task: object,
    *,
    where: str,
    problems: list[str],
) -> dict[str, Any] | None:
    if not isinstance(raw_task, dict):
        problems.append(f"{where}: task must be an object")
        return None

    entry = dict(raw_task)
    for legacy, canonical in _LEGACY_ALIASES.items():
        if legacy in entry and canonical not in entry:
            entry[canonical] = entry.pop(legacy)

    ok = True
    for required in REQUIRED_TASK_FIELDS:
        value = entry.get(required)
        if value is None or not str(value).strip():
            problems.append(f"{where}: missing required field {required!r}")
            ok = False
    label = f"Task {entry['id']}" if entry.get("id") else where

    for string_field in _STRING_FIELDS:
        value = entry.get(string_field)
        if value is not None and not isinstance(value, str):
            problems.append(f"{label}: {string_field!r} must be a string")
            ok = False

    for list_field in _LIST_FIELDS:
        value = entry.get(list_field)
        if value is None:
            continue
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            problems.append(f"{label}: {list_field!r} must be a list of strings")
            ok = False

    max_attempts = entry.get("maxAttempts")
    if max_attempts is not None and (
        not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1
    ):
        problems.append(f"{label}: 'maxAttempts' must be a positive integer")
        ok = False

    complexity = entry.get("complexity")
    if isinstance(complexity, str) and complexity.lower() not in COMPLEXITY_RANK:
        problems.append(
            f"{label}: 'complexity' must be one of {', '.join(COMPLEXITY_RANK)}",
        )
        ok = False

    return entry if ok else None
