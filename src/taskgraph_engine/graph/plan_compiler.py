"""Compile markdown plan task seeds into a task graph document."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any

_SPRINT_RE = re.compile(r"^##\s*Sprint\s*(\d+)\s*:\s*(.+?)\s*$", re.IGNORECASE)
_OTHER_SECTION_RE = re.compile(r"^##\s+")
_HEADER_RE = re.compile(r"^#+\s")
_SEED_RE = re.compile(
    r"^\s*-\s*\[\s*([xX ]?)\s*\]\s*(?:<(.+?)>|([A-Za-z0-9_.,/\-\s]+?))\s*::\s*(.+?)\s*$",
)
_FIELD_NAMES = "ID|Blocked by|Deliverable|Allowed paths|Verification|Setup|Complexity"
_FIELD_PATTERNS = (
    re.compile(rf"^\s*-\s*\*\*({_FIELD_NAMES}):\*\*\s*(.*?)\s*$", re.IGNORECASE),
    re.compile(rf"^\s*-\s*\*\*({_FIELD_NAMES})\*\*\s*:\s*(.*?)\s*$", re.IGNORECASE),
    re.compile(rf"^\s*-\s*({_FIELD_NAMES})\s*:\s*(.*?)\s*$", re.IGNORECASE),
)
_CONTINUATION_RE = re.compile(r"^\s{4,}-\s+(.+?)\s*$")

# tag -> tags whose tasks it depends on when inference is enabled
INFERRED_TAG_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "ui": ("engine", "core", "types", "data"),
    "components": ("types", "core"),
    "tests": ("engine", "ui", "core"),
    "e2e": ("ui", "components", "tests"),
    "worker": ("types", "core"),
    "io": ("engine", "worker"),
    "integration": ("engine", "ui", "io"),
}


@dataclass(slots=True)
class _Seed:
    subject: str
    tags: list[str]
    completed: bool
    sprint: int | None
    sprint_goal: str | None
    task_id: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    deliverable: str = ""
    allowed_paths: list[str] = field(default_factory=list)
    verification: list[str] = field(default_factory=list)
    setup: str = ""
    complexity: str | None = None

    @property
    def resolved_id(self) -> str:
        return self.task_id or seed_id(self.tags, self.subject)


def seed_id(tags: list[str], subject: str) -> str:
    """Stable id for seeds written without an explicit ``ID:`` line."""

    digest = hashlib.sha1(f"seed:{','.join(tags)}:{subject}".encode())  # noqa: S324
    return digest.hexdigest()[:10]


def compile_plan(markdown: str, *, infer_dependencies: bool = False) -> dict[str, Any]:
    """Turn plan task seeds into a ``{"phases": [...]}`` graph document.

    The result is not validated here; callers pass it through the store's
    ``validate_document`` so every problem is reported together.
    """

    seeds = parse_seeds(markdown)
    _resolve_subject_references(seeds)
    if infer_dependencies:
        _infer_dependencies(seeds)

    phases: dict[int, dict[str, Any]] = {}
    for seed in seeds:
        key = -1 if seed.sprint is None else seed.sprint
        if key not in phases:
            name = (
                "default" if seed.sprint is None else f"Sprint {seed.sprint}: {seed.sprint_goal}"
            )
            phases[key] = {"name": name, "tasks": []}
        phases[key]["tasks"].append(_to_task_document(seed))
    return {"phases": [phases[key] for key in sorted(phases)]}


def parse_seeds(markdown: str) -> list[_Seed]:
    lines = markdown.splitlines()
    seeds: list[_Seed] = []
    sprint: int | None = None
    sprint_goal: str | None = None
    index = 0
    while index < len(lines):
        line = lines[index]
        sprint_match = _SPRINT_RE.match(line)
        if sprint_match:
            sprint = int(sprint_match.group(1))
            sprint_goal = sprint_match.group(2).strip()
            index += 1
            continue
        if _OTHER_SECTION_RE.match(line):
            sprint = None
            sprint_goal = None

        seed_match = _SEED_RE.match(line)
        index += 1
        if not seed_match:
            continue

        tag_part = (seed_match.group(2) or seed_match.group(3) or "").strip()
        seed = _Seed(
            subject=seed_match.group(4).strip(),
            tags=[tag.strip() for tag in tag_part.split(",") if tag.strip()],
            completed=seed_match.group(1).strip().lower() == "x",
            sprint=sprint,
            sprint_goal=sprint_goal,
        )
        index = _consume_details(lines, index, seed)
        seeds.append(seed)
    return seeds


def _consume_details(lines: list[str], index: int, seed: _Seed) -> int:
    current_field: str | None = None
    while index < len(lines):
        line = lines[index]
        if _SEED_RE.match(line) or _HEADER_RE.match(line):
            break
        if line.strip() and not line[0].isspace():
            break

        field_match = next(
            (match for pattern in _FIELD_PATTERNS if (match := pattern.match(line))),
            None,
        )
        if field_match:
            current_field = field_match.group(1).lower()
            _set_field(seed, current_field, field_match.group(2).strip())
        else:
            continuation = _CONTINUATION_RE.match(line)
            if continuation:
                _append_continuation(seed, current_field, continuation.group(1).strip())
        index += 1
    return index


def _set_field(seed: _Seed, name: str, value: str) -> None:
    if name == "id":
        seed.task_id = value or None
    elif name == "blocked by":
        seed.blocked_by = _split_list(value)
    elif name == "deliverable":
        seed.deliverable = value
    elif name == "allowed paths":
        seed.allowed_paths = _split_list(value)
    elif name == "verification":
        seed.verification = [value] if value else []
    elif name == "setup":
        seed.setup = value
    elif name == "complexity":
        seed.complexity = value.lower() or None


def _append_continuation(seed: _Seed, current_field: str | None, content: str) -> None:
    if current_field == "verification":
        seed.verification.append(content)
    elif current_field == "allowed paths":
        seed.allowed_paths.append(content)
    elif current_field == "blocked by":
        seed.blocked_by.append(content)
    elif current_field == "deliverable" and not seed.deliverable:
        seed.deliverable = content


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _normalize_reference(value: str) -> str:
    return re.sub(r"[`*_]", "", value).strip().strip('"').strip()


def _resolve_subject_references(seeds: list[_Seed]) -> None:
    """``Blocked by`` may name a task by its exact subject instead of its id."""

    by_id = {seed.resolved_id for seed in seeds}
    by_subject = {seed.subject.lower(): seed.resolved_id for seed in seeds}
    for seed in seeds:
        resolved: list[str] = []
        for raw in seed.blocked_by:
            reference = _normalize_reference(raw)
            if reference not in by_id:
                reference = by_subject.get(reference.lower(), reference)
            resolved.append(reference)
        seed.blocked_by = list(dict.fromkeys(resolved))


def _infer_dependencies(seeds: list[_Seed]) -> None:
    by_tag: dict[str, list[str]] = {}
    for seed in seeds:
        for tag in seed.tags:
            by_tag.setdefault(tag.lower(), []).append(seed.resolved_id)

    for seed in seeds:
        own_id = seed.resolved_id
        inferred: list[str] = []
        for tag in seed.tags:
            for dep_tag in INFERRED_TAG_DEPENDENCIES.get(tag.lower(), ()):
                inferred.extend(
                    dep_id for dep_id in by_tag.get(dep_tag, []) if dep_id != own_id
                )
        if inferred:
            seed.blocked_by = list(dict.fromkeys([*seed.blocked_by, *inferred]))


def _to_task_document(seed: _Seed) -> dict[str, Any]:
    description_parts = []
    if seed.deliverable:
        description_parts.append(f"**Deliverable:** {seed.deliverable}")
    if seed.setup:
        description_parts.append(f"**Setup:** {seed.setup}")
    if seed.allowed_paths:
        description_parts.append(f"**Allowed paths:** {', '.join(seed.allowed_paths)}")
    if seed.verification:
        description_parts.append("**Verification:**\n- " + "\n- ".join(seed.verification))

    task: dict[str, Any] = {
        "id": seed.resolved_id,
        "subject": seed.subject,
        "description": "\n\n".join(description_parts),
        "tags": list(seed.tags),
        "dependsOn": list(seed.blocked_by),
        "files": list(seed.allowed_paths),
        "verification": list(seed.verification),
    }
    if seed.setup:
        task["setup"] = seed.setup
    if seed.complexity:
        task["complexity"] = seed.complexity
    if seed.completed:
        task["status"] = "complete"
    return task
