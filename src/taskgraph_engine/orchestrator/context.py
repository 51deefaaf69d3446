"""Context gathering: static workspace lookup before escalated tiers."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

from taskgraph_engine.graph.models import TaskSpec

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset(
    {".git", ".hg", ".venv", "venv", "node_modules", "__pycache__", ".taskgraph", ".tox",
     "dist", "build", ".mypy_cache", ".pytest_cache", ".ruff_cache"},
)
MAX_SCANNED_FILE_BYTES = 1_000_000
MAX_HITS_PER_IDENTIFIER = 10

_BACKTICK_RE = re.compile(r"`([^`\s]{3,})`")
_IDENTIFIER_RE = re.compile(r"\b([A-Za-z_][A-Za-z0-9_]*(?:[A-Z][a-z0-9]+|_[a-z0-9]+)+)\b")
_PATH_RE = re.compile(r"\b([\w./-]+\.[A-Za-z0-9]{1,6})\b")


class ContextGatherer:
    """Resolve "what would raise confidence" questions against the workspace."""

    def __init__(
        self,
        *,
        workspace_root: Path,
        max_files: int,
        max_bytes_per_file: int,
        exclude: Sequence[Path] = (),
    ) -> None:
        self.workspace_root = workspace_root
        self.max_files = max_files
        self.max_bytes_per_file = max_bytes_per_file
        self.exclude = tuple(path.resolve() for path in exclude)

    def gather(self, task: TaskSpec, questions: Sequence[str]) -> dict[str, Any]:
        """Deterministic lookup result; equal inputs give equal output."""

        mentioned_paths = sorted({match for q in questions for match in _PATH_RE.findall(q)})
        candidates = sorted(set(task.files) | set(mentioned_paths))
        files: dict[str, str] = {}
        for relative in candidates:
            if len(files) >= self.max_files:
                break
            content = self._read(relative)
            if content is not None:
                files[relative] = content

        workspace_files = list(self._walk())
        cache: dict[str, str | None] = {}

        def scan(relative: str) -> str | None:
            if relative not in cache:
                cache[relative] = self._scan(relative)
            return cache[relative]

        result = {
            "questions": list(questions),
            "files": files,
            "importers": self._importers(task.files, workspace_files, scan),
            "tests": self._sibling_tests(task.files, workspace_files),
            "identifier_hits": self._identifier_hits(questions, workspace_files, scan),
        }
        logger.debug(
            "Gathered context for %s: files=%d importers=%d tests=%d identifiers=%d",
            task.task_id,
            len(files),
            len(result["importers"]),
            len(result["tests"]),
            len(result["identifier_hits"]),
        )
        return result

    def _read(self, relative: str) -> str | None:
        path = self.workspace_root / relative
        try:
            if not path.is_file():
                return None
            data = path.read_bytes()[: self.max_bytes_per_file]
        except OSError:
            return None
        return data.decode("utf-8", errors="replace")

    def _walk(self) -> Iterator[str]:
        root = self.workspace_root
        for dirpath, dirnames, filenames in os.walk(root):
            current = Path(dirpath)
            dirnames[:] = sorted(
                name
                for name in dirnames
                if name not in SKIP_DIRS and (current / name).resolve() not in self.exclude
            )
            for filename in sorted(filenames):
                yield (current / filename).relative_to(root).as_posix()

    def _scan(self, relative: str) -> str | None:
        path = self.workspace_root / relative
        try:
            if path.stat().st_size > MAX_SCANNED_FILE_BYTES:
                return None
            data = path.read_bytes()
        except OSError:
            return None
        if b"\0" in data[:1024]:
            return None
        return data.decode("utf-8", errors="replace")

    def _importers(
        self,
        task_files: frozenset[str],
        workspace_files: list[str],
        scan: Callable[[str], str | None],
    ) -> dict[str, list[str]]:
        importers: dict[str, list[str]] = {}
        for target in sorted(task_files):
            stem = Path(target).stem
            if not stem or stem == "__init__":
                continue
            pattern = re.compile(
                rf"(?:^|\s)(?:from|import)\s+[\w.]*\b{re.escape(stem)}\b"
                rf"|require\([^)]*{re.escape(stem)}[^)]*\)"
                rf"|from\s+['\"][^'\"]*{re.escape(stem)}['\"]",
                re.MULTILINE,
            )
            hits = []
            for relative in workspace_files:
                if relative == target or len(hits) >= self.max_files:
                    continue
                text = scan(relative)
                if text is not None and pattern.search(text):
                    hits.append(relative)
            if hits:
                importers[target] = hits
        return importers

    @staticmethod
    def _sibling_tests(task_files: frozenset[str], workspace_files: list[str]) -> list[str]:
        stems = {Path(target).stem for target in task_files if Path(target).stem}
        tests = []
        for relative in workspace_files:
            name = Path(relative).name
            for stem in stems:
                if name.startswith(f"test_{stem}.") or name.startswith(
                    (f"{stem}_test.", f"{stem}.test.", f"{stem}.spec."),
                ):
                    tests.append(relative)
                    break
        return tests

    def _identifier_hits(
        self,
        questions: Sequence[str],
        workspace_files: list[str],
        scan: Callable[[str], str | None],
    ) -> dict[str, list[str]]:
        identifiers: set[str] = set()
        for question in questions:
            identifiers.update(_BACKTICK_RE.findall(question))
            identifiers.update(_IDENTIFIER_RE.findall(question))
        hits: dict[str, list[str]] = {}
        if not identifiers:
            return hits
        for relative in workspace_files:
            text = scan(relative)
            if text is None:
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                for identifier in identifiers:
                    found = hits.setdefault(identifier, [])
                    if len(found) < MAX_HITS_PER_IDENTIFIER and identifier in line:
                        found.append(f"{relative}:{line_no}")
        return {key: value for key, value in sorted(hits.items()) if value}


def input_fingerprint(
    *,
    task: TaskSpec,
    gathered: dict[str, Any],
    prior_rationales: Sequence[str],
) -> str:
    """sha256 over the inputs an analysis sees; repeated rationales count once."""

    payload = {
        "task": task.to_document(),
        "gathered": gathered,
        "prior_rationales": sorted({text for text in prior_rationales if text}),
    }
    encoded = json.dumps(payload, ensure_ascii=False, sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
