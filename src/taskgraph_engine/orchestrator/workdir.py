"""Per-attempt workdir layout: ``<root>/<task_id>/attempt-<n>/``."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskgraph_engine.graph.models import TaskSpec
from taskgraph_engine.orchestrator.contracts import (
    CONTRACT_VERSION,
    TaskManifest,
    write_json,
    write_manifest,
)

_UNSAFE_COMPONENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class MaterializedCall:
    """Paths prepared for one backend call."""

    manifest_path: Path
    manifest: TaskManifest

    @property
    def workdir(self) -> Path:
        return Path(self.manifest.workdir)


class AttemptWorkdirManager:
    """Creates deterministic per-attempt directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def attempt_dir(self, task_id: str, attempt_no: int) -> Path:
        return self.root_dir / safe_component(task_id) / f"attempt-{attempt_no}"

    def verification_dir(self, task_id: str, attempt_no: int) -> Path:
        path = self.attempt_dir(task_id, attempt_no) / "verification"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def materialize_call(  # noqa: PLR0913
        self,
        *,
        task: TaskSpec,
        attempt_no: int,
        tier: int,
        call_index: int,
        backend: str,
        mode: str,
        prompt: str,
        context_payload: dict[str, Any],
        workspace_root: Path,
    ) -> MaterializedCall:
        base_dir = (
            self.attempt_dir(task.task_id, attempt_no)
            / f"{call_index:02d}-{safe_component(backend)}-{mode}"
        )
        input_dir = base_dir / "input"
        output_dir = base_dir / "output"
        meta_dir = base_dir / "meta"
        for directory in (input_dir, output_dir, meta_dir):
            directory.mkdir(parents=True, exist_ok=True)

        task_path = input_dir / "task.json"
        prompt_path = input_dir / "prompt.txt"
        context_path = input_dir / "context.json"
        manifest_path = meta_dir / "task_manifest.json"

        write_json(task_path, task.to_document())
        prompt_path.write_text(prompt, "utf-8")
        write_json(context_path, context_payload)

        manifest = TaskManifest(
            contract_version=CONTRACT_VERSION,
            task_id=task.task_id,
            attempt_no=attempt_no,
            tier=tier,
            mode=mode,
            backend=backend,
            workdir=str(base_dir),
            workspace_root=str(workspace_root),
            task_path=str(task_path),
            prompt_path=str(prompt_path),
            context_path=str(context_path),
            outcome_path=str(output_dir / "outcome.json"),
            stdout_path=str(output_dir / "agent_stdout.log"),
            stderr_path=str(output_dir / "agent_stderr.log"),
        )
        write_manifest(manifest_path, manifest)
        return MaterializedCall(manifest_path=manifest_path, manifest=manifest)


def safe_component(value: str) -> str:
    cleaned = _UNSAFE_COMPONENT_RE.sub("_", value).strip("._")
    return cleaned or "task"
