"""File-based contracts exchanged with CLI agents."""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from taskgraph_engine.graph.models import OutcomeResult

CONTRACT_VERSION = 1
COMPLETION_MARKER = "<promise>TASK_COMPLETE</promise>"


@dataclass(slots=True)
class TaskManifest:
    """Manifest written for every backend call."""

    contract_version: int
    task_id: str
    attempt_no: int
    tier: int
    mode: str
    backend: str
    workdir: str
    workspace_root: str
    task_path: str
    prompt_path: str
    context_path: str
    outcome_path: str
    stdout_path: str
    stderr_path: str


@dataclass(slots=True)
class AgentOutcomeContract:
    """Outcome JSON an agent writes to ``output/outcome.json``."""

    result: OutcomeResult
    confidence: int
    rationale: str = ""
    artifacts: list[str] = field(default_factory=list)
    root_cause: str | None = None
    recommendation: str | None = None
    questions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["result"] = self.result.value
        return payload


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_manifest(path: Path, manifest: TaskManifest) -> None:
    write_json(path, asdict(manifest))


def read_manifest(path: Path) -> TaskManifest:
    return TaskManifest(**load_json(path))


def write_outcome(path: Path, outcome: AgentOutcomeContract) -> None:
    write_json(path, outcome.to_dict())


def parse_outcome(payload: dict[str, Any]) -> AgentOutcomeContract:
    """Validate an agent outcome; confidence is mandatory and must be 0-100."""

    raw_result = payload.get("result")
    try:
        result = OutcomeResult(str(raw_result).strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported outcome result: {raw_result!r}") from error

    raw_confidence = payload.get("confidence")
    if isinstance(raw_confidence, bool) or not isinstance(raw_confidence, int | float):
        raise ValueError(f"Outcome confidence must be a number, got {raw_confidence!r}")
    confidence = int(raw_confidence)
    if not 0 <= confidence <= 100:
        raise ValueError(f"Outcome confidence out of range: {confidence}")

    return AgentOutcomeContract(
        result=result,
        confidence=confidence,
        rationale=str(payload.get("rationale") or ""),
        artifacts=[str(item) for item in payload.get("artifacts") or []],
        root_cause=_optional_text(payload.get("root_cause")),
        recommendation=_optional_text(payload.get("recommendation")),
        questions=[str(item) for item in payload.get("questions") or []],
    )


def read_outcome(path: Path) -> AgentOutcomeContract:
    return parse_outcome(load_json(path))


_TRAILING_JSON_RE = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}\s*$", re.DOTALL)


def parse_stdout_outcome(stdout: str) -> AgentOutcomeContract | None:
    """Fallback when no outcome file exists: trailing JSON object or completion marker."""

    text = stdout.strip()
    if not text:
        return None
    match = _TRAILING_JSON_RE.search(text)
    if match is not None:
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and "result" in payload:
            return parse_outcome(payload)
    if COMPLETION_MARKER in text:
        return AgentOutcomeContract(
            result=OutcomeResult.SUCCESS,
            confidence=0,
            rationale="Agent printed the completion marker without a scored outcome.",
        )
    return None


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
