"""Local demo agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from taskgraph_engine.graph.models import OutcomeResult
from taskgraph_engine.orchestrator.contracts import (
    AgentOutcomeContract,
    load_json,
    read_manifest,
    write_outcome,
)


def main(argv: list[str] | None = None) -> int:
    """Write a deterministic outcome, optionally touching the task's first file."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--task-manifest", required=True)
    parser.add_argument("--result", default="success", choices=[r.value for r in OutcomeResult])
    parser.add_argument("--confidence", type=int, default=90)
    parser.add_argument("--touch", action="store_true", help="append a line to the first file")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--stdout-only", action="store_true")
    args = parser.parse_args(argv)

    manifest = read_manifest(Path(args.task_manifest))
    task = load_json(Path(manifest.task_path))
    print(f"echo_agent: task={manifest.task_id} mode={manifest.mode} tier={manifest.tier}")
    sys.stdout.flush()
    if args.sleep:
        time.sleep(args.sleep)

    artifacts: list[str] = []
    files = task.get("files") or []
    if args.touch and files:
        target = Path(manifest.workspace_root) / files[0]
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle:
            handle.write(f"{manifest.task_id} attempt {manifest.attempt_no}\n")
        artifacts.append(files[0])

    outcome = AgentOutcomeContract(
        result=OutcomeResult(args.result),
        confidence=args.confidence,
        rationale=f"echo_agent handled {task.get('subject', manifest.task_id)}",
        artifacts=artifacts,
        root_cause="echo_agent does not analyze" if manifest.mode == "analyze" else None,
    )
    if args.stdout_only:
        print("<promise>TASK_COMPLETE</promise>")
        return 0
    write_outcome(Path(manifest.outcome_path), outcome)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
