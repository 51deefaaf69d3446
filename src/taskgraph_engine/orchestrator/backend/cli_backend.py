"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path

from taskgraph_engine.errors import BackendError, ErrorKind
from taskgraph_engine.graph.models import OutcomeResult, TaskSpec
from taskgraph_engine.orchestrator.backend.base import ExecutionContext, Outcome
from taskgraph_engine.orchestrator.contracts import (
    AgentOutcomeContract,
    TaskManifest,
    parse_stdout_outcome,
    read_manifest,
    read_outcome,
)
from taskgraph_engine.orchestrator.failure_classifier import classify_backend_failure
from taskgraph_engine.orchestrator.process import read_tail, run_polled_process

logger = logging.getLogger(__name__)

_TEMPLATE_INPUTS = ("{prompt}", "{prompt_file}", "{task_manifest}")


class CliAgentBackend:
    """Execute a task through a configured CLI command template."""

    def __init__(self, *, name: str, command_template: str) -> None:
        self.name = name
        self.command_template = command_template

    def execute(
        self,
        task: TaskSpec,
        context: ExecutionContext,
        timeout_seconds: float,
    ) -> Outcome:
        if context.manifest_path is None:
            raise BackendError(
                f"CLI backend {self.name} needs a materialized task manifest",
                transient=False,
            )
        manifest = read_manifest(context.manifest_path)
        prompt = _build_enriched_prompt(base_prompt=context.prompt, manifest=manifest)
        prompt_file = Path(manifest.prompt_path)
        prompt_file.write_text(prompt, "utf-8")

        run_args, command_head = _build_run_args(
            command_template=self.command_template,
            model=context.model,
            prompt=prompt,
            prompt_file=prompt_file,
            manifest_path=context.manifest_path,
            workdir=Path(manifest.workdir),
        )

        env = os.environ.copy()
        env["TASKGRAPH_TASK_ID"] = task.task_id
        env["TASKGRAPH_ATTEMPT"] = str(context.attempt_no)
        env["TASKGRAPH_TIER"] = str(context.tier)
        env["TASKGRAPH_MODE"] = context.mode.value
        env["TASKGRAPH_BACKEND"] = self.name

        logger.info(
            "Running %s for task %s (attempt=%d tier=%d mode=%s)",
            self.name,
            task.task_id,
            context.attempt_no,
            context.tier,
            context.mode.value,
        )
        try:
            result = run_polled_process(
                run_args,
                cwd=context.workspace_root,
                env=env,
                stdout_path=Path(manifest.stdout_path),
                stderr_path=Path(manifest.stderr_path),
                timeout_seconds=timeout_seconds,
                cancel_event=context.cancel_event,
                on_progress=context.report_progress,
            )
        except FileNotFoundError as error:
            raise BackendError(
                f"CLI backend command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendError(f"CLI backend failed to start: {error}", transient=True) from error

        log_ref = manifest.workdir
        if result.cancelled:
            return Outcome(
                result=OutcomeResult.FAILURE,
                confidence=0,
                rationale="Execution cancelled.",
                log_ref=log_ref,
                cancelled=True,
                error_kind=ErrorKind.STALL_TIMEOUT.value,
                error_summary="cancelled by monitor",
            )
        if result.timed_out:
            return Outcome(
                result=OutcomeResult.FAILURE,
                confidence=0,
                rationale=f"Execution exceeded {timeout_seconds:.0f}s.",
                log_ref=log_ref,
                exit_code=result.exit_code,
                timed_out=True,
                error_kind=ErrorKind.EXECUTION_TIMEOUT.value,
                error_summary=f"timed out after {timeout_seconds:.0f}s",
            )

        stdout = read_tail(Path(manifest.stdout_path))
        if result.exit_code != 0:
            classification = classify_backend_failure(
                backend=self.name,
                exit_code=result.exit_code,
                stdout=stdout,
                stderr=read_tail(Path(manifest.stderr_path)),
            )
            return Outcome(
                result=OutcomeResult.FAILURE,
                confidence=0,
                rationale=f"{self.name} exited with code {result.exit_code}.",
                log_ref=log_ref,
                exit_code=result.exit_code,
                error_kind=ErrorKind.BACKEND_ERROR.value,
                error_summary=classification.summary(exit_code=result.exit_code),
            )

        return _outcome_from_contract(
            _load_agent_outcome(manifest=manifest, stdout=stdout),
            log_ref=log_ref,
            exit_code=result.exit_code,
        )


def _load_agent_outcome(*, manifest: TaskManifest, stdout: str) -> AgentOutcomeContract | str:
    """Outcome file first, then stdout; a string return is the rejection reason."""

    outcome_path = Path(manifest.outcome_path)
    if outcome_path.exists():
        try:
            return read_outcome(outcome_path)
        except (ValueError, TypeError) as error:
            return f"invalid outcome file: {error}"
    try:
        parsed = parse_stdout_outcome(stdout)
    except ValueError as error:
        return f"invalid stdout outcome: {error}"
    if parsed is None:
        return "agent reported no outcome"
    return parsed


def _outcome_from_contract(
    contract: AgentOutcomeContract | str,
    *,
    log_ref: str,
    exit_code: int | None,
) -> Outcome:
    if isinstance(contract, str):
        return Outcome(
            result=OutcomeResult.FAILURE,
            confidence=0,
            rationale=contract,
            log_ref=log_ref,
            exit_code=exit_code,
            error_kind=ErrorKind.BACKEND_ERROR.value,
            error_summary=contract,
        )
    return Outcome(
        result=contract.result,
        confidence=contract.confidence,
        rationale=contract.rationale,
        artifacts=tuple(contract.artifacts),
        log_ref=log_ref,
        root_cause=contract.root_cause,
        recommendation=contract.recommendation,
        questions=tuple(contract.questions),
        exit_code=exit_code,
    )


_OUTCOME_SCHEMA_EXAMPLE = """\
{
  "result": "success | failure | blocked",
  "confidence": 0,
  "rationale": "<why you believe the result>",
  "artifacts": ["<path you changed>"],
  "root_cause": "<optional>",
  "recommendation": "<optional>",
  "questions": ["<what information would raise your confidence>"]
}"""


def _build_enriched_prompt(*, base_prompt: str, manifest: TaskManifest) -> str:
    """Wrap the task prompt with manifest path and outcome contract."""

    return (
        f"{base_prompt}\n"
        f"\n"
        f"Your task manifest is at: {manifest.workdir}/meta/task_manifest.json\n"
        f"\n"
        f"Steps:\n"
        f"1. Read the manifest JSON; it lists the task definition and context files.\n"
        f"2. Work inside the workspace root: {manifest.workspace_root}\n"
        f"3. Write your outcome to outcome_path from the manifest: {manifest.outcome_path}\n"
        f"4. The outcome file must follow this JSON schema exactly:\n"
        f"{_OUTCOME_SCHEMA_EXAMPLE}\n"
        f"5. confidence is an integer 0-100 and is mandatory.\n"
    )


def _build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    manifest_path: Path,
    workdir: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendError("CLI backend command template is empty.", transient=False)
    if not any(placeholder in stripped for placeholder in _TEMPLATE_INPUTS):
        raise BackendError(
            "CLI backend command template must include {prompt}, {prompt_file} "
            "or {task_manifest}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            task_manifest=shlex.quote(str(manifest_path)),
            workdir=shlex.quote(str(workdir)),
        )
    except (KeyError, IndexError) as error:
        raise BackendError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendError("CLI backend command template rendered empty command.", transient=False)
    return argv, argv[0]
