from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest

from taskgraph_engine.errors import BackendError
from taskgraph_engine.graph.models import OutcomeResult, Proposal, TaskSpec
from taskgraph_engine.orchestrator.backend.base import ExecutionContext, ExecutionMode
from taskgraph_engine.orchestrator.backend.cli_backend import CliAgentBackend, _build_run_args
from taskgraph_engine.orchestrator.workdir import AttemptWorkdirManager

pytestmark = [
    allure.epic("Execution"),
    allure.feature("CLI Agent Backend"),
]

TASK = TaskSpec(task_id="T-1", subject="Write greeting", phase=0, files=frozenset({"hello.txt"}))


def _context(tmp_path: Path, *, backend: str = "echo") -> ExecutionContext:
    workspace = tmp_path / "workspace"
    workspace.mkdir(exist_ok=True)
    materialized = AttemptWorkdirManager(tmp_path / "work").materialize_call(
        task=TASK,
        attempt_no=1,
        tier=0,
        call_index=1,
        backend=backend,
        mode=ExecutionMode.IMPLEMENT.value,
        prompt="Write greeting",
        context_payload={"history": []},
        workspace_root=workspace,
    )
    return ExecutionContext(
        task_id=TASK.task_id,
        attempt_no=1,
        tier=0,
        mode=ExecutionMode.IMPLEMENT,
        prompt="Write greeting",
        workdir=materialized.workdir,
        workspace_root=workspace,
        manifest_path=materialized.manifest_path,
    )


def _python_template(script: str) -> str:
    return f'{sys.executable} -c "{script}" {{task_manifest}}'


def test_outcome_file_is_read_and_workspace_touched(
    tmp_path: Path,
    echo_agent_command: str,
) -> None:
    backend = CliAgentBackend(name="echo", command_template=f"{echo_agent_command} --touch")
    context = _context(tmp_path)

    outcome = backend.execute(TASK, context, timeout_seconds=60)

    assert outcome.result == OutcomeResult.SUCCESS
    assert outcome.confidence == 90
    assert outcome.rationale == "echo_agent handled Write greeting"
    assert outcome.artifacts == ("hello.txt",)
    proposal = outcome.to_proposal(backend="echo", mode=ExecutionMode.IMPLEMENT)
    assert proposal.artifacts == ("hello.txt",)
    assert Proposal.from_dict(proposal.to_dict()).artifacts == ("hello.txt",)
    assert (context.workspace_root / "hello.txt").read_text("utf-8") == "T-1 attempt 1\n"
    stdout = (context.workdir / "output" / "agent_stdout.log").read_text("utf-8")
    assert "echo_agent: task=T-1 mode=implement tier=0" in stdout
    assert "outcome_path" in (context.workdir / "input" / "prompt.txt").read_text("utf-8")


def test_completion_marker_without_score_gets_zero_confidence(
    tmp_path: Path,
    echo_agent_command: str,
) -> None:
    backend = CliAgentBackend(name="echo", command_template=f"{echo_agent_command} --stdout-only")

    outcome = backend.execute(TASK, _context(tmp_path), timeout_seconds=60)

    assert outcome.result == OutcomeResult.SUCCESS
    assert outcome.confidence == 0


def test_trailing_stdout_json_is_accepted(tmp_path: Path) -> None:
    script = (
        "import json; print('working'); "
        "print(json.dumps(dict(result='failure', confidence=40, rationale='tests red')))"
    )
    backend = CliAgentBackend(name="codex", command_template=_python_template(script))

    outcome = backend.execute(TASK, _context(tmp_path, backend="codex"), timeout_seconds=60)

    assert outcome.result == OutcomeResult.FAILURE
    assert outcome.confidence == 40
    assert outcome.rationale == "tests red"


def test_nonzero_exit_is_classified(tmp_path: Path) -> None:
    script = "import sys; sys.stderr.write('HTTP 429 too many requests'); sys.exit(2)"
    backend = CliAgentBackend(name="codex", command_template=_python_template(script))

    outcome = backend.execute(TASK, _context(tmp_path, backend="codex"), timeout_seconds=60)

    assert outcome.result == OutcomeResult.FAILURE
    assert outcome.exit_code == 2
    assert outcome.error_kind == "backend_error"
    assert outcome.error_summary == (
        "codex_rate_limit_transient (exit=2, matched 'too many requests')"
    )


def test_out_of_range_confidence_is_rejected(tmp_path: Path) -> None:
    script = (
        "import json, sys; m = json.load(open(sys.argv[1])); "
        "open(m['outcome_path'], 'w').write(json.dumps(dict(result='success', confidence=150)))"
    )
    backend = CliAgentBackend(name="codex", command_template=_python_template(script))
    context = _context(tmp_path, backend="codex")

    outcome = backend.execute(TASK, context, timeout_seconds=60)

    assert outcome.result == OutcomeResult.FAILURE
    assert outcome.confidence == 0
    assert outcome.error_summary == "invalid outcome file: Outcome confidence out of range: 150"
    written = json.loads((context.workdir / "output" / "outcome.json").read_text("utf-8"))
    assert written["confidence"] == 150


def test_missing_outcome_is_a_failure(tmp_path: Path) -> None:
    backend = CliAgentBackend(name="codex", command_template=_python_template("pass"))

    outcome = backend.execute(TASK, _context(tmp_path, backend="codex"), timeout_seconds=60)

    assert outcome.result == OutcomeResult.FAILURE
    assert outcome.error_summary == "agent reported no outcome"


def test_missing_command_raises_backend_error(tmp_path: Path) -> None:
    backend = CliAgentBackend(
        name="ghost",
        command_template="definitely-not-an-installed-agent {task_manifest}",
    )

    with pytest.raises(BackendError, match="command not found") as excinfo:
        backend.execute(TASK, _context(tmp_path), timeout_seconds=60)
    assert excinfo.value.transient is False


def test_build_run_args_keeps_placeholder_values_as_single_arguments() -> None:
    run_args, command_head = _build_run_args(
        command_template="runner --manifest {task_manifest} --prompt {prompt} --model {model}",
        model="gpt-5-codex",
        prompt='hello "world" $HOME',
        prompt_file=Path("input/prompt.txt"),
        manifest_path=Path("m file.json"),
        workdir=Path("work dir"),
    )

    assert command_head == "runner"
    assert run_args == [
        "runner",
        "--manifest",
        "m file.json",
        "--prompt",
        'hello "world" $HOME',
        "--model",
        "gpt-5-codex",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("runner --model {model}", "must include"),
        ("runner {prompt} {unknown}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(BackendError, match=message):
        _build_run_args(
            command_template=template,
            model="",
            prompt="p",
            prompt_file=Path("p.txt"),
            manifest_path=Path("m.json"),
            workdir=Path("w"),
        )
