from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskgraph_engine.config import BackendSettings, EscalationSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_match_documented_thresholds(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TASKGRAPH_BACKENDS", "TASKGRAPH_MAX_ATTEMPTS", "TASKGRAPH_ROUTING_POLICY"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.escalation.accept_threshold == 70
    assert settings.escalation.skip_threshold == 60
    assert settings.escalation.max_attempts == 5
    assert settings.monitor.stall_threshold_seconds == 1_200
    assert settings.monitor.timeout_for("high") == 3_600
    assert settings.monitor.timeout_for("unknown") == 1_800
    assert settings.backends.parallel == ("claude", "codex")
    settings.validate()


def test_env_overrides_are_parsed(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKGRAPH_BACKENDS", "Claude=claude -p {prompt}; gemini=gemini {prompt}")
    monkeypatch.setenv("TASKGRAPH_MODELS", "claude=opus")
    monkeypatch.setenv("TASKGRAPH_ROUTING_POLICY", "fixed:gemini")
    monkeypatch.setenv("TASKGRAPH_COMPLEXITY_TIMEOUTS", "low=60, high=7200")
    monkeypatch.setenv("TASKGRAPH_DEFAULT_VERIFICATION", "pytest -q; ruff check .")
    monkeypatch.setenv("TASKGRAPH_REQUIRE_CONFIDENCE", "off")
    monkeypatch.setenv("TASKGRAPH_PARALLEL_BACKENDS", "claude, gemini")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.backends.command_templates == {
        "claude": "claude -p {prompt}",
        "gemini": "gemini {prompt}",
    }
    assert settings.backends.models == {"claude": "opus"}
    assert settings.backends.routing_policy == "fixed"
    assert settings.backends.fixed_backend == "gemini"
    assert settings.backends.parallel == ("claude", "gemini")
    assert settings.monitor.timeout_for("low") == 60
    assert settings.monitor.timeout_for("medium") == 1_800
    assert settings.monitor.timeout_for("high") == 7_200
    assert settings.verification.default_commands == ("pytest -q", "ruff check .")
    assert settings.escalation.require_confidence_for_completion is False
    assert "gemini" in settings.backends.role_names()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("TASKGRAPH_BACKENDS", "claude", "Expected format"),
        ("TASKGRAPH_COMPLEXITY_TIMEOUTS", "low=soon", "TASKGRAPH_COMPLEXITY_TIMEOUTS value"),
        ("TASKGRAPH_COMPLEXITY_TIMEOUTS", "low=0", "must be > 0"),
        ("TASKGRAPH_REQUIRE_CONFIDENCE", "maybe", "Invalid boolean"),
        ("TASKGRAPH_MAX_PARALLELISM", "four", "integer value for TASKGRAPH_MAX_PARALLELISM"),
        ("TASKGRAPH_STALL_THRESHOLD_SECONDS", "20m", "TASKGRAPH_STALL_THRESHOLD_SECONDS: '20m'"),
        ("TASKGRAPH_TICK_SECONDS", "fast", "Invalid number for TASKGRAPH_TICK_SECONDS"),
    ],
)
def test_malformed_env_values_are_rejected(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_skip_threshold_above_accept_is_rejected() -> None:
    settings = Settings(escalation=EscalationSettings(accept_threshold=60, skip_threshold=70))

    with pytest.raises(ValueError, match="must not exceed"):
        settings.validate()


def test_parallel_tier_needs_two_backends() -> None:
    settings = Settings(backends=BackendSettings(parallel=("claude",)))

    with pytest.raises(ValueError, match="at least two"):
        settings.validate()


def test_fixed_routing_requires_backend_name() -> None:
    settings = Settings(backends=BackendSettings(routing_policy="fixed"))

    with pytest.raises(ValueError, match="requires a backend name"):
        settings.validate()
