"""Runtime configuration for the task graph engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

ROUTING_POLICIES = ("smart", "fixed")


@dataclass(slots=True)
class SchedulerSettings:
    """Resolver/batch scheduler settings."""

    max_parallelism: int = 4
    tick_seconds: float = 1.0
    max_iterations: int = 0
    infer_dependencies: bool = False


@dataclass(slots=True)
class MonitorSettings:
    """Heartbeat monitor and hard timeout settings."""

    stall_threshold_seconds: int = 1_200
    default_timeout_seconds: int = 1_800
    progress_persist_seconds: float = 30.0
    timeout_seconds_by_complexity: dict[str, int] = field(
        default_factory=lambda: {"low": 900, "medium": 1_800, "high": 3_600},
    )

    def timeout_for(self, complexity: str) -> int:
        return self.timeout_seconds_by_complexity.get(complexity, self.default_timeout_seconds)


@dataclass(slots=True)
class EscalationSettings:
    """Confidence thresholds and attempt budget for the escalation council.

    Thresholds are empirical tuning knobs, not derived values.
    """

    accept_threshold: int = 70
    skip_threshold: int = 60
    max_attempts: int = 5
    require_confidence_for_completion: bool = True
    context_max_files: int = 20
    context_max_bytes_per_file: int = 20_000


@dataclass(slots=True)
class BackendSettings:
    """Backend command templates and tier role assignment."""

    command_templates: dict[str, str] = field(default_factory=dict)
    models: dict[str, str] = field(default_factory=dict)
    fast: str = "claude"
    parallel: tuple[str, ...] = ("claude", "codex")
    deep: str = "claude"
    council: tuple[str, ...] = ("claude", "codex")
    synthesizer: str = "claude"
    routing_policy: str = "smart"
    fixed_backend: str | None = None
    frontend_backend: str = "claude"
    backend_backend: str = "codex"

    def role_names(self) -> set[str]:
        names = {self.fast, self.deep, self.synthesizer, self.frontend_backend}
        names.update(self.parallel)
        names.update(self.council)
        names.add(self.backend_backend)
        if self.fixed_backend:
            names.add(self.fixed_backend)
        return names


@dataclass(slots=True)
class VerificationSettings:
    """Verification runner settings."""

    command_timeout_seconds: int = 600
    default_commands: tuple[str, ...] = ()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".taskgraph.db")
    workspace_root: Path = Path(".")
    workdir_root: Path = Path(".taskgraph/work")
    log_level: str = "INFO"
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    escalation: EscalationSettings = field(default_factory=EscalationSettings)
    backends: BackendSettings = field(default_factory=BackendSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        routing_policy, fixed_backend = parse_routing_policy(
            os.getenv("TASKGRAPH_ROUTING_POLICY", "smart"),
        )
        return cls(
            db_path=db_path or Path(os.getenv("TASKGRAPH_DB_PATH", ".taskgraph.db")),
            workspace_root=Path(os.getenv("TASKGRAPH_WORKSPACE_ROOT", ".")),
            workdir_root=Path(os.getenv("TASKGRAPH_WORKDIR_ROOT", ".taskgraph/work")),
            log_level=os.getenv("TASKGRAPH_LOG_LEVEL", "INFO").upper(),
            sqlite_busy_timeout_ms=_env_int("TASKGRAPH_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            scheduler=SchedulerSettings(
                max_parallelism=_env_int("TASKGRAPH_MAX_PARALLELISM", "4"),
                tick_seconds=_env_float("TASKGRAPH_TICK_SECONDS", "1.0"),
                max_iterations=_env_int("TASKGRAPH_MAX_ITERATIONS", "0"),
                infer_dependencies=_env_bool("TASKGRAPH_INFER_DEPENDENCIES", default=False),
            ),
            monitor=MonitorSettings(
                stall_threshold_seconds=_env_int("TASKGRAPH_STALL_THRESHOLD_SECONDS", "1200"),
                default_timeout_seconds=_env_int("TASKGRAPH_DEFAULT_TIMEOUT_SECONDS", "1800"),
                timeout_seconds_by_complexity=_collect_complexity_timeouts(),
                progress_persist_seconds=_env_float("TASKGRAPH_PROGRESS_PERSIST_SECONDS", "30"),
            ),
            escalation=EscalationSettings(
                accept_threshold=_env_int("TASKGRAPH_ACCEPT_THRESHOLD", "70"),
                skip_threshold=_env_int("TASKGRAPH_SKIP_THRESHOLD", "60"),
                max_attempts=_env_int("TASKGRAPH_MAX_ATTEMPTS", "5"),
                require_confidence_for_completion=_env_bool(
                    "TASKGRAPH_REQUIRE_CONFIDENCE",
                    default=True,
                ),
                context_max_files=_env_int("TASKGRAPH_CONTEXT_MAX_FILES", "20"),
                context_max_bytes_per_file=_env_int(
                    "TASKGRAPH_CONTEXT_MAX_BYTES_PER_FILE",
                    "20000",
                ),
            ),
            backends=BackendSettings(
                command_templates=_collect_pairs("TASKGRAPH_BACKENDS", "<name>=<template>"),
                models=_collect_pairs("TASKGRAPH_MODELS", "<name>=<model>"),
                fast=os.getenv("TASKGRAPH_FAST_BACKEND", "claude").strip(),
                parallel=_csv("TASKGRAPH_PARALLEL_BACKENDS", "claude,codex"),
                deep=os.getenv("TASKGRAPH_DEEP_BACKEND", "claude").strip(),
                council=_csv("TASKGRAPH_COUNCIL_BACKENDS", "claude,codex"),
                synthesizer=os.getenv("TASKGRAPH_SYNTHESIZER_BACKEND", "claude").strip(),
                routing_policy=routing_policy,
                fixed_backend=fixed_backend,
                frontend_backend=os.getenv("TASKGRAPH_FRONTEND_BACKEND", "claude").strip(),
                backend_backend=os.getenv("TASKGRAPH_BACKEND_BACKEND", "codex").strip(),
            ),
            verification=VerificationSettings(
                command_timeout_seconds=_env_int("TASKGRAPH_VERIFICATION_TIMEOUT_SECONDS", "600"),
                default_commands=tuple(
                    part.strip()
                    for part in os.getenv("TASKGRAPH_DEFAULT_VERIFICATION", "").split(";")
                    if part.strip()
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.scheduler.max_parallelism <= 0:
            raise ValueError("TASKGRAPH_MAX_PARALLELISM must be > 0.")
        if self.scheduler.tick_seconds < 0:
            raise ValueError("TASKGRAPH_TICK_SECONDS must be >= 0.")
        if self.scheduler.max_iterations < 0:
            raise ValueError("TASKGRAPH_MAX_ITERATIONS must be >= 0.")
        if self.monitor.stall_threshold_seconds <= 0:
            raise ValueError("TASKGRAPH_STALL_THRESHOLD_SECONDS must be > 0.")
        if self.monitor.default_timeout_seconds <= 0:
            raise ValueError("TASKGRAPH_DEFAULT_TIMEOUT_SECONDS must be > 0.")
        if self.monitor.progress_persist_seconds < 0:
            raise ValueError("TASKGRAPH_PROGRESS_PERSIST_SECONDS must be >= 0.")
        for threshold_name, value in (
            ("TASKGRAPH_ACCEPT_THRESHOLD", self.escalation.accept_threshold),
            ("TASKGRAPH_SKIP_THRESHOLD", self.escalation.skip_threshold),
        ):
            if not 0 <= value <= 100:
                raise ValueError(f"{threshold_name} must be within 0..100.")
        if self.escalation.skip_threshold > self.escalation.accept_threshold:
            raise ValueError(
                "TASKGRAPH_SKIP_THRESHOLD must not exceed TASKGRAPH_ACCEPT_THRESHOLD.",
            )
        if self.escalation.max_attempts <= 0:
            raise ValueError("TASKGRAPH_MAX_ATTEMPTS must be > 0.")
        if len(self.backends.parallel) < 2:
            raise ValueError("TASKGRAPH_PARALLEL_BACKENDS must name at least two backends.")
        if not self.backends.council:
            raise ValueError("TASKGRAPH_COUNCIL_BACKENDS must name at least one backend.")
        if self.backends.routing_policy not in ROUTING_POLICIES:
            raise ValueError(
                f"Unsupported TASKGRAPH_ROUTING_POLICY: {self.backends.routing_policy!r}",
            )
        if self.backends.routing_policy == "fixed" and not self.backends.fixed_backend:
            raise ValueError("TASKGRAPH_ROUTING_POLICY=fixed:<name> requires a backend name.")
        if self.verification.command_timeout_seconds <= 0:
            raise ValueError("TASKGRAPH_VERIFICATION_TIMEOUT_SECONDS must be > 0.")


def parse_routing_policy(raw: str) -> tuple[str, str | None]:
    """Split ``smart`` or ``fixed:<name>`` into the policy and its pinned backend."""

    value = raw.strip()
    if value.startswith("fixed:"):
        return "fixed", value.split(":", 1)[1].strip() or None
    return value.lower(), None


def _collect_pairs(name: str, expected: str) -> dict[str, str]:
    """Parse ``name=value;name=value`` mappings such as ``TASKGRAPH_BACKENDS``."""

    raw = os.getenv(name, "").strip()
    if not raw:
        return {}

    pairs: dict[str, str] = {}
    for part in raw.split(";"):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                f"Invalid {name} entry: {token!r}. Expected format '{expected}'.",
            )
        key, value = token.split("=", 1)
        key = key.strip().lower()
        if not key or not value.strip():
            raise ValueError(f"Invalid {name} entry: {token!r}")
        pairs[key] = value.strip()
    return pairs


def _collect_complexity_timeouts() -> dict[str, int]:
    timeouts = {"low": 900, "medium": 1_800, "high": 3_600}
    raw = os.getenv("TASKGRAPH_COMPLEXITY_TIMEOUTS", "").strip()
    if not raw:
        return timeouts
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid TASKGRAPH_COMPLEXITY_TIMEOUTS entry: "
                f"{token!r}. Expected format '<complexity>=<seconds>'.",
            )
        complexity, seconds_raw = (item.strip() for item in token.split("=", 1))
        try:
            seconds = int(seconds_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid TASKGRAPH_COMPLEXITY_TIMEOUTS value for {complexity!r}: {seconds_raw!r}",
            ) from error
        if seconds <= 0:
            raise ValueError(
                f"Invalid TASKGRAPH_COMPLEXITY_TIMEOUTS value for {complexity!r}: must be > 0",
            )
        timeouts[complexity.lower()] = seconds
    return timeouts


def _csv(name: str, default: str) -> tuple[str, ...]:
    return tuple(
        part.strip().lower() for part in os.getenv(name, default).split(",") if part.strip()
    )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
