"""Configuration-keyed lookup table of execution backends."""

from __future__ import annotations

import logging

from taskgraph_engine.config import BackendSettings
from taskgraph_engine.orchestrator.backend.base import ExecutionBackend
from taskgraph_engine.orchestrator.backend.cli_backend import CliAgentBackend

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Maps backend names to implementations; the core never names a concrete one."""

    def __init__(self) -> None:
        self._backends: dict[str, ExecutionBackend] = {}
        self._models: dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings: BackendSettings) -> BackendRegistry:
        registry = cls()
        for name, template in settings.command_templates.items():
            registry.register(name, CliAgentBackend(name=name, command_template=template))
        registry._models.update(settings.models)
        return registry

    def register(self, name: str, backend: ExecutionBackend, *, model: str = "") -> None:
        key = name.strip().lower()
        if key in self._backends:
            logger.info("Replacing backend registration: %s", key)
        self._backends[key] = backend
        if model:
            self._models[key] = model

    def get(self, name: str) -> ExecutionBackend:
        key = name.strip().lower()
        try:
            return self._backends[key]
        except KeyError as error:
            known = ", ".join(sorted(self._backends)) or "none"
            raise KeyError(f"Unknown backend {name!r} (registered: {known})") from error

    def model_for(self, name: str) -> str:
        return self._models.get(name.strip().lower(), "")

    def names(self) -> list[str]:
        return sorted(self._backends)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip().lower() in self._backends

    def missing(self, names: set[str]) -> list[str]:
        """Configured role names without a registered backend."""

        return sorted(name for name in names if name not in self)
