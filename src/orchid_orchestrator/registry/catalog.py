"""Read-only service catalog with dependency ordering helpers."""

from __future__ import annotations

import heapq
import json
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from orchid_orchestrator.config.errors import (
    ConfigFileNotFoundError,
    ConfigValidationError,
    MissingRunConfigError,
    RegistryError,
    ServiceNotFoundError,
)
from orchid_orchestrator.registry.models import ServiceDescriptor


@dataclass(frozen=True, slots=True)
class StartupStep:
    """One entry of the dependency-respecting startup order."""

    service_id: str
    level: int


class ServiceRegistry:
    """Immutable catalog of service descriptors.

    Example usage::

        registry = ServiceRegistry.from_file("config/services.json")
        for step in registry.startup_order():
            print(step.level, step.service_id)
    """

    def __init__(self, services: Iterable[ServiceDescriptor]) -> None:
        catalog: dict[str, ServiceDescriptor] = {}
        for descriptor in services:
            if descriptor.id in catalog:
                raise RegistryError(f"Duplicate service id in registry: {descriptor.id}")
            catalog[descriptor.id] = descriptor
        self._services = catalog
        self._order = self._compute_startup_order()

    @classmethod
    def from_file(cls, path: Path | str) -> ServiceRegistry:
        """Load descriptors from ``{"services": {...}}``, ``{"services": [...]}`` or a list."""
        registry_path = Path(path)
        if not registry_path.exists():
            raise ConfigFileNotFoundError(str(registry_path))
        with registry_path.open(encoding="utf-8") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as exc:
                raise RegistryError(
                    f"Registry file {registry_path} is not valid JSON: {exc}"
                ) from exc
        return cls.from_data(raw, source=str(registry_path))

    @classmethod
    def from_data(cls, raw: Any, *, source: str = "Registry") -> ServiceRegistry:
        entries = raw.get("services", raw) if isinstance(raw, Mapping) else raw
        if isinstance(entries, Mapping):
            items = [{"id": key, **value} for key, value in entries.items()]
        elif isinstance(entries, list):
            items = list(entries)
        else:
            raise RegistryError(f"{source}: expected a list or mapping of services")

        descriptors = []
        for index, item in enumerate(items):
            try:
                descriptors.append(ServiceDescriptor.model_validate(item))
            except ValidationError as e:
                errors = [
                    {
                        "loc": " -> ".join(
                            ["services", str(index), *(str(loc) for loc in err["loc"])]
                        ),
                        "msg": err["msg"],
                    }
                    for err in e.errors()
                ]
                raise ConfigValidationError(errors, source=source) from e
        return cls(descriptors)

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self._services.values())

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._services

    def all(self) -> list[ServiceDescriptor]:
        return list(self._services.values())

    def find(self, service_id: str) -> ServiceDescriptor | None:
        return self._services.get(service_id)

    def get(self, service_id: str) -> ServiceDescriptor:
        descriptor = self._services.get(service_id)
        if descriptor is None:
            raise ServiceNotFoundError(service_id)
        return descriptor

    def is_externally_managed(self, service_id: str) -> bool:
        descriptor = self._services.get(service_id)
        return descriptor is not None and descriptor.externally_managed

    def dependents_of(self, service_id: str) -> list[str]:
        """Ids of services that list ``service_id`` as a dependency."""
        return [d.id for d in self._services.values() if service_id in d.dependencies]

    def startup_order(self) -> list[StartupStep]:
        return list(self._order)

    def to_dict(self) -> dict[str, object]:
        return {
            "services": [descriptor.to_dict() for descriptor in self._services.values()],
            "startup_order": [
                {"service_id": step.service_id, "level": step.level} for step in self._order
            ],
        }

    def _compute_startup_order(self) -> list[StartupStep]:
        # Kahn's algorithm; ties broken by id so the order is stable across runs.
        for descriptor in self._services.values():
            unknown = [dep for dep in descriptor.dependencies if dep not in self._services]
            if unknown:
                raise RegistryError(
                    f"Service {descriptor.id} depends on unknown services: {', '.join(unknown)}"
                )

        remaining = {sid: len(set(d.dependencies)) for sid, d in self._services.items()}
        levels: dict[str, int] = {}
        ready = [sid for sid, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: list[StartupStep] = []

        while ready:
            service_id = heapq.heappop(ready)
            deps = self._services[service_id].dependencies
            level = max((levels[dep] + 1 for dep in deps), default=0)
            levels[service_id] = level
            order.append(StartupStep(service_id=service_id, level=level))
            for dependent in self.dependents_of(service_id):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(self._services):
            cyclic = sorted(sid for sid in self._services if sid not in levels)
            raise RegistryError(f"Dependency cycle detected between: {', '.join(cyclic)}")
        return order


def resolve_working_directory(descriptor: ServiceDescriptor, project_root: Path | str) -> Path:
    """Resolve ``run.cwd`` against ``project_root`` unless it is already absolute."""
    cwd = Path(descriptor.run.cwd if descriptor.run else ".")
    if cwd.is_absolute():
        return cwd
    return (Path(project_root) / cwd).resolve()


def build_service_environment(
    descriptor: ServiceDescriptor,
    base_env: Mapping[str, str],
) -> dict[str, str]:
    """Merge host env, optional defaults and the descriptor's own env.

    Precedence, lowest first: host environment, optional variable defaults,
    ``run.env``. ``PORT`` is filled from the descriptor when unset.

    Raises:
        MissingRunConfigError: If a required variable is set nowhere.
    """
    env = dict(base_env)
    for optional in descriptor.optional_env_vars:
        env.setdefault(optional.name, optional.default_value)
    if descriptor.run is not None:
        env.update(descriptor.run.env)
    if descriptor.port is not None:
        env.setdefault("PORT", str(descriptor.port))

    missing = [name for name in descriptor.required_env_vars if not env.get(name)]
    if missing:
        raise MissingRunConfigError(
            f"Service {descriptor.id} is missing required environment variables: "
            f"{', '.join(missing)}"
        )
    return env
