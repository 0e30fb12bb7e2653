"""Immutable service descriptors loaded from the registry file."""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ServiceCriticality(StrEnum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    OPTIONAL = "optional"


class _RegistryModel(BaseModel):
    # Registry files are shared with non-Python tooling that writes camelCase keys.
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class OptionalEnvVar(_RegistryModel):
    """Environment variable injected with a default when the host does not set it."""

    name: str = Field(..., min_length=1)
    default_value: str = ""
    description: str | None = None


class RunConfig(_RegistryModel):
    """How to launch a service process."""

    command: str = ""
    args: tuple[str, ...] = ()
    cwd: str = "."
    env: dict[str, str] = Field(default_factory=dict)
    managed: Literal["internal", "external"] = "internal"
    auto_start: bool | None = None


class ServiceDescriptor(_RegistryModel):
    """Static description of one supervised service."""

    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    port: int | None = Field(default=None, ge=1, le=65535)
    health_endpoint: str = "/health"
    run: RunConfig | None = None
    criticality: ServiceCriticality = ServiceCriticality.OPTIONAL
    dependencies: tuple[str, ...] = ()
    warmup_time: float = Field(default=10.0, ge=0.0, description="Seconds before health probing")
    start_delay: float = Field(default=0.0, ge=0.0, description="Seconds to wait before auto-start")
    required_env_vars: tuple[str, ...] = ()
    optional_env_vars: tuple[OptionalEnvVar, ...] = ()
    tags: tuple[str, ...] = ()
    version: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def externally_managed(self) -> bool:
        return self.run is not None and self.run.managed == "external"

    @property
    def managed(self) -> Literal["internal", "external"]:
        return "external" if self.externally_managed else "internal"

    @property
    def auto_start_eligible(self) -> bool:
        """Critical services and services flagged ``auto_start`` are started automatically.

        An explicit ``auto_start`` flag wins over criticality; external services never qualify.
        """
        if self.externally_managed:
            return False
        if self.run is not None and self.run.auto_start is not None:
            return self.run.auto_start
        return self.criticality == ServiceCriticality.CRITICAL

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serializable representation."""
        return self.model_dump(mode="json")
