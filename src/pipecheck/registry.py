"""Capability registry: what the executing environment supports.

The registry is a read-only snapshot supplied by the caller. It is the only
object shared between concurrent validations and runs.
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Final

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)

PLUGIN_DOCKER: Final = "docker-pipeline"
PLUGIN_GIT: Final = "git"
FEATURE_DOCKER: Final = "docker"
FEATURE_SHELL: Final = "shell"
FLAG_MATRIX: Final = "matrix-supported"


class RegistryError(ValueError):
    """Raised when a capability file cannot be read or is malformed."""


class CapabilityRegistry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    plugins: frozenset[str] = frozenset()
    agent_features: frozenset[str] = frozenset()
    credentials: frozenset[str] = frozenset()
    libraries: Mapping[str, frozenset[str]] = Field(default={}, validate_default=True)
    flags: frozenset[str] = frozenset()

    @field_validator("libraries")
    @classmethod
    def _read_only_libraries(
        cls, value: Mapping[str, frozenset[str]]
    ) -> Mapping[str, frozenset[str]]:
        return MappingProxyType(dict(value))

    @field_serializer("libraries")
    def _dump_libraries(self, value: Mapping[str, frozenset[str]]) -> dict[str, list[str]]:
        return {name: sorted(calls) for name, calls in value.items()}

    def has_plugin(self, plugin_id: str) -> bool:
        return plugin_id in self.plugins

    def has_agent_feature(self, flag: str) -> bool:
        return flag in self.agent_features

    def has_credential(self, credential_id: str) -> bool:
        return credential_id in self.credentials

    def has_library(self, name: str) -> bool:
        return name in self.libraries

    def library_exposes(self, name: str, call: str) -> bool:
        return call in self.libraries.get(name, frozenset())

    def has_flag(self, flag: str) -> bool:
        return flag in self.flags


def load_registry(path: Path) -> CapabilityRegistry:
    """Load a registry snapshot from a TOML file.

    Expected layout::

        plugins = ["git", "docker-pipeline"]
        agent_features = ["shell", "docker"]
        credentials = ["deploy-token"]
        flags = ["matrix-supported"]

        [libraries]
        shared-utils = ["deployApp", "notifySlack"]
    """
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        msg = f"capability file not found: {path}"
        raise RegistryError(msg) from exc
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        msg = f"failed to parse {path}: {exc}"
        raise RegistryError(msg) from exc

    try:
        return CapabilityRegistry.model_validate(data)
    except ValidationError as exc:
        msg = f"invalid capability file {path}: {exc}"
        raise RegistryError(msg) from exc
