from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from pipecheck.defaults import (
    LOGGING_DEFAULTS,
    REGISTRY_DEFAULTS,
    RUNNER_DEFAULTS,
    VALIDATION_DEFAULTS,
    generate_toml,
)

CONFIG_FILENAME = "pipecheck.toml"
CONFIG_DIR = ".pipecheck"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    """Raised when a config value is out of range."""


@dataclass
class RunnerConfig:
    fail_fast: bool
    max_parallel: int


@dataclass
class ValidationConfig:
    strict: bool


@dataclass
class RegistryConfig:
    path: str


@dataclass
class LoggingConfig:
    level: str


@dataclass
class PipecheckConfig:
    runner: RunnerConfig
    validation: ValidationConfig = field(
        default_factory=lambda: ValidationConfig(**VALIDATION_DEFAULTS),
    )
    registry: RegistryConfig = field(
        default_factory=lambda: RegistryConfig(**REGISTRY_DEFAULTS),
    )
    logging: LoggingConfig = field(
        default_factory=lambda: LoggingConfig(**LOGGING_DEFAULTS),
    )

    def registry_path(self, project_root: Path) -> Path:
        path = Path(self.registry.path)
        return path if path.is_absolute() else project_root / path


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_defaults() -> dict:
    return {
        "runner": dict(RUNNER_DEFAULTS),
        "validation": dict(VALIDATION_DEFAULTS),
        "registry": dict(REGISTRY_DEFAULTS),
        "logging": dict(LOGGING_DEFAULTS),
    }


def _config_from_dict(data: dict) -> PipecheckConfig:
    runner_data = data.get("runner", RUNNER_DEFAULTS)
    try:
        max_parallel = int(runner_data["max_parallel"])
    except (TypeError, ValueError) as exc:
        msg = f"[runner] max_parallel must be an integer, got {runner_data['max_parallel']!r}"
        raise ConfigError(msg) from exc
    if max_parallel < 1:
        msg = f"[runner] max_parallel must be at least 1, got {max_parallel}"
        raise ConfigError(msg)

    level = str(data.get("logging", LOGGING_DEFAULTS)["level"]).upper()
    if level not in LOG_LEVELS:
        msg = f"[logging] level must be one of {', '.join(LOG_LEVELS)}, got {level!r}"
        raise ConfigError(msg)

    return PipecheckConfig(
        runner=RunnerConfig(
            fail_fast=bool(runner_data["fail_fast"]),
            max_parallel=max_parallel,
        ),
        validation=ValidationConfig(
            strict=bool(data.get("validation", VALIDATION_DEFAULTS)["strict"]),
        ),
        registry=RegistryConfig(path=str(data.get("registry", REGISTRY_DEFAULTS)["path"])),
        logging=LoggingConfig(level=level),
    )


def default_config() -> PipecheckConfig:
    return _config_from_dict(_build_defaults())


def load_config(project_root: Path) -> PipecheckConfig:
    """Load config: source defaults merged with .pipecheck/pipecheck.toml overrides.

    Raises ``ConfigError`` when a value is out of range.
    """
    defaults = _build_defaults()
    toml_path = project_root / CONFIG_DIR / CONFIG_FILENAME

    if not toml_path.is_file():
        return _config_from_dict(defaults)

    try:
        raw = toml_path.read_bytes()
        overrides = tomllib.loads(raw.decode())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        print(f"Warning: failed to parse {toml_path}: {exc}", file=sys.stderr)
        return _config_from_dict(defaults)

    merged = _deep_merge(defaults, overrides)
    return _config_from_dict(merged)


def init_config(project_root: Path) -> Path:
    """Write .pipecheck/pipecheck.toml from source defaults. Backup existing."""
    config_dir = project_root / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = config_dir / CONFIG_FILENAME
    if config_path.exists():
        backup_path = config_path.with_suffix(".toml.bak")
        backup_path.write_text(config_path.read_text())

    config_path.write_text(generate_toml())
    return config_path
