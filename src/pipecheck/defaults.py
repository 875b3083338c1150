"""Compiled-in default configuration values for pipecheck.

This module is the single source of truth for all default settings.
Other modules should import from here rather than duplicating values.
"""

from __future__ import annotations

from typing import Final

RUNNER_DEFAULTS: Final[dict[str, bool | int]] = {
    "fail_fast": False,
    "max_parallel": 4,
}

VALIDATION_DEFAULTS: Final[dict[str, bool]] = {
    "strict": False,
}

REGISTRY_DEFAULTS: Final[dict[str, str]] = {
    "path": ".pipecheck/capabilities.toml",
}

LOGGING_DEFAULTS: Final[dict[str, str]] = {
    "level": "WARNING",
}

_BARE_KEY_CHARS = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
)


def _quote_key(key: str) -> str:
    if key and all(c in _BARE_KEY_CHARS for c in key):
        return key
    return f'"{key}"'


def _format_toml_value(value: object) -> str:
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    msg = f"Unsupported type: {type(value)}"
    raise TypeError(msg)


def _section_to_toml(name: str, data: dict[str, object]) -> str:
    lines = [f"[{name}]"]
    for key, value in data.items():
        lines.append(f"{_quote_key(key)} = {_format_toml_value(value)}")
    return "\n".join(lines)


def generate_toml() -> str:
    """Generate a TOML configuration string from compiled-in defaults."""
    sections = [
        _section_to_toml("runner", RUNNER_DEFAULTS),
        _section_to_toml("validation", VALIDATION_DEFAULTS),
        _section_to_toml("registry", REGISTRY_DEFAULTS),
        _section_to_toml("logging", LOGGING_DEFAULTS),
    ]
    return "\n\n".join(sections) + "\n"
