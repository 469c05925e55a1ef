"""Compiled-in default configuration values for issueflow.

This module is the single source of truth for all default settings.
Other modules should import from here rather than duplicating values.
"""

from __future__ import annotations

from typing import Final

PIPELINE_DEFAULTS: Final[dict[str, int | str | bool | list[str]]] = {
    "trunk": "main",
    "remote": "origin",
    "worktree_dir": "../worktrees",
    "branch_prefix": "issue",
    "state_dir": ".issueflow/issues",
    "intake_label": "auto-process",
    "max_attempts": 5,
    "max_stage_attempts": 3,
    "require_approval": False,
    "merge_method": "squash",
    "ui_labels": ["ui", "frontend", "design", "ux"],
}

GATE_DEFAULTS: Final[dict[str, str]] = {
    "typecheck": "npm run type-check",
    "lint": "npm run lint",
    "test": "npm test",
    "coverage": "",
}

POOL_DEFAULTS: Final[dict[str, int | str]] = {
    "max_sessions": 3,
    "idle_ttl_seconds": 60,
    "agent_command": "claude --dangerously-skip-permissions",
}

TIMEOUT_DEFAULTS: Final[dict[str, int]] = {
    "refining": 600,
    "architecting": 900,
    "designing": 900,
    "implementing": 3600,
    "testing": 1800,
    "qa_gate": 900,
}

NOTIFY_DEFAULTS: Final[dict[str, str]] = {
    "channel": "sms",
    "sms_command": "",
    "email_command": "",
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
    if isinstance(value, list):
        return "[" + ", ".join(_format_toml_value(v) for v in value) + "]"
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
        _section_to_toml("pipeline", PIPELINE_DEFAULTS),
        _section_to_toml("gate", GATE_DEFAULTS),
        _section_to_toml("pool", POOL_DEFAULTS),
        _section_to_toml("timeout", TIMEOUT_DEFAULTS),
        _section_to_toml("notify", NOTIFY_DEFAULTS),
    ]
    return "\n\n".join(sections) + "\n"
