from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from issueflow.defaults import (
    GATE_DEFAULTS,
    NOTIFY_DEFAULTS,
    PIPELINE_DEFAULTS,
    POOL_DEFAULTS,
    TIMEOUT_DEFAULTS,
    generate_toml,
)

CONFIG_FILENAME = "issueflow.toml"
CONFIG_DIR = ".issueflow"


@dataclass
class PipelineConfig:
    trunk: str
    remote: str
    worktree_dir: str
    branch_prefix: str
    state_dir: str
    intake_label: str
    max_attempts: int
    max_stage_attempts: int
    require_approval: bool
    merge_method: str
    ui_labels: list[str]


@dataclass
class PoolConfig:
    max_sessions: int
    idle_ttl_seconds: int
    agent_command: str


@dataclass
class NotifyConfig:
    channel: str
    sms_command: str
    email_command: str


@dataclass
class IssueflowConfig:
    pipeline: PipelineConfig
    pool: PoolConfig = field(default_factory=lambda: PoolConfig(**POOL_DEFAULTS))
    gate: dict[str, str] = field(default_factory=lambda: dict(GATE_DEFAULTS))
    timeouts: dict[str, int] = field(default_factory=lambda: dict(TIMEOUT_DEFAULTS))
    notify: NotifyConfig = field(
        default_factory=lambda: NotifyConfig(**NOTIFY_DEFAULTS),
    )

    def state_root(self, project_root: Path) -> Path:
        return project_root / self.pipeline.state_dir

    def worktree_root(self, project_root: Path) -> Path:
        return (project_root / self.pipeline.worktree_dir).resolve()


def default_config() -> IssueflowConfig:
    return _config_from_dict(_build_defaults())


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
        "pipeline": dict(PIPELINE_DEFAULTS),
        "gate": dict(GATE_DEFAULTS),
        "pool": dict(POOL_DEFAULTS),
        "timeout": dict(TIMEOUT_DEFAULTS),
        "notify": dict(NOTIFY_DEFAULTS),
    }


def _config_from_dict(data: dict) -> IssueflowConfig:
    pipeline = data.get("pipeline", PIPELINE_DEFAULTS)
    return IssueflowConfig(
        pipeline=PipelineConfig(
            trunk=pipeline["trunk"],
            remote=pipeline["remote"],
            worktree_dir=pipeline["worktree_dir"],
            branch_prefix=pipeline["branch_prefix"],
            state_dir=pipeline["state_dir"],
            intake_label=pipeline["intake_label"],
            max_attempts=int(pipeline["max_attempts"]),
            max_stage_attempts=int(pipeline["max_stage_attempts"]),
            require_approval=bool(pipeline["require_approval"]),
            merge_method=pipeline["merge_method"],
            ui_labels=list(pipeline["ui_labels"]),
        ),
        pool=PoolConfig(**data.get("pool", POOL_DEFAULTS)),
        gate=data.get("gate", dict(GATE_DEFAULTS)),
        timeouts=data.get("timeout", dict(TIMEOUT_DEFAULTS)),
        notify=NotifyConfig(**data.get("notify", NOTIFY_DEFAULTS)),
    )


def load_config(project_root: Path) -> IssueflowConfig:
    """Load config: source defaults merged with .issueflow/issueflow.toml overrides."""
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
    """Write .issueflow/issueflow.toml from source defaults. Backup existing."""
    config_dir = project_root / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = config_dir / CONFIG_FILENAME
    if config_path.exists():
        backup_path = config_path.with_suffix(".toml.bak")
        backup_path.write_text(config_path.read_text())

    config_path.write_text(generate_toml())
    return config_path
