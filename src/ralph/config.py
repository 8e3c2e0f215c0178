from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentName = Literal["codex", "claude", "droid"]
CommitErrorPolicy = Literal["abort", "warn"]

DEFAULT_CONFIG_FILE = "ralph.toml"
AGENT_NAMES = ("codex", "claude", "droid")
COMMIT_ERROR_POLICIES = ("abort", "warn")


class ConfigError(RuntimeError):
    """Raised when ralph.toml cannot be read or holds an unknown setting."""


@dataclass(slots=True)
class PathsConfig:
    backlog: str = ".agents/tasks/prd.json"
    progress: str = ".ralph/progress.md"
    agents_md: str = "AGENTS.md"


@dataclass(slots=True)
class AgentConfig:
    default: AgentName = "codex"
    codex_binary: str = "codex"
    claude_binary: str = "claude"
    droid_binary: str = "droid"
    timeout_seconds: float = 1800.0
    max_retries: int = 0
    retry_backoff_seconds: float = 2.0
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowConfig:
    commit: bool = True
    commit_error_policy: CommitErrorPolicy = "abort"
    commit_message_format: str = "feat: {story_id} - {story_title}"
    gate_timeout_seconds: float = 600.0
    progress_tail_lines: int = 40


@dataclass(slots=True)
class RalphConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)

    @classmethod
    def default(cls) -> RalphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RalphConfig:
        return cls(
            paths=PathsConfig(**data.get("paths", {})),
            agent=AgentConfig(**data.get("agent", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
        )

    def to_dict(self) -> dict:
        return {
            "paths": {
                "backlog": self.paths.backlog,
                "progress": self.paths.progress,
                "agents_md": self.paths.agents_md,
            },
            "agent": {
                "default": self.agent.default,
                "codex_binary": self.agent.codex_binary,
                "claude_binary": self.agent.claude_binary,
                "droid_binary": self.agent.droid_binary,
                "timeout_seconds": self.agent.timeout_seconds,
                "max_retries": self.agent.max_retries,
                "retry_backoff_seconds": self.agent.retry_backoff_seconds,
                "extra_args": list(self.agent.extra_args),
            },
            "workflow": {
                "commit": self.workflow.commit,
                "commit_error_policy": self.workflow.commit_error_policy,
                "commit_message_format": self.workflow.commit_message_format,
                "gate_timeout_seconds": self.workflow.gate_timeout_seconds,
                "progress_tail_lines": self.workflow.progress_tail_lines,
            },
        }

    def binary_for(self, agent: str) -> str:
        binaries = {
            "codex": self.agent.codex_binary,
            "claude": self.agent.claude_binary,
            "droid": self.agent.droid_binary,
        }
        return binaries.get(agent, agent)

    def backlog_path(self, root: Path) -> Path:
        return _resolve(root, self.paths.backlog)

    def progress_path(self, root: Path) -> Path:
        return _resolve(root, self.paths.progress)

    def agents_md_path(self, root: Path) -> Path:
        return _resolve(root, self.paths.agents_md)


def _resolve(root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = root / path
    return path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("paths", "agent", "workflow"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RalphConfig:
    if not path.exists():
        return RalphConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"{path} is not readable TOML: {exc}") from exc
    for section in ("paths", "agent", "workflow"):
        if not isinstance(data.get(section, {}), dict):
            raise ConfigError(f"{path}: [{section}] must be a table.")
    try:
        config = RalphConfig.from_dict(data)
    except TypeError as exc:
        raise ConfigError(f"{path}: unknown setting ({exc})") from exc
    if config.agent.default not in AGENT_NAMES:
        raise ConfigError(
            f"{path}: agent.default must be one of {', '.join(AGENT_NAMES)}, "
            f"not {config.agent.default!r}"
        )
    if config.workflow.commit_error_policy not in COMMIT_ERROR_POLICIES:
        raise ConfigError(
            f"{path}: workflow.commit_error_policy must be 'abort' or 'warn', "
            f"not {config.workflow.commit_error_policy!r}"
        )
    return config


def save_config(path: Path, config: RalphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
