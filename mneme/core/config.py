"""Configuration for the autonomous loop.

One AutoConfig is built at startup (defaults, then .mneme/config.yaml, then CLI
flags) and handed to every component's constructor. Nothing reads module-level
settings at runtime.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

CONFIG_FILE = Path(".mneme/config.yaml")

# Default port for `opencode serve` when mneme starts its own server.
DEFAULT_SERVER_PORT = 4097


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


class AutoConfig(BaseModel):
    """Settings for `mneme auto`."""

    model_config = {"extra": "forbid"}

    # Remote runtime
    server_url: str | None = None
    hostname: str = "127.0.0.1"
    port: int = Field(default=DEFAULT_SERVER_PORT, ge=1, le=65535)
    server_command: list[str] = Field(default_factory=lambda: ["opencode", "serve"])
    server_start_timeout: float = Field(default=30.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    session_title: str = "mneme auto"

    # Roles. Model identifiers are "provider/model"; None lets the runtime pick.
    planner_model: str | None = None
    executor_model: str | None = None
    planner_agent: str | None = "plan"
    executor_agent: str | None = "build"

    # Loop bounds
    max_cycles: int = Field(default=50, ge=1)
    max_turn_errors: int = Field(default=3, ge=1)

    # Turn timing (seconds)
    warn_after: float = Field(default=120.0, gt=0)
    abort_after: float = Field(default=600.0, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)
    probe_delay: float = Field(default=2.0, ge=0)

    # Event stream
    reconnect_delay: float = Field(default=3.0, ge=0)
    max_reconnects: int = Field(default=20, ge=1)

    # Work-item tracker
    tracker_command: str = "bd"
    tracker_timeout: float = Field(default=30.0, gt=0)
    # Dolt sql-server behind `bd`; None skips the reachability check
    dolt_host: str = "127.0.0.1"
    dolt_port: int | None = Field(default=3307, ge=1, le=65535)

    # Prompts
    sentinel: str = "MNEME_TASK_COMPLETE"
    facts_dir: Path = Path(".ledger/facts")
    rules_file: Path = Path("AGENTS.md")

    # Topology
    headless: bool = False
    transcript_command: list[str] = Field(
        default_factory=lambda: ["opencode", "attach", "{url}", "--session", "{session}"]
    )
    parent_check_interval: float = Field(default=5.0, gt=0)
    log_file: Path = Path(".mneme/auto.log")
    lock_file: Path = Path(".mneme/auto.lock")

    @model_validator(mode="after")
    def _check_windows(self) -> AutoConfig:
        if self.warn_after >= self.abort_after:
            raise ValueError(
                f"warn_after ({self.warn_after}) must be shorter than "
                f"abort_after ({self.abort_after})"
            )
        return self

    @property
    def base_url(self) -> str:
        """URL of the runtime, attached or self-started."""
        if self.server_url:
            return self.server_url.rstrip("/")
        return f"http://{self.hostname}:{self.port}"

    def resolve(self, repo_path: Path) -> AutoConfig:
        """Return a copy with project-relative paths made absolute."""
        updates = {}
        for name in ("facts_dir", "rules_file", "log_file", "lock_file"):
            value: Path = getattr(self, name)
            if not value.is_absolute():
                updates[name] = repo_path / value
        return self.model_copy(update=updates)


def _read_yaml(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a mapping in {config_path}, got {type(data).__name__}"
        )
    section = data.get("auto", {})
    if not isinstance(section, dict):
        raise ConfigError(f"'auto' section in {config_path} must be a mapping")
    return section


def load_config(repo_path: Path, **overrides: Any) -> AutoConfig:
    """Build the run configuration for a project.

    Precedence: explicit overrides (CLI flags) > .mneme/config.yaml > defaults.
    Overrides whose value is None are ignored so unset flags fall through.

    Raises:
        ConfigError: If the YAML file or the merged values are invalid
    """
    config_path = repo_path / CONFIG_FILE
    values: dict[str, Any] = {}
    if config_path.exists():
        values.update(_read_yaml(config_path))
        logger.debug(f"Loaded config overrides from {config_path}: {sorted(values)}")

    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        config = AutoConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e

    return config.resolve(repo_path)
