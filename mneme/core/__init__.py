"""Core modules for the mneme auto supervisor loop."""

from mneme.core.config import AutoConfig, ConfigError, load_config
from mneme.core.models import (
    InterruptCommand,
    InterruptKind,
    LoopState,
    Role,
    TurnOutcome,
    TurnStatus,
    WorkItem,
)

__all__ = [
    "AutoConfig",
    "ConfigError",
    "InterruptCommand",
    "InterruptKind",
    "LoopState",
    "Role",
    "TurnOutcome",
    "TurnStatus",
    "WorkItem",
    "load_config",
]
