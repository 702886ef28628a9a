"""Data models for the autonomous loop.

Work items come from the external tracker and are validated with Pydantic.
Turn outcomes, prompt seeds and interrupt commands are plain dataclasses that
live only for the duration of a run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    """The two cooperating agent roles."""

    PLANNER = "planner"
    EXECUTOR = "executor"


class TurnStatus(str, Enum):
    """How a turn ended. Exactly one per turn."""

    COMPLETED = "completed"
    ABORTED = "aborted"
    QUIT = "quit"
    ERRORED = "errored"


class AbortReason(str, Enum):
    """Why an aborted turn was aborted."""

    USER = "user"
    SILENCE = "silence"


class LoopState(str, Enum):
    """States of the supervisor state machine."""

    IDLE = "idle"
    GOAL_DISCUSSION = "goal_discussion"
    SELECTING_WORK = "selecting_work"
    PLANNER_TURN = "planner_turn"
    EXECUTOR_TURN = "executor_turn"
    AWAITING_USER = "awaiting_user"
    DONE = "done"


# --- Work items ---


class WorkItemStatus(str, Enum):
    """Status of a work item in the tracker."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    BLOCKED = "blocked"


class WorkItem(BaseModel):
    """Snapshot of one tracker item. Read-mostly; the tracker owns storage."""

    model_config = {"extra": "ignore"}

    id: str
    title: str = ""
    description: str = ""
    status: WorkItemStatus = WorkItemStatus.OPEN
    priority: int = 2
    notes: str = ""
    issue_type: str = "task"
    dependencies: list[str] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower().replace("-", "_").replace(" ", "_")
            if value not in {s.value for s in WorkItemStatus}:
                return WorkItemStatus.OPEN
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> Any:
        # bd prints priorities as "P1" in some outputs
        if isinstance(value, str):
            value = value.strip().upper().lstrip("P")
            return int(value) if value.isdigit() else 2
        if value is None:
            return 2
        return value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalize_dependencies(cls, value: Any) -> Any:
        if value is None:
            return []
        ids = []
        for dep in value:
            if isinstance(dep, dict):
                dep_id = dep.get("depends_on_id") or dep.get("id")
                if dep_id:
                    ids.append(str(dep_id))
            else:
                ids.append(str(dep))
        return ids

    @classmethod
    def from_tracker(cls, data: dict[str, Any]) -> WorkItem:
        """Build from tracker JSON, tolerating the field-name variants bd emits."""
        payload = dict(data)
        if "issue_type" not in payload and "type" in payload:
            payload["issue_type"] = payload["type"]
        if "notes" in payload and payload["notes"] is None:
            payload["notes"] = ""
        if "description" in payload and payload["description"] is None:
            payload["description"] = ""
        return cls.model_validate(payload)

    def label(self) -> str:
        return f"{self.id} {self.title}".strip()


@dataclass
class TrackerSnapshot:
    """Point-in-time view of the tracker used for goal discovery."""

    in_progress: list[WorkItem] = field(default_factory=list)
    ready: list[WorkItem] = field(default_factory=list)
    blocked: list[WorkItem] = field(default_factory=list)
    open: list[WorkItem] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.in_progress or self.ready or self.blocked or self.open)


class SeedKind(str, Enum):
    ITEM = "item"
    GOAL = "goal"


@dataclass
class PromptSeed:
    """What a work selection produced: the subject plus the opening planner prompt."""

    kind: SeedKind
    prompt: str
    item: WorkItem | None = None
    goal: str | None = None
    resumed: bool = False

    def describe(self) -> str:
        if self.item is not None:
            prefix = "resume" if self.resumed else "claim"
            return f"{prefix} {self.item.label()}"
        return f"goal: {self.goal}"


# --- Turns ---


@dataclass
class TurnOutcome:
    """Captured result of one turn. The turn itself is discarded afterwards."""

    status: TurnStatus
    role: Role
    model: str | None = None
    text: str = ""
    error: str | None = None
    abort_reason: AbortReason | None = None
    elapsed: float = 0.0
    warned: bool = False

    @property
    def ok(self) -> bool:
        return self.status == TurnStatus.COMPLETED

    def summary(self) -> str:
        """One-line description used as planner feedback and in logs."""
        parts = [f"{self.role.value} turn {self.status.value}"]
        if self.abort_reason is not None:
            parts.append(f"reason={self.abort_reason.value}")
        if self.error:
            parts.append(f"error={self.error}")
        parts.append(f"after {self.elapsed:.0f}s")
        return " ".join(parts)


# --- Interrupts ---


class InterruptKind(str, Enum):
    QUIT = "quit"
    SKIP = "skip"
    ABORT = "abort"
    STATUS = "status"
    GO = "go"
    MESSAGE = "message"


@dataclass(frozen=True)
class InterruptCommand:
    """One user command, in arrival order.

    ``external`` marks a message the user already typed into the shared session
    (daemon topology); the loop must not send it again.
    """

    kind: InterruptKind
    text: str = ""
    external: bool = False

    @classmethod
    def message(cls, text: str, external: bool = False) -> InterruptCommand:
        return cls(InterruptKind.MESSAGE, text=text, external=external)

    @property
    def stops_turn(self) -> bool:
        return self.kind in (InterruptKind.ABORT, InterruptKind.QUIT)
