"""In-memory test doubles for the runtime client, the tracker and the turn executor."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

from mneme.core.client import ApiError
from mneme.core.models import (
    Role,
    TrackerSnapshot,
    TurnOutcome,
    TurnStatus,
    WorkItem,
    WorkItemStatus,
)

SENTINEL = "MNEME_TASK_COMPLETE"


class FakeClient:
    """Records calls and answers from in-memory state.

    ``on_prompt`` runs after every prompt_async call, letting a test push
    events into the pump as if the runtime were working.
    """

    def __init__(self) -> None:
        self.prompts: list[tuple[str, dict[str, Any]]] = []
        self.aborts: list[str] = []
        self.message_history: list[dict[str, Any]] = []
        self.statuses: dict[str, Any] = {}
        self.provider_catalogue: dict[str, Any] = {"providers": []}
        self.sessions_created: list[str | None] = []
        self.on_prompt: Callable[[str, dict[str, Any]], None] | None = None
        self.prompt_error: Exception | None = None

    async def prompt_async(self, session_id: str, body: dict[str, Any]) -> None:
        self.prompts.append((session_id, body))
        if self.prompt_error is not None:
            raise self.prompt_error
        if self.on_prompt is not None:
            self.on_prompt(session_id, body)

    async def abort(self, session_id: str) -> bool:
        self.aborts.append(session_id)
        return True

    async def messages(self, session_id: str) -> list[dict[str, Any]]:
        return list(self.message_history)

    async def session_status(self) -> dict[str, Any]:
        return dict(self.statuses)

    async def providers(self) -> dict[str, Any]:
        return self.provider_catalogue

    async def create_session(self, title: str | None = None) -> dict[str, Any]:
        self.sessions_created.append(title)
        return {"id": "ses_test"}

    async def get_session(self, session_id: str) -> dict[str, Any]:
        if session_id != "ses_test":
            raise ApiError("GET", f"/session/{session_id}", 404, "not found")
        return {"id": session_id}

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> FakeClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class FakeTracker:
    """In-memory tracker with the BeadsTracker interface."""

    def __init__(self, items: list[WorkItem] | None = None, is_available: bool = True):
        self.items: dict[str, WorkItem] = {item.id: item for item in items or []}
        self.updates: list[tuple[str, WorkItemStatus | None, str | None]] = []
        self.closed: list[str] = []
        self.is_available = is_available
        self.database_up = True

    async def available(self) -> bool:
        return self.is_available

    async def database_reachable(self) -> bool:
        return self.database_up

    async def list_items(self, status: WorkItemStatus | None = None) -> list[WorkItem]:
        return [i for i in self.items.values() if status is None or i.status == status]

    async def ready(self) -> list[WorkItem]:
        return [
            i
            for i in self.items.values()
            if i.status == WorkItemStatus.OPEN and not i.dependencies
        ]

    async def blocked(self) -> list[WorkItem]:
        return [i for i in self.items.values() if i.dependencies]

    async def show(self, item_id: str) -> WorkItem | None:
        return self.items.get(item_id)

    async def update(
        self,
        item_id: str,
        status: WorkItemStatus | None = None,
        notes: str | None = None,
        priority: int | None = None,
    ) -> None:
        self.updates.append((item_id, status, notes))
        item = self.items[item_id]
        changes: dict[str, Any] = {}
        if status is not None:
            changes["status"] = status
        if notes is not None:
            changes["notes"] = notes
        self.items[item_id] = item.model_copy(update=changes)

    async def close(self, item_id: str, reason: str = "") -> None:
        self.closed.append(item_id)
        self.items[item_id] = self.items[item_id].model_copy(
            update={"status": WorkItemStatus.CLOSED}
        )

    async def snapshot(self) -> TrackerSnapshot:
        return TrackerSnapshot(
            in_progress=await self.list_items(WorkItemStatus.IN_PROGRESS),
            ready=await self.ready(),
            blocked=await self.blocked(),
        )


def make_item(item_id: str, priority: int = 2, status: str = "open", **kwargs: Any) -> WorkItem:
    return WorkItem(id=item_id, title=f"Task {item_id}", priority=priority, status=status, **kwargs)


class ScriptedExecutor:
    """Returns one scripted TurnOutcome per call.

    Script entries are TurnOutcome objects or callables taking
    (role, prompt) and returning one. When the script runs out the executor
    reports QUIT, which ends any loop.
    """

    def __init__(self, script: list[Any] | None = None):
        self.script = list(script or [])
        self.calls: list[tuple[Role, str, str | None]] = []
        self.on_status: Callable[[], None] | None = None
        self.in_flight = False

    async def execute_turn(
        self, session_id: str, prompt: str, role: Role, model: str | None
    ) -> TurnOutcome:
        self.calls.append((role, prompt, model))
        await asyncio.sleep(0)
        if not self.script:
            return TurnOutcome(status=TurnStatus.QUIT, role=role)
        entry = self.script.pop(0)
        if callable(entry):
            return entry(role, prompt)
        return entry

    @property
    def roles(self) -> list[Role]:
        return [call[0] for call in self.calls]


def completed(role: Role, text: str = "") -> TurnOutcome:
    return TurnOutcome(status=TurnStatus.COMPLETED, role=role, text=text)


class StreamingClient(FakeClient):
    """FakeClient that also serves the event stream, fed by ``emit``."""

    def __init__(self) -> None:
        super().__init__()
        self.lines: asyncio.Queue[str] = asyncio.Queue()

    def emit(self, event_type: str, properties: dict[str, Any]) -> None:
        self.lines.put_nowait(f"data: {json.dumps({'type': event_type, 'properties': properties})}")
        self.lines.put_nowait("")

    async def stream_lines(self, path: str = "/event"):
        while True:
            yield await self.lines.get()
