"""Turn Executor: one prompt, one role, one model, one outcome.

A turn races three signals:
1. stream completion (the session leaves "busy"),
2. the interrupt queue holding /abort or /quit,
3. the silence watchdog (warn, then abort, when the stream goes quiet).

Stream handling is a pure reducer over TurnState so completion logic can be
tested without any network. A TurnResolver accepts exactly one verdict; every
other watcher is cancelled as soon as it fires.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

from mneme.core.client import ApiConnectionError, ApiError, OpencodeClient, build_prompt_body
from mneme.core.config import AutoConfig
from mneme.core.events import (
    STATUS_BUSY,
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_RETRY,
    Event,
    StatusChange,
    TextDelta,
    ToolInvocation,
    ToolResult,
    UserMessage,
)
from mneme.core.interrupts import InterruptChannel
from mneme.core.models import AbortReason, InterruptKind, Role, TurnOutcome, TurnStatus
from mneme.core.stream import ActivityClock, EventPump
from mneme.core.utils import format_elapsed

logger = logging.getLogger(__name__)


# --- Pure reducer ---


@dataclass(frozen=True)
class TurnState:
    """Everything the stream has told us about the in-flight turn."""

    session_id: str
    prompt: str = ""
    busy: bool = False
    activity: bool = False
    finished: bool = False
    error: str | None = None
    parts: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    tools: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    user_messages: frozenset[str] = frozenset()

    @property
    def text(self) -> str:
        """Assistant text collected so far, parts in arrival order."""
        return "\n".join(t for t in self.parts.values() if t.strip()).strip()

    @property
    def resolved(self) -> TurnStatus | None:
        if self.error is not None:
            return TurnStatus.ERRORED
        if self.finished:
            return TurnStatus.COMPLETED
        return None


def _with(mapping: Mapping[str, str], key: str, value: str) -> Mapping[str, str]:
    updated = dict(mapping)
    updated[key] = value
    return MappingProxyType(updated)


def reduce_turn(state: TurnState, event: Event) -> TurnState:
    """Apply one stream event to the turn state. Pure; returns a new state."""
    if state.resolved is not None:
        return state
    if event.session_id and event.session_id != state.session_id:
        return state

    if isinstance(event, UserMessage):
        return replace(state, user_messages=state.user_messages | {event.message_id})

    if isinstance(event, TextDelta):
        if event.message_id in state.user_messages:
            return state
        if event.text is not None:
            text = event.text
        else:
            text = state.parts.get(event.part_id, "") + event.delta
        # Our own prompt echoed back as a user part is not assistant output
        if state.prompt and text.strip() == state.prompt.strip():
            return state
        return replace(
            state, activity=True, parts=_with(state.parts, event.part_id, text)
        )

    if isinstance(event, (ToolInvocation, ToolResult)):
        return replace(
            state,
            activity=True,
            tools=_with(state.tools, event.part_id, f"{event.tool}:{event.status}"),
        )

    if isinstance(event, StatusChange):
        if event.status in (STATUS_BUSY, STATUS_RETRY):
            return replace(state, busy=True)
        if event.status == STATUS_ERROR:
            return replace(state, error=event.error or "session error")
        if event.status == STATUS_IDLE and (state.busy or state.activity):
            # Idle before we ever saw work is a stale status from a previous turn
            return replace(state, busy=False, finished=True)
        return state

    return state


# --- Resolution ---


@dataclass(frozen=True)
class Verdict:
    status: TurnStatus
    abort_reason: AbortReason | None = None
    error: str | None = None
    source: str = ""


class TurnResolver:
    """One-shot resolution. The first verdict wins; later ones are refused."""

    def __init__(self) -> None:
        self._future: asyncio.Future[Verdict] = asyncio.get_running_loop().create_future()
        self.attempts = 0

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, verdict: Verdict) -> bool:
        self.attempts += 1
        if self._future.done():
            logger.debug(f"Ignoring late verdict from {verdict.source}: {verdict.status.value}")
            return False
        self._future.set_result(verdict)
        return True

    async def wait(self) -> Verdict:
        return await self._future


def _retrieve_exception(task: asyncio.Task) -> None:
    # The submission may still fail after we stopped caring about it
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Discarded prompt submission failed: {task.exception()}")


def _message_error(message: dict[str, Any], since_ms: float) -> str | None:
    info = message.get("info") if isinstance(message.get("info"), dict) else {}
    if info.get("role") != "assistant":
        return None
    created = (info.get("time") or {}).get("created") or 0
    if created and created < since_ms:
        return None
    error = info.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        data = error.get("data") if isinstance(error.get("data"), dict) else {}
        return str(data.get("message") or error.get("name") or error)
    return str(error)


def assistant_text(messages: list[dict[str, Any]]) -> str:
    """Text of the newest assistant message in a session history."""
    for message in reversed(messages):
        info = message.get("info") if isinstance(message.get("info"), dict) else {}
        if info.get("role") != "assistant":
            continue
        texts = [
            part.get("text", "")
            for part in message.get("parts") or []
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        return "\n".join(t for t in texts if t).strip()
    return ""


class TurnExecutor:
    """Executes turns against one shared session.

    Only one turn may be in flight; execute_turn refuses to overlap.
    """

    SETTLE_TIMEOUT = 5.0

    def __init__(
        self,
        client: OpencodeClient,
        pump: EventPump,
        activity: ActivityClock,
        interrupts: InterruptChannel,
        config: AutoConfig,
        on_status: Callable[[], None] | None = None,
    ):
        self.client = client
        self.pump = pump
        self.activity = activity
        self.interrupts = interrupts
        self.config = config
        self.on_status = on_status
        self._in_flight = False
        self.state: TurnState | None = None
        self.warned = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def agent_for(self, role: Role) -> str | None:
        if role == Role.PLANNER:
            return self.config.planner_agent
        return self.config.executor_agent

    async def execute_turn(
        self,
        session_id: str,
        prompt: str,
        role: Role,
        model: str | None,
    ) -> TurnOutcome:
        """Send one prompt and wait for exactly one outcome.

        Never raises for turn-level failures; they come back as ERRORED.
        """
        if self.pump.error is not None:
            # The subscription is gone for good; no turn could be observed
            raise self.pump.error
        if self._in_flight:
            raise RuntimeError("A turn is already in flight for this session")
        self._in_flight = True
        try:
            return await self._execute(session_id, prompt, role, model)
        finally:
            self._in_flight = False

    async def _execute(
        self, session_id: str, prompt: str, role: Role, model: str | None
    ) -> TurnOutcome:
        resolver = TurnResolver()
        self.state = TurnState(session_id=session_id, prompt=prompt)
        self.warned = False

        def on_event(event: Event) -> None:
            self.state = reduce_turn(self.state, event)
            status = self.state.resolved
            if status == TurnStatus.COMPLETED:
                resolver.resolve(Verdict(status, source="stream"))
            elif status == TurnStatus.ERRORED:
                resolver.resolve(Verdict(status, error=self.state.error, source="stream"))

        self.pump.add_listener(on_event)
        self.activity.touch()
        started = self.activity.now()
        started_wall_ms = time.time() * 1000

        body = build_prompt_body(prompt, model=model, agent=self.agent_for(role))
        logger.info(f"{role.value} turn started (model={model or 'default'})")
        submit = asyncio.create_task(self.client.prompt_async(session_id, body))
        submit.add_done_callback(_retrieve_exception)

        watchers = [
            asyncio.create_task(self._watch_submit(submit, resolver)),
            asyncio.create_task(self._probe(session_id, started_wall_ms, resolver)),
            asyncio.create_task(self._watch_interrupts(resolver)),
            asyncio.create_task(self._watch_silence(role, resolver)),
        ]
        try:
            verdict = await resolver.wait()
        finally:
            for task in watchers:
                task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)
            self.pump.remove_listener(on_event)

        elapsed = self.activity.now() - started
        outcome = TurnOutcome(
            status=verdict.status,
            role=role,
            model=model,
            error=verdict.error,
            abort_reason=verdict.abort_reason,
            elapsed=elapsed,
            warned=self.warned,
            text=self.state.text,
        )

        if verdict.status in (TurnStatus.ABORTED, TurnStatus.QUIT):
            await self._abort_remote(session_id)
        elif verdict.status == TurnStatus.COMPLETED and not outcome.text:
            outcome.text = await self._fetch_text(session_id)

        log = logger.info if outcome.ok else logger.warning
        log(f"{outcome.summary()} ({format_elapsed(elapsed)})")
        return outcome

    # --- Watchers ---

    async def _watch_submit(self, submit: asyncio.Task, resolver: TurnResolver) -> None:
        try:
            # shield: cancelling this watcher must not cancel the submission
            await asyncio.shield(submit)
        except (ApiError, ApiConnectionError) as e:
            resolver.resolve(
                Verdict(TurnStatus.ERRORED, error=f"prompt rejected: {e}", source="submit")
            )

    async def _probe(
        self, session_id: str, since_ms: float, resolver: TurnResolver
    ) -> None:
        """Catch near-instant rejections (e.g. unknown model) before the silence window."""
        await asyncio.sleep(self.config.probe_delay)
        if resolver.done:
            return
        try:
            messages = await self.client.messages(session_id)
        except (ApiError, ApiConnectionError) as e:
            logger.debug(f"Status probe failed: {e}")
            return
        for message in reversed(messages):
            error = _message_error(message, since_ms)
            if error:
                resolver.resolve(Verdict(TurnStatus.ERRORED, error=error, source="probe"))
                return

    async def _watch_interrupts(self, resolver: TurnResolver) -> None:
        while not resolver.done:
            commands = self.interrupts.drain()
            keep = []
            stop = None
            for command in commands:
                if stop is None and command.stops_turn:
                    stop = command
                elif command.kind == InterruptKind.STATUS and self.on_status is not None:
                    self.on_status()
                else:
                    keep.append(command)
            # Anything else waits for the next cycle boundary, in arrival order
            self.interrupts.push_back_many(keep)
            if stop is not None:
                status = TurnStatus.QUIT if stop.kind == InterruptKind.QUIT else TurnStatus.ABORTED
                resolver.resolve(
                    Verdict(status, abort_reason=AbortReason.USER, source="interrupt")
                )
                return
            await asyncio.sleep(self.config.poll_interval)

    async def _watch_silence(self, role: Role, resolver: TurnResolver) -> None:
        warning_active = False
        while not resolver.done:
            await asyncio.sleep(self.config.poll_interval)
            idle = self.activity.idle_for()
            if idle >= self.config.abort_after:
                logger.warning(
                    f"{role.value} turn silent for {format_elapsed(idle)}; aborting"
                )
                resolver.resolve(
                    Verdict(TurnStatus.ABORTED, abort_reason=AbortReason.SILENCE, source="silence")
                )
                return
            if idle >= self.config.warn_after:
                if not warning_active:
                    warning_active = True
                    self.warned = True
                    logger.warning(
                        f"{role.value} turn silent for {format_elapsed(idle)} "
                        f"(auto-abort at {format_elapsed(self.config.abort_after)})"
                    )
            else:
                warning_active = False

    # --- Cleanup helpers ---

    async def _abort_remote(self, session_id: str) -> None:
        """Best effort: the outcome is already decided."""
        try:
            await self.client.abort(session_id)
        except (ApiError, ApiConnectionError) as e:
            logger.warning(f"Remote abort failed: {e}")
            return
        await self._wait_until_idle(session_id)

    async def _wait_until_idle(self, session_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.SETTLE_TIMEOUT
        while loop.time() < deadline:
            try:
                statuses = await self.client.session_status()
            except (ApiError, ApiConnectionError):
                return
            status = statuses.get(session_id) if isinstance(statuses, dict) else None
            kind = status.get("type") if isinstance(status, dict) else status
            if kind != STATUS_BUSY:
                return
            await asyncio.sleep(min(self.config.poll_interval, 0.5))

    async def _fetch_text(self, session_id: str) -> str:
        try:
            messages = await self.client.messages(session_id)
        except (ApiError, ApiConnectionError) as e:
            logger.debug(f"Could not fetch final assistant text: {e}")
            return ""
        return assistant_text(messages)
