"""Typed events decoded from the runtime's event stream.

The stream carries SSE frames (``event:`` / ``data:`` / blank line) or bare
line-delimited JSON, each shaped ``{type, properties}``. Everything here is pure:
no I/O, no clocks. Unknown or malformed frames decode to None so a bad frame can
never stop the stream.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger(__name__)

# Session status values reported by the runtime
STATUS_BUSY = "busy"
STATUS_IDLE = "idle"
STATUS_RETRY = "retry"
STATUS_ERROR = "error"

# Tool part states that mean the call has finished
_TOOL_DONE_STATES = frozenset(["completed", "error"])


@dataclass(frozen=True)
class TextDelta:
    """Assistant or user text grew. ``text`` is the full part text when known."""

    session_id: str
    message_id: str
    part_id: str
    delta: str
    text: str | None = None


@dataclass(frozen=True)
class ToolInvocation:
    session_id: str
    message_id: str
    part_id: str
    tool: str
    status: str
    title: str = ""


@dataclass(frozen=True)
class ToolResult:
    session_id: str
    message_id: str
    part_id: str
    tool: str
    status: str
    output: str = ""
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == "error"


@dataclass(frozen=True)
class StatusChange:
    session_id: str
    status: str
    error: str | None = None


@dataclass(frozen=True)
class UserMessage:
    """A user-role message appeared in a session (ours or typed by a human)."""

    session_id: str
    message_id: str


Event = Union[TextDelta, ToolInvocation, ToolResult, StatusChange, UserMessage]


@dataclass(frozen=True)
class Frame:
    """One undecoded stream frame."""

    type: str | None
    data: str


class SSEDecoder:
    """Incremental line decoder. Feed lines in order; complete frames come back.

    Accepts standard SSE framing and bare JSON lines (one frame per line).
    """

    def __init__(self) -> None:
        self._event_type: str | None = None
        self._data: list[str] = []

    def feed(self, line: str) -> Frame | None:
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None  # comment / keep-alive
        if line.startswith("event:"):
            self._event_type = line[6:].strip() or None
            return None
        if line.startswith("data:"):
            self._data.append(line[5:].lstrip())
            return None
        if line.startswith(("id:", "retry:")):
            return None
        if not self._data and self._event_type is None:
            # Bare line-delimited JSON
            return Frame(type=None, data=line)
        logger.debug(f"Ignoring unexpected stream line: {line[:120]!r}")
        return None

    def _dispatch(self) -> Frame | None:
        if not self._data and self._event_type is None:
            return None
        frame = Frame(type=self._event_type, data="\n".join(self._data))
        self._event_type = None
        self._data = []
        return frame


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _error_message(error: Any) -> str | None:
    """Runtime errors look like {"name": ..., "data": {"message": ...}}."""
    if error is None:
        return None
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        if error.get("message"):
            return str(error["message"])
        if error.get("name"):
            return str(error["name"])
    return str(error)


def session_of(properties: dict[str, Any]) -> str:
    """Session a payload belongs to, or "" for server-wide events."""
    for container in (properties, properties.get("part"), properties.get("info")):
        if isinstance(container, dict):
            value = container.get("sessionID")
            if isinstance(value, str) and value:
                return value
    return ""


def _decode_part(properties: dict[str, Any], session_id: str) -> Event | None:
    part = properties.get("part")
    if not isinstance(part, dict):
        return None
    part_type = part.get("type")
    message_id = _str(part.get("messageID"))
    part_id = _str(part.get("id"))

    if part_type == "text":
        delta = properties.get("delta")
        if isinstance(delta, dict):
            delta = delta.get("text")
        text = part.get("text")
        return TextDelta(
            session_id=session_id,
            message_id=message_id,
            part_id=part_id,
            delta=_str(delta),
            text=text if isinstance(text, str) else None,
        )

    if part_type == "tool":
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        status = _str(state.get("status")) or "pending"
        tool = _str(part.get("tool")) or "tool"
        if status in _TOOL_DONE_STATES:
            return ToolResult(
                session_id=session_id,
                message_id=message_id,
                part_id=part_id,
                tool=tool,
                status=status,
                output=_str(state.get("output")),
                error=_error_message(state.get("error")),
            )
        return ToolInvocation(
            session_id=session_id,
            message_id=message_id,
            part_id=part_id,
            tool=tool,
            status=status,
            title=_str(state.get("title")),
        )
    # reasoning, step-start, step-finish, file, patch ... are not displayed
    return None


def decode_payload(event_type: str, properties: dict[str, Any]) -> Event | None:
    """Map one ``{type, properties}`` payload to an Event, or None if unrecognised."""
    session_id = session_of(properties)

    if event_type == "message.part.updated":
        return _decode_part(properties, session_id)

    if event_type == "session.status":
        status = properties.get("status")
        if isinstance(status, dict):
            status = status.get("type")
        if not isinstance(status, str):
            return None
        return StatusChange(session_id=session_id, status=status)

    if event_type == "session.idle":
        return StatusChange(session_id=session_id, status=STATUS_IDLE)

    if event_type == "session.error":
        return StatusChange(
            session_id=session_id,
            status=STATUS_ERROR,
            error=_error_message(properties.get("error")) or "session error",
        )

    if event_type == "message.updated":
        info = properties.get("info")
        if not isinstance(info, dict):
            return None
        role = info.get("role")
        if role == "user":
            return UserMessage(session_id=session_id, message_id=_str(info.get("id")))
        if role == "assistant" and info.get("error"):
            # Provider rejections surface as an errored assistant message
            return StatusChange(
                session_id=session_id,
                status=STATUS_ERROR,
                error=_error_message(info.get("error")),
            )
        return None

    return None


def unpack_frame(frame: Frame) -> tuple[str, dict[str, Any]] | None:
    """Split a frame into ``(type, properties)``, or None if it is malformed."""
    try:
        payload = json.loads(frame.data) if frame.data else {}
    except json.JSONDecodeError as e:
        logger.warning(f"Dropping malformed stream frame ({e}): {frame.data[:120]!r}")
        return None

    if not isinstance(payload, dict):
        logger.debug(f"Dropping non-object stream frame: {frame.data[:120]!r}")
        return None

    event_type = frame.type or payload.get("type")
    properties = payload.get("properties")
    if properties is None:
        properties = payload
    if not isinstance(event_type, str) or not isinstance(properties, dict):
        return None
    return event_type, properties


def parse_frame(frame: Frame) -> Event | None:
    """Decode one frame. Never raises; malformed frames are logged and dropped."""
    unpacked = unpack_frame(frame)
    if unpacked is None:
        return None
    return decode_unpacked(*unpacked)


def decode_unpacked(event_type: str, properties: dict[str, Any]) -> Event | None:
    try:
        return decode_payload(event_type, properties)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Dropping undecodable {event_type} frame: {e}")
        return None
