"""Tests for stream framing and event decoding."""

from __future__ import annotations

import json

import pytest

from mneme.core.events import (
    STATUS_BUSY,
    STATUS_ERROR,
    STATUS_IDLE,
    Frame,
    SSEDecoder,
    StatusChange,
    TextDelta,
    ToolInvocation,
    ToolResult,
    UserMessage,
    parse_frame,
)


def frame(event_type: str, properties: dict) -> Frame:
    return Frame(type=None, data=json.dumps({"type": event_type, "properties": properties}))


def text_part(text: str, delta: str | None = None, message_id: str = "msg_1") -> dict:
    props = {
        "part": {
            "id": "prt_1",
            "messageID": message_id,
            "sessionID": "ses_1",
            "type": "text",
            "text": text,
        }
    }
    if delta is not None:
        props["delta"] = delta
    return props


class TestSSEDecoder:
    """Tests for line framing."""

    def test_sse_frame(self):
        decoder = SSEDecoder()
        assert decoder.feed("event: message") is None
        assert decoder.feed('data: {"a": 1}') is None

        result = decoder.feed("")

        assert result == Frame(type="message", data='{"a": 1}')

    def test_multiline_data_joined(self):
        decoder = SSEDecoder()
        decoder.feed("data: {")
        decoder.feed('data: "a": 1}')
        assert decoder.feed("").data == '{\n"a": 1}'

    def test_comments_and_ids_ignored(self):
        decoder = SSEDecoder()
        assert decoder.feed(": keep-alive") is None
        assert decoder.feed("id: 7") is None
        assert decoder.feed("retry: 1000") is None
        assert decoder.feed("") is None

    def test_bare_json_lines(self):
        decoder = SSEDecoder()
        assert decoder.feed('{"type": "session.idle"}') == Frame(type=None, data='{"type": "session.idle"}')

    def test_crlf(self):
        decoder = SSEDecoder()
        decoder.feed("data: {}\r")
        assert decoder.feed("\r") == Frame(type=None, data="{}")


class TestParseFrame:
    """Tests for payload decoding."""

    def test_text_delta(self):
        event = parse_frame(frame("message.part.updated", text_part("Hello wor", delta="wor")))

        assert event == TextDelta(
            session_id="ses_1", message_id="msg_1", part_id="prt_1", delta="wor", text="Hello wor"
        )

    def test_tool_running_is_invocation(self):
        props = {
            "part": {
                "id": "prt_2",
                "messageID": "msg_1",
                "sessionID": "ses_1",
                "type": "tool",
                "tool": "bash",
                "state": {"status": "running", "title": "pytest -q"},
            }
        }
        event = parse_frame(frame("message.part.updated", props))

        assert isinstance(event, ToolInvocation)
        assert event.tool == "bash"
        assert event.title == "pytest -q"

    def test_tool_error_is_failed_result(self):
        props = {
            "part": {
                "id": "prt_2",
                "messageID": "msg_1",
                "sessionID": "ses_1",
                "type": "tool",
                "tool": "edit",
                "state": {"status": "error", "error": "file not found"},
            }
        }
        event = parse_frame(frame("message.part.updated", props))

        assert isinstance(event, ToolResult)
        assert event.failed
        assert event.error == "file not found"

    def test_session_status_object(self):
        event = parse_frame(frame("session.status", {"sessionID": "ses_1", "status": {"type": "busy"}}))
        assert event == StatusChange(session_id="ses_1", status=STATUS_BUSY)

    def test_session_idle(self):
        event = parse_frame(frame("session.idle", {"sessionID": "ses_1"}))
        assert event == StatusChange(session_id="ses_1", status=STATUS_IDLE)

    def test_session_error_message(self):
        props = {
            "sessionID": "ses_1",
            "error": {"name": "ProviderAuthError", "data": {"message": "invalid api key"}},
        }
        event = parse_frame(frame("session.error", props))

        assert event.status == STATUS_ERROR
        assert event.error == "invalid api key"

    def test_user_message(self):
        props = {"info": {"id": "msg_9", "sessionID": "ses_1", "role": "user"}}
        assert parse_frame(frame("message.updated", props)) == UserMessage("ses_1", "msg_9")

    def test_assistant_error_becomes_status_error(self):
        props = {
            "info": {
                "id": "msg_9",
                "sessionID": "ses_1",
                "role": "assistant",
                "error": {"name": "ModelNotFound"},
            }
        }
        event = parse_frame(frame("message.updated", props))
        assert event == StatusChange("ses_1", STATUS_ERROR, error="ModelNotFound")

    def test_plain_assistant_update_ignored(self):
        props = {"info": {"id": "msg_9", "sessionID": "ses_1", "role": "assistant"}}
        assert parse_frame(frame("message.updated", props)) is None

    def test_sse_event_type_used_when_payload_has_none(self):
        event = parse_frame(Frame(type="session.idle", data='{"sessionID": "ses_1"}'))
        assert event == StatusChange(session_id="ses_1", status=STATUS_IDLE)

    def test_unknown_type_dropped(self):
        assert parse_frame(frame("lsp.updated", {})) is None

    def test_reasoning_part_dropped(self):
        props = {"part": {"id": "p", "messageID": "m", "sessionID": "s", "type": "reasoning"}}
        assert parse_frame(frame("message.part.updated", props)) is None


class TestMalformedFrames:
    """Malformed frames never raise, and later frames still decode."""

    @pytest.mark.parametrize(
        "data",
        [
            "{not json",
            "[1, 2, 3]",
            '"just a string"',
            '{"type": 5}',
            '{"type": "session.status", "properties": "busy"}',
            '{"type": "message.part.updated", "properties": {"part": "text"}}',
            '{"type": "message.updated", "properties": {"info": []}}',
        ],
    )
    def test_malformed_returns_none(self, data):
        assert parse_frame(Frame(type=None, data=data)) is None

    def test_stream_continues_after_bad_frame(self):
        decoder = SSEDecoder()
        events = []
        for line in [
            "data: {broken",
            "",
            'data: {"type": "session.idle", "properties": {"sessionID": "ses_1"}}',
            "",
        ]:
            result = decoder.feed(line)
            if result is not None:
                events.append(parse_frame(result))

        assert events == [None, StatusChange(session_id="ses_1", status=STATUS_IDLE)]
