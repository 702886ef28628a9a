"""Tests for the attached-run transcript renderer."""

from __future__ import annotations

import io

import pytest
from rich.console import Console

from mneme.cli_ui import TranscriptRenderer
from mneme.core.events import (
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_RETRY,
    StatusChange,
    TextDelta,
    ToolInvocation,
    ToolResult,
    UserMessage,
)
from mneme.core.models import Role

SESSION = "ses_test"


@pytest.fixture
def output() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def renderer(output) -> TranscriptRenderer:
    console = Console(file=output, width=400, color_system=None, force_terminal=False)
    return TranscriptRenderer(console, SESSION)


def tool(part_id: str, status: str, name: str = "bash", **kwargs):
    if status in ("completed", "error"):
        return ToolResult(SESSION, "msg_a", part_id, name, status, **kwargs)
    return ToolInvocation(SESSION, "msg_a", part_id, name, status, **kwargs)


class TestText:
    def test_streams_deltas(self, renderer, output):
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_1", "Hello "))
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_1", "world"))

        assert output.getvalue() == "Hello world"

    def test_full_text_prints_only_new_suffix(self, renderer, output):
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_1", "Hel", "Hel"))
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_1", "lo", "Hello"))
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_1", "", "Hello"))

        assert output.getvalue() == "Hello"

    def test_new_part_starts_new_line(self, renderer, output):
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_1", "first"))
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_2", "second"))

        assert output.getvalue() == "first\nsecond"

    def test_markup_in_text_printed_literally(self, renderer, output):
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_1", "[red]not markup[/red]"))
        assert output.getvalue() == "[red]not markup[/red]"

    def test_user_message_text_skipped(self, renderer, output):
        renderer.handle(UserMessage(SESSION, "msg_u"))
        renderer.handle(TextDelta(SESSION, "msg_u", "prt_u", "Plan the work"))

        assert output.getvalue() == ""

    def test_other_session_ignored(self, renderer, output):
        renderer.handle(TextDelta("ses_other", "msg_a", "prt_1", "elsewhere"))
        assert output.getvalue() == ""


class TestTools:
    def test_tool_shown_once_when_running(self, renderer, output):
        renderer.handle(tool("prt_t", "pending"))
        renderer.handle(tool("prt_t", "running", title="pytest -q"))
        renderer.handle(tool("prt_t", "running", title="pytest -q"))

        assert output.getvalue() == "→ bash pytest -q\n"

    def test_tool_finish_ends_text_line(self, renderer, output):
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_1", "Running tests"))
        renderer.handle(tool("prt_t", "completed", output="ok"))
        renderer.handle(tool("prt_t", "completed", output="ok"))

        assert output.getvalue() == "Running tests\n✓ bash\n"

    def test_failed_tool_shows_truncated_error(self, renderer, output):
        renderer.handle(tool("prt_t", "error", name="edit", error="x" * 1000))

        line = output.getvalue().strip()
        assert line.startswith("✗ edit ")
        assert line.count("x") == 300


class TestStatus:
    def test_error_and_retry(self, renderer, output):
        renderer.handle(StatusChange(SESSION, STATUS_ERROR, "invalid api key"))
        renderer.handle(StatusChange(SESSION, STATUS_RETRY))
        renderer.handle(StatusChange(SESSION, STATUS_IDLE))

        assert output.getvalue().splitlines() == [
            "Session error: invalid api key",
            "Runtime retrying request...",
        ]


class TestPrompts:
    def test_prompt_labelled_with_role(self, renderer, output):
        renderer.handle(TextDelta(SESSION, "msg_a", "prt_1", "previous reply"))
        renderer.show_prompt(Role.EXECUTOR, "Carry out [the plan]")

        assert output.getvalue().splitlines() == [
            "previous reply",
            "executor prompt",
            "Carry out [the plan]",
        ]
