"""Live transcript of the shared session for attached runs.

An EventPump listener. Text is written as it streams; each tool call is shown
once when it starts and once when it finishes.
"""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

from mneme.core.events import (
    STATUS_ERROR,
    STATUS_RETRY,
    Event,
    StatusChange,
    TextDelta,
    ToolInvocation,
    ToolResult,
    UserMessage,
)
from mneme.core.models import Role

# Tool output shown after a failed call
MAX_ERROR_CHARS = 300


class TranscriptRenderer:
    """Renders one session's events to a Rich console."""

    def __init__(self, console: Console, session_id: str):
        self.console = console
        self.session_id = session_id
        self._printed: dict[str, int] = {}
        self._current_part: str | None = None
        self._user_messages: set[str] = set()
        self._tools_started: set[str] = set()
        self._tools_finished: set[str] = set()

    def handle(self, event: Event) -> None:
        if event.session_id and event.session_id != self.session_id:
            return
        if isinstance(event, UserMessage):
            self._user_messages.add(event.message_id)
        elif isinstance(event, TextDelta):
            self._text(event)
        elif isinstance(event, ToolInvocation):
            self._tool_started(event)
        elif isinstance(event, ToolResult):
            self._tool_finished(event)
        elif isinstance(event, StatusChange):
            self._status(event)

    def _end_text(self) -> None:
        if self._current_part is not None:
            self.console.print()
            self._current_part = None

    def _text(self, event: TextDelta) -> None:
        if event.message_id in self._user_messages:
            return
        printed = self._printed.get(event.part_id, 0)
        if event.text is not None:
            chunk = event.text[printed:]
        else:
            chunk = event.delta
        if not chunk:
            return
        if self._current_part != event.part_id:
            self._end_text()
            self._current_part = event.part_id
        self.console.print(chunk, end="", markup=False, highlight=False, soft_wrap=True)
        self._printed[event.part_id] = printed + len(chunk)

    def _tool_started(self, event: ToolInvocation) -> None:
        if event.part_id in self._tools_started or event.status == "pending":
            return
        self._tools_started.add(event.part_id)
        self._end_text()
        title = f" {escape(event.title)}" if event.title else ""
        self.console.print(f"[dim]→ {escape(event.tool)}{title}[/dim]")

    def _tool_finished(self, event: ToolResult) -> None:
        if event.part_id in self._tools_finished:
            return
        self._tools_finished.add(event.part_id)
        self._end_text()
        if event.failed:
            detail = escape((event.error or event.output)[:MAX_ERROR_CHARS])
            self.console.print(f"[red]✗ {escape(event.tool)}[/red] {detail}")
        else:
            self.console.print(f"[green]✓[/green] [dim]{escape(event.tool)}[/dim]")

    def _status(self, event: StatusChange) -> None:
        if event.status == STATUS_ERROR:
            self._end_text()
            self.console.print(f"[red]Session error:[/red] {escape(event.error or 'unknown')}")
        elif event.status == STATUS_RETRY:
            self._end_text()
            self.console.print("[yellow]Runtime retrying request...[/yellow]")

    def show_prompt(self, role: Role, prompt: str) -> None:
        """Print a prompt the loop is about to send, dimmed and labelled by role."""
        self._end_text()
        self.console.print(f"[bold]{role.value} prompt[/bold]", style="dim")
        self.console.print(prompt, style="dim", markup=False, highlight=False, soft_wrap=True)
