"""Interrupt Channel: user commands delivered to the loop in arrival order.

Commands come from stdin (attached topology) or from the session observer
(daemon topology). Turns poll the queue for /abort and /quit; everything else
is handled by the supervisor at the next cycle boundary.

USAGE:
    channel = InterruptChannel()
    channel.start()                   # attach to stdin if it is a terminal
    command = await channel.wait(1.0)  # None on timeout
    channel.stop()
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import sys
from collections import deque
from collections.abc import Iterable
from typing import TextIO

from mneme.core.models import InterruptCommand, InterruptKind

logger = logging.getLogger(__name__)

# Bytes taken from stdin per readiness event
READ_CHUNK = 4096

_SLASH_COMMANDS = {
    "/quit": InterruptKind.QUIT,
    "/q": InterruptKind.QUIT,
    "/exit": InterruptKind.QUIT,
    "/skip": InterruptKind.SKIP,
    "/abort": InterruptKind.ABORT,
    "/status": InterruptKind.STATUS,
    "/go": InterruptKind.GO,
}

HELP_TEXT = (
    "/quit  stop after aborting the current turn\n"
    "/abort abort the current turn\n"
    "/skip  release the current item and pick another\n"
    "/status show loop status\n"
    "/go    end goal discussion and start executing\n"
    "anything else is passed to the planner"
)


def parse_command(line: str, external: bool = False) -> InterruptCommand | None:
    """Map one input line to a command. Blank lines return None."""
    text = line.strip()
    if not text:
        return None
    kind = _SLASH_COMMANDS.get(text.split()[0].lower()) if text.startswith("/") else None
    if kind is not None:
        return InterruptCommand(kind)
    return InterruptCommand.message(text, external=external)


class InterruptChannel:
    """FIFO of InterruptCommand shared by the supervisor and the turn watchers.

    Single-threaded asyncio: the stdin reader runs as an event-loop callback,
    so drain() and push_back() never interleave with put().
    """

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream if stream is not None else sys.stdin
        self._queue: deque[InterruptCommand] = deque()
        self._arrived: asyncio.Event | None = None
        self._reader_attached = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""
        self.quit_requested = False

    def __len__(self) -> int:
        return len(self._queue)

    def _signal(self) -> asyncio.Event:
        if self._arrived is None:
            self._arrived = asyncio.Event()
        return self._arrived

    # --- Producers ---

    def start(self) -> bool:
        """Attach a non-blocking line reader to stdin. No-op unless it is a TTY."""
        if self._reader_attached:
            return True
        try:
            interactive = self._stream.isatty()
        except (AttributeError, ValueError):
            interactive = False
        if not interactive:
            logger.debug("stdin is not a terminal; interrupts come from the session only")
            return False
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self._stream.fileno(), self._on_readable)
        self._reader_attached = True
        return True

    def _on_readable(self) -> None:
        # Unbuffered read: a pasted block arrives as one chunk holding many lines
        data = os.read(self._stream.fileno(), READ_CHUNK)
        if not data:
            # EOF: stop watching so the loop does not spin on a closed fd
            self.stop()
            self._feed(self._decoder.decode(b"", final=True) + "\n")
            return
        self._feed(self._decoder.decode(data))

    def _feed(self, text: str) -> None:
        *lines, self._partial = (self._partial + text).split("\n")
        for line in lines:
            command = parse_command(line)
            if command is not None:
                self.put(command)

    def put(self, command: InterruptCommand) -> None:
        if command.kind == InterruptKind.QUIT:
            self.quit_requested = True
        self._queue.append(command)
        logger.debug(f"Interrupt queued: {command.kind.value}")
        self._signal().set()

    # --- Consumers ---

    def drain(self) -> list[InterruptCommand]:
        """Remove and return everything queued, oldest first."""
        commands = list(self._queue)
        self._queue.clear()
        self._signal().clear()
        return commands

    def push_back(self, command: InterruptCommand) -> None:
        """Return one command to the front of the queue."""
        self._queue.appendleft(command)
        self._signal().set()

    def push_back_many(self, commands: Iterable[InterruptCommand]) -> None:
        """Return commands to the front of the queue, keeping their order."""
        commands = list(commands)
        if not commands:
            return
        self._queue.extendleft(reversed(commands))
        self._signal().set()

    def pop(self) -> InterruptCommand | None:
        if not self._queue:
            self._signal().clear()
            return None
        command = self._queue.popleft()
        if not self._queue:
            self._signal().clear()
        return command

    async def wait(self, timeout: float) -> InterruptCommand | None:
        """Pop the next command, blocking at most ``timeout`` seconds."""
        command = self.pop()
        if command is not None:
            return command
        try:
            await asyncio.wait_for(self._signal().wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return self.pop()

    def stop(self) -> None:
        if self._reader_attached and self._loop is not None:
            self._loop.remove_reader(self._stream.fileno())
        self._reader_attached = False
