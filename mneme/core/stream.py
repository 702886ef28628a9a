"""Event Stream Client: a restartable subscription to the runtime's event feed.

This is a live-progress feed, not a durable log. On transport failure the
subscription is re-opened after a fixed delay; events emitted during the outage
are lost, everything received afterwards is delivered in order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable

from mneme.core.client import ApiConnectionError, ApiError, OpencodeClient
from mneme.core.events import Event, SSEDecoder, decode_unpacked, session_of, unpack_frame

logger = logging.getLogger(__name__)

EventListener = Callable[[Event], None]


class StreamDisconnectedError(Exception):
    """Gave up reconnecting to the event stream."""

    pass


class ActivityClock:
    """Last time anything arrived on the stream.

    Written by the stream, read by turn watchdogs. Single-threaded asyncio, so
    no lock: a stale read only skews an elapsed-time estimate.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.last_activity = clock()

    def now(self) -> float:
        return self._clock()

    def touch(self) -> None:
        self.last_activity = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self.last_activity


class EventStream:
    """Lazy, infinite, restartable sequence of Events.

    Counters:
        received: events decoded and yielded
        dropped: frames that were malformed or of an unrecognised type
        reconnects: subscriptions re-opened after a failure
    """

    def __init__(
        self,
        client: OpencodeClient,
        activity: ActivityClock,
        reconnect_delay: float = 3.0,
        max_reconnects: int = 20,
        path: str = "/event",
    ):
        self.client = client
        self.activity = activity
        self.reconnect_delay = reconnect_delay
        self.max_reconnects = max_reconnects
        self.path = path
        self.received = 0
        self.dropped = 0
        self.reconnects = 0

    async def subscribe(self) -> AsyncIterator[Event]:
        """Yield events forever, reconnecting with a fixed backoff.

        Raises:
            StreamDisconnectedError: After max_reconnects consecutive failed attempts
        """
        failures = 0
        while True:
            decoder = SSEDecoder()
            connected = False
            try:
                async for line in self.client.stream_lines(self.path):
                    if not connected:
                        connected = True
                        failures = 0
                    frame = decoder.feed(line)
                    if frame is None:
                        continue
                    unpacked = unpack_frame(frame)
                    if unpacked is None:
                        self.dropped += 1
                        continue
                    # Reasoning and step parts are not displayed but still mean the model is working
                    if session_of(unpacked[1]):
                        self.activity.touch()
                    event = decode_unpacked(*unpacked)
                    if event is None:
                        self.dropped += 1
                        continue
                    self.received += 1
                    yield event
                logger.info("Event stream closed by server; reconnecting")
            except (ApiConnectionError, ApiError) as e:
                failures += 1
                if failures > self.max_reconnects:
                    raise StreamDisconnectedError(
                        f"Event stream unavailable after {self.max_reconnects} retries: {e}"
                    ) from e
                logger.warning(
                    f"Event stream error ({e}); retry {failures}/{self.max_reconnects} "
                    f"in {self.reconnect_delay:.0f}s"
                )
            self.reconnects += 1
            await asyncio.sleep(self.reconnect_delay)


class EventPump:
    """Runs one subscription as a background task and fans events out.

    Listeners are called synchronously, in receive order, on the event loop.
    A listener that raises is logged and does not stop the pump.
    """

    def __init__(self, stream: EventStream):
        self.stream = stream
        self._listeners: list[EventListener] = []
        self._task: asyncio.Task | None = None
        self.error: BaseException | None = None

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="mneme-event-pump")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def dispatch(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener {listener!r} failed")

    async def _run(self) -> None:
        try:
            async for event in self.stream.subscribe():
                self.dispatch(event)
        except StreamDisconnectedError as e:
            self.error = e
            logger.error(str(e))
