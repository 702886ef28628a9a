"""Process Topology Manager.

Two ways to run the loop:

ATTACHED (--headless): one process. The loop runs in the foreground, reads
interrupts from stdin and renders progress to the terminal.

DAEMON + TRANSCRIPT (default): the foreground process starts or attaches to the
runtime, creates the session, spawns `python -m mneme auto --daemon-child`
detached, then runs the transcript viewer on the same session. The daemon is
the only party that sends prompts or aborts; the viewer only observes, although
the human may type into it. The daemon notices those messages through the
SessionObserver. When the viewer exits the daemon is terminated.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import signal
import subprocess
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout as FileLockTimeout
from rich.console import Console

from mneme.core.client import ApiConnectionError, ApiError, OpencodeClient
from mneme.core.config import AutoConfig
from mneme.core.events import STATUS_BUSY, STATUS_RETRY, Event, StatusChange, UserMessage
from mneme.core.interrupts import HELP_TEXT, InterruptChannel, parse_command
from mneme.core.models import InterruptCommand, InterruptKind, LoopState, Role
from mneme.core.prompts import PromptComposer
from mneme.core.stream import ActivityClock, EventPump, EventStream
from mneme.core.supervisor import SupervisorLoop, validate_models
from mneme.core.tracker import BeadsTracker, TaskSelector
from mneme.core.turn import TurnExecutor

logger = logging.getLogger(__name__)

HEALTH_POLL_INTERVAL = 0.5
STOP_TIMEOUT = 5.0


class ServerStartError(Exception):
    """The agent runtime could not be started or reached."""

    pass


class RunLockError(Exception):
    """Another loop already drives a session for this project."""

    pass


# --- Runtime server ---


class ServerManager:
    """Attach to a running runtime or start `opencode serve` for this run.

    Only a server this manager started is ever stopped by it.
    """

    def __init__(self, config: AutoConfig):
        self.config = config
        self.url = config.base_url
        self.process: asyncio.subprocess.Process | None = None

    @property
    def started(self) -> bool:
        return self.process is not None

    async def healthy(self) -> bool:
        async with OpencodeClient(self.url, timeout=self.config.request_timeout) as client:
            try:
                health = await client.health()
            except (ApiError, ApiConnectionError):
                return False
        if isinstance(health, dict):
            return bool(health.get("healthy", True))
        return health is not None

    async def ensure(self) -> str:
        """Return the URL of a healthy runtime.

        Raises:
            ServerStartError: If attaching fails or the server does not come up
        """
        if self.config.server_url:
            return await self.attach()
        return await self.start()

    async def attach(self) -> str:
        if not await self.healthy():
            raise ServerStartError(f"No healthy opencode server at {self.url}")
        logger.info(f"Attached to opencode server at {self.url}")
        return self.url

    async def start(self) -> str:
        if await self.healthy():
            logger.info(f"Reusing opencode server already running at {self.url}")
            return self.url

        binary = self.config.server_command[0]
        if shutil.which(binary) is None:
            raise ServerStartError(
                f"'{binary}' is not installed. See https://opencode.ai for install steps"
            )

        cmd = [
            *self.config.server_command,
            "--port",
            str(self.config.port),
            "--hostname",
            self.config.hostname,
        ]
        logger.info(f"Starting {' '.join(cmd)}")
        self.process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.server_start_timeout
        while loop.time() < deadline:
            if self.process.returncode is not None:
                code = self.process.returncode
                self.process = None
                raise ServerStartError(f"opencode serve exited with code {code} during startup")
            if await self.healthy():
                logger.info(f"opencode server ready at {self.url}")
                return self.url
            await asyncio.sleep(HEALTH_POLL_INTERVAL)

        await self.stop()
        raise ServerStartError(
            f"opencode server not healthy after {self.config.server_start_timeout:.0f}s"
        )

    async def stop(self) -> None:
        process, self.process = self.process, None
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), STOP_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
        logger.info("Stopped opencode server")


# --- Run lock ---


@contextlib.contextmanager
def run_lock(path: Path) -> Iterator[FileLock]:
    """Hold the project's run lock for the duration of the block.

    Raises:
        RunLockError: If another loop holds it
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(path), timeout=0)
    try:
        lock.acquire()
    except FileLockTimeout:
        raise RunLockError(
            f"Another mneme auto loop is running in this project (lock: {path})"
        ) from None
    try:
        yield lock
    finally:
        lock.release()


def check_unlocked(path: Path) -> None:
    """Fail early in the foreground if a loop already runs here."""
    with run_lock(path):
        pass


# --- Daemon side ---


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ParentWatcher:
    """Requests quit when the foreground process that spawned us is gone.

    The quit reaches an in-flight turn through the interrupt channel, so the
    turn is aborted remotely before the daemon exits.
    """

    def __init__(self, parent_pid: int, interrupts: InterruptChannel, interval: float = 5.0):
        self.parent_pid = parent_pid
        self.interrupts = interrupts
        self.interval = interval
        self._task: asyncio.Task | None = None

    def parent_gone(self) -> bool:
        # Re-parented to init (or a subreaper) means the parent exited
        return not process_alive(self.parent_pid) or os.getppid() != self.parent_pid

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name="mneme-parent-watcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self.parent_gone():
                logger.warning(f"Parent process {self.parent_pid} exited; quitting")
                self.interrupts.put(InterruptCommand(InterruptKind.QUIT))
                return


def _message_text(message: dict[str, Any]) -> str:
    parts = message.get("parts") or []
    texts = [
        part.get("text", "")
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text" and not part.get("synthetic")
    ]
    return "\n".join(t for t in texts if t).strip()


def find_external_messages(
    messages: list[dict[str, Any]],
    sent: list[str],
    seen: set[str],
) -> list[tuple[str, str]]:
    """User messages nobody in this process sent, as (message id, text).

    Matched prompts are removed from ``sent``; examined ids are added to
    ``seen``. Messages whose text has not arrived yet are left for a later pass.
    """
    external = []
    for message in messages:
        info = message.get("info") if isinstance(message.get("info"), dict) else {}
        if info.get("role") != "user":
            continue
        message_id = info.get("id")
        if not message_id or message_id in seen:
            continue
        text = _message_text(message)
        if not text:
            continue
        seen.add(message_id)
        if text in sent:
            sent.remove(text)
            continue
        external.append((message_id, text))
    return external


class SessionObserver:
    """Notices what the human types into the shared session (daemon topology).

    Slash commands become interrupts; other text becomes an external message,
    which is never re-sent.
    """

    def __init__(
        self,
        client: OpencodeClient,
        session_id: str,
        interrupts: InterruptChannel,
        poll_interval: float = 1.0,
    ):
        self.client = client
        self.session_id = session_id
        self.interrupts = interrupts
        self.poll_interval = poll_interval
        self.sent: list[str] = []
        self.seen: set[str] = set()
        self._checks: set[asyncio.Task] = set()

    async def prime(self) -> None:
        """Mark the session's existing messages as already handled."""
        for message in await self.client.messages(self.session_id):
            info = message.get("info") if isinstance(message.get("info"), dict) else {}
            if info.get("id"):
                self.seen.add(info["id"])

    def record_prompt(self, role: Role, text: str) -> None:
        self.sent.append(text.strip())

    def handle(self, event: Event) -> None:
        if event.session_id != self.session_id:
            return
        if isinstance(event, UserMessage) or (
            isinstance(event, StatusChange) and event.status in (STATUS_BUSY, STATUS_RETRY)
        ):
            task = asyncio.create_task(self.check())
            self._checks.add(task)
            task.add_done_callback(self._checks.discard)

    async def check(self) -> list[InterruptCommand]:
        try:
            messages = await self.client.messages(self.session_id)
        except (ApiError, ApiConnectionError) as e:
            logger.debug(f"Observer could not read messages: {e}")
            return []
        commands = []
        for message_id, text in find_external_messages(messages, self.sent, self.seen):
            command = parse_command(text, external=True)
            if command is None:
                continue
            logger.info(f"User wrote in session ({message_id}): {text[:80]}")
            self.interrupts.put(command)
            commands.append(command)
        return commands

    async def busy(self) -> bool:
        try:
            statuses = await self.client.session_status()
        except (ApiError, ApiConnectionError):
            return False
        status = statuses.get(self.session_id) if isinstance(statuses, dict) else None
        kind = status.get("type") if isinstance(status, dict) else status
        return kind in (STATUS_BUSY, STATUS_RETRY)

    async def wait_until_quiet(self) -> None:
        """Block until the human's own exchange with the runtime has finished."""
        announced = False
        while not self.interrupts.quit_requested and await self.busy():
            if not announced:
                logger.info("Session busy with a user message; waiting")
                announced = True
            await asyncio.sleep(self.poll_interval)

    async def stop(self) -> None:
        for task in list(self._checks):
            task.cancel()
        await asyncio.gather(*self._checks, return_exceptions=True)


# --- Assembly ---


class LoopRuntime:
    """Wires one SupervisorLoop to a runtime URL."""

    def __init__(
        self,
        config: AutoConfig,
        repo_path: Path,
        url: str,
        goal: str | None = None,
        session_id: str | None = None,
    ):
        self.config = config
        self.client = OpencodeClient(url, timeout=config.request_timeout)
        self.activity = ActivityClock()
        self.stream = EventStream(
            self.client,
            self.activity,
            reconnect_delay=config.reconnect_delay,
            max_reconnects=config.max_reconnects,
        )
        self.pump = EventPump(self.stream)
        self.interrupts = InterruptChannel()
        self.composer = PromptComposer(config)
        self.tracker = BeadsTracker(config, repo_path)
        self.selector = TaskSelector(self.tracker, self.composer)
        self.executor = TurnExecutor(
            self.client, self.pump, self.activity, self.interrupts, config
        )
        self.goal = goal
        self.session_id = session_id

    def build_loop(self, **kwargs: Any) -> SupervisorLoop:
        return SupervisorLoop(
            self.config,
            self.client,
            self.executor,
            self.selector,
            self.composer,
            self.interrupts,
            goal=self.goal,
            session_id=self.session_id,
            **kwargs,
        )

    async def close(self) -> None:
        self.interrupts.stop()
        await self.pump.stop()
        await self.client.close()


async def run_attached(
    config: AutoConfig,
    repo_path: Path,
    goal: str | None,
    console: Console,
) -> LoopState:
    """Headless topology: loop, stdin interrupts and progress in one terminal."""
    from mneme.cli_ui.transcript import TranscriptRenderer

    server = ServerManager(config)
    url = await server.ensure()
    try:
        with run_lock(config.lock_file):
            runtime = LoopRuntime(config, repo_path, url, goal=goal)
            interactive = runtime.interrupts.start()
            loop = runtime.build_loop(interactive=interactive)
            try:
                session_id = await loop.setup()
                renderer = TranscriptRenderer(console, session_id)
                loop.on_prompt = renderer.show_prompt
                runtime.pump.add_listener(renderer.handle)
                runtime.pump.start()
                if interactive:
                    console.print(HELP_TEXT, style="dim", markup=False, highlight=False)
                return await loop.run()
            finally:
                await runtime.close()
    finally:
        await server.stop()


async def run_daemon_child(
    config: AutoConfig,
    repo_path: Path,
    goal: str | None,
    session_id: str,
    parent_pid: int | None,
) -> LoopState:
    """Background topology: drive the session the foreground created."""
    url = await ServerManager(config).attach()
    with run_lock(config.lock_file):
        runtime = LoopRuntime(config, repo_path, url, goal=goal, session_id=session_id)
        observer = SessionObserver(
            runtime.client, session_id, runtime.interrupts, config.poll_interval
        )
        loop = runtime.build_loop(
            interactive=True,
            before_turn=observer.wait_until_quiet,
            on_prompt=observer.record_prompt,
        )

        event_loop = asyncio.get_running_loop()
        quit_command = InterruptCommand(InterruptKind.QUIT)
        event_loop.add_signal_handler(signal.SIGTERM, runtime.interrupts.put, quit_command)

        watcher = None
        if parent_pid:
            watcher = ParentWatcher(parent_pid, runtime.interrupts, config.parent_check_interval)
            watcher.start()
        try:
            await loop.setup()
            await observer.prime()
            runtime.pump.add_listener(observer.handle)
            runtime.pump.start()
            return await loop.run()
        finally:
            event_loop.remove_signal_handler(signal.SIGTERM)
            if watcher is not None:
                await watcher.stop()
            await observer.stop()
            await runtime.close()


def daemon_command(
    config: AutoConfig,
    url: str,
    session_id: str,
    goal: str | None,
    verbose: bool = False,
) -> list[str]:
    cmd = [
        sys.executable,
        "-m",
        "mneme",
        "auto",
        "--daemon-child",
        "--attach",
        url,
        "--session-id",
        session_id,
        "--parent-pid",
        str(os.getpid()),
        "--max-cycles",
        str(config.max_cycles),
    ]
    if config.planner_model:
        cmd.extend(["--planner-model", config.planner_model])
    if config.executor_model:
        cmd.extend(["--executor-model", config.executor_model])
    if verbose:
        cmd.append("--verbose")
    if goal:
        cmd.extend(["--", goal])
    return cmd


def spawn_daemon(cmd: list[str], repo_path: Path) -> subprocess.Popen:
    """Start the loop detached: own session, no terminal, logs go to the log file."""
    return subprocess.Popen(
        cmd,
        cwd=repo_path,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


def terminate_daemon(process: subprocess.Popen, timeout: float = STOP_TIMEOUT) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def transcript_command(config: AutoConfig, url: str, session_id: str) -> list[str]:
    return [part.format(url=url, session=session_id) for part in config.transcript_command]


async def run_with_transcript(
    config: AutoConfig,
    repo_path: Path,
    goal: str | None,
    console: Console,
    verbose: bool = False,
) -> int:
    """Default topology. Returns the transcript viewer's exit code.

    Models are validated here, before anything is spawned, so a rejected model
    fails in the terminal rather than only in the daemon's log.
    """
    check_unlocked(config.lock_file)
    viewer = transcript_command(config, "", "")[0]
    if shutil.which(viewer) is None:
        raise ServerStartError(f"Transcript viewer '{viewer}' is not installed; use --headless")

    server = ServerManager(config)
    url = await server.ensure()
    daemon = None
    try:
        async with OpencodeClient(url, timeout=config.request_timeout) as client:
            await validate_models(client, config)
            session = await client.create_session(config.session_title)
        session_id = session["id"]

        daemon = spawn_daemon(daemon_command(config, url, session_id, goal, verbose), repo_path)
        console.print(
            f"[dim]Loop running in background (pid {daemon.pid}, session {session_id}); "
            f"log: {config.log_file}[/dim]"
        )

        cmd = transcript_command(config, url, session_id)
        viewer_process = await asyncio.create_subprocess_exec(*cmd, cwd=repo_path)
        return await viewer_process.wait()
    finally:
        if daemon is not None:
            exit_code = daemon.poll()
            if exit_code:
                console.print(
                    f"[red]Background loop exited with code {exit_code}; "
                    f"see {config.log_file}[/red]"
                )
            await asyncio.to_thread(terminate_daemon, daemon)
            console.print("[dim]Background loop stopped[/dim]")
        await server.stop()
