"""CLI entry point for mneme auto.

Commands:
- mneme auto: Run the planner/executor loop on a goal or on tracker work
- mneme version: Print the installed version
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel

from mneme import __version__
from mneme.core.client import ApiConnectionError, ApiError
from mneme.core.config import AutoConfig, ConfigError, load_config
from mneme.core.models import LoopState
from mneme.core.stream import StreamDisconnectedError
from mneme.core.supervisor import ModelRejectedError
from mneme.core.topology import (
    RunLockError,
    ServerStartError,
    run_attached,
    run_daemon_child,
    run_with_transcript,
)
from mneme.core.utils import configure_logging

console = Console()
logger = logging.getLogger(__name__)

# Failures that end a run with a one-line message instead of a traceback
FATAL_ERRORS = (
    ApiConnectionError,
    ApiError,
    ConfigError,
    ModelRejectedError,
    RunLockError,
    ServerStartError,
    StreamDisconnectedError,
)


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """mneme - persistent memory for AI coding agents."""
    pass


@main.command()
def version() -> None:
    """Print the installed version."""
    console.print(f"mneme {__version__}")


@main.command()
@click.argument("goal", nargs=-1)
@click.option("--attach", "server_url", help="URL of a running opencode server to use")
@click.option("--port", type=int, help="Port for the opencode server mneme starts")
@click.option("--max-cycles", type=int, help="Stop after this many planner/executor cycles")
@click.option("--planner-model", help="Planner model as provider/model")
@click.option("--executor-model", help="Executor model as provider/model")
@click.option("--headless", "mode", flag_value="headless", help="Run in this terminal without the transcript view")
@click.option("--transcript", "mode", flag_value="transcript", help="Run in the background with the transcript view")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--daemon-child", is_flag=True, hidden=True)
@click.option("--session-id", hidden=True)
@click.option("--parent-pid", type=int, hidden=True)
def auto(
    goal: tuple[str, ...],
    server_url: str | None,
    port: int | None,
    max_cycles: int | None,
    planner_model: str | None,
    executor_model: str | None,
    mode: str | None,
    verbose: bool,
    daemon_child: bool,
    session_id: str | None,
    parent_pid: int | None,
) -> None:
    """Drive a planner and an executor through one opencode session.

    GOAL is optional. Without it, in-progress and ready tracker items are
    worked on; with no work either, the planner opens a goal discussion.

    Example:
        mneme auto "Add rate limiting to the public API"
    """
    repo_path = get_repo_path()
    goal_text = " ".join(goal).strip() or None
    level = logging.DEBUG if verbose else logging.INFO

    try:
        config = load_config(
            repo_path,
            server_url=server_url,
            port=port,
            max_cycles=max_cycles,
            planner_model=planner_model,
            executor_model=executor_model,
            headless=None if mode is None else mode == "headless",
        )
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if daemon_child:
        _run_daemon_child(config, repo_path, goal_text, session_id, parent_pid, level)
        return

    configure_logging(daemon=False, level=level, console=console)
    if config.headless:
        _run_headless(config, repo_path, goal_text)
    else:
        _run_with_transcript(config, repo_path, goal_text, verbose)


def _run_headless(config: AutoConfig, repo_path: Path, goal: str | None) -> None:
    if goal:
        console.print(f"\n[bold]Goal:[/bold] {goal}")
    try:
        final = asyncio.run(run_attached(config, repo_path, goal, console))
    except FATAL_ERRORS as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)

    style = "green" if final == LoopState.DONE else "yellow"
    console.print(Panel(f"[{style}]Loop finished ({final.value})[/{style}]", title="mneme auto"))


def _run_with_transcript(
    config: AutoConfig, repo_path: Path, goal: str | None, verbose: bool
) -> None:
    try:
        code = asyncio.run(run_with_transcript(config, repo_path, goal, console, verbose))
    except FATAL_ERRORS as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)
    sys.exit(code)


def _run_daemon_child(
    config: AutoConfig,
    repo_path: Path,
    goal: str | None,
    session_id: str | None,
    parent_pid: int | None,
    level: int,
) -> None:
    configure_logging(daemon=True, log_file=config.log_file, level=level)
    if not session_id:
        logger.error("--daemon-child requires --session-id")
        sys.exit(2)

    logger.info(f"Background loop started for session {session_id}")
    try:
        final = asyncio.run(
            run_daemon_child(config, repo_path, goal, session_id, parent_pid)
        )
    except FATAL_ERRORS as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info(f"Background loop finished ({final.value})")


if __name__ == "__main__":
    main()
