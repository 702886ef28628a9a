"""Work-item tracker access and the Task Selector.

The tracker is the `bd` (beads) CLI. Structured calls pass --json; when that
fails the listing is re-run in plain text and ids are scraped with a regex.
The plain-text format is not a stable interface, so the fallback is best-effort.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any

from mneme.core.config import AutoConfig
from mneme.core.models import (
    PromptSeed,
    SeedKind,
    TrackerSnapshot,
    WorkItem,
    WorkItemStatus,
)
from mneme.core.prompts import PromptComposer

logger = logging.getLogger(__name__)

# "○ mneme-a1b [P1] Title", "bd-3f2.1: Title", "◐ mneme-x9z · Title"
_ID_PATTERN = re.compile(r"\b([A-Za-z][A-Za-z0-9_]*-[a-z0-9]{2,}(?:\.\d+)*)\b")
_PRIORITY_PATTERN = re.compile(r"\[?\bP([0-4])\b\]?")
_GLYPH_STATUS = {
    "○": WorkItemStatus.OPEN,
    "◐": WorkItemStatus.IN_PROGRESS,
    "●": WorkItemStatus.BLOCKED,
    "✓": WorkItemStatus.CLOSED,
}


class TrackerError(Exception):
    """The tracker command failed or is unavailable."""

    pass


def parse_text_listing(output: str, status: WorkItemStatus | None = None) -> list[WorkItem]:
    """Best-effort parse of a human-readable `bd list` / `bd ready` listing."""
    items: list[WorkItem] = []
    seen: set[str] = set()
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        match = _ID_PATTERN.search(line)
        if match is None or match.group(1) in seen:
            continue
        item_id = match.group(1)
        seen.add(item_id)

        item_status = status
        if item_status is None:
            item_status = _GLYPH_STATUS.get(line[0], WorkItemStatus.OPEN)

        rest = line[match.end():]
        priority_match = _PRIORITY_PATTERN.search(rest)
        priority = int(priority_match.group(1)) if priority_match else 2
        title = _PRIORITY_PATTERN.sub("", rest)
        title = re.sub(r"\[[^\]]*\]", "", title).strip(" :-·|\t")

        items.append(
            WorkItem(id=item_id, title=title, status=item_status, priority=priority)
        )
    return items


def _items_from_json(data: Any) -> list[WorkItem]:
    if isinstance(data, dict):
        # Some commands wrap results: {"issues": [...]}
        for key in ("issues", "items", "results"):
            if isinstance(data.get(key), list):
                data = data[key]
                break
        else:
            data = [data]
    if not isinstance(data, list):
        raise TrackerError(f"Unexpected tracker JSON: {type(data).__name__}")
    items = []
    for entry in data:
        if isinstance(entry, dict) and entry.get("id"):
            items.append(WorkItem.from_tracker(entry))
    return items


class BeadsTracker:
    """Async wrapper around the `bd` CLI for one project."""

    def __init__(self, config: AutoConfig, repo_path: Path):
        self.command = config.tracker_command
        self.timeout = config.tracker_timeout
        self.dolt_address = (config.dolt_host, config.dolt_port) if config.dolt_port else None
        self.repo_path = repo_path

    async def _run(self, args: list[str]) -> str:
        """Run one tracker command and return stdout.

        Raises:
            TrackerError: Missing binary, timeout, or non-zero exit
        """
        cmd = [self.command, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.repo_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TrackerError(f"Cannot run {self.command}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TrackerError(
                f"{' '.join(cmd)} timed out after {self.timeout:.0f}s"
            ) from None

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip() or stdout.decode(errors="replace").strip()
            raise TrackerError(f"{' '.join(cmd)} exited {proc.returncode}: {message[:300]}")
        return stdout.decode(errors="replace")

    async def _run_json(self, args: list[str]) -> Any:
        output = await self._run([*args, "--json"])
        if not output.strip():
            return []
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise TrackerError(f"Unparsable JSON from {self.command} {args[0]}: {e}") from e

    async def _listing(
        self, args: list[str], status: WorkItemStatus | None = None
    ) -> list[WorkItem]:
        try:
            return _items_from_json(await self._run_json(args))
        except TrackerError as e:
            logger.warning(f"Structured tracker call failed ({e}); falling back to text output")
        return parse_text_listing(await self._run(args), status)

    # --- Queries ---

    async def available(self) -> bool:
        if shutil.which(self.command) is None:
            return False
        try:
            await self._run(["version"])
        except TrackerError as e:
            logger.debug(f"Tracker probe failed: {e}")
            return False
        return True

    async def database_reachable(self, timeout: float = 2.0) -> bool:
        """True when the Dolt server the tracker stores items in accepts connections."""
        if self.dolt_address is None:
            return True
        host, port = self.dolt_address
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True

    async def list_items(self, status: WorkItemStatus | None = None) -> list[WorkItem]:
        args = ["list"]
        if status is not None:
            args.append(f"--status={status.value}")
        return await self._listing(args, status)

    async def ready(self) -> list[WorkItem]:
        """Open items with no open blockers."""
        return await self._listing(["ready"], WorkItemStatus.OPEN)

    async def blocked(self) -> list[WorkItem]:
        return await self._listing(["blocked"], WorkItemStatus.BLOCKED)

    async def show(self, item_id: str) -> WorkItem | None:
        items = _items_from_json(await self._run_json(["show", item_id]))
        return items[0] if items else None

    async def snapshot(self) -> TrackerSnapshot:
        in_progress = await self.list_items(WorkItemStatus.IN_PROGRESS)
        ready = await self.ready()
        blocked = await self.blocked()
        busy = {item.id for item in [*in_progress, *ready, *blocked]}
        open_items = [
            item
            for item in await self.list_items(WorkItemStatus.OPEN)
            if item.id not in busy
        ]
        return TrackerSnapshot(
            in_progress=in_progress, ready=ready, blocked=blocked, open=open_items
        )

    # --- Mutations ---

    async def create(
        self,
        title: str,
        description: str = "",
        priority: int = 2,
        issue_type: str = "task",
    ) -> WorkItem:
        args = ["create", title, f"--priority={priority}", f"--type={issue_type}"]
        if description:
            args.append(f"--description={description}")
        items = _items_from_json(await self._run_json(args))
        if not items:
            raise TrackerError(f"{self.command} create returned no item")
        return items[0]

    async def update(
        self,
        item_id: str,
        status: WorkItemStatus | None = None,
        notes: str | None = None,
        priority: int | None = None,
    ) -> None:
        args = ["update", item_id]
        if status is not None:
            args.append(f"--status={status.value}")
        if notes is not None:
            args.append(f"--notes={notes}")
        if priority is not None:
            args.append(f"--priority={priority}")
        await self._run(args)

    async def close(self, item_id: str, reason: str = "") -> None:
        args = ["close", item_id]
        if reason:
            args.append(f"--reason={reason}")
        await self._run(args)

    async def add_dependency(self, child_id: str, parent_id: str) -> None:
        """Record that ``child_id`` is blocked until ``parent_id`` closes."""
        await self._run(["dep", "add", child_id, parent_id])


def _by_priority(items: list[WorkItem]) -> list[WorkItem]:
    # Lower number is more urgent; ties keep tracker order
    return sorted(items, key=lambda item: item.priority)


class TaskSelector:
    """Chooses the next work item and keeps claims consistent for one run."""

    def __init__(self, tracker: BeadsTracker, composer: PromptComposer):
        self.tracker = tracker
        self.composer = composer
        self.skipped: set[str] = set()
        self.completed: set[str] = set()
        self.claimed: set[str] = set()

    def _eligible(self, items: list[WorkItem]) -> list[WorkItem]:
        return [
            item
            for item in items
            if item.id not in self.skipped
            and item.id not in self.completed
            and item.status != WorkItemStatus.CLOSED
        ]

    async def pick_work(self) -> PromptSeed | None:
        """Resume in-progress work first, else claim the most urgent ready item.

        Returns None when nothing is available. Tracker failures are logged and
        treated as "nothing available".
        """
        try:
            in_progress = self._eligible(
                await self.tracker.list_items(WorkItemStatus.IN_PROGRESS)
            )
        except TrackerError as e:
            logger.warning(f"Could not list in-progress items: {e}")
            in_progress = []

        if in_progress:
            item = _by_priority(in_progress)[0]
            await self.claim(item)
            logger.info(f"Resuming {item.label()}")
            return PromptSeed(
                kind=SeedKind.ITEM,
                prompt=self.composer.build_planner_bead_prompt(item),
                item=item,
                resumed=True,
            )

        try:
            ready = self._eligible(await self.tracker.ready())
        except TrackerError as e:
            logger.warning(f"Could not list ready items: {e}")
            return None

        for item in _by_priority(ready):
            try:
                await self.claim(item)
            except TrackerError as e:
                logger.warning(f"Could not claim {item.id}: {e}")
                continue
            logger.info(f"Claimed {item.label()}")
            return PromptSeed(
                kind=SeedKind.ITEM,
                prompt=self.composer.build_planner_bead_prompt(item),
                item=item,
            )
        return None

    async def claim(self, item: WorkItem) -> bool:
        """Mark ``item`` in progress. Returns False when no tracker call was needed.

        Raises:
            TrackerError: If the status update fails
        """
        if item.id in self.claimed or item.status == WorkItemStatus.IN_PROGRESS:
            self.claimed.add(item.id)
            return False
        await self.tracker.update(item.id, status=WorkItemStatus.IN_PROGRESS)
        self.claimed.add(item.id)
        return True

    async def release(self, item: WorkItem, note: str = "") -> None:
        """Return a skipped item to open and exclude it for the rest of the run."""
        self.skipped.add(item.id)
        self.claimed.discard(item.id)
        notes = f"{item.notes}\n{note}".strip() if note else None
        try:
            await self.tracker.update(item.id, status=WorkItemStatus.OPEN, notes=notes)
        except TrackerError as e:
            logger.warning(f"Could not release {item.id}: {e}")

    async def complete(self, item: WorkItem) -> None:
        """Close the item unless the planner already did.

        The item is excluded for the rest of the run even if closing fails, so a
        finished item left in progress is not resumed.
        """
        self.completed.add(item.id)
        self.claimed.discard(item.id)
        try:
            current = await self.tracker.show(item.id)
            if current is not None and current.status == WorkItemStatus.CLOSED:
                return
            await self.tracker.close(item.id, reason="Completed by mneme auto")
        except TrackerError as e:
            logger.warning(f"Could not close {item.id}: {e}")
