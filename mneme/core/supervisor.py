"""Supervisor Loop: the planner/executor state machine.

    IDLE -> SELECTING_WORK -> PLANNER_TURN <-> EXECUTOR_TURN
                 ^                 |
                 +---- sentinel ---+
    SELECTING_WORK (nothing to do) -> AWAITING_USER -> SELECTING_WORK | DONE
    IDLE (no goal, no work) -> GOAL_DISCUSSION <-> AWAITING_USER -> /go -> EXECUTOR_TURN

Interrupts other than /abort and /quit are handled here, between turns, in the
order they arrived. The loop owns the cycle counters; the tracker owns items.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from mneme.core.client import OpencodeClient
from mneme.core.config import AutoConfig
from mneme.core.interrupts import InterruptChannel
from mneme.core.models import (
    AbortReason,
    InterruptCommand,
    InterruptKind,
    LoopState,
    PromptSeed,
    Role,
    SeedKind,
    TrackerSnapshot,
    TurnOutcome,
    TurnStatus,
)
from mneme.core.prompts import PromptComposer, contains_sentinel
from mneme.core.tracker import TaskSelector, TrackerError
from mneme.core.turn import TurnExecutor
from mneme.core.utils import parse_model_spec

logger = logging.getLogger(__name__)

# Separates the system context from the first prompt of a run
CONTEXT_SEPARATOR = "\n\n---\n\n"


class ModelRejectedError(Exception):
    """A configured model is not offered by the runtime."""

    pass


def _catalogue(providers: dict[str, Any]) -> dict[str, set[str]]:
    """{provider id: {model ids}} from the runtime's provider listing."""
    catalogue: dict[str, set[str]] = {}
    for provider in providers.get("providers") or []:
        if not isinstance(provider, dict) or not provider.get("id"):
            continue
        models = provider.get("models") or {}
        if isinstance(models, dict):
            ids = set(models)
        else:
            ids = {m.get("id") for m in models if isinstance(m, dict) and m.get("id")}
        catalogue[provider["id"]] = ids
    return catalogue


def check_model(spec: str, catalogue: dict[str, set[str]]) -> str | None:
    """Return a reason if ``spec`` is not in the catalogue, else None."""
    parsed = parse_model_spec(spec)
    if parsed is None:
        return None
    provider, model = parsed["providerID"], parsed["modelID"]
    if not provider:
        if any(model in ids for ids in catalogue.values()):
            return None
        return f"no provider offers model '{model}'"
    if provider not in catalogue:
        known = ", ".join(sorted(catalogue)) or "none"
        return f"unknown provider '{provider}' (available: {known})"
    if model not in catalogue[provider]:
        return f"provider '{provider}' has no model '{model}'"
    return None


async def validate_models(client: OpencodeClient, config: AutoConfig) -> None:
    """Check both role models against the runtime's provider catalogue.

    Raises:
        ModelRejectedError: If a configured model is not available
    """
    configured = {
        Role.PLANNER: config.planner_model,
        Role.EXECUTOR: config.executor_model,
    }
    if not any(configured.values()):
        return
    catalogue = _catalogue(await client.providers())
    for role, spec in configured.items():
        if not spec:
            continue
        reason = check_model(spec, catalogue)
        if reason:
            raise ModelRejectedError(f"{role.value} model '{spec}': {reason}")


class SupervisorLoop:
    """Drives planner and executor turns through one shared session.

    USAGE:
        loop = SupervisorLoop(config, client, executor, selector, composer, interrupts,
                              goal="add a health endpoint")
        await loop.setup()
        final_state = await loop.run()
    """

    def __init__(
        self,
        config: AutoConfig,
        client: OpencodeClient,
        executor: TurnExecutor,
        selector: TaskSelector,
        composer: PromptComposer,
        interrupts: InterruptChannel,
        goal: str | None = None,
        session_id: str | None = None,
        interactive: bool = True,
        before_turn: Callable[[], Awaitable[None]] | None = None,
        on_prompt: Callable[[Role, str], None] | None = None,
    ):
        self.config = config
        self.client = client
        self.executor = executor
        self.selector = selector
        self.composer = composer
        self.interrupts = interrupts
        self.session_id = session_id
        self.interactive = interactive
        self.before_turn = before_turn
        self.on_prompt = on_prompt

        self.state = LoopState.IDLE
        self.history: list[LoopState] = [LoopState.IDLE]
        self.seed: PromptSeed | None = None
        self.cycle = 0
        self.total_cycles = 0
        self.turn_errors = 0
        self.feedback: list[str] = []
        self.outcomes: list[TurnOutcome] = []
        self._pending_goal = goal.strip() if goal and goal.strip() else None
        self._planner_prompt: str | None = None
        self._context_sent = False
        self._discussing = False
        self._discussion_reply: str | None = None

        if getattr(executor, "on_status", None) is None:
            executor.on_status = self.print_status

    # --- Setup ---

    async def setup(self) -> str:
        """Open or reuse the session and validate models. Returns the session id.

        Raises:
            ModelRejectedError: If a configured model is not available
            ApiError, ApiConnectionError: If the runtime cannot be used
        """
        await self.validate_models()

        if self.session_id:
            await self.client.get_session(self.session_id)
            logger.info(f"Reusing session {self.session_id}")
        else:
            session = await self.client.create_session(self.config.session_title)
            self.session_id = session["id"]
            logger.info(f"Created session {self.session_id}")

        if not await self.selector.tracker.available():
            logger.warning(
                f"Tracker '{self.config.tracker_command}' is not available; "
                "only goals given on the command line can be worked on"
            )
        elif not await self.selector.tracker.database_reachable():
            logger.warning(
                "The tracker database server is not reachable; listing and updating "
                "items will fail until it is started"
            )
        return self.session_id

    async def validate_models(self) -> None:
        await validate_models(self.client, self.config)

    # --- State machine ---

    def _transition(self, state: LoopState) -> None:
        if state != self.state:
            logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    async def run(self) -> LoopState:
        """Run until DONE. Returns the final state."""
        if self.session_id is None:
            await self.setup()

        handlers = {
            LoopState.IDLE: self._start,
            LoopState.GOAL_DISCUSSION: self._goal_discussion,
            LoopState.SELECTING_WORK: self._select_work,
            LoopState.PLANNER_TURN: self._planner_turn,
            LoopState.EXECUTOR_TURN: self._executor_turn,
            LoopState.AWAITING_USER: self._await_user,
        }
        while self.state != LoopState.DONE:
            if self.interrupts.quit_requested and self.state != LoopState.IDLE:
                logger.info("Quit requested")
                self._transition(LoopState.DONE)
                break
            await handlers[self.state]()

        logger.info(
            f"Loop finished after {self.total_cycles} cycle(s), {len(self.outcomes)} turn(s)"
        )
        return self.state

    async def _start(self) -> None:
        if self._pending_goal:
            self._transition(LoopState.SELECTING_WORK)
            return
        seed = await self.selector.pick_work()
        if seed is not None:
            self._begin(seed)
        elif self.interactive:
            self._transition(LoopState.GOAL_DISCUSSION)
        else:
            logger.info("No goal and no ready work; nothing to do")
            self._transition(LoopState.DONE)

    def _begin(self, seed: PromptSeed) -> None:
        logger.info(f"Working on {seed.describe()}")
        self.seed = seed
        self.cycle = 0
        self.turn_errors = 0
        self.feedback = []
        self._planner_prompt = seed.prompt
        self._transition(LoopState.PLANNER_TURN)

    async def _select_work(self) -> None:
        if self._pending_goal:
            goal, self._pending_goal = self._pending_goal, None
            self._begin(
                PromptSeed(
                    kind=SeedKind.GOAL,
                    prompt=self.composer.build_planner_goal_prompt(goal),
                    goal=goal,
                )
            )
            return

        seed = await self.selector.pick_work()
        if seed is not None:
            self._begin(seed)
            return

        self.seed = None
        if self.interactive:
            logger.info("No ready work. Type a new goal, or /quit")
            self._transition(LoopState.AWAITING_USER)
        else:
            logger.info("No ready work left")
            self._transition(LoopState.DONE)

    async def _planner_turn(self) -> None:
        if await self._handle_boundary() or self._cycles_exhausted():
            return

        prompt = self._planner_prompt
        if prompt is None:
            prompt = self.composer.build_planner_review_prompt("\n".join(self.feedback))
        elif self.feedback:
            prompt = f"{prompt}\n\n" + "\n".join(self.feedback)

        outcome = await self._turn(Role.PLANNER, prompt)

        if outcome.status == TurnStatus.QUIT:
            self._transition(LoopState.DONE)
            return
        if outcome.status == TurnStatus.ABORTED and outcome.abort_reason == AbortReason.USER:
            logger.info("Planner turn aborted; paused. Type a message, or /quit")
            self._pause()
            return
        if not outcome.ok:
            self.turn_errors += 1
            if self.turn_errors >= self.config.max_turn_errors:
                logger.error(
                    f"{self.turn_errors} consecutive planner failures; pausing"
                )
                self._pause()
                return
            self.feedback.append(f"Your previous turn did not finish: {outcome.summary()}")
            return

        self.turn_errors = 0
        # The opening prompt and feedback are resent until a turn completes
        self._planner_prompt = None
        self.feedback = []
        if contains_sentinel(outcome.text, self.config.sentinel):
            await self._complete_seed()
            return
        self._transition(LoopState.EXECUTOR_TURN)

    async def _executor_turn(self) -> None:
        if await self._handle_boundary() or self._cycles_exhausted():
            return

        outcome = await self._turn(Role.EXECUTOR, self.composer.build_executor_prompt())
        if outcome.status == TurnStatus.QUIT:
            self._transition(LoopState.DONE)
            return

        self.cycle += 1
        self.total_cycles += 1
        if not outcome.ok:
            self.feedback.append(f"The executor did not finish: {outcome.summary()}")
        self._transition(LoopState.PLANNER_TURN)

    async def _complete_seed(self) -> None:
        seed = self.seed
        if self.cycle == 0:
            # Closed without an executor turn; still one step toward max_cycles
            self.total_cycles += 1
        if seed is not None and seed.item is not None:
            await self.selector.complete(seed.item)
        logger.info(
            f"Completed {seed.describe() if seed else 'work'} after {self.cycle} cycle(s)"
        )
        self.seed = None
        self.cycle = 0
        self._transition(LoopState.SELECTING_WORK)

    def _pause(self) -> None:
        self.turn_errors = 0
        self._transition(LoopState.AWAITING_USER if self.interactive else LoopState.DONE)

    def _cycles_exhausted(self) -> bool:
        if self.total_cycles < self.config.max_cycles:
            return False
        logger.warning(f"Reached max_cycles ({self.config.max_cycles}); stopping")
        self._transition(LoopState.DONE)
        return True

    async def _turn(self, role: Role, prompt: str) -> TurnOutcome:
        if self.before_turn is not None:
            await self.before_turn()
        if not self._context_sent:
            context = self.composer.build_system_context()
            if context:
                prompt = f"{context}{CONTEXT_SEPARATOR}{prompt}"
        if self.on_prompt is not None:
            self.on_prompt(role, prompt)

        model = self.config.planner_model if role == Role.PLANNER else self.config.executor_model
        outcome = await self.executor.execute_turn(self.session_id, prompt, role, model)
        self.outcomes.append(outcome)
        if outcome.ok:
            self._context_sent = True
        return outcome

    # --- Interrupts ---

    async def _handle_boundary(self) -> bool:
        """Apply queued commands between turns. True if the state changed."""
        commands = self.interrupts.drain()
        for index, command in enumerate(commands):
            if command.kind == InterruptKind.QUIT:
                self._transition(LoopState.DONE)
                return True
            if command.kind == InterruptKind.SKIP:
                self.interrupts.push_back_many(commands[index + 1:])
                await self._skip()
                return True
            self._apply_passive(command)
        return False

    def _apply_passive(self, command: InterruptCommand) -> None:
        if command.kind == InterruptKind.STATUS:
            self.print_status()
        elif command.kind == InterruptKind.MESSAGE:
            if command.external:
                self.feedback.append(f"The user wrote in this session: {command.text}")
            else:
                self.feedback.append(f"Message from the user: {command.text}")
        else:
            logger.info(f"/{command.kind.value} has no effect between turns")

    async def _skip(self) -> None:
        seed = self.seed
        if seed is not None and seed.item is not None:
            logger.info(f"Skipping {seed.item.label()}")
            await self.selector.release(seed.item, note="Skipped by the user during mneme auto")
        else:
            logger.info("Skipping current goal")
        self.seed = None
        self.cycle = 0
        self.feedback = []
        self._planner_prompt = None
        self._transition(LoopState.SELECTING_WORK)

    async def _await_user(self) -> None:
        """Bounded-poll wait: each wait returns within one poll interval.

        While a goal discussion is open, messages go to the planner as replies
        and /go finalises the goal; otherwise a message becomes the next goal.
        """
        while True:
            command = await self.interrupts.wait(self.config.poll_interval)
            if command is None:
                if self.interrupts.quit_requested:
                    self._transition(LoopState.DONE)
                    return
                continue
            if command.kind == InterruptKind.QUIT:
                self._transition(LoopState.DONE)
                return
            if command.kind == InterruptKind.STATUS:
                self.print_status()
            elif command.kind == InterruptKind.MESSAGE:
                if not self._discussing:
                    self._pending_goal = command.text
                    self._transition(LoopState.SELECTING_WORK)
                    return
                if command.external:
                    # Already in the session; the runtime answers it directly
                    continue
                self._discussion_reply = command.text
                self._transition(LoopState.GOAL_DISCUSSION)
                return
            elif command.kind == InterruptKind.GO:
                if self._discussing:
                    self._discussing = False
                    await self._finalize_goal()
                else:
                    # Retry selection, e.g. after items were added from another terminal
                    self._transition(LoopState.SELECTING_WORK)
                return
            elif command.kind == InterruptKind.SKIP and not self._discussing:
                await self._skip()
                return
            else:
                logger.info(f"/{command.kind.value} has no effect while waiting for input")

    async def _goal_discussion(self) -> None:
        """One planner turn of the discussion, then back to waiting for the user."""
        prompt = self._discussion_reply
        self._discussion_reply = None
        if prompt is None:
            try:
                snapshot = await self.selector.tracker.snapshot()
            except TrackerError as e:
                logger.warning(f"Could not read tracker state: {e}")
                snapshot = TrackerSnapshot()
            prompt = self.composer.build_planner_discovery_prompt(snapshot)

        outcome = await self._turn(Role.PLANNER, prompt)
        if outcome.status == TurnStatus.QUIT:
            self._transition(LoopState.DONE)
            return
        if not self._discussing:
            self._discussing = True
            logger.info("Discuss the goal with the planner; type /go to start executing")
        self._transition(LoopState.AWAITING_USER)

    async def _finalize_goal(self) -> None:
        prompt = self.composer.build_planner_finalize_goal_prompt()
        outcome = await self._turn(Role.PLANNER, prompt)
        if outcome.status == TurnStatus.QUIT:
            self._transition(LoopState.DONE)
            return
        self.seed = PromptSeed(kind=SeedKind.GOAL, prompt=prompt, goal="discussed goal")
        self.cycle = 0
        self.turn_errors = 0
        self.feedback = []
        if not outcome.ok:
            self.feedback.append(f"Finalising the goal did not finish: {outcome.summary()}")
        self._transition(LoopState.EXECUTOR_TURN)

    # --- Status ---

    def status_line(self) -> str:
        subject = self.seed.describe() if self.seed else "nothing selected"
        turn = "turn in flight" if self.executor.in_flight else "between turns"
        return (
            f"state={self.state.value} | {subject} | cycle {self.cycle} | "
            f"total {self.total_cycles}/{self.config.max_cycles} | {turn}"
        )

    def print_status(self) -> None:
        logger.info(self.status_line())
