"""Prompt Composer: role prompts rendered from package templates.

Templates live in mneme/prompts and are rendered in a sandbox with strict
undefined, so a misspelled variable fails loudly instead of sending a
half-empty prompt. Static project documents (approved facts and the rules
file) are read fresh on every call and concatenated verbatim.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

from mneme.core.config import AutoConfig
from mneme.core.models import TrackerSnapshot, WorkItem

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "prompts"

# Only templates shipped with the package may be rendered
ALLOWED_TEMPLATES = frozenset([
    "_contract.j2",
    "system_context.j2",
    "planner_bead.j2",
    "planner_goal.j2",
    "planner_review.j2",
    "planner_discovery.j2",
    "planner_finalize.j2",
    "executor.j2",
])

_FENCE = re.compile(r"^\s*(```|~~~)")


def contains_sentinel(text: str, token: str) -> bool:
    """True if ``token`` appears alone on a line of assistant output.

    Lines inside fenced code blocks and quoted lines (``>``) do not count, so a
    planner quoting its own instructions does not complete the item. Markdown
    emphasis around the token is tolerated.
    """
    if not text or not token:
        return False
    in_fence = False
    for line in text.splitlines():
        if _FENCE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        stripped = line.strip()
        if stripped.startswith(">"):
            continue
        if stripped.strip("*_` ") == token:
            return True
    return False


class PromptComposer:
    """Builds every prompt the loop sends."""

    def __init__(self, config: AutoConfig, template_dir: Path = TEMPLATE_DIR):
        self.config = config
        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
        )

    def render(self, template_name: str, **kwargs: Any) -> str:
        if template_name not in ALLOWED_TEMPLATES:
            raise ValueError(
                f"Unknown template '{template_name}'. Allowed: {sorted(ALLOWED_TEMPLATES)}"
            )
        template = self.env.get_template(template_name)
        return template.render(sentinel=self.config.sentinel, **kwargs).strip()

    # --- Static documents ---

    def load_facts(self) -> list[tuple[str, str]]:
        """(name, content) for every approved fact file, sorted by name."""
        facts_dir = self.config.facts_dir
        if not facts_dir.is_dir():
            return []
        facts = []
        for path in sorted(facts_dir.glob("*.md")):
            try:
                content = path.read_text(encoding="utf-8").strip()
            except OSError as e:
                logger.warning(f"Skipping unreadable fact file {path}: {e}")
                continue
            if content:
                facts.append((path.name, content))
        return facts

    def load_rules(self) -> str:
        path = self.config.rules_file
        if not path.is_file():
            return ""
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning(f"Skipping unreadable rules file {path}: {e}")
            return ""

    # --- Prompts ---

    def build_system_context(self) -> str:
        """Project facts and rules, prefixed to the first prompt of a run."""
        return self.render(
            "system_context.j2", facts=self.load_facts(), rules=self.load_rules()
        )

    def build_planner_bead_prompt(self, item: WorkItem) -> str:
        return self.render("planner_bead.j2", item=item)

    def build_planner_goal_prompt(self, goal: str) -> str:
        return self.render("planner_goal.j2", goal=goal)

    def build_planner_review_prompt(self, feedback: str | None = None) -> str:
        """Ask the planner to review the executor's work.

        ``feedback`` carries anything the loop knows that the planner cannot see
        in the transcript: an aborted or failed turn, or text the user typed.
        """
        return self.render("planner_review.j2", feedback=(feedback or "").strip())

    def build_planner_discovery_prompt(self, snapshot: TrackerSnapshot) -> str:
        return self.render("planner_discovery.j2", snapshot=snapshot)

    def build_planner_finalize_goal_prompt(self) -> str:
        return self.render("planner_finalize.j2")

    def build_executor_prompt(self) -> str:
        return self.render("executor.j2")
