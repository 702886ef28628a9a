"""Tests for prompt composition and completion detection."""

from __future__ import annotations

import pytest

from mneme.core.models import TrackerSnapshot
from mneme.core.prompts import PromptComposer, contains_sentinel
from tests.fakes import SENTINEL, make_item


class TestContainsSentinel:
    """Tests for completion-token detection in assistant text."""

    def test_token_alone_on_last_line(self):
        assert contains_sentinel(f"All checks pass.\n\n{SENTINEL}\n", SENTINEL)

    def test_emphasis_tolerated(self):
        assert contains_sentinel(f"Done.\n**{SENTINEL}**", SENTINEL)
        assert contains_sentinel(f"Done.\n`{SENTINEL}`", SENTINEL)

    def test_inline_mention_does_not_count(self):
        assert not contains_sentinel(f"I will write {SENTINEL} once tests pass.", SENTINEL)

    def test_fenced_block_does_not_count(self):
        text = f"Example:\n```\n{SENTINEL}\n```\nStill working."
        assert not contains_sentinel(text, SENTINEL)

    def test_after_fence_closes_counts(self):
        text = f"```\ncode\n```\n{SENTINEL}"
        assert contains_sentinel(text, SENTINEL)

    def test_quoted_line_does_not_count(self):
        assert not contains_sentinel(f"The rule says:\n> {SENTINEL}", SENTINEL)

    @pytest.mark.parametrize("text, token", [("", SENTINEL), (SENTINEL, ""), (None, SENTINEL)])
    def test_empty_inputs(self, text, token):
        assert not contains_sentinel(text, token)


class TestStaticDocuments:
    """Tests for fact and rules loading."""

    def test_facts_sorted_by_name(self, composer):
        facts = composer.load_facts()

        assert [name for name, _ in facts] == ["a-naming.md", "b-stack.md"]
        assert facts[0][1] == "Use snake_case for modules."

    def test_system_context_includes_facts_then_rules(self, composer):
        context = composer.build_system_context()

        assert context.startswith("# Project context")
        assert context.index("a-naming.md") < context.index("b-stack.md") < context.index("## Rules")
        assert "Run the tests before reporting." in context

    def test_missing_documents_skipped(self, composer, project):
        (project / "AGENTS.md").unlink()
        for path in (project / ".ledger" / "facts").iterdir():
            path.unlink()

        context = composer.build_system_context()

        assert "## Rules" not in context
        assert "No facts or rules have been recorded yet." in context

    def test_empty_fact_file_skipped(self, composer, project):
        (project / ".ledger" / "facts" / "c-empty.md").write_text("  \n")
        assert len(composer.load_facts()) == 2

    def test_documents_read_fresh(self, composer, project):
        composer.build_system_context()
        (project / "AGENTS.md").write_text("Never push to main.\n")

        assert "Never push to main." in composer.build_system_context()


class TestRolePrompts:
    """Every prompt names the token without ever completing on its own."""

    @pytest.fixture
    def prompts(self, composer):
        item = make_item(
            "mneme-a1",
            priority=1,
            description="Add retries to the HTTP client.",
            notes="Started on client.py",
            dependencies=["mneme-a0"],
        )
        snapshot = TrackerSnapshot(ready=[make_item("mneme-b2")], blocked=[item])
        return {
            "bead": composer.build_planner_bead_prompt(item),
            "goal": composer.build_planner_goal_prompt("Ship the importer"),
            "review": composer.build_planner_review_prompt("executor turn aborted"),
            "discovery": composer.build_planner_discovery_prompt(snapshot),
            "finalize": composer.build_planner_finalize_goal_prompt(),
            "executor": composer.build_executor_prompt(),
            "context": composer.build_system_context(),
        }

    def test_no_prompt_completes_by_itself(self, prompts):
        for name, prompt in prompts.items():
            assert not contains_sentinel(prompt, SENTINEL), name

    def test_planner_prompts_carry_contract(self, prompts):
        for name in ("bead", "goal", "review", "finalize"):
            assert SENTINEL in prompts[name], name
        assert SENTINEL not in prompts["executor"]

    def test_bead_prompt_describes_item(self, prompts):
        bead = prompts["bead"]
        assert "mneme-a1" in bead
        assert "P1" in bead
        assert "Add retries to the HTTP client." in bead
        assert "Started on client.py" in bead
        assert "Depends on: mneme-a0" in bead

    def test_goal_prompt_includes_goal(self, prompts):
        assert "Ship the importer" in prompts["goal"]

    def test_review_feedback_section(self, composer, prompts):
        assert "Notes from the supervisor:\nexecutor turn aborted" in prompts["review"]
        assert "Notes from the supervisor" not in composer.build_planner_review_prompt()

    def test_discovery_lists_snapshot(self, composer, prompts):
        assert "Ready:\n- mneme-b2 [P2] Task mneme-b2" in prompts["discovery"]
        assert "Blocked:" in prompts["discovery"]
        empty = composer.build_planner_discovery_prompt(TrackerSnapshot())
        assert "The tracker has no open items." in empty

    def test_custom_sentinel(self, config):
        composer = PromptComposer(config.model_copy(update={"sentinel": "ALL_DONE"}))
        assert "ALL_DONE" in composer.build_planner_goal_prompt("x")


class TestRender:
    def test_unknown_template_rejected(self, composer):
        with pytest.raises(ValueError, match="Unknown template"):
            composer.render("../../etc/passwd")
