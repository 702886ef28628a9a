"""Tests for the shared data models."""

from __future__ import annotations

import pytest

from mneme.core.models import (
    AbortReason,
    InterruptCommand,
    InterruptKind,
    PromptSeed,
    Role,
    SeedKind,
    TrackerSnapshot,
    TurnOutcome,
    TurnStatus,
    WorkItem,
    WorkItemStatus,
)


class TestWorkItem:
    """Tests for tolerant tracker parsing."""

    def test_from_tracker_full_record(self):
        item = WorkItem.from_tracker({
            "id": "mneme-a1b",
            "title": "Add login",
            "description": None,
            "status": "in_progress",
            "priority": 1,
            "issue_type": "feature",
            "dependencies": [{"issue_id": "mneme-a1b", "depends_on_id": "mneme-0zz"}],
            "created_at": "2026-01-01T00:00:00Z",
        })

        assert item.status == WorkItemStatus.IN_PROGRESS
        assert item.priority == 1
        assert item.description == ""
        assert item.issue_type == "feature"
        assert item.dependencies == ["mneme-0zz"]

    def test_type_alias(self):
        assert WorkItem.from_tracker({"id": "x-1", "type": "bug"}).issue_type == "bug"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("P0", 0),
            ("p3", 3),
            ("2", 2),
            (None, 2),
            ("urgent", 2),
        ],
    )
    def test_priority_normalization(self, raw, expected):
        assert WorkItem(id="x-1", priority=raw).priority == expected

    def test_status_normalization(self):
        assert WorkItem(id="x-1", status="In-Progress").status == WorkItemStatus.IN_PROGRESS
        assert WorkItem(id="x-1", status="tombstone").status == WorkItemStatus.OPEN

    def test_label(self):
        assert WorkItem(id="x-1", title="Fix bug").label() == "x-1 Fix bug"


class TestTurnOutcome:
    """Tests for outcome helpers."""

    def test_ok_only_when_completed(self):
        assert TurnOutcome(status=TurnStatus.COMPLETED, role=Role.PLANNER).ok
        assert not TurnOutcome(status=TurnStatus.ERRORED, role=Role.PLANNER).ok

    def test_summary_mentions_reason_and_error(self):
        outcome = TurnOutcome(
            status=TurnStatus.ABORTED,
            role=Role.EXECUTOR,
            abort_reason=AbortReason.SILENCE,
            elapsed=601,
        )
        assert outcome.summary() == "executor turn aborted reason=silence after 601s"

        errored = TurnOutcome(status=TurnStatus.ERRORED, role=Role.PLANNER, error="bad model")
        assert "error=bad model" in errored.summary()


class TestSeedsAndSnapshots:
    def test_describe_item_seed(self):
        item = WorkItem(id="x-1", title="Fix bug")
        assert PromptSeed(SeedKind.ITEM, "p", item=item, resumed=True).describe() == "resume x-1 Fix bug"
        assert PromptSeed(SeedKind.ITEM, "p", item=item).describe() == "claim x-1 Fix bug"

    def test_describe_goal_seed(self):
        assert PromptSeed(SeedKind.GOAL, "p", goal="ship it").describe() == "goal: ship it"

    def test_empty_snapshot(self):
        assert TrackerSnapshot().is_empty
        assert not TrackerSnapshot(open=[WorkItem(id="x-1")]).is_empty


class TestInterruptCommand:
    def test_stop_commands(self):
        assert InterruptCommand(InterruptKind.QUIT).stops_turn
        assert InterruptCommand(InterruptKind.ABORT).stops_turn
        assert not InterruptCommand(InterruptKind.SKIP).stops_turn
        assert not InterruptCommand.message("hi").stops_turn

    def test_external_message(self):
        command = InterruptCommand.message("looks wrong", external=True)
        assert command.kind == InterruptKind.MESSAGE
        assert command.external
        assert command.text == "looks wrong"
