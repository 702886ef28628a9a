# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the mneme auto test suite.

This module provides:
- A temporary project with fact and rules documents
- A fast AutoConfig (millisecond timing windows) rooted in that project
- Fakes from tests.fakes wired up as fixtures

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from mneme.core.config import AutoConfig
from mneme.core.interrupts import InterruptChannel
from mneme.core.prompts import PromptComposer
from mneme.core.stream import ActivityClock, EventPump
from mneme.core.tracker import TaskSelector
from tests.fakes import FakeClient, FakeTracker


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Temporary project with one fact file and a rules file."""
    facts = tmp_path / ".ledger" / "facts"
    facts.mkdir(parents=True)
    (facts / "b-stack.md").write_text("The API is served by FastAPI.\n")
    (facts / "a-naming.md").write_text("Use snake_case for modules.\n")
    (tmp_path / "AGENTS.md").write_text("Run the tests before reporting.\n")
    return tmp_path


@pytest.fixture
def config(project: Path) -> AutoConfig:
    """Config with timing windows short enough for unit tests."""
    return AutoConfig(
        poll_interval=0.01,
        probe_delay=0.02,
        warn_after=0.05,
        abort_after=0.15,
        reconnect_delay=0,
        max_reconnects=2,
        max_cycles=10,
    ).resolve(project)


@pytest.fixture
def composer(config: AutoConfig) -> PromptComposer:
    return PromptComposer(config)


# =============================================================================
# Fakes
# =============================================================================


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def fake_tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def selector(fake_tracker: FakeTracker, composer: PromptComposer) -> TaskSelector:
    return TaskSelector(fake_tracker, composer)


@pytest.fixture
def pump() -> EventPump:
    """Pump whose events are injected with dispatch(); no real subscription."""
    return EventPump(stream=None)


@pytest.fixture
def activity() -> ActivityClock:
    return ActivityClock()


@pytest.fixture
def interrupts() -> InterruptChannel:
    return InterruptChannel()
