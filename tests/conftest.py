# tests/conftest.py
"""Shared test fixtures.

Fixtures build the data-access stack over an InMemoryTable and an in-memory
substrate, with pacing disabled and backoff sleeps skipped. Tests that need
different wiring call tabula.testing.make_access directly.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
from hypothesis import Phase, Verbosity, settings

from tabula.core.clock import MockClock
from tabula.engine.access import DataAccess
from tabula.substrate import Substrate, in_memory_substrate
from tabula.testing import InMemoryTable, make_access

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def table() -> InMemoryTable:
    """Fake remote table with the header row already in place."""
    fake = InMemoryTable()
    fake.seed_header()
    return fake


@pytest.fixture
def substrate(clock: MockClock) -> Substrate:
    return in_memory_substrate(clock=clock)


@pytest.fixture
def access(table: InMemoryTable, substrate: Substrate, clock: MockClock) -> Iterator[DataAccess]:
    data_access = make_access(table, substrate=substrate, clock=clock)
    yield data_access
    data_access.close()
