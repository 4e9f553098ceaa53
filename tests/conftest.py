"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import pytest

from fakes import FakeScheduler


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()
