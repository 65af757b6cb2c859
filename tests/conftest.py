"""Pytest configuration and shared fixtures."""

import logging
from datetime import UTC, datetime, timedelta

import pytest

from commitbet.core import clock


logger = logging.getLogger(__name__)


class FrozenClock:
    """Controllable stand-in for clock.utc_now()."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        """Move time forward by a timedelta built from kwargs."""
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


# Monday, 12:00 UTC (07:00 in New York and Toronto)
DEFAULT_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch) -> FrozenClock:
    """Freeze clock.utc_now() for every test."""
    fake = FrozenClock(DEFAULT_NOW)
    monkeypatch.setattr(clock, "utc_now", fake)
    return fake
