from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, ms: int = 0, days: int = 0) -> None:
        self.now += timedelta(milliseconds=ms, days=days)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
