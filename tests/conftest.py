"""Shared fixtures."""

from datetime import datetime, timedelta

import pytest

from aigate.config import reset_pricing


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDatetime:
    """Local-time clock for the budget guard."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wall():
    return FakeDatetime(datetime(2026, 10, 18, 12, 0, 0))


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("AIGATE_PRICING_JSON", "AIGATE_MODEL_CHAINS_JSON", "AIGATE_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    yield
    reset_pricing()
