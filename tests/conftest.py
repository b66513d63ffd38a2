"""
Shared fixtures: deterministic clocks and a fully wired engine
"""

from datetime import datetime, timedelta

import pytest

from callguard.config import Settings
from callguard.memory.history_sink import InMemoryHistorySink
from callguard.memory.rule_store import InMemoryRuleStore
from callguard.scoring.fusion_engine import build_engine

# A Monday
BASE_TIME = datetime(2026, 1, 26, 23, 0)


class FakeClock:
    """Monotonic clock advanced by hand"""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float):
        self.value += seconds


class StepNow:
    """Wall clock that moves one second forward on every read"""

    def __init__(self, start: datetime = BASE_TIME):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def now():
    return StepNow()


@pytest.fixture
def settings():
    return Settings(model_seed=7)


@pytest.fixture
def rule_store():
    return InMemoryRuleStore()


@pytest.fixture
def history_sink():
    return InMemoryHistorySink()


@pytest.fixture
def engine(settings, rule_store, history_sink, clock, now):
    return build_engine(
        settings,
        rule_store=rule_store,
        history_sink=history_sink,
        clock=clock,
        now=now
    )
