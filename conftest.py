"""
Shared pytest fixtures: a temporary command store and a controllable clock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from powersched.store import CommandStore


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePowerGate:
    """Power gate answering from a list; the last answer repeats."""

    def __init__(self, *answers):
        self.answers = list(answers) or [False]
        self.calls = 0

    def on_battery_or_unknown(self):
        index = min(self.calls, len(self.answers) - 1)
        self.calls += 1
        return self.answers[index]

    is_on_battery = on_battery_or_unknown


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "commands.json"


@pytest.fixture
def store(store_path, clock):
    return CommandStore(store_path, clock=clock)
