import sys
import os

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from server.chain import SimLedger
from server.providers import Solution
from server.publisher import TaskUpdateBus
from server.store import TaskStore


NOW = 1_760_000_000
AGENT = "0x000000000000000000000000000000000000a6e4"
CREATOR = "0x000000000000000000000000000000000000c0de"
REWARD = 3 * 10**18  # 3 MNEE in base units


class FakeClock:
    """Settable clock shared by SimLedger and the fulfillment loop."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


class StaticSolver:
    """Solver stand-in that returns a fixed text."""

    def __init__(self, text: str = "Solved.", provider: str = "static"):
        self.text = text
        self.provider = provider
        self.calls = []

    def solve(self, description: str) -> Solution:
        self.calls.append(description)
        return Solution(self.text, self.provider)

    def probe(self) -> list[dict]:
        return [{"name": self.provider, "ok": True, "detail": "ok"}]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sim(clock):
    return SimLedger(agent_address=AGENT, clock=clock, start_block=100)


@pytest.fixture
def store():
    s = TaskStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def bus():
    return TaskUpdateBus()


def drain(q) -> list[dict]:
    """Everything currently queued for a subscriber."""
    events = []
    while not q.empty():
        events.append(q.get_nowait())
    return events
