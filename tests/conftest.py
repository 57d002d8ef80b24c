"""Shared fixtures: a tmp_path-backed store and a controllable clock."""

from datetime import datetime, timezone

import pytest

from agentledger.allowance import AllowanceEngine
from agentledger.ledger import Ledger
from agentledger.store import LedgerStore
from agentledger.subscriptions import SubscriptionBiller


def ts(*args) -> float:
    """UTC datetime → epoch seconds, for the fake clock."""
    return datetime(*args, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    # Monday 2024-01-15 12:00 UTC
    return FakeClock(ts(2024, 1, 15, 12))


@pytest.fixture
def store(tmp_path):
    return LedgerStore(tmp_path / "ledger.sqlite3")


@pytest.fixture
def engine(store, clock):
    return AllowanceEngine(store, clock=clock)


@pytest.fixture
def ledger(store, engine, clock):
    return Ledger(store, engine, clock=clock)


@pytest.fixture
def biller(store, ledger, clock):
    return SubscriptionBiller(store, ledger, clock=clock)
