import sys
import os

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from config import EngineConfig
from protocol import HOUR, DAY
from server.store import CommissionStore
from server.escrow import EscrowManager
from server.gateway import StubGateway
from server.engine import TicketEngine


CLIENT = "client_alice"
ARTIST = "artist_bob"
ADMIN = "admin_carol"

T0 = 1_700_000_000.0

REASON = "Not what we agreed on at all"


class FakeClock:
    """Manually advanced clock shared by store, engine and sweeper."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    s = CommissionStore(":memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def escrow_mgr(store, gateway):
    return EscrowManager(store, gateway)


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def engine(store, escrow_mgr, config, clock):
    return TicketEngine(store, escrow_mgr, config, clock=clock)


def make_contract(engine, total=500_000, **terms):
    """Standard-flow contract due in 30 days unless overridden."""
    terms.setdefault("deadline_at", engine.clock() + 30 * DAY)
    return engine.create_contract(CLIENT, ARTIST, total, **terms)


def make_milestone_contract(engine, total=1_000_000, **terms):
    terms.setdefault("milestones", [
        {"title": "Sketch", "percent": 30},
        {"title": "Lineart", "percent": 30},
        {"title": "Colour", "percent": 40},
    ])
    return make_contract(engine, total, **terms)


def revisable(free=1, extra_allowed=False, fee=0, limit=True):
    return {"free": free, "limit": limit, "extra_allowed": extra_allowed, "fee": fee}
