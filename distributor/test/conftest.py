from pathlib import Path

import pytest

from distributor.config import load_conf
from distributor.models import (
    AggregatedLedger,
    Config,
    DistributionState,
    LedgerEntry,
    RetryPolicy,
    StateStore,
)
from distributor.queries import BalanceOracle
from distributor.test.fakes import AA, BB, CC, DISTRIBUTOR, TOKEN, FakeChain, e18, no_sleep

STUBS = Path(__file__).parent / "stubs"


@pytest.fixture
def config() -> Config:
    return load_conf(str(STUBS / "config"))


@pytest.fixture
def ledger_text() -> str:
    return (STUBS / "ledger.csv").read_text()


@pytest.fixture
def ledger() -> AggregatedLedger:
    """Scenario B amounts, in ledger order AA, BB, CC"""
    ledger = AggregatedLedger()
    for address, amount in [(AA, "25"), (BB, "12.5"), (CC, "6")]:
        ledger.add(LedgerEntry(address=address, amount=e18(amount)))
    return ledger


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        base_delay=0,
        initial_span=1000,
        span_floor=100,
        span_ceiling=4000,
        grow_after=3,
    )


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain({DISTRIBUTOR: e18("1000")})


@pytest.fixture
def oracle(chain: FakeChain, policy: RetryPolicy) -> BalanceOracle:
    return BalanceOracle(chain, TOKEN, policy, sleep=no_sleep)


@pytest.fixture
def state(ledger: AggregatedLedger) -> DistributionState:
    totals = {a: v for a, v in ledger.items()}
    return DistributionState(totals=totals, remaining=totals, token=TOKEN)


@pytest.fixture
def store(tmp_path) -> StateStore:
    db = StateStore(str(tmp_path / "state" / "distribution-state.json"))
    yield db
    db.close()
