import datetime

import pytest

from distributor.auditor import estimate_transaction_count
from distributor.batcher import BatchEngine, compute_daily_budget, day_key
from distributor.errors import InsufficientFundingError, StateLockedError
from distributor.models import DistributionState, SubmissionOutcome
from distributor.test.fakes import AA, BB, CC, DISTRIBUTOR, FakeChain, e18

NOW = datetime.datetime(2024, 5, 1, 12, tzinfo=datetime.timezone.utc)


class Clock:
    def __init__(self, now: datetime.datetime = NOW):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def engine(chain, oracle, store, clock) -> BatchEngine:
    return BatchEngine(
        chain, oracle, store, distributor=DISTRIBUTOR, max_batch_size=2, clock=clock
    )


def test_scenario_paid_address_is_skipped(state: DistributionState):
    state.set_remaining(AA, 0)
    batch = BatchEngine.next_batch(state, max_size=10)
    assert batch.recipients == [BB, CC]
    assert AA not in batch.recipients


def test_next_batch_wraps_from_cursor(state: DistributionState):
    state.cursor = 2
    batch = BatchEngine.next_batch(state, max_size=2)
    assert batch.recipients == [CC, AA]
    assert (batch.cursor, batch.nextCursor) == (2, 1)


def test_next_batch_chunks_amounts(state: DistributionState):
    batch = BatchEngine.next_batch(state, max_size=3, chunk_size=e18("10"))
    assert batch.amounts == [e18("10"), e18("10"), e18("6")]


def test_next_batch_attaches_proofs(state: DistributionState):
    batch = BatchEngine.next_batch(state, max_size=1, proofs={AA: ["0x01"]})
    assert batch.proofs == [["0x01"]]


def test_next_batch_when_complete(state: DistributionState):
    for address in state.addresses:
        state.set_remaining(address, 0)
    assert len(BatchEngine.next_batch(state, max_size=2)) == 0


def test_run_to_completion(engine, state, chain, store):
    summary = engine.run(state)

    assert summary.status == "complete"
    assert [b.recipients for b in summary.batches] == [2, 1]
    assert summary.amountSent == str(e18("43.5"))
    assert summary.recipientsPaid == 3
    assert chain.balances[BB] == e18("12.5")
    assert chain.balances[DISTRIBUTOR] == e18("956.5")

    saved = store.load()
    assert saved.is_complete()
    assert saved.lastAddr == CC
    assert saved.sentToday == 2
    assert saved.sentTodayAmount == str(e18("43.5"))
    assert saved.dayKey == "2024-05-01"
    assert len(store.history()) == 2


def test_failed_submission_is_resumable(engine, state, chain, store):
    store.save(state)
    chain.send_errors.append(RuntimeError("nonce too low"))

    summary = engine.run(state)
    assert summary.status == "submission_failed"
    assert summary.error == "nonce too low"
    assert summary.batches == []

    saved = store.load()
    assert saved.remaining == state.remaining
    assert saved.cursor == state.cursor

    failed = store.history()[0]
    retry = BatchEngine.next_batch(saved, max_size=2)
    assert retry.recipients == failed["recipients"]
    assert [str(a) for a in retry.amounts] == failed["amounts"]

    assert engine.run(saved).status == "complete"
    assert chain.balances[AA] == e18("25")


@pytest.mark.parametrize("chunk", ["5", "6", "100", "0.7"])
def test_chunk_count_matches_estimate(chain, oracle, store, state, chunk):
    engine = BatchEngine(
        chain,
        oracle,
        store,
        distributor=DISTRIBUTOR,
        max_batch_size=1,
        chunk_size=e18(chunk),
        clock=Clock(),
    )
    expected = estimate_transaction_count(
        {a: state.total_of(a) for a in state.addresses}, e18(chunk)
    )
    summary = engine.run(state)
    assert summary.status == "complete"
    assert len(summary.batches) == expected
    assert len(chain.sent) == expected


def test_halts_when_underfunded(engine, state, chain, store):
    chain.balances[DISTRIBUTOR] = e18("30")
    summary = engine.run(state)

    assert summary.status == "needs_funding"
    assert summary.shortfall == str(e18("7.5"))
    assert chain.sent == []
    assert store.load() is None


def test_ensure_funded_raises(engine, state, chain):
    chain.balances[DISTRIBUTOR] = 1
    batch = engine.next_batch(state, 1)
    with pytest.raises(InsufficientFundingError) as e:
        engine.ensure_funded(batch)
    assert e.value.shortfall == e18("25") - 1


def test_dry_run_matches_real_run(engine, state, chain, store):
    dry = engine.run(state, dry_run=True)
    assert chain.sent == []
    assert store.load() is None
    assert store.history() == []

    real = engine.run(state)
    assert dry.dryRun and not real.dryRun
    assert [(b.recipients, b.amount) for b in dry.batches] == [
        (b.recipients, b.amount) for b in real.batches
    ]
    assert dry.status == real.status == "complete"


def test_dry_run_counts_committed_funds(engine, state, chain):
    chain.balances[DISTRIBUTOR] = e18("40")
    summary = engine.run(state, dry_run=True)
    # first batch (37.5) fits, second (6) does not fit in what is left
    assert summary.status == "needs_funding"
    assert len(summary.batches) == 1


def test_daily_budget(engine, state, clock, store):
    state.estDailyBudget = 1
    summary = engine.run(state)
    assert summary.status == "daily_budget_reached"
    assert len(summary.batches) == 1

    saved = store.load()
    assert saved.sentToday == 1
    assert engine.run(saved).status == "daily_budget_reached"

    clock.now = NOW + datetime.timedelta(days=1)
    summary = engine.run(saved)
    assert summary.status == "complete"
    assert store.load().dayKey == "2024-05-02"
    assert store.load().sentToday == 1


def test_max_batches(engine, state):
    summary = engine.run(state, max_batches=1)
    assert summary.status == "max_batches"
    assert engine.state.cursor == 2


def test_cancel_between_batches(engine, state, store):
    calls = []

    def should_stop() -> bool:
        calls.append(1)
        return len(calls) > 1

    summary = engine.run(state, should_stop=should_stop)
    assert summary.status == "cancelled"
    assert len(summary.batches) == 1
    assert store.load().remaining_of(CC) == e18("6")


def test_run_needs_the_lock(engine, state, store):
    with store.lock():
        with pytest.raises(StateLockedError):
            engine.run(state)


class PartialChain(FakeChain):
    """Pays everyone half of what was asked"""

    def send_batch(self, recipients, amounts, proofs=None):
        half = [a // 2 for a in amounts]
        super().send_batch(recipients, half, proofs)
        return SubmissionOutcome(
            success=True, sent={r: str(a) for r, a in zip(recipients, half)}
        )


def test_partial_payout_only_deducts_what_was_sent(oracle, store, state):
    chain = PartialChain({DISTRIBUTOR: e18("1000")})
    engine = BatchEngine(chain, oracle, store, distributor=DISTRIBUTOR, clock=Clock())
    summary = engine.run(state, max_batches=1)

    assert summary.amountSent == str(e18("21.75"))
    assert engine.state.remaining_of(AA) == e18("12.5")
    assert engine.state.remaining_of(CC) == e18("3")


def test_advance_returns_new_state(engine, state):
    batch = engine.next_batch(state, 2)
    failed = engine.advance(state, batch, SubmissionOutcome(success=False), NOW)
    assert failed == state

    new = engine.advance(state, batch, SubmissionOutcome(success=True), NOW)
    assert new.remaining_of(AA) == 0
    assert state.remaining_of(AA) == e18("25")
    assert new.cursor == 2
    assert new.lastAddr == BB


def test_advance_resets_counters_on_new_day(engine, state):
    state.dayKey = "2024-04-30"
    state.sentToday = 7
    state.sentTodayAmount = "99"
    batch = engine.next_batch(state, 1)
    new = engine.advance(state, batch, SubmissionOutcome(success=True), NOW)
    assert (new.dayKey, new.sentToday, new.sentTodayAmount) == (
        "2024-05-01",
        1,
        str(e18("25")),
    )


def test_day_key_uses_timezone():
    late = datetime.datetime(2024, 5, 1, 23, 30, tzinfo=datetime.timezone.utc)
    assert day_key(late) == "2024-05-01"
    assert day_key(late, "Europe/Berlin") == "2024-05-02"
    assert day_key(datetime.datetime(2024, 5, 1, 23, 30)) == "2024-05-01"


def test_compute_daily_budget(state):
    assert compute_daily_budget(state, daily_tx_cap=3, duration_days=100) == 3
    assert compute_daily_budget(state) is None
    # 5 + 3 + 2 transfers over 3 days
    assert compute_daily_budget(state, chunk_size=e18("5"), duration_days=3) == 4
    # 3 recipients in batches of 2 over 10 days
    assert compute_daily_budget(state, duration_days=10, max_batch_size=2) == 1


def test_engine_rejects_bad_sizes(chain, oracle, store):
    with pytest.raises(ValueError):
        BatchEngine(chain, oracle, store, distributor=DISTRIBUTOR, max_batch_size=101)
    with pytest.raises(ValueError):
        BatchEngine(chain, oracle, store, distributor=DISTRIBUTOR, chunk_size=0)


def test_stale_state_does_not_pay_twice(engine, state, chain, store):
    store.save(state)
    stale = store.load()

    assert engine.run(store.load()).status == "complete"
    paid = len(chain.sent)

    second = BatchEngine(chain, engine.oracle, store, distributor=DISTRIBUTOR, max_batch_size=2, clock=Clock())
    summary = second.run(stale)
    assert summary.status == "complete"
    assert summary.batches == []
    assert len(chain.sent) == paid
    assert chain.balances[AA] == e18("25")


def test_resume_continues_from_saved_progress(engine, state, store):
    store.save(state)
    stale = store.load()
    engine.run(store.load(), max_batches=1)

    summary = engine.run(stale)
    assert [b.recipients for b in summary.batches] == [1]
    assert summary.recipientsPaid == 1


def test_resume_saves_new_budget(engine, state, store):
    store.save(state)
    state.estDailyBudget = 5
    resumed = engine.resume(state)
    assert resumed.estDailyBudget == 5
    assert store.load().estDailyBudget == 5
