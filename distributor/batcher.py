"""
Pays out `remaining` in bounded batches, one transaction at a time.

Each batch is recomputed from the state, so a failed or interrupted run is resumed
by running again: nothing is deducted from `remaining` and the cursor does not move
until a submission succeeds. This is only safe if the transfer entrypoint is atomic
per call (see `distributor.queries.chain`).
"""
import datetime
import logging
import math
import time
from contextlib import nullcontext
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from distributor.auditor import estimate_transaction_count
from distributor.errors import InsufficientFundingError
from distributor.models import (
    MAX_BATCH_SIZE,
    Batch,
    BatchItem,
    DistributionState,
    EthereumAddress,
    FundingCheck,
    HexStr,
    RunSummary,
    SentBatch,
    StateStore,
    SubmissionOutcome,
    checksum,
)
from distributor.queries import BalanceOracle, ChainClient

logger = logging.getLogger(__name__)

Proofs = dict[EthereumAddress, list[HexStr]]


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def day_key(now: datetime.datetime, tz: str = "UTC") -> str:
    """Calendar day of `now` in `tz`, as YYYY-MM-DD"""
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    return now.astimezone(ZoneInfo(tz)).date().isoformat()


def compute_daily_budget(
    state: DistributionState,
    chunk_size: Optional[int] = None,
    duration_days: Optional[int] = None,
    daily_tx_cap: Optional[int] = None,
    max_batch_size: int = 1,
) -> Optional[int]:
    """
    Batches allowed per day. A fixed cap wins, otherwise spread the transfers still
    to do evenly over `duration_days`. No pacing if neither is set.
    """
    if daily_tx_cap:
        return daily_tx_cap
    if not duration_days:
        return None
    outstanding = {a: state.remaining_of(a) for a in state.outstanding}
    if chunk_size:
        transfers = estimate_transaction_count(outstanding, chunk_size)
    else:
        transfers = len(outstanding)
    batches = math.ceil(transfers / max_batch_size)
    return max(1, math.ceil(batches / duration_days))


class BatchEngine:
    """
    :param `oracle`: reads the token balance of the distributor for funding checks
    :param `max_batch_size`: recipients per transaction
    :param `chunk_size`: most a recipient gets per transaction, unset pays the full remaining
    :param `clock`: returns an aware datetime, drives the daily counters
    :param `pause`: seconds to wait between submissions
    """

    def __init__(
        self,
        chain: ChainClient,
        oracle: BalanceOracle,
        store: StateStore,
        *,
        distributor: EthereumAddress,
        max_batch_size: int = MAX_BATCH_SIZE,
        chunk_size: Optional[int] = None,
        timezone: str = "UTC",
        pause: float = 0,
        clock: Callable[[], datetime.datetime] = utc_now,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        if not 1 <= max_batch_size <= MAX_BATCH_SIZE:
            raise ValueError(
                f"max_batch_size must be between 1 and {MAX_BATCH_SIZE}, got {max_batch_size}"
            )
        if chunk_size is not None and chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chain = chain
        self.oracle = oracle
        self.store = store
        self.distributor = checksum(distributor)
        self.max_batch_size = max_batch_size
        self.chunk_size = chunk_size
        self.timezone = timezone
        self.pause = pause
        self.clock = clock
        self.sleep = sleep
        self.state: Optional[DistributionState] = None

    @staticmethod
    def next_batch(
        state: DistributionState,
        max_size: int,
        chunk_size: Optional[int] = None,
        proofs: Optional[Proofs] = None,
    ) -> Batch:
        """
        Walk `remaining` in ledger order from `cursor`, wrapping around once,
        taking up to `max_size` recipients that are still owed something.
        """
        addresses = state.addresses
        n = len(addresses)
        start = state.cursor if 0 <= state.cursor < n else 0
        items: list[BatchItem] = []
        next_cursor = start

        for step in range(n):
            idx = (start + step) % n
            address = addresses[idx]
            owed = state.remaining_of(address)
            if owed <= 0:
                continue
            amount = min(owed, chunk_size) if chunk_size else owed
            proof = proofs.get(address, []) if proofs else []
            items.append(BatchItem(address=address, amount=str(amount), proof=proof))
            next_cursor = (idx + 1) % n
            if len(items) == max_size:
                break

        return Batch(items=items, cursor=start, nextCursor=next_cursor)

    def check_funding(self, batch: Batch, committed: int = 0) -> FundingCheck:
        """
        Fresh read of the distributor's token balance against the batch total.
        :param `committed`: tokens already earmarked and not yet reflected on chain (dry runs)
        """
        available = max(0, self.oracle.balance_of(self.distributor) - committed)
        return FundingCheck(available=str(available), required=str(batch.total))

    def ensure_funded(self, batch: Batch, committed: int = 0) -> FundingCheck:
        funding = self.check_funding(batch, committed)
        if not funding.sufficient:
            raise InsufficientFundingError(int(funding.required), int(funding.available))
        return funding

    def submit(self, batch: Batch) -> SubmissionOutcome:
        proofs = batch.proofs if any(batch.proofs) else None
        try:
            outcome = self.chain.send_batch(batch.recipients, batch.amounts, proofs)
        except Exception as e:
            logger.error("batch at cursor %d failed: %s", batch.cursor, e)
            return SubmissionOutcome(success=False, error=str(e))
        if not outcome.success:
            logger.error("batch at cursor %d failed: %s", batch.cursor, outcome.error)
        return outcome

    def advance(
        self,
        state: DistributionState,
        batch: Batch,
        outcome: SubmissionOutcome,
        now: datetime.datetime,
    ) -> DistributionState:
        """
        State after `batch` was submitted with `outcome`. Returns a new state, a
        failed outcome returns an unchanged copy.
        """
        new = state.model_copy(deep=True)
        if not outcome.success:
            return new

        today = day_key(now, self.timezone)
        if new.dayKey != today:
            new.dayKey = today
            new.sentToday = 0
            new.sentTodayAmount = "0"

        sent = outcome.sent_amounts(batch)
        for address, amount in sent.items():
            if address in new.remaining:
                new.set_remaining(address, new.remaining_of(address) - amount)

        new.cursor = batch.nextCursor
        new.lastAddr = batch.last
        new.sentToday += 1
        new.sentTodayAmount = str(int(new.sentTodayAmount) + sum(sent.values()))
        return new

    def budget_reached(self, state: DistributionState, now: datetime.datetime) -> bool:
        if not state.estDailyBudget:
            return False
        if state.dayKey != day_key(now, self.timezone):
            return False
        return state.sentToday >= state.estDailyBudget

    def resume(self, state: DistributionState) -> DistributionState:
        """
        The state to continue from once the lock is held. Progress always comes
        from the store, since another run may have paid batches after `state` was
        loaded. Only the daily budget is taken from `state`.
        """
        saved = self.store.load()
        if saved is None:
            return state.model_copy(deep=True)
        if saved.remaining != state.remaining or saved.cursor != state.cursor:
            logger.warning(
                "saved state moved on since it was loaded, continuing from the saved progress"
            )
        if saved.estDailyBudget != state.estDailyBudget:
            saved.estDailyBudget = state.estDailyBudget
            self.store.save(saved)
        return saved

    def run(
        self,
        state: DistributionState,
        *,
        dry_run: bool = False,
        max_batches: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        proofs: Optional[Proofs] = None,
    ) -> RunSummary:
        """
        Submit batches until nothing is owed or something stops the run.

        A dry run computes the same batches against an in-memory copy of `state`
        and never submits or saves. A real run takes the store lock and continues from
        the saved progress, see `resume`. The final state is left on `self.state`.
        """
        start = state.model_copy(deep=True)
        sent: list[SentBatch] = []
        committed = 0
        status = "complete"
        shortfall: Optional[str] = None
        error: Optional[str] = None

        with nullcontext() if dry_run else self.store.lock():
            if not dry_run:
                start = self.resume(state)
            current = start
            while True:
                if current.is_complete():
                    status = "complete"
                    break
                if should_stop is not None and should_stop():
                    status = "cancelled"
                    break
                if max_batches is not None and len(sent) >= max_batches:
                    status = "max_batches"
                    break
                if self.budget_reached(current, self.clock()):
                    status = "daily_budget_reached"
                    break

                batch = self.next_batch(current, self.max_batch_size, self.chunk_size, proofs)
                try:
                    self.ensure_funded(batch, committed)
                except InsufficientFundingError as e:
                    logger.warning(str(e))
                    status = "needs_funding"
                    shortfall = str(e.shortfall)
                    break

                if dry_run:
                    outcome = SubmissionOutcome(success=True)
                    committed += batch.total
                else:
                    outcome = self.submit(batch)
                    self.store.record_batch(batch, outcome)

                if not outcome.success:
                    status = "submission_failed"
                    error = outcome.error
                    break

                current = self.advance(current, batch, outcome, self.clock())
                if not dry_run:
                    self.store.save(current)
                sent.append(
                    SentBatch(
                        recipients=len(batch),
                        amount=str(sum(outcome.sent_amounts(batch).values())),
                        txHash=outcome.txHash,
                    )
                )
                logger.info(
                    "%sbatch %d: %d recipients, %s sent, %s remaining",
                    "[dry run] " if dry_run else "",
                    len(sent),
                    len(batch),
                    sent[-1].amount,
                    current.total_remaining,
                )
                if self.pause and not dry_run:
                    self.sleep(self.pause)

        self.state = current
        return RunSummary(
            status=status,
            dryRun=dry_run,
            batches=sent,
            recipientsPaid=len(start.outstanding) - len(current.outstanding),
            amountSent=str(sum(int(b.amount) for b in sent)),
            totalRemaining=str(current.total_remaining),
            shortfall=shortfall,
            error=error,
        )
