"""
Rebuilds what is left to pay from the ledger and what recipients already hold.

remaining[a] = max(0, totals[a] - balance(a)) for every ledger address. An address
whose balance cannot be read is assumed unpaid, so `remaining` falls back to its total.

Batch engine progress (cursor, day counters, pacing) carries over from the prior
state untouched.
"""
import logging
from typing import Optional, Protocol, Sequence

from distributor.errors import EmptyLedgerError, LedgerDivergenceError
from distributor.models import (
    AddressError,
    AggregatedLedger,
    DistributionState,
    EthereumAddress,
    ReconcileReport,
    checksum,
)

logger = logging.getLogger(__name__)


class Oracle(Protocol):
    def balances_of(
        self, addresses: Sequence[EthereumAddress], concurrency: int = 5
    ) -> tuple[dict[EthereumAddress, int], list[AddressError]]:
        ...


def ledger_divergence(
    prior: DistributionState, ledger: AggregatedLedger
) -> tuple[list[EthereumAddress], list[EthereumAddress], list[EthereumAddress]]:
    """Addresses added, removed and changed in `ledger` relative to the totals in `prior`"""
    added = [a for a in ledger.addresses if a not in prior.totals]
    removed = [a for a in prior.totals if a not in ledger]
    changed = [
        a for a, amount in ledger.items() if a in prior.totals and prior.total_of(a) != amount
    ]
    return added, removed, changed


def check_divergence(
    prior: DistributionState, ledger: AggregatedLedger, ledger_hash: Optional[str]
) -> None:
    added, removed, changed = ledger_divergence(prior, ledger)
    if added or removed or changed:
        raise LedgerDivergenceError(added, removed, changed)
    if prior.ledgerHash and ledger_hash and prior.ledgerHash != ledger_hash:
        raise LedgerDivergenceError(
            [],
            [],
            [],
            reason=f"ledger hash {ledger_hash} does not match state hash {prior.ledgerHash}",
        )


def _carry_progress(state: DistributionState, prior: DistributionState) -> None:
    n = len(state.remaining)
    state.cursor = prior.cursor if 0 <= prior.cursor < n else 0
    state.lastAddr = prior.lastAddr if prior.lastAddr in state.remaining else None
    state.sentToday = prior.sentToday
    state.sentTodayAmount = prior.sentTodayAmount
    state.dayKey = prior.dayKey
    state.estDailyBudget = prior.estDailyBudget
    state.merkleRoot = state.merkleRoot or prior.merkleRoot


def reconcile(
    ledger: AggregatedLedger,
    oracle: Oracle,
    prior: Optional[DistributionState] = None,
    *,
    token: EthereumAddress,
    decimals: int,
    concurrency: int = 5,
    resync: bool = False,
    ledger_hash: Optional[str] = None,
    merkle_root: Optional[str] = None,
) -> tuple[DistributionState, ReconcileReport]:
    """
    Compute a fresh `DistributionState` for `ledger`.

    :param `prior`: the persisted state, if any. Its progress fields are kept
    :param `resync`: accept a ledger that differs from the one `prior` was built from
    :raises `LedgerDivergenceError`: the ledger changed since `prior` and `resync` is off
    """
    if not len(ledger):
        raise EmptyLedgerError("Ledger has no valid entries, nothing to reconcile")

    ledger_hash = ledger_hash or ledger.source_hash
    if prior is not None:
        if resync:
            added, removed, changed = ledger_divergence(prior, ledger)
            if added or removed or changed:
                logger.warning(
                    "resyncing to a changed ledger: %d added, %d removed, %d changed",
                    len(added),
                    len(removed),
                    len(changed),
                )
        else:
            check_divergence(prior, ledger, ledger_hash)

    balances, errors = oracle.balances_of(ledger.addresses, concurrency)

    remaining = {}
    for address, total in ledger.items():
        if address in balances:
            remaining[address] = max(0, total - balances[address])
        else:
            remaining[address] = total

    state = DistributionState(
        totals={a: amount for a, amount in ledger.items()},
        remaining=remaining,
        token=checksum(token),
        decimals=decimals,
        ledgerHash=ledger_hash,
        merkleRoot=merkle_root,
    )
    if prior is not None:
        _carry_progress(state, prior)

    outstanding = len(state.outstanding)
    report = ReconcileReport(
        addresses=len(ledger),
        paid=len(ledger) - outstanding,
        outstanding=outstanding,
        totalOwed=str(state.total_owed),
        totalRemaining=str(state.total_remaining),
        errors=errors,
    )
    logger.info(
        "reconciled %d addresses: %d paid, %d outstanding, %d balance reads failed",
        report.addresses,
        report.paid,
        report.outstanding,
        len(errors),
    )
    return state, report
