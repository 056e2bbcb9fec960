"""
Read-only views of a distribution: how many transactions it will take, what has
left the distributor on chain, and whether holders have what the ledger says.
"""
import logging
import math
from typing import Any, Callable, Mapping, Optional, Sequence

from eth_utils import to_bytes, to_checksum_address

from distributor.models import (
    AggregatedLedger,
    AuditReport,
    BalanceCheckReport,
    BalanceMismatch,
    EstimateReport,
    EthereumAddress,
    HexStr,
    LogReceipt,
    checksum,
)
from distributor.queries import TRANSFER_TOPIC

logger = logging.getLogger(__name__)


def estimate_transaction_count(totals: Mapping[EthereumAddress, int], chunk_size: int) -> int:
    """Single recipient transfers needed to pay `totals` at most `chunk_size` at a time"""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return sum(math.ceil(int(total) / chunk_size) for total in totals.values())


def estimate_report(
    ledger: AggregatedLedger,
    chunk_size: Optional[int],
    max_batch_size: int,
) -> EstimateReport:
    totals = dict(ledger.items())
    if chunk_size:
        transactions = estimate_transaction_count(totals, chunk_size)
        most_per_recipient = max(
            (math.ceil(t / chunk_size) for t in totals.values()), default=0
        )
    else:
        transactions = sum(1 for t in totals.values() if t > 0)
        most_per_recipient = 1 if transactions else 0

    return EstimateReport(
        recipients=len(ledger),
        totalAmount=str(ledger.total),
        chunkSize=str(chunk_size) if chunk_size else None,
        transactions=transactions,
        maxBatchSize=max_batch_size,
        minBatches=max(math.ceil(transactions / max_batch_size), most_per_recipient),
    )


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return to_bytes(hexstr=value)


def address_topic(address: EthereumAddress) -> HexStr:
    """An address left padded to 32 bytes, as it appears in an indexed topic"""
    return "0x" + checksum(address)[2:].lower().rjust(64, "0")


def transfer_topics(senders: Sequence[EthereumAddress]) -> list[Any]:
    """Topic filter for Transfer events from any of `senders`"""
    return [TRANSFER_TOPIC, [address_topic(s) for s in senders]]


def decode_transfer(log: LogReceipt) -> tuple[EthereumAddress, EthereumAddress, int]:
    """(from, to, value) of an ERC-20 Transfer log"""
    topics = log["topics"]
    if len(topics) < 3:
        raise ValueError("not an ERC-20 Transfer log, expected 3 topics")
    sender = to_checksum_address("0x" + _as_bytes(topics[1])[-20:].hex())
    receiver = to_checksum_address("0x" + _as_bytes(topics[2])[-20:].hex())
    data = _as_bytes(log["data"])
    value = int.from_bytes(data[:32], "big") if data else 0
    return sender, receiver, value


def audit_distributed(
    scanner,
    distributor: EthereumAddress,
    admin_addresses: Sequence[EthereumAddress],
    from_block: int,
    to_block: int,
    should_stop: Optional[Callable[[], bool]] = None,
) -> AuditReport:
    """
    Sum outgoing Transfer events of the scanner's token that left the distributor
    or an admin for an address outside that group. Transfers between the group
    (treasury shuffles) are not distribution.
    """
    distributor = checksum(distributor)
    admins = [checksum(a) for a in admin_addresses]
    insiders = {distributor, *admins}
    totals = {"distributor": 0, "admins": 0, "transfers": 0}

    def handle(log: LogReceipt) -> None:
        try:
            sender, receiver, value = decode_transfer(log)
        except ValueError as e:
            logger.warning("skipping undecodable log: %s", e)
            return
        if sender not in insiders or receiver in insiders:
            return
        totals["transfers"] += 1
        if sender == distributor:
            totals["distributor"] += value
        else:
            totals["admins"] += value

    result = scanner.scan(from_block, to_block, handle, should_stop)
    if result.cancelled:
        logger.warning("audit was cancelled, totals cover a partial range")

    return AuditReport(
        token=scanner.address,
        distributor=distributor,
        adminAddresses=admins,
        fromBlock=from_block,
        toBlock=to_block,
        transfers=totals["transfers"],
        fromDistributor=str(totals["distributor"]),
        fromAdmins=str(totals["admins"]),
        totalDistributed=str(totals["distributor"] + totals["admins"]),
        gaps=result.gaps,
    )


def check_balances(
    ledger: AggregatedLedger,
    oracle,
    tolerance: int = 0,
    concurrency: int = 5,
    limit: Optional[int] = None,
) -> BalanceCheckReport:
    """
    Compare every ledger amount with the holder's on-chain balance.
    :param `tolerance`: differences up to this many smallest units are not mismatches
    :param `limit`: only check the first `limit` addresses
    """
    addresses = ledger.addresses[:limit] if limit else ledger.addresses
    balances, errors = oracle.balances_of(addresses, concurrency)

    mismatches: list[BalanceMismatch] = []
    for address in addresses:
        if address not in balances:
            continue
        expected, actual = ledger[address], balances[address]
        diff = actual - expected
        if abs(diff) > tolerance:
            mismatches.append(
                BalanceMismatch(
                    address=address,
                    expected=str(expected),
                    actual=str(actual),
                    diff=str(diff),
                )
            )

    return BalanceCheckReport(
        checked=len(addresses),
        tolerance=str(tolerance),
        totalExpected=str(sum(ledger[a] for a in addresses)),
        totalActual=str(sum(balances.values())),
        mismatches=mismatches,
        errors=errors,
    )
