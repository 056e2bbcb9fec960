"""
Turns a ledger file (recipient, human denominated amount) into an AggregatedLedger.

Rows are never fatal: bad addresses and bad amounts are skipped, counted and
reported. Rows for the same address are summed.
"""
import csv
import logging
import re
from pathlib import Path
from typing import Optional

from distributor.errors import LedgerIntegrityError, RecipientPolicyError
from distributor.models import (
    AggregatedLedger,
    AggregationResult,
    EthereumAddress,
    LedgerEntry,
    LedgerError,
    checksum,
)
from distributor.utils import parse_units, sha256_text

logger = logging.getLogger(__name__)

ADDRESS_HEADER = re.compile(r"address|wallet|recipient|account", re.IGNORECASE)
AMOUNT_HEADER = re.compile(r"amount|balance|tokens?|value", re.IGNORECASE)


def split_fields(line: str) -> list[str]:
    """
    Comma (with csv quoting, so "1,000.5" stays one field), semicolon, tab or
    whitespace delimited
    """
    if "," in line:
        fields = next(csv.reader([line], skipinitialspace=True))
    elif ";" in line:
        fields = line.split(";")
    elif "\t" in line:
        fields = line.split("\t")
    else:
        fields = line.split()
    return [f.strip() for f in fields]


def _is_address(field: str) -> bool:
    try:
        checksum(field)
        return True
    except ValueError:
        return False


def _is_amount(field: str, decimals: int) -> bool:
    try:
        parse_units(field, decimals)
        return True
    except ValueError:
        return False


def detect_columns(fields: list[str]) -> tuple[int, int]:
    """Find the address and amount columns from header names, default to the first two"""
    addr_idx = next((i for i, f in enumerate(fields) if ADDRESS_HEADER.search(f)), 0)
    amount_idx = next(
        (i for i, f in enumerate(fields) if i != addr_idx and AMOUNT_HEADER.search(f)),
        1 if addr_idx == 0 else 0,
    )
    return addr_idx, amount_idx


def is_header(fields: list[str], amount_idx: int, decimals: int) -> bool:
    """A row of column names: no address, no amount and at least one known name"""
    if any(_is_address(f) for f in fields):
        return False
    if amount_idx < len(fields) and _is_amount(fields[amount_idx], decimals):
        return False
    return any(ADDRESS_HEADER.search(f) or AMOUNT_HEADER.search(f) for f in fields)


def aggregate(raw_text: str, decimals: int = 18) -> AggregationResult:
    """
    Parse and aggregate a ledger.

    :param `raw_text`: full contents of the ledger file
    :param `decimals`: token precision used to convert human amounts to integers
    """
    ledger = AggregatedLedger(source_hash=sha256_text(raw_text))
    errors: list[LedgerError] = []
    addr_idx, amount_idx = 0, 1
    width = 2
    seen_data = False

    for line_no, raw_line in enumerate(raw_text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        fields = split_fields(line)

        # only the first meaningful line can be a header
        if not seen_data:
            seen_data = True
            if is_header(fields, 1, decimals):
                addr_idx, amount_idx = detect_columns(fields)
                width = max(len(fields), addr_idx + 1, amount_idx + 1)
                continue

        def skip(reason: str) -> None:
            errors.append(LedgerError(line=line_no, content=line, reason=reason))
            logger.warning("ledger line %d skipped (%s): %s", line_no, reason, line)

        if len(fields) <= max(addr_idx, amount_idx):
            skip("missing address or amount field")
            continue
        if len(fields) > width:
            # an unquoted "1,000" splits into two fields and would read as 1
            skip(f"unexpected extra fields, expected {width} (quote amounts with thousands separators)")
            continue

        raw_addr, raw_amount = fields[addr_idx], fields[amount_idx]
        if not _is_address(raw_addr):
            skip(f"invalid address {raw_addr!r}")
            continue

        try:
            amount = parse_units(raw_amount, decimals)
        except ValueError as e:
            skip(f"invalid amount: {e}")
            continue
        if amount == 0:
            skip("zero amount")
            continue

        try:
            entry = LedgerEntry(address=raw_addr, amount=amount)
        except ValueError as e:
            skip(str(e))
            continue
        ledger.add(entry)

    return AggregationResult(ledger=ledger, skipped=len(errors), errors=errors)


def verify_hash(raw_text: str, expected_hash: Optional[str]) -> None:
    if not expected_hash:
        return
    actual = sha256_text(raw_text)
    if actual != expected_hash.strip().lower():
        raise LedgerIntegrityError(
            f"Ledger integrity check failed. Expected hash: {expected_hash}, got: {actual}"
        )
    logger.info("ledger integrity verified (sha256 %s)", actual)


def load_ledger(
    path: str, decimals: int = 18, expected_hash: Optional[str] = None
) -> AggregationResult:
    """Read, integrity check and aggregate the ledger file at `path`"""
    raw_text = Path(path).read_text(encoding="utf-8")
    verify_hash(raw_text, expected_hash)
    result = aggregate(raw_text, decimals)
    logger.info(
        "ledger %s: %d recipients, %d rows skipped",
        path,
        len(result.ledger),
        result.skipped,
    )
    return result


def validate_recipients(
    ledger: AggregatedLedger,
    sender: Optional[EthereumAddress] = None,
    whitelist: Optional[list[EthereumAddress]] = None,
    max_per_address: Optional[int] = None,
) -> None:
    """
    Refuse ledgers that pay the sending account, pay someone outside the
    whitelist, or owe any one address more than `max_per_address`
    """
    allowed = {checksum(a) for a in whitelist} if whitelist else None
    sender = checksum(sender) if sender else None

    for address, amount in ledger.items():
        if sender and address == sender:
            raise RecipientPolicyError(
                f"Ledger contains the sender address {address}. Cannot send tokens to self."
            )
        if allowed is not None and address not in allowed:
            raise RecipientPolicyError(f"Address {address} is not in the whitelist")
        if max_per_address is not None and amount > max_per_address:
            raise RecipientPolicyError(
                f"Address {address} is owed {amount}, exceeds maximum {max_per_address}"
            )
