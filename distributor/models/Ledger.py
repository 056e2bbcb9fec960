from __future__ import annotations

from typing import Iterator, Optional

import eth_utils as eth
from pydantic import BaseModel, field_validator

from distributor.models.types import EthereumAddress
from distributor.utils import format_units

UINT256_MAX = 2**256 - 1


def checksum(addr: str) -> EthereumAddress:
    """Checksum an address, raising ValueError for anything that is not one"""
    if not isinstance(addr, str) or not eth.is_address(addr):
        raise ValueError(f"Invalid address: {addr!r}")
    return eth.to_checksum_address(addr)


class LedgerEntry(BaseModel):
    """
    A single row of the ledger file once it has been parsed.
    :param `address`: recipient, always stored in checksum format
    :param `amount`: owed tokens in the smallest unit of the token
    """

    address: EthereumAddress
    amount: int

    @field_validator("address")
    @classmethod
    def checksum_address(cls, addr: str) -> EthereumAddress:
        return checksum(addr)

    @field_validator("amount")
    @classmethod
    def fits_uint256(cls, amount: int) -> int:
        if amount < 0 or amount > UINT256_MAX:
            raise ValueError(f"Amount out of uint256 range: {amount}")
        return amount


class LedgerError(BaseModel):
    """A ledger row that was skipped, and why"""

    line: int
    content: str
    reason: str


class AggregatedLedger(BaseModel):
    """
    Unique recipients mapped to the sum of everything the ledger owes them.
    Keys keep the order in which addresses first appear in the ledger file,
    which is also the order of the merkle leaves and of the batch walk.
    """

    balances: dict[EthereumAddress, int] = {}
    source_hash: Optional[str] = None

    def add(self, entry: LedgerEntry) -> None:
        # duplicates are summed, never overwritten
        self.balances[entry.address] = self.balances.get(entry.address, 0) + entry.amount

    @property
    def addresses(self) -> list[EthereumAddress]:
        return list(self.balances)

    @property
    def total(self) -> int:
        return sum(self.balances.values())

    def items(self) -> Iterator[tuple[EthereumAddress, int]]:
        return iter(self.balances.items())

    def __len__(self) -> int:
        return len(self.balances)

    def __contains__(self, address: object) -> bool:
        return address in self.balances

    def __getitem__(self, address: EthereumAddress) -> int:
        return self.balances[address]

    def to_text(self, decimals: int) -> str:
        """Serialize back to a ledger file that aggregates to the same mapping"""
        lines = ["address,amount"]
        lines += [f"{a},{format_units(v, decimals)}" for a, v in self.balances.items()]
        return "\n".join(lines) + "\n"


class AggregationResult(BaseModel):
    """
    Output of a parsing pass
    :param `skipped`: number of data rows that did not make it into the ledger
    :param `errors`: one entry per skipped row
    """

    ledger: AggregatedLedger
    skipped: int = 0
    errors: list[LedgerError] = []
