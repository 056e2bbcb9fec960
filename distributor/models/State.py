from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, field_validator

from distributor.models.Ledger import checksum
from distributor.models.types import BigNumber, EthereumAddress


class DistributionState(BaseModel):
    """
    The durable checkpoint between runs. Field names match the state file format.

    :param `totals`: what the ledger owes each address, in smallest units
    :param `remaining`: what is still to be paid. Key order is the ledger order
    and is what `cursor` indexes into
    :param `cursor`: index into `remaining` where the next batch walk starts
    :param `lastAddr`: last recipient included in a successful batch
    :param `sentToday`: batches submitted on `dayKey`
    :param `sentTodayAmount`: tokens submitted on `dayKey`
    :param `estDailyBudget`: max batches per day when pacing is enabled
    :param `ledgerHash`: sha256 of the ledger file the totals came from
    """

    totals: dict[EthereumAddress, BigNumber] = {}
    remaining: dict[EthereumAddress, BigNumber] = {}
    token: Optional[EthereumAddress] = None
    decimals: int = 18
    cursor: int = 0
    lastAddr: Optional[EthereumAddress] = None
    sentToday: int = 0
    sentTodayAmount: BigNumber = "0"
    dayKey: Optional[str] = None
    estDailyBudget: Optional[int] = None
    ledgerHash: Optional[str] = None
    merkleRoot: Optional[str] = None

    @field_validator("token", "lastAddr")
    @classmethod
    def checksum_optional(cls, addr: Optional[str]) -> Optional[EthereumAddress]:
        return checksum(addr) if addr else None

    @field_validator("totals", "remaining", mode="before")
    @classmethod
    def stringify_amounts(cls, amounts: dict) -> dict:
        # state files written by other tools may hold plain integers
        return {checksum(a): str(int(v)) for a, v in amounts.items()}

    @property
    def addresses(self) -> list[EthereumAddress]:
        return list(self.remaining)

    def total_of(self, address: EthereumAddress) -> int:
        return int(self.totals.get(address, "0"))

    def remaining_of(self, address: EthereumAddress) -> int:
        return int(self.remaining.get(address, "0"))

    def set_remaining(self, address: EthereumAddress, amount: int) -> None:
        self.remaining[address] = str(max(0, amount))

    @property
    def total_owed(self) -> int:
        return sum(int(v) for v in self.totals.values())

    @property
    def total_remaining(self) -> int:
        return sum(int(v) for v in self.remaining.values())

    @property
    def outstanding(self) -> list[EthereumAddress]:
        return [a for a, v in self.remaining.items() if int(v) > 0]

    def is_complete(self) -> bool:
        return not self.outstanding
