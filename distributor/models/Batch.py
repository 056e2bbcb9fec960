from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, field_validator

from distributor.models.Ledger import checksum
from distributor.models.types import BigNumber, EthereumAddress, HexStr


class BatchItem(BaseModel):
    address: EthereumAddress
    amount: BigNumber
    proof: list[HexStr] = []

    @field_validator("address")
    @classmethod
    def checksum_address(cls, addr: str) -> EthereumAddress:
        return checksum(addr)

    @field_validator("amount")
    @classmethod
    def strictly_positive(cls, amount: str) -> BigNumber:
        if int(amount) <= 0:
            raise ValueError(f"Batch amounts must be positive, got {amount}")
        return str(int(amount))


class Batch(BaseModel):
    """
    One call to the transfer entrypoint
    :param `cursor`: index in the state's recipient order where the walk started
    :param `nextCursor`: where the walk should start once this batch is sent
    """

    items: list[BatchItem] = []
    cursor: int = 0
    nextCursor: int = 0

    @property
    def recipients(self) -> list[EthereumAddress]:
        return [i.address for i in self.items]

    @property
    def amounts(self) -> list[int]:
        return [int(i.amount) for i in self.items]

    @property
    def proofs(self) -> list[list[HexStr]]:
        return [i.proof for i in self.items]

    @property
    def total(self) -> int:
        return sum(self.amounts)

    @property
    def last(self) -> Optional[EthereumAddress]:
        return self.items[-1].address if self.items else None

    def __len__(self) -> int:
        return len(self.items)


class SubmissionOutcome(BaseModel):
    """
    Result of handing a batch to the transfer entrypoint.
    :param `sent`: what each recipient actually received. Empty means the whole batch.
    """

    success: bool
    txHash: Optional[HexStr] = None
    sent: dict[EthereumAddress, BigNumber] = {}
    error: Optional[str] = None

    def sent_amounts(self, batch: Batch) -> dict[EthereumAddress, int]:
        if not self.success:
            return {}
        if not self.sent:
            return {i.address: int(i.amount) for i in batch.items}
        return {checksum(a): int(v) for a, v in self.sent.items()}


class FundingCheck(BaseModel):
    available: BigNumber
    required: BigNumber

    @property
    def shortfall(self) -> int:
        return max(0, int(self.required) - int(self.available))

    @property
    def sufficient(self) -> bool:
        return self.shortfall == 0
