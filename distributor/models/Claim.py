from pydantic import BaseModel, field_validator

from distributor.models.Ledger import checksum
from distributor.models.types import BigNumber, EthereumAddress, HexStr


class MerkleClaim(BaseModel):
    """
    Everything a recipient needs to verify (or claim) their allocation
    :param `leaf`: keccak256 of the packed (address, uint256 amount) pair
    :param `proof`: sibling hashes from the leaf up to the root
    """

    address: EthereumAddress
    amount: BigNumber
    amountFormatted: str
    leaf: HexStr
    proof: list[HexStr]

    @field_validator("address")
    @classmethod
    def checksum_address(cls, addr: str) -> EthereumAddress:
        return checksum(addr)


class MerkleSummary(BaseModel):
    """The part of the distribution that gets published"""

    merkleRoot: HexStr
    totalRecipients: int
    totalAmount: BigNumber


class MerkleDistribution(MerkleSummary):
    """
    The full claim data. Claims are keyed by address and keep ledger order.
    """

    claims: dict[EthereumAddress, MerkleClaim]

    def summary(self) -> MerkleSummary:
        return MerkleSummary(
            merkleRoot=self.merkleRoot,
            totalRecipients=self.totalRecipients,
            totalAmount=self.totalAmount,
        )
