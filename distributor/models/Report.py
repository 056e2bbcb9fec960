from typing import Optional

from pydantic import BaseModel

from distributor.models.Scan import ScanGap
from distributor.models.types import BigNumber, EthereumAddress, RunStatus


class AddressError(BaseModel):
    address: EthereumAddress
    error: str


class ReconcileReport(BaseModel):
    """
    Summarizes a reconciliation pass
    :param `paid`: addresses whose on-chain balance already covers their total
    :param `outstanding`: addresses still owed something
    :param `errors`: addresses whose balance could not be read, assumed unpaid
    """

    addresses: int
    paid: int
    outstanding: int
    totalOwed: BigNumber
    totalRemaining: BigNumber
    errors: list[AddressError] = []


class SentBatch(BaseModel):
    recipients: int
    amount: BigNumber
    txHash: Optional[str] = None


class RunSummary(BaseModel):
    """
    What a distribution run did, and why it stopped
    :param `shortfall`: set when the run halted for lack of funding
    """

    status: RunStatus
    dryRun: bool = False
    batches: list[SentBatch] = []
    recipientsPaid: int = 0
    amountSent: BigNumber = "0"
    totalRemaining: BigNumber = "0"
    shortfall: Optional[BigNumber] = None
    error: Optional[str] = None


class EstimateReport(BaseModel):
    """
    :param `transactions`: single recipient transfers needed at `chunkSize`
    :param `minBatches`: fewest batch transactions that can pay everyone, a recipient appears at most once per batch
    """

    recipients: int
    totalAmount: BigNumber
    chunkSize: Optional[BigNumber] = None
    transactions: int
    maxBatchSize: int
    minBatches: int


class AuditReport(BaseModel):
    """
    Informational only. Outgoing transfers are not the sale counter and say nothing
    about currency raised.
    """

    token: EthereumAddress
    distributor: EthereumAddress
    adminAddresses: list[EthereumAddress] = []
    fromBlock: int
    toBlock: int
    transfers: int = 0
    fromDistributor: BigNumber = "0"
    fromAdmins: BigNumber = "0"
    totalDistributed: BigNumber = "0"
    gaps: list[ScanGap] = []
    note: str = (
        "Includes distributor outgoing transfers and admin outgoing transfers to "
        "non-admin addresses. Not equal to the on-chain sale counter, and does not "
        "imply any currency value."
    )


class BalanceMismatch(BaseModel):
    address: EthereumAddress
    expected: BigNumber
    actual: BigNumber
    diff: BigNumber


class BalanceCheckReport(BaseModel):
    checked: int
    tolerance: BigNumber
    totalExpected: BigNumber
    totalActual: BigNumber
    mismatches: list[BalanceMismatch] = []
    errors: list[AddressError] = []
