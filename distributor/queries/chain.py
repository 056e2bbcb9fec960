"""
The boundary between the distributor and the chain.

Everything that touches an RPC goes through a `ChainClient`, so the engine, the
reconciler and the scanner can be driven by an in-memory fake in tests.

`send_batch` is assumed atomic per call: the transfer entrypoint either pays every
recipient in the batch or reverts. Entrypoints that pay partially must say so by
returning the per-recipient amounts in `SubmissionOutcome.sent`.
"""
import logging
import time
from typing import Any, Callable, Optional, Protocol, Sequence

from eth_utils import encode_hex, to_bytes
from web3 import Web3

from distributor.errors import SubmissionError
from distributor.models import (
    EthereumAddress,
    HexStr,
    LogReceipt,
    SubmissionOutcome,
    checksum,
)
from distributor.queries.common import ERC20_ABI

logger = logging.getLogger(__name__)


class ChainClient(Protocol):
    def balance_of(self, token: EthereumAddress, address: EthereumAddress) -> int:
        ...

    def get_logs(
        self,
        address: EthereumAddress,
        topics: Sequence[Optional[HexStr]],
        from_block: int,
        to_block: int,
    ) -> list[LogReceipt]:
        ...

    def send_batch(
        self,
        recipients: list[EthereumAddress],
        amounts: list[int],
        proofs: Optional[list[list[HexStr]]] = None,
    ) -> SubmissionOutcome:
        ...

    def get_commitment_root(self) -> Optional[HexStr]:
        ...

    def set_commitment_root(self, root: HexStr) -> SubmissionOutcome:
        ...

    def block_number(self) -> int:
        ...

    def block_timestamp(self, number: int) -> int:
        ...

    def decimals(self, token: EthereumAddress) -> int:
        ...


def batch_abi(name: str, with_proofs: bool = False) -> list[dict]:
    inputs = [
        {"name": "recipients", "type": "address[]"},
        {"name": "amounts", "type": "uint256[]"},
    ]
    if with_proofs:
        inputs.append({"name": "proofs", "type": "bytes32[][]"})
    return [
        {
            "inputs": inputs,
            "name": name,
            "outputs": [],
            "stateMutability": "nonpayable",
            "type": "function",
        }
    ]


ROOT_ABI = [
    {
        "inputs": [],
        "name": "merkleRoot",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "root", "type": "bytes32"}],
        "name": "setMerkleRoot",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class Web3ChainClient:
    """
    web3.py implementation of `ChainClient`.

    :param `distributor`: contract exposing the batch function and the commitment root
    :param `private_key`: signs submissions. Read-only commands can leave it unset
    :param `batch_function`: name of the `(address[], uint256[])` batch entrypoint
    :param `confirmations`: blocks to wait on top of the receipt before a batch counts as sent
    """

    def __init__(
        self,
        w3: Web3,
        distributor: Optional[EthereumAddress] = None,
        private_key: Optional[str] = None,
        batch_function: str = "batchTransfer",
        confirmations: int = 1,
        with_proofs: bool = False,
        chain_id: Optional[int] = None,
        receipt_timeout: int = 300,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.w3 = w3
        self.distributor = checksum(distributor) if distributor else None
        self.account = w3.eth.account.from_key(private_key) if private_key else None
        self.batch_function = batch_function
        self.confirmations = confirmations
        self.with_proofs = with_proofs
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.sleep = sleep

    @property
    def sender(self) -> Optional[EthereumAddress]:
        return self.account.address if self.account else None

    def _erc20(self, token: EthereumAddress):
        return self.w3.eth.contract(address=checksum(token), abi=ERC20_ABI)

    def _distributor_contract(self, abi: list[dict]):
        if not self.distributor:
            raise SubmissionError("No distributor contract configured")
        return self.w3.eth.contract(address=self.distributor, abi=abi)

    def balance_of(self, token: EthereumAddress, address: EthereumAddress) -> int:
        return self._erc20(token).functions.balanceOf(checksum(address)).call()

    def decimals(self, token: EthereumAddress) -> int:
        return self._erc20(token).functions.decimals().call()

    def block_number(self) -> int:
        return self.w3.eth.block_number

    def block_timestamp(self, number: int) -> int:
        return self.w3.eth.get_block(number)["timestamp"]

    def get_logs(
        self,
        address: EthereumAddress,
        topics: Sequence[Optional[HexStr]],
        from_block: int,
        to_block: int,
    ) -> list[LogReceipt]:
        logs = self.w3.eth.get_logs(
            {
                "address": checksum(address),
                "topics": list(topics),
                "fromBlock": from_block,
                "toBlock": to_block,
            }
        )
        return [dict(log) for log in logs]

    def _transact(self, fn) -> SubmissionOutcome:
        """Sign, send and wait for a contract call. Failures come back as an unsuccessful outcome."""
        if not self.account:
            return SubmissionOutcome(success=False, error="No signing key configured")
        try:
            tx = fn.build_transaction(
                {
                    "from": self.account.address,
                    "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                    "chainId": self.chain_id or self.w3.eth.chain_id,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info("submitted %s", encode_hex(tx_hash))
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except Exception as e:
            logger.error("transaction failed before confirmation: %s", e)
            return SubmissionOutcome(success=False, error=str(e))

        if receipt["status"] != 1:
            return SubmissionOutcome(
                success=False, txHash=encode_hex(tx_hash), error="transaction reverted"
            )
        self._wait_for_confirmations(receipt["blockNumber"])
        return SubmissionOutcome(success=True, txHash=encode_hex(tx_hash))

    def _wait_for_confirmations(self, mined_in: int) -> None:
        while self.w3.eth.block_number - mined_in + 1 < self.confirmations:
            self.sleep(2)

    def send_batch(
        self,
        recipients: list[EthereumAddress],
        amounts: list[int],
        proofs: Optional[list[list[HexStr]]] = None,
    ) -> SubmissionOutcome:
        contract = self._distributor_contract(
            batch_abi(self.batch_function, self.with_proofs)
        )
        args: list[Any] = [[checksum(r) for r in recipients], list(amounts)]
        if self.with_proofs:
            args.append([[to_bytes(hexstr=p) for p in proof] for proof in proofs or []])
        fn = contract.get_function_by_name(self.batch_function)(*args)
        return self._transact(fn)

    def get_commitment_root(self) -> Optional[HexStr]:
        root = self._distributor_contract(ROOT_ABI).functions.merkleRoot().call()
        return encode_hex(root) if root and any(root) else None

    def set_commitment_root(self, root: HexStr) -> SubmissionOutcome:
        contract = self._distributor_contract(ROOT_ABI)
        return self._transact(contract.functions.setMerkleRoot(to_bytes(hexstr=root)))
