import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Sequence

from multicall import Call, Multicall  # type: ignore
from web3 import Web3

from distributor.models import AddressError, EthereumAddress, RetryPolicy, checksum
from distributor.queries.chain import ChainClient
from distributor.queries.common import call_with_retries
from distributor.utils import chunks

logger = logging.getLogger(__name__)

BalanceReads = tuple[dict[EthereumAddress, int], list[AddressError]]


class BalanceOracle:
    """
    Reads token balances one address at a time through a `ChainClient`,
    with retries and a bounded pool of workers.
    """

    def __init__(
        self,
        chain: ChainClient,
        token: EthereumAddress,
        policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.chain = chain
        self.token = checksum(token)
        self.policy = policy
        self.sleep = sleep

    def balance_of(self, address: EthereumAddress) -> int:
        return call_with_retries(
            lambda: self.chain.balance_of(self.token, address),
            self.policy,
            self.sleep,
            label=f"balanceOf({address})",
        )

    def balances_of(
        self, addresses: Sequence[EthereumAddress], concurrency: int = 5
    ) -> BalanceReads:
        """
        Balances for every address that could be read, plus an error for each one
        that could not. A failed read never aborts the others.
        """
        balances: dict[EthereumAddress, int] = {}
        errors: dict[EthereumAddress, str] = {}

        with ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
            futures = {executor.submit(self.balance_of, a): a for a in addresses}
            for future in as_completed(futures):
                address = futures[future]
                try:
                    balances[address] = future.result()
                except Exception as e:
                    logger.warning("balance read failed for %s: %s", address, e)
                    errors[address] = str(e)

        # as_completed is unordered, hand results back in the order asked for
        return (
            {a: balances[a] for a in addresses if a in balances},
            [AddressError(address=a, error=errors[a]) for a in addresses if a in errors],
        )


class MulticallBalanceOracle(BalanceOracle):
    """
    Same contract as `BalanceOracle`, but aggregates `balanceOf` reads into
    Multicall batches of `batch_size` calls. A failed batch marks each of its
    addresses as an error.
    """

    def __init__(
        self,
        chain: ChainClient,
        token: EthereumAddress,
        w3: Web3,
        policy: RetryPolicy = RetryPolicy(),
        batch_size: int = 200,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        super().__init__(chain, token, policy, sleep)
        self.w3 = w3
        self.batch_size = batch_size

    def _multicall(self, addresses: list[EthereumAddress]) -> dict[EthereumAddress, int]:
        calls = [
            Call(
                # address to call:
                self.token,
                # signature + return value, with argument:
                ["balanceOf(address)(uint256)", a],
                # return in a format of {[address]: uint}:
                [[a, None]],
            )
            for a in addresses
        ]
        return Multicall(calls, _w3=self.w3)()

    def balances_of(
        self, addresses: Sequence[EthereumAddress], concurrency: int = 5
    ) -> BalanceReads:
        balances: dict[EthereumAddress, int] = {}
        errors: list[AddressError] = []
        for batch in chunks(list(addresses), self.batch_size):
            try:
                result = call_with_retries(
                    lambda: self._multicall(batch),
                    self.policy,
                    self.sleep,
                    label=f"multicall balanceOf x{len(batch)}",
                )
            except Exception as e:
                logger.warning("multicall of %d balances failed: %s", len(batch), e)
                errors += [AddressError(address=a, error=str(e)) for a in batch]
                continue
            for a in batch:
                # a reverted sub-call comes back as None
                if result.get(a) is None:
                    logger.warning("multicall balanceOf failed for %s", a)
                    errors.append(AddressError(address=a, error="balanceOf call failed"))
                    continue
                balances[a] = int(result[a])
        return balances, errors
