import logging
import re
import time
from typing import Any, Callable, Optional, TypeVar

import requests
from eth_utils import encode_hex, keccak
from web3 import Web3

from distributor.env import rpc_url
from distributor.models import RetryPolicy

logger = logging.getLogger(__name__)

# python insantiates generics separate to function definition
T = TypeVar("T")

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]

TRANSFER_TOPIC = encode_hex(keccak(text="Transfer(address,address,uint256)"))

# providers phrase throttling differently, match on what they have in common
RATE_LIMIT_PATTERN = re.compile(
    r"limit exceeded|-32005|rate limit|too many requests|\b429\b", re.IGNORECASE
)
TRANSIENT_PATTERN = re.compile(
    r"timeout|timed out|\b50[234]\b|bad gateway|service unavailable|connection reset|temporarily unavailable",
    re.IGNORECASE,
)


def get_w3(url: Optional[str] = None) -> Web3:
    """HTTP provider for `url`, falling back to RPC_URL from the environment"""
    return Web3(Web3.HTTPProvider(url or rpc_url()))


def _status_code(exc: BaseException) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def is_rate_limit_error(exc: BaseException) -> bool:
    """True if the provider is telling us to slow down or query a smaller range"""
    if _status_code(exc) == 429:
        return True
    return bool(RATE_LIMIT_PATTERN.search(str(exc)))


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    if _status_code(exc) in (502, 503, 504):
        return True
    return is_rate_limit_error(exc) or bool(TRANSIENT_PATTERN.search(str(exc)))


def call_with_retries(
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], Any] = time.sleep,
    label: str = "rpc call",
) -> T:
    """
    Run `fn`, retrying transient and rate limit errors with exponential backoff.
    Anything else, or the last failed attempt, is raised to the caller.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except Exception as e:
            if not is_transient_error(e) or attempt == policy.max_attempts:
                raise
            delay = policy.delay(attempt)
            logger.debug(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                policy.max_attempts,
                delay,
                e,
            )
            sleep(delay)
    # unreachable, the loop either returns or raises
    raise RuntimeError(f"{label} exhausted retries")
