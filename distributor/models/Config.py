from __future__ import annotations

from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, field_validator, model_validator

from distributor.errors import BadConfigException
from distributor.models.Ledger import checksum
from distributor.models.types import EthereumAddress

MAX_BATCH_SIZE = 100


class RetryPolicy(BaseModel):
    """
    How reads back off under load. Shared by the balance oracle and the log scanner.

    :param `max_attempts`: tries per request (or per window) before giving up
    :param `base_delay`: seconds to wait before the first retry
    :param `backoff`: multiplier applied to the delay on each further retry
    :param `initial_span`: blocks per log window when a scan starts
    :param `span_floor`: the scanner never shrinks a window below this
    :param `span_ceiling`: the scanner never grows a window above this
    :param `grow_after`: consecutive successful windows before the span grows
    """

    max_attempts: int = 5
    base_delay: float = 0.75
    backoff: float = 2.0
    max_delay: float = 30.0
    initial_span: int = 2000
    span_floor: int = 200
    span_ceiling: int = 10_000
    grow_after: int = 5
    growth: float = 2.0

    @model_validator(mode="after")
    def check_bounds(self) -> RetryPolicy:
        if self.max_attempts < 1:
            raise BadConfigException("max_attempts must be at least 1")
        if not 1 <= self.span_floor <= self.span_ceiling:
            raise BadConfigException(
                f"Need 1 <= span_floor <= span_ceiling, got {self.span_floor}, {self.span_ceiling}"
            )
        if self.growth < 1 or self.backoff < 1:
            raise BadConfigException("growth and backoff must be >= 1")
        return self

    def delay(self, attempt: int) -> float:
        """Seconds to sleep before retry number `attempt` (1-based)"""
        return min(self.max_delay, self.base_delay * self.backoff ** max(0, attempt - 1))

    def clamp_span(self, span: int) -> int:
        return max(self.span_floor, min(self.span_ceiling, span))


class Config(BaseModel):
    """
    Settings for a distribution. Loaded from a JSON file, CLI flags override.
    Secrets (RPC url, private key) never live here, see `distributor.env`.

    :param `distributor`: contract that holds the tokens and exposes the batch function
    :param `chunk_size`: max tokens (human units) a recipient gets per transfer, unset means all at once
    :param `tolerance`: balance difference (human units) ignored by the balance checker
    :param `ledger_hash`: expected sha256 of the ledger file, checked before every run
    :param `daily_tx_cap`, `duration_days`: optional pacing of batches per day
    :param `send_proofs`: the batch function takes a third `bytes32[][]` argument of merkle proofs
    """

    ledger_path: str = "data/ledger.csv"
    state_path: str = "state/distribution-state.json"
    output_dir: str = "reports"

    token: Optional[EthereumAddress] = None
    distributor: Optional[EthereumAddress] = None
    admin_addresses: list[EthereumAddress] = []
    decimals: Optional[int] = None
    chain_id: Optional[int] = None

    batch_size: int = MAX_BATCH_SIZE
    chunk_size: Optional[str] = None
    concurrency: int = 5
    tolerance: str = "0"
    use_multicall: bool = False

    ledger_hash: Optional[str] = None
    whitelist: list[EthereumAddress] = []
    max_tokens_per_address: Optional[str] = None

    daily_tx_cap: Optional[int] = None
    duration_days: Optional[int] = None
    timezone: str = "UTC"

    batch_function: str = "batchTransfer"
    send_proofs: bool = False
    confirmations: int = 1
    retry: RetryPolicy = RetryPolicy()

    @field_validator("token", "distributor")
    @classmethod
    def checksum_optional(cls, addr: Optional[str]) -> Optional[EthereumAddress]:
        return checksum(addr) if addr else None

    @field_validator("admin_addresses", "whitelist")
    @classmethod
    def checksum_list(cls, addrs: list[str]) -> list[EthereumAddress]:
        return [checksum(a) for a in addrs]

    @field_validator("batch_size")
    @classmethod
    def bounded_batch(cls, size: int) -> int:
        if not 1 <= size <= MAX_BATCH_SIZE:
            raise BadConfigException(
                f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {size}"
            )
        return size

    @field_validator("concurrency")
    @classmethod
    def positive_concurrency(cls, concurrency: int) -> int:
        if concurrency < 1:
            raise BadConfigException("concurrency must be at least 1")
        return concurrency

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, tz: str) -> str:
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError):
            raise BadConfigException(f"Unknown timezone {tz}")
        return tz

    def with_overrides(self, **overrides) -> Config:
        """Returns a copy with every non-None override applied and re-validated"""
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return Config.model_validate(values)
