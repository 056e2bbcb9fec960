"""
Walks a block range window by window with `eth_getLogs`, adapting the window to
what the provider will tolerate.

- rate limited: halve the span (not below `span_floor`) and retry the same window.
  Still limited at the floor: back off and retry, and give up with
  `ScanRateLimitedError` after `max_attempts`. A window is never skipped for throttling.
- any other error: back off and retry the same window, after `max_attempts` record
  it as a gap and move on.
- `grow_after` clean windows in a row: grow the span by `growth`, up to `span_ceiling`.
"""
import logging
import time
from typing import Any, Callable, Optional, Sequence

from distributor.errors import ScanRateLimitedError
from distributor.models import (
    EthereumAddress,
    HexStr,
    LogReceipt,
    RetryPolicy,
    ScanGap,
    ScanResult,
    ScanWindow,
    checksum,
)
from distributor.queries import ChainClient, is_rate_limit_error

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def log_order(log: LogReceipt) -> tuple[int, int]:
    return _as_int(log.get("blockNumber", 0)), _as_int(log.get("logIndex", 0))


class EventScanner:
    def __init__(
        self,
        chain: ChainClient,
        address: EthereumAddress,
        topics: Sequence[Optional[HexStr]],
        policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.chain = chain
        self.address = checksum(address)
        self.topics = list(topics)
        self.policy = policy
        self.sleep = sleep

    def _fetch(self, start: int, end: int) -> list[LogReceipt]:
        logs = self.chain.get_logs(self.address, self.topics, start, end)
        return sorted(logs, key=log_order)

    def scan(
        self,
        from_block: int,
        to_block: int,
        handler: Callable[[LogReceipt], Any],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ScanResult:
        """
        Deliver every log in [from_block, to_block] to `handler`, in block order.

        :param `should_stop`: checked between windows, a True stops the scan with `cancelled` set
        :raises `ScanRateLimitedError`: the provider kept throttling at the minimum span
        """
        if to_block < from_block:
            raise ValueError(f"to_block {to_block} is before from_block {from_block}")

        policy = self.policy
        result = ScanResult(fromBlock=from_block, toBlock=to_block)
        span = policy.clamp_span(policy.initial_span)
        streak = 0
        start = from_block

        while start <= to_block:
            if should_stop is not None and should_stop():
                logger.info("scan cancelled at block %d", start)
                result.cancelled = True
                break

            end = min(to_block, start + span - 1)
            errors = 0
            throttled = 0
            logs: Optional[list[LogReceipt]] = None

            while logs is None:
                try:
                    logs = self._fetch(start, end)
                except Exception as e:
                    streak = 0
                    if is_rate_limit_error(e):
                        if span > policy.span_floor:
                            span = max(policy.span_floor, span // 2)
                            end = min(to_block, start + span - 1)
                            logger.info("rate limited, span reduced to %d blocks", span)
                            self.sleep(policy.base_delay)
                            continue
                        throttled += 1
                        if throttled >= policy.max_attempts:
                            raise ScanRateLimitedError(start, end, throttled)
                        self.sleep(policy.delay(throttled))
                        continue

                    errors += 1
                    if errors >= policy.max_attempts:
                        logger.warning(
                            "giving up on blocks %d-%d after %d attempts: %s",
                            start,
                            end,
                            errors,
                            e,
                        )
                        result.gaps.append(ScanGap(fromBlock=start, toBlock=end, error=str(e)))
                        break
                    self.sleep(policy.delay(errors))

            if logs is not None:
                for log in logs:
                    handler(log)
                result.windows.append(
                    ScanWindow(fromBlock=start, toBlock=end, span=span, events=len(logs))
                )
                result.events += len(logs)
                streak += 1
                if streak >= policy.grow_after and span < policy.span_ceiling:
                    span = policy.clamp_span(int(span * policy.growth))
                    streak = 0
                    logger.debug("span grown to %d blocks", span)

            start = end + 1

        result.finalSpan = span
        logger.info(
            "scanned blocks %d-%d: %d events in %d windows, %d gaps",
            from_block,
            to_block,
            result.events,
            len(result.windows),
            len(result.gaps),
        )
        return result
