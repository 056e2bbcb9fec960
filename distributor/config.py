import calendar
import datetime
import json
import logging
import os
from pathlib import Path
from typing import Callable, NamedTuple, Optional, Union

from distributor.errors import BadConfigException
from distributor.models import Config

logger = logging.getLogger(__name__)

CONF_FILENAME = "distributor-conf.json"


class EpochBoundary(NamedTuple):
    date: datetime.date
    start_date: datetime.datetime
    end_date: datetime.datetime


def get_epoch_dates(month: int, year: int) -> EpochBoundary:
    """Returns the start and end dates of a given month in UTC timezone.

    Args:
        month (int): The month (1-12).
        year (int): The year (>= 2015).
    """
    if month < 1 or month > 12:
        raise ValueError("Invalid month value. Must be between 1 and 12.")

    if year < 2015:
        raise ValueError("Invalid year value. Must be an integer >= 2015.")

    _, n_days = calendar.monthrange(year, month)

    date = datetime.date(year, month, 1)
    start_date = datetime.datetime(year, month, 1, tzinfo=datetime.timezone.utc)
    end_date = datetime.datetime(
        year, month, n_days, 23, 59, 59, tzinfo=datetime.timezone.utc
    )

    return EpochBoundary(date, start_date, end_date)


def parse_date(value: Union[str, datetime.date, datetime.datetime]) -> datetime.datetime:
    """ISO date or datetime, naive values are taken as UTC"""
    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, datetime.date):
        parsed = datetime.datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.datetime.fromisoformat(str(value))
        except ValueError:
            raise BadConfigException(f"Not an ISO date: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def conf_path(path: str) -> str:
    """A config file, or a directory holding `distributor-conf.json`"""
    if os.path.isdir(path):
        return f"{path}/{CONF_FILENAME}"
    return path


def load_conf(path: Optional[str] = None) -> Config:
    """Loads the config from file. No path, and no default file, means all defaults."""
    if path is None:
        if not os.path.exists(CONF_FILENAME):
            logger.info("no %s found, using default config", CONF_FILENAME)
            return Config()
        path = CONF_FILENAME
    full_path = conf_path(path)
    if not os.path.exists(full_path):
        raise BadConfigException(f"Config file not found: {full_path}")
    return Config.model_validate_json(Path(full_path).read_text())


def save_conf(conf: Config, path: str) -> str:
    full_path = conf_path(path)
    Path(full_path).parent.mkdir(parents=True, exist_ok=True)
    with open(full_path, "w+") as j:
        j.write(json.dumps(conf.model_dump(), indent=4))
    return full_path


def find_block_at_or_before(
    block_timestamp: Callable[[int], int], target_ts: int, low: int, high: int
) -> int:
    """
    Last block in [low, high] mined at or before `target_ts`, by binary search on
    block timestamps. Returns `low` when every block is later than the target.
    """
    if low > high:
        low, high = high, low
    if target_ts <= block_timestamp(low):
        return low
    if target_ts >= block_timestamp(high):
        return high

    while low < high:
        mid = (low + high + 1) // 2
        if block_timestamp(mid) <= target_ts:
            low = mid
        else:
            high = mid - 1
    return low


def resolve_block_range(
    block_number: Callable[[], int],
    block_timestamp: Callable[[int], int],
    from_block: Optional[Union[int, str]] = None,
    to_block: Optional[Union[int, str]] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
    start_block: int = 0,
) -> tuple[int, int]:
    """
    Turn whatever the user gave (block numbers, "latest", ISO dates or a calendar
    month) into an inclusive block range. Dates are resolved against block timestamps.
    """
    latest = block_number()
    ts_cache: dict[int, int] = {}

    def cached_timestamp(n: int) -> int:
        if n not in ts_cache:
            ts_cache[n] = block_timestamp(n)
        return ts_cache[n]

    if month is not None or year is not None:
        if month is None or year is None:
            raise BadConfigException("month and year must be given together")
        _, start_date, end_date = get_epoch_dates(month, year)
        since, until = start_date.isoformat(), end_date.isoformat()

    def as_block(value: Optional[Union[int, str]], default: int) -> int:
        if value is None or value == "latest":
            return latest if value == "latest" else default
        return int(value)

    start = as_block(from_block, start_block)
    end = as_block(to_block, latest)

    if since is not None:
        target = int(parse_date(since).timestamp())
        start = find_block_at_or_before(cached_timestamp, target, start_block, latest)
        # first block at or after the start date
        if cached_timestamp(start) < target and start < latest:
            start += 1
    if until is not None:
        target = int(parse_date(until).timestamp())
        end = find_block_at_or_before(cached_timestamp, target, start_block, latest)

    if end > latest:
        end = latest
    if start > end:
        raise BadConfigException(f"Empty block range: {start} > {end}")
    return start, end
