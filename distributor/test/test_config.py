import datetime

import pytest

from distributor.config import (
    CONF_FILENAME,
    EpochBoundary,
    find_block_at_or_before,
    get_epoch_dates,
    load_conf,
    parse_date,
    resolve_block_range,
    save_conf,
)
from distributor.errors import BadConfigException
from distributor.models import Config
from distributor.test.fakes import ADMIN, DISTRIBUTOR, TOKEN, FakeChain

# FakeChain blocks are 12 seconds apart from this timestamp
GENESIS = 1_700_000_000


def test_get_epoch_dates_valid():
    epoch = get_epoch_dates(3, 2023)
    assert isinstance(epoch, EpochBoundary)
    assert epoch.date == datetime.date(2023, 3, 1)
    assert epoch.start_date == datetime.datetime(
        2023, 3, 1, tzinfo=datetime.timezone.utc
    )
    assert epoch.end_date == datetime.datetime(
        2023, 3, 31, 23, 59, 59, tzinfo=datetime.timezone.utc
    )

    epoch = get_epoch_dates(2, 2024)
    assert epoch.end_date == datetime.datetime(
        2024, 2, 29, 23, 59, 59, tzinfo=datetime.timezone.utc
    )


def test_get_epoch_dates_invalid():
    with pytest.raises(ValueError):
        get_epoch_dates(0, 2023)
    with pytest.raises(ValueError):
        get_epoch_dates(13, 2023)
    with pytest.raises(ValueError):
        get_epoch_dates(2, 23)
    with pytest.raises(ValueError):
        get_epoch_dates(2, 2014)


def test_load_conf(config: Config):
    assert config.token == TOKEN
    assert config.distributor == DISTRIBUTOR
    assert config.admin_addresses == [ADMIN]
    assert config.batch_size == 2
    assert config.chunk_size == "5"
    assert config.timezone == "Europe/London"
    assert config.retry.span_floor == 100


def test_load_conf_file_or_directory(tmp_path, config: Config):
    path = save_conf(config, str(tmp_path))
    assert path == f"{tmp_path}/{CONF_FILENAME}"
    assert load_conf(str(tmp_path)) == config
    assert load_conf(path) == config


def test_load_conf_missing(tmp_path, monkeypatch):
    with pytest.raises(BadConfigException):
        load_conf(str(tmp_path / "nope.json"))

    monkeypatch.chdir(tmp_path)
    assert load_conf() == Config()


def test_bad_conf_values(config: Config):
    with pytest.raises(BadConfigException):
        config.with_overrides(batch_size=101)
    with pytest.raises(BadConfigException):
        config.with_overrides(timezone="Mars/Olympus")
    assert config.with_overrides(batch_size=None).batch_size == 2


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-05-01", datetime.datetime(2024, 5, 1, tzinfo=datetime.timezone.utc)),
        (
            "2024-05-01T10:00:00+02:00",
            datetime.datetime(2024, 5, 1, 8, tzinfo=datetime.timezone.utc),
        ),
        (
            datetime.date(2024, 5, 1),
            datetime.datetime(2024, 5, 1, tzinfo=datetime.timezone.utc),
        ),
    ],
)
def test_parse_date(value, expected):
    assert parse_date(value) == expected


def test_parse_date_invalid():
    with pytest.raises(BadConfigException):
        parse_date("the first of may")


def test_find_block_at_or_before():
    chain = FakeChain()
    ts = chain.block_timestamp
    assert find_block_at_or_before(ts, GENESIS + 120, 0, 1000) == 10
    assert find_block_at_or_before(ts, GENESIS + 125, 0, 1000) == 10
    assert find_block_at_or_before(ts, GENESIS - 1, 0, 1000) == 0
    assert find_block_at_or_before(ts, GENESIS + 10**9, 0, 1000) == 1000


def iso(ts: int) -> str:
    return datetime.datetime.fromtimestamp(ts, datetime.timezone.utc).isoformat()


def test_resolve_block_range_blocks():
    chain = FakeChain()
    resolve = lambda **kw: resolve_block_range(chain.block_number, chain.block_timestamp, **kw)

    assert resolve() == (0, 1000)
    assert resolve(from_block=10, to_block="latest") == (10, 1000)
    assert resolve(from_block="5", to_block=5000) == (5, 1000)
    assert resolve(start_block=900) == (900, 1000)

    with pytest.raises(BadConfigException):
        resolve(from_block=20, to_block=10)


def test_resolve_block_range_dates():
    chain = FakeChain()
    resolve = lambda **kw: resolve_block_range(chain.block_number, chain.block_timestamp, **kw)

    # since rounds up to the first block at or after, until rounds down
    assert resolve(since=iso(GENESIS + 125), until=iso(GENESIS + 245)) == (11, 20)
    assert resolve(since=iso(GENESIS + 120)) == (10, 1000)


def test_resolve_block_range_month():
    chain = FakeChain()
    may = int(datetime.datetime(2024, 5, 1, tzinfo=datetime.timezone.utc).timestamp())
    june = int(datetime.datetime(2024, 6, 1, tzinfo=datetime.timezone.utc).timestamp())
    chain.timestamps = {n: may - 3600 + n * 3600 for n in range(0, 1001)}

    start, end = resolve_block_range(
        chain.block_number, chain.block_timestamp, month=5, year=2024
    )
    assert chain.block_timestamp(start) == may
    assert chain.block_timestamp(end) < june <= chain.block_timestamp(end + 1)

    with pytest.raises(BadConfigException):
        resolve_block_range(chain.block_number, chain.block_timestamp, month=5)
