import pytest

from distributor.auditor import (
    address_topic,
    audit_distributed,
    check_balances,
    decode_transfer,
    estimate_report,
    estimate_transaction_count,
    transfer_topics,
)
from distributor.queries import TRANSFER_TOPIC
from distributor.scanner import EventScanner
from distributor.test.fakes import AA, ADMIN, BB, CC, DISTRIBUTOR, TOKEN, FakeChain, e18, no_sleep


def transfer_log(block: int, sender: str, receiver: str, value: int, index: int = 0) -> dict:
    return {
        "blockNumber": block,
        "logIndex": index,
        "topics": [TRANSFER_TOPIC, address_topic(sender), address_topic(receiver)],
        "data": "0x" + value.to_bytes(32, "big").hex(),
    }


def test_scenario_estimate():
    assert estimate_transaction_count({AA: 25000}, 10000) == 3


@pytest.mark.parametrize(
    "totals, chunk, expected",
    [
        ({AA: 10, BB: 10}, 10, 2),
        ({AA: 11, BB: 1}, 10, 3),
        ({}, 10, 0),
        ({AA: 1}, 1000, 1),
    ],
)
def test_estimate_transaction_count(totals, chunk, expected):
    assert estimate_transaction_count(totals, chunk) == expected


def test_estimate_rejects_zero_chunk():
    with pytest.raises(ValueError):
        estimate_transaction_count({AA: 1}, 0)


def test_estimate_report(ledger):
    report = estimate_report(ledger, e18("5"), max_batch_size=2)
    assert report.transactions == 10
    # AA needs 5 chunks and appears at most once per batch
    assert report.minBatches == 5
    assert report.chunkSize == str(e18("5"))
    assert report.totalAmount == str(e18("43.5"))

    unchunked = estimate_report(ledger, None, max_batch_size=2)
    assert unchunked.transactions == 3
    assert unchunked.minBatches == 2
    assert unchunked.chunkSize is None


def test_decode_transfer():
    log = transfer_log(1, DISTRIBUTOR, AA, e18("1.5"))
    assert decode_transfer(log) == (DISTRIBUTOR, AA, e18("1.5"))

    as_bytes = dict(log, topics=[bytes.fromhex(t[2:]) for t in log["topics"]])
    as_bytes["data"] = bytes.fromhex(log["data"][2:])
    assert decode_transfer(as_bytes) == (DISTRIBUTOR, AA, e18("1.5"))

    with pytest.raises(ValueError):
        decode_transfer({"topics": [TRANSFER_TOPIC], "data": "0x"})


def test_transfer_topics():
    topics = transfer_topics([DISTRIBUTOR, ADMIN])
    assert topics[0] == TRANSFER_TOPIC
    assert topics[1] == [address_topic(DISTRIBUTOR), address_topic(ADMIN)]
    assert len(address_topic(AA)) == 66


def test_audit_distributed(policy):
    chain = FakeChain()
    chain.logs = [
        transfer_log(10, DISTRIBUTOR, AA, 100),
        transfer_log(20, ADMIN, BB, 50),
        # treasury moves inside the group are not distribution
        transfer_log(30, DISTRIBUTOR, ADMIN, 1000),
        transfer_log(30, ADMIN, DISTRIBUTOR, 7, index=1),
        # nothing to do with us
        transfer_log(40, CC, AA, 5),
        transfer_log(2500, DISTRIBUTOR, CC, 25),
    ]
    scanner = EventScanner(chain, TOKEN, transfer_topics([DISTRIBUTOR, ADMIN]), policy, no_sleep)
    report = audit_distributed(scanner, DISTRIBUTOR, [ADMIN], 0, 3000)

    assert report.transfers == 3
    assert report.fromDistributor == "125"
    assert report.fromAdmins == "50"
    assert report.totalDistributed == "175"
    assert report.token == TOKEN
    assert report.gaps == []
    assert "Not equal to the on-chain sale counter" in report.note


def test_audit_reports_gaps(policy):
    chain = FakeChain()
    chain.logs = [transfer_log(10, DISTRIBUTOR, AA, 100), transfer_log(1500, DISTRIBUTOR, AA, 1)]
    chain.log_errors = [IOError("boom")] * policy.max_attempts
    scanner = EventScanner(chain, TOKEN, [], policy, no_sleep)
    report = audit_distributed(scanner, DISTRIBUTOR, [], 0, 1999)

    assert report.totalDistributed == "1"
    assert [(g.fromBlock, g.toBlock) for g in report.gaps] == [(0, 999)]


def test_check_balances(ledger, chain, oracle):
    chain.balances[AA] = e18("25")
    chain.balances[BB] = e18("12.4")
    chain.balances[CC] = e18("6.000001")

    report = check_balances(ledger, oracle, tolerance=e18("0.01"), concurrency=2)
    assert report.checked == 3
    assert [m.address for m in report.mismatches] == [BB]
    assert report.mismatches[0].diff == str(-e18("0.1"))
    assert report.totalExpected == str(e18("43.5"))

    strict = check_balances(ledger, oracle, tolerance=0)
    assert [m.address for m in strict.mismatches] == [BB, CC]


def test_check_balances_limit_and_errors(ledger, chain, oracle):
    chain.unreadable.add(BB)
    report = check_balances(ledger, oracle, limit=2)
    assert report.checked == 2
    assert [e.address for e in report.errors] == [BB]
    assert [m.address for m in report.mismatches] == [AA]
