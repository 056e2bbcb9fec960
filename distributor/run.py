"""
Command line entry point.

    python -m distributor.run aggregate --ledger data/ledger.csv
    python -m distributor.run sync --config distributor-conf.json
    python -m distributor.run distribute --dry_run

Every command takes `--config` (a file, or a directory holding distributor-conf.json).
Flags override the values in the config file.
"""
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import fire

from distributor import ledger as ledger_io
from distributor import merkle
from distributor.auditor import (
    audit_distributed,
    check_balances as check_ledger_balances,
    estimate_report,
    transfer_topics,
)
from distributor.batcher import BatchEngine, compute_daily_budget
from distributor.config import load_conf, resolve_block_range
from distributor.env import optional_env_var, private_key, rpc_url
from distributor.errors import BadConfigException, DistributorError, MissingStateError
from distributor.models import (
    AggregationResult,
    Config,
    DistributionState,
    StateStore,
    Writer,
)
from distributor.queries import (
    BalanceOracle,
    MulticallBalanceOracle,
    Web3ChainClient,
    get_w3,
)
from distributor.reconciler import check_divergence, reconcile
from distributor.scanner import EventScanner
from distributor.utils import format_units, parse_units, sha256_text, yes_or_no

logger = logging.getLogger("distributor")

stop_event = threading.Event()


def _request_stop(signum, _frame) -> None:
    logger.warning("received signal %d, stopping after the current step", signum)
    stop_event.set()


def _install_signal_handlers() -> None:
    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)


def _setup(config: Optional[str], **overrides) -> Config:
    return load_conf(config).with_overrides(**overrides)


def _require(value, name: str):
    if not value:
        raise BadConfigException(f"`{name}` must be set in the config file or passed as a flag")
    return value


def _chain(conf: Config, signing: bool = False) -> Web3ChainClient:
    return Web3ChainClient(
        get_w3(rpc_url()),
        distributor=conf.distributor,
        private_key=private_key() if signing else optional_env_var("PRIVATE_KEY"),
        batch_function=conf.batch_function,
        confirmations=conf.confirmations,
        with_proofs=conf.send_proofs,
        chain_id=conf.chain_id,
    )


def _oracle(conf: Config, chain: Web3ChainClient) -> BalanceOracle:
    token = _require(conf.token, "token")
    if conf.use_multicall:
        return MulticallBalanceOracle(chain, token, chain.w3, conf.retry)
    return BalanceOracle(chain, token, conf.retry)


def _decimals(conf: Config, chain: Optional[Web3ChainClient] = None) -> int:
    if conf.decimals is not None:
        return conf.decimals
    if chain is not None and conf.token:
        return chain.decimals(conf.token)
    logger.info("token decimals not configured, assuming 18")
    return 18


def _load(conf: Config, decimals: int) -> AggregationResult:
    result = ledger_io.load_ledger(conf.ledger_path, decimals, conf.ledger_hash)
    print(
        f"📒 {len(result.ledger)} recipients, "
        f"{format_units(result.ledger.total, decimals)} tokens, "
        f"{result.skipped} rows skipped"
    )
    return result


def _units(value: Optional[str], decimals: int) -> Optional[int]:
    return parse_units(str(value), decimals) if value is not None else None


def aggregate(config: Optional[str] = None, ledger: Optional[str] = None, decimals: Optional[int] = None) -> None:
    """Parse and aggregate the ledger, writing the result and any skipped rows to the reports"""
    conf = _setup(config, ledger_path=ledger, decimals=decimals)
    dec = _decimals(conf)
    result = _load(conf, dec)

    writer = Writer(conf)
    writer.to_csv_and_json(
        [
            {"address": a, "amount": str(v), "amountFormatted": format_units(v, dec)}
            for a, v in result.ledger.items()
        ],
        "aggregated-ledger",
    )
    if result.errors:
        writer.to_csv_and_json(result.errors, "ledger-errors")
        print(f"⚠️  {result.skipped} rows skipped, see {writer.csv_path}/ledger-errors.csv")
    print(f"✨ Aggregated ledger written to {writer.path}")


def ledger_hash(ledger: str) -> None:
    """Print the sha256 of a ledger file, for the `ledger_hash` config value"""
    print(sha256_text(Path(ledger).read_text(encoding="utf-8")))


def merkle_tree(config: Optional[str] = None, ledger: Optional[str] = None, decimals: Optional[int] = None) -> None:
    """Build the merkle commitment and every recipient's proof"""
    conf = _setup(config, ledger_path=ledger, decimals=decimals)
    dec = _decimals(conf)
    result = _load(conf, dec)
    distribution = merkle.build_distribution(result.ledger, dec)

    writer = Writer(conf)
    path = writer.to_json(distribution.model_dump(), "merkle-distribution")
    writer.to_csv_and_json(distribution.summary(), "merkle-summary")
    print(f"🌳 Merkle root {distribution.merkleRoot}")
    print(f"✨ Claims written to {path}")


def verify(address: str, config: Optional[str] = None, distribution: Optional[str] = None) -> None:
    """Check an address's proof in a written merkle distribution against its root"""
    conf = _setup(config)
    path = distribution or f"{Writer(conf).json_path}/merkle-distribution.json"
    data = json.loads(Path(path).read_text())
    claims = {k.lower(): v for k, v in data["claims"].items()}
    claim = claims.get(str(address).lower())
    if claim is None:
        print(f"❌ {address} has no claim in {path}")
        sys.exit(1)

    leaf = merkle.leaf(claim["address"], int(claim["amount"]))
    if merkle.verify(leaf, claim["proof"], data["merkleRoot"]):
        print(f"✅ {claim['address']} is owed {claim['amountFormatted']} under root {data['merkleRoot']}")
    else:
        print(f"❌ Proof for {claim['address']} does not verify against {data['merkleRoot']}")
        sys.exit(1)


def sync(
    config: Optional[str] = None,
    ledger: Optional[str] = None,
    resync: bool = False,
    concurrency: Optional[int] = None,
) -> None:
    """Reconcile the ledger against on-chain balances and save the distribution state"""
    conf = _setup(config, ledger_path=ledger, concurrency=concurrency)
    token = _require(conf.token, "token")
    chain = _chain(conf)
    dec = _decimals(conf, chain)
    result = _load(conf, dec)
    root, _ = merkle.build(result.ledger)

    with StateStore(conf.state_path) as store, store.lock():
        prior = store.load()
        state, report = reconcile(
            result.ledger,
            _oracle(conf, chain),
            prior,
            token=token,
            decimals=dec,
            concurrency=conf.concurrency,
            resync=resync,
            merkle_root=root,
        )
        store.save(state)

    Writer(conf).to_csv_and_json(report, "reconcile-report")
    print(
        f"🔁 {report.addresses} addresses: {report.paid} paid, {report.outstanding} outstanding, "
        f"{format_units(int(report.totalRemaining), dec)} tokens remaining"
    )
    if report.errors:
        print(f"⚠️  {len(report.errors)} balances could not be read, treated as unpaid")
    print(f"💾 State saved to {conf.state_path}")


def distribute(
    config: Optional[str] = None,
    dry_run: bool = False,
    batch_size: Optional[int] = None,
    chunk_size: Optional[str] = None,
    max_batches: Optional[int] = None,
) -> None:
    """Pay out the remaining amounts in the saved state, batch by batch"""
    conf = _setup(
        config,
        batch_size=batch_size,
        chunk_size=str(chunk_size) if chunk_size is not None else None,
    )
    distributor = _require(conf.distributor, "distributor")
    if not StateStore.exists(conf.state_path):
        raise MissingStateError(f"No state at {conf.state_path}, run `sync` first")

    chain = _chain(conf, signing=not dry_run)
    with StateStore(conf.state_path) as store:
        state = store.load()
        if state is None:
            raise MissingStateError(f"{conf.state_path} holds no state, run `sync` first")
        dec = state.decimals

        result = _load(conf, dec)
        check_divergence(state, result.ledger, result.ledger.source_hash)
        ledger_io.validate_recipients(
            result.ledger,
            sender=chain.sender,
            whitelist=conf.whitelist or None,
            max_per_address=_units(conf.max_tokens_per_address, dec),
        )

        chunk = _units(conf.chunk_size, dec)
        # saved by the engine once it holds the lock
        state.estDailyBudget = compute_daily_budget(
            state, chunk, conf.duration_days, conf.daily_tx_cap, conf.batch_size
        )

        proofs = merkle.build(result.ledger)[1] if conf.send_proofs else None
        engine = BatchEngine(
            chain,
            _oracle(conf, chain),
            store,
            distributor=distributor,
            max_batch_size=conf.batch_size,
            chunk_size=chunk,
            timezone=conf.timezone,
        )
        _install_signal_handlers()
        summary = engine.run(
            state,
            dry_run=dry_run,
            max_batches=max_batches,
            should_stop=stop_event.is_set,
            proofs=proofs,
        )

    name = "distribution-dry-run" if dry_run else "distribution-run"
    Writer(conf).to_csv_and_json(summary, name)
    label = "🧪 Dry run" if dry_run else "🚀 Run"
    print(
        f"{label} finished with status `{summary.status}`: {len(summary.batches)} batches, "
        f"{format_units(int(summary.amountSent), dec)} tokens sent, "
        f"{format_units(int(summary.totalRemaining), dec)} remaining"
    )
    if summary.shortfall:
        print(f"💸 Distributor needs {format_units(int(summary.shortfall), dec)} more tokens")
    if summary.error:
        print(f"❌ {summary.error}")


def audit(
    config: Optional[str] = None,
    from_block: Optional[int] = None,
    to_block: Optional[str] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
    start_block: int = 0,
) -> None:
    """Sum what has left the distributor and admin wallets over a block range"""
    conf = _setup(config)
    token = _require(conf.token, "token")
    distributor = _require(conf.distributor, "distributor")
    chain = _chain(conf)
    dec = _decimals(conf, chain)

    start, end = resolve_block_range(
        chain.block_number,
        chain.block_timestamp,
        from_block,
        to_block,
        since,
        until,
        month,
        year,
        start_block,
    )
    print(f"⚗ Scanning transfers from block {start} to {end}...")
    scanner = EventScanner(
        chain,
        token,
        transfer_topics([distributor, *conf.admin_addresses]),
        conf.retry,
    )
    _install_signal_handlers()
    report = audit_distributed(
        scanner, distributor, conf.admin_addresses, start, end, stop_event.is_set
    )

    Writer(conf).to_csv_and_json(report, f"audit-{start}-{end}")
    print(f"📤 {report.transfers} transfers, {format_units(int(report.totalDistributed), dec)} tokens distributed")
    print(f"   from distributor: {format_units(int(report.fromDistributor), dec)}")
    print(f"   from admins:      {format_units(int(report.fromAdmins), dec)}")
    if report.gaps:
        print(f"⚠️  {len(report.gaps)} block ranges could not be scanned, totals are incomplete")
    print(f"ℹ️  {report.note}")


def estimate(
    config: Optional[str] = None,
    ledger: Optional[str] = None,
    chunk_size: Optional[str] = None,
    batch_size: Optional[int] = None,
    decimals: Optional[int] = None,
) -> None:
    """Count the transfers and batches a distribution will take"""
    conf = _setup(
        config,
        ledger_path=ledger,
        batch_size=batch_size,
        decimals=decimals,
        chunk_size=str(chunk_size) if chunk_size is not None else None,
    )
    dec = _decimals(conf)
    result = _load(conf, dec)
    report = estimate_report(
        result.ledger, _units(conf.chunk_size, dec), conf.batch_size
    )
    Writer(conf).to_csv_and_json(report, "estimate")
    print(f"🧮 {report.transactions} transfers, at least {report.minBatches} batches of up to {report.maxBatchSize}")
    if conf.duration_days:
        per_day = -(-report.minBatches // conf.duration_days)
        print(f"📅 about {per_day} batches per day over {conf.duration_days} days")


def check_balances(
    config: Optional[str] = None,
    ledger: Optional[str] = None,
    tolerance: Optional[str] = None,
    concurrency: Optional[int] = None,
    limit: Optional[int] = None,
) -> None:
    """Compare the ledger amounts with what each recipient holds on chain"""
    conf = _setup(
        config,
        ledger_path=ledger,
        concurrency=concurrency,
        tolerance=str(tolerance) if tolerance is not None else None,
    )
    chain = _chain(conf)
    dec = _decimals(conf, chain)
    result = _load(conf, dec)
    report = check_ledger_balances(
        result.ledger,
        _oracle(conf, chain),
        parse_units(conf.tolerance, dec),
        conf.concurrency,
        limit,
    )
    Writer(conf).to_csv_and_json(report.mismatches, "balance-mismatches")
    print(f"🔎 Checked {report.checked} addresses, {len(report.mismatches)} mismatches, {len(report.errors)} errors")
    for m in report.mismatches[:20]:
        print(f"   {m.address}: expected {format_units(int(m.expected), dec)}, actual {format_units(int(m.actual), dec)}")


def publish_root(config: Optional[str] = None, ledger: Optional[str] = None, yes: bool = False) -> None:
    """Set the distributor's merkle root to the one built from the ledger"""
    conf = _setup(config, ledger_path=ledger)
    _require(conf.distributor, "distributor")
    chain = _chain(conf, signing=True)
    result = _load(conf, _decimals(conf, chain))
    root, _ = merkle.build(result.ledger)

    current = chain.get_commitment_root()
    if current and current.lower() == root.lower():
        print(f"👌 Root {root} is already published")
        return
    print(f"🌳 Current root {current}, new root {root}")
    if not yes and not yes_or_no("Publish the new root?"):
        print("Aborted")
        return
    outcome = chain.set_commitment_root(root)
    if not outcome.success:
        print(f"❌ {outcome.error}")
        sys.exit(1)
    print(f"✅ Root published in {outcome.txHash}")


def status(config: Optional[str] = None) -> None:
    """Summarize the saved distribution state"""
    conf = _setup(config)
    if not StateStore.exists(conf.state_path):
        raise MissingStateError(f"No state at {conf.state_path}, run `sync` first")
    with StateStore(conf.state_path) as store:
        state: Optional[DistributionState] = store.load()
        history = store.history()
    if state is None:
        raise MissingStateError(f"{conf.state_path} holds no state, run `sync` first")
    dec = state.decimals
    print(f"📒 {len(state.totals)} recipients, {len(state.outstanding)} still owed")
    print(f"   owed {format_units(state.total_owed, dec)}, remaining {format_units(state.total_remaining, dec)}")
    print(f"   cursor {state.cursor}, last paid {state.lastAddr}")
    print(f"   {state.sentToday} batches on {state.dayKey}, daily budget {state.estDailyBudget}")
    failed = sum(1 for h in history if not h["outcome"]["success"])
    print(f"🧾 {len(history)} submissions logged, {failed} failed")


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        fire.Fire(
            {
                "aggregate": aggregate,
                "ledger_hash": ledger_hash,
                "merkle": merkle_tree,
                "verify": verify,
                "sync": sync,
                "distribute": distribute,
                "audit": audit,
                "estimate": estimate,
                "check_balances": check_balances,
                "publish_root": publish_root,
                "status": status,
            }
        )
    except DistributorError as e:
        logger.error(str(e))
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
