"""POLIS CLI entrypoint.

Commands:
  run                 run the collective against configured collaborators
  demo                a few cycles against simulated feeds and settlement
  config show         print the effective configuration
  market simulate     random trades on one market, then resolve and redeem
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import sys
import time
from typing import Any, Dict, Optional

import click

from polis import __version__

# ─── Logging setup ────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger("polis")


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync Click context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _load_config(**overrides: Any) -> Any:
    from polis.config import PolisConfig
    from polis.errors import ValidationError

    try:
        config = PolisConfig.from_env()
        if any(v is not None for v in overrides.values()):
            values = config.to_dict()
            values.update({k: v for k, v in overrides.items() if v is not None})
            config = PolisConfig(**values)
    except ValidationError as e:
        click.echo("Invalid configuration: {}".format(e), err=True)
        sys.exit(2)
    return config


# ─── Root CLI ─────────────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__, prog_name="polis")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """POLIS — autonomous prediction-market collective."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


# ═══════════════════════════════════════════════════════════════════════════════
# Collective commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.command("run")
@click.option("--cycles", default=None, type=int, help="Stop after N cycles (default: run forever)")
@click.option("--interval", default=None, type=float, help="Seconds between cycles")
def run(cycles: Optional[int], interval: Optional[float]) -> None:
    """Run the cycle scheduler until interrupted."""
    from polis.errors import ValidationError
    from polis.scheduler import build_scheduler

    config = _load_config(interval_sec=interval)
    try:
        scheduler = build_scheduler(config)
    except ValidationError as e:
        click.echo("Invalid configuration: {}".format(e), err=True)
        sys.exit(2)

    click.echo("POLIS started: {} symbols, quorum {}, threshold {}".format(
        len(config.symbols), config.quorum, config.threshold,
    ))
    try:
        _run(scheduler.start(max_cycles=cycles))
    except KeyboardInterrupt:
        scheduler.stop()
        click.echo("Interrupted.")

    state = scheduler.get_state()
    click.echo("Cycles: {} | Markets deployed: {}".format(state["cycle_count"], len(state["deployed_markets"])))


@cli.command("demo")
@click.option("--cycles", default=6, help="Number of cycles to run")
@click.option("--seed", default=None, type=int, help="Seed for the simulated feed")
@click.option("--json-out", is_flag=True, help="Print final state as JSON")
def demo(cycles: int, seed: Optional[int], json_out: bool) -> None:
    """Run a few back-to-back cycles on simulated collaborators."""
    from polis.candidates import CandidateScout
    from polis.config import PolisConfig
    from polis.oracle import SimulatedFeedProvider
    from polis.scheduler import CycleScheduler
    from polis.settlement import SimulatedSettlementExecutor

    rng = random.Random(seed)
    scheduler = CycleScheduler(
        PolisConfig(),
        SimulatedFeedProvider(rng=rng),
        SimulatedSettlementExecutor(),
        scout=CandidateScout(rng=rng),
    )

    async def _run_demo() -> None:
        for _ in range(cycles):
            summary = await scheduler.run_cycle()
            click.echo("Cycle #{cycle}: proposals={proposals_created} approved={approved} deployed={deployed}".format(
                **summary
            ))

    _run(_run_demo())

    state = scheduler.get_state()
    if json_out:
        click.echo(json.dumps(state, indent=2, default=str))
        return

    click.echo("")
    for result in scheduler.consensus_history():
        proposal = scheduler.registry.get_proposal(result.proposal_id)
        click.echo("  {:<8} {:>5.1f}  {}".format(result.status.value.upper(), result.avg_score, proposal.question))
    click.echo("Markets deployed: {}".format(len(state["deployed_markets"])))
    click.echo("Risk alerts:      {}".format(state["risk_health"]["alert_count"]))


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def config() -> None:
    """Configuration inspection."""
    pass


@config.command("show")
def config_show() -> None:
    """Print the configuration resolved from POLIS_* variables."""
    cfg = _load_config()
    click.echo(json.dumps(cfg.to_dict(), indent=2))


# ═══════════════════════════════════════════════════════════════════════════════
# MARKET commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def market() -> None:
    """Market ledger tools."""
    pass


@market.command("simulate")
@click.option("--liquidity", default=1_000_000, help="Seed liquidity in value units")
@click.option("--odds", default=50, help="Initial YES odds (percent)")
@click.option("--trades", default=20, help="Number of random trades")
@click.option("--settle", default=None, type=float, help="Settlement price (default: random around strike)")
@click.option("--seed", default=None, type=int, help="Random seed")
def market_simulate(
    liquidity: int,
    odds: int,
    trades: int,
    settle: Optional[float],
    seed: Optional[int],
) -> None:
    """Trade, resolve and redeem one market; report pool invariant drift."""
    from polis.amm import MarketLedger
    from polis.errors import PolisError
    from polis.models import Direction, Proposal, Side, new_proposal_id

    rng = random.Random(seed)
    ledger = MarketLedger()
    now = time.time()
    proposal = Proposal(
        proposal_id=new_proposal_id(),
        question="Will BTC be above $70,000 in 30 minutes?",
        asset="BTC/USD",
        strike=70000.0,
        direction=Direction.ABOVE,
        duration_minutes=30,
        created_at=now,
    )
    try:
        mkt = ledger.create_market(proposal, liquidity, yes_odds=odds, simulated=True, now=now)
    except PolisError as e:
        click.echo("Cannot create market: {}".format(e), err=True)
        sys.exit(1)

    k0 = mkt.k
    holders = ["alice", "bob", "carol"]
    failures = {}  # type: Dict[str, int]
    for i in range(trades):
        holder = rng.choice(holders)
        side = rng.choice([Side.YES, Side.NO])
        position = mkt.positions.get(holder)
        try:
            if position is not None and position.shares(side) > 0 and rng.random() < 0.3:
                ledger.sell(mkt.market_id, holder, side, max(1, position.shares(side) // 2), now=now + i)
            else:
                ledger.buy(mkt.market_id, holder, side, rng.randint(1, max(1, liquidity // 20)), now=now + i)
        except PolisError as e:
            failures[type(e).__name__] = failures.get(type(e).__name__, 0) + 1

    click.echo("Trades: {} ok, failures: {}".format(mkt.trade_count, failures or "none"))
    click.echo("Pools: yes={} no={} | YES price {:.4f}".format(mkt.yes_pool, mkt.no_pool, mkt.implied_yes_price))
    click.echo("k: {} -> {} (drift {:+d})".format(k0, mkt.k, mkt.k - k0))

    price = settle if settle is not None else proposal.strike * (1 + rng.uniform(-0.01, 0.01))
    outcome = ledger.resolve(mkt.market_id, price, now=mkt.resolution_ts)
    click.echo("Resolved {} at {:.2f}".format(outcome.value.upper(), price))

    for holder in holders:
        try:
            click.echo("  {} redeemed {}".format(holder, ledger.redeem(mkt.market_id, holder)))
        except PolisError as e:
            click.echo("  {}: {}".format(holder, e))
    click.echo("Remaining balance: {}".format(mkt.balance))


if __name__ == "__main__":
    cli()
