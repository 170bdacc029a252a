"""Tests for the cycle scheduler: degraded oracle, deploy fallback, resolution."""

import asyncio
from typing import Dict
from unittest.mock import AsyncMock

import pytest

from polis.candidates import CandidateScout
from polis.config import PolisConfig
from polis.errors import ExternalFailure, ValidationError
from polis.evaluators import Evaluator
from polis.models import Outcome, ProposalStatus
from polis.observability import EventType
from polis.oracle import OracleFeedProvider, PriceQuote
from polis.scheduler import CycleScheduler, build_scheduler
from polis.settlement import HttpSettlementExecutor, SimulatedSettlementExecutor

T0 = 1_700_000_000.0


class Clock:
    def __init__(self, t: float = T0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


class FixedFeed(OracleFeedProvider):
    """Returns fixed prices stamped with the test clock."""

    def __init__(self, prices: Dict[str, float], clock: Clock, delay: float = 0.0) -> None:
        self.prices = dict(prices)
        self.clock = clock
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def get_snapshot(self, symbols):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return {
                s: PriceQuote.from_price(s, p, self.clock())
                for s, p in self.prices.items() if s in symbols
            }
        finally:
            self.active -= 1


class FixedScore(Evaluator):
    def __init__(self, name: str, value: int) -> None:
        super().__init__(name)
        self.value = value

    def score(self, proposal, context):
        return self.value, "fixed"


def _scheduler(feed=None, settlement=None, score: int = 90, clock=None, **config_kwargs) -> CycleScheduler:
    clock = clock or Clock()
    config_kwargs.setdefault("symbols", ("BTC/USD", "ETH/USD"))
    return CycleScheduler(
        PolisConfig(**config_kwargs),
        feed or FixedFeed({"BTC/USD": 70000.0}, clock),
        settlement or SimulatedSettlementExecutor(),
        evaluators=[FixedScore("e{}".format(i), score) for i in range(4)],
        scout=CandidateScout(synthetic_every=0),
        clock=clock,
    )


def _propose(scheduler: CycleScheduler, **overrides):
    data = {
        "question": "Will BTC be above $70,000 in 30 minutes?",
        "asset": "BTC/USD",
        "strike": 70000.0,
        "direction": "above",
        "duration_minutes": 30,
        "confidence": 70,
        "current_price": 70000.0,
    }
    data.update(overrides)
    return scheduler.registry.create_proposal(data)


# ── Oracle degradation ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_oracle_failure_means_no_data_this_cycle() -> None:
    feed = AsyncMock(spec=OracleFeedProvider)
    feed.get_snapshot.side_effect = ExternalFailure("down")
    s = _scheduler(feed=feed)
    summary = await s.run_cycle()
    assert summary["quotes"] == 0
    assert summary["proposals_created"] == 0
    assert s.latest_quotes == {}


@pytest.mark.asyncio
async def test_oracle_timeout_means_no_data_this_cycle() -> None:
    clock = Clock()
    s = _scheduler(feed=FixedFeed({"BTC/USD": 70000.0}, clock, delay=1.0), clock=clock, oracle_timeout_sec=0.01)
    summary = await s.run_cycle()
    assert summary["quotes"] == 0


@pytest.mark.asyncio
async def test_cycles_never_overlap() -> None:
    clock = Clock()
    feed = FixedFeed({"BTC/USD": 70000.0}, clock, delay=0.01)
    s = _scheduler(feed=feed, clock=clock)
    results = await asyncio.gather(s.run_cycle(), s.run_cycle())
    assert sorted(r["cycle"] for r in results) == [1, 2]
    assert feed.max_active == 1


# ── Consensus and deployment ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approved_proposal_deploys_with_simulated_fallback() -> None:
    settlement = AsyncMock()
    settlement.submit_market_creation.side_effect = ExternalFailure("relay down")
    s = _scheduler(settlement=settlement)
    proposal = _propose(s)

    summary = await s.run_cycle()

    assert summary["approved"] == 1 and summary["deployed"] == 1
    assert s.registry.get_status(proposal.proposal_id) is ProposalStatus.APPROVED
    market = s.ledger.for_proposal(proposal.proposal_id)
    assert market.simulated
    assert market.market_ref.startswith("0x")
    assert s.risk_guard.markets_last_hour(T0) == 1
    deployed = s.bus.recent(EventType.MARKET_DEPLOYED)
    assert deployed[0]["data"]["simulated"] is True
    assert len(s.bus.recent(EventType.LIQUIDITY_ADDED)) == 1


@pytest.mark.asyncio
async def test_unexpected_settlement_error_falls_back_to_simulated() -> None:
    settlement = AsyncMock()
    settlement.submit_market_creation.side_effect = ValueError("bad relay payload")
    s = _scheduler(settlement=settlement)
    proposal = _propose(s)

    summary = await s.run_cycle()

    assert summary["deployed"] == 1 and summary["deploy_failed"] == 0
    market = s.ledger.for_proposal(proposal.proposal_id)
    assert market is not None and market.simulated
    assert len(s.bus.recent(EventType.SYSTEM_ERROR)) == 1


@pytest.mark.asyncio
async def test_failed_deploy_does_not_skip_rest_of_cycle() -> None:
    """One deployment blowing up leaves later deployments and resolution intact."""
    clock = Clock()
    s = _scheduler(clock=clock)
    first = _propose(s)
    await s.run_cycle()
    market = s.ledger.for_proposal(first.proposal_id)

    bad = _propose(s, question="Will BTC be above $71,000 in 30 minutes?", strike=71000.0)
    good = _propose(s, question="Will BTC be below $69,000 in 30 minutes?", strike=69000.0, direction="below")
    seed = s.liquidity.seed

    def flaky_seed(proposal, *args, **kwargs):
        if proposal.proposal_id == bad.proposal_id:
            raise RuntimeError("ledger unavailable")
        return seed(proposal, *args, **kwargs)

    s.liquidity.seed = flaky_seed
    clock.t = market.resolution_ts
    summary = await s.run_cycle()

    assert summary["deploy_failed"] == 1 and summary["deployed"] == 1
    assert s.ledger.for_proposal(good.proposal_id) is not None
    assert summary["resolved"] == 1
    assert market.outcome is Outcome.YES


@pytest.mark.asyncio
async def test_nan_price_candidate_still_deploys() -> None:
    s = _scheduler()
    proposal = _propose(s, current_price=float("nan"))
    summary = await s.run_cycle()
    assert summary["deployed"] == 1
    market = s.ledger.for_proposal(proposal.proposal_id)
    assert market.implied_yes_price == pytest.approx(0.5)


def test_unreachable_quorum_rejected() -> None:
    with pytest.raises(ValidationError):
        _scheduler(quorum=5)


@pytest.mark.asyncio
async def test_rejected_proposal_not_deployed() -> None:
    s = _scheduler(score=30)
    proposal = _propose(s)
    summary = await s.run_cycle()
    assert summary["decisions"] == 1 and summary["approved"] == 0
    assert s.registry.get_status(proposal.proposal_id) is ProposalStatus.REJECTED
    assert len(s.ledger) == 0


@pytest.mark.asyncio
async def test_circuit_breaker_holds_deployment() -> None:
    """Even a unanimous approval is not deployed while the breaker is tripped."""
    s = _scheduler(score=95)
    s.trip_circuit_breaker("manual halt")
    proposal = _propose(s)
    summary = await s.run_cycle()
    assert summary["approved"] == 1
    assert summary["held"] == 1 and summary["deployed"] == 0
    assert s.ledger.for_proposal(proposal.proposal_id) is None
    assert s.risk_guard.markets_last_hour(T0) == 0


@pytest.mark.asyncio
async def test_unknown_asset_candidate_is_skipped() -> None:
    s = _scheduler()
    created = s._create_proposals([{
        "question": "Will DOGE moon?", "asset": "DOGE/USD", "strike": 1.0,
        "direction": "above", "duration_minutes": 30,
    }])
    assert created == []


# ── Resolution ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_due_market_resolved_through_executor() -> None:
    clock = Clock()
    settlement = AsyncMock()
    settlement.submit_market_creation.return_value = "0xabc"
    settlement.submit_resolution.return_value = Outcome.NO
    s = _scheduler(settlement=settlement, clock=clock)
    proposal = _propose(s)
    await s.run_cycle()
    market = s.ledger.for_proposal(proposal.proposal_id)
    assert not market.simulated

    clock.t = market.resolution_ts
    summary = await s.run_cycle()

    assert summary["resolved"] == 1
    assert market.outcome is Outcome.NO
    settlement.submit_resolution.assert_awaited_once_with("0xabc", 70000.0)


@pytest.mark.asyncio
async def test_executor_failure_resolves_locally() -> None:
    clock = Clock()
    settlement = AsyncMock()
    settlement.submit_market_creation.return_value = "0xabc"
    settlement.submit_resolution.side_effect = ExternalFailure("relay down")
    s = _scheduler(settlement=settlement, clock=clock)
    proposal = _propose(s)
    await s.run_cycle()
    market = s.ledger.for_proposal(proposal.proposal_id)

    clock.t = market.resolution_ts + 5
    await s.run_cycle()
    assert market.outcome is Outcome.YES


@pytest.mark.asyncio
async def test_missing_price_waits_then_invalid() -> None:
    """No settlement price: retried each cycle, INVALID after the max wait."""
    clock = Clock()
    s = _scheduler(clock=clock)
    proposal = _propose(
        s, asset="ETH/USD", strike=2000.0, current_price=2000.0,
        question="Will ETH be above $2,000 in 30 minutes?",
    )
    await s.run_cycle()
    market = s.ledger.for_proposal(proposal.proposal_id)

    clock.t = market.resolution_ts + 10
    await s.run_cycle()
    assert market.outcome is Outcome.UNRESOLVED

    clock.t = market.resolution_ts + 3600
    await s.run_cycle()
    assert market.outcome is Outcome.INVALID
    assert s.bus.recent(EventType.MARKET_RESOLVED)[-1]["data"]["outcome"] == "invalid"


# ── Loop control and queries ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stop_ends_loop() -> None:
    s = _scheduler(interval_sec=60.0)
    s.bus.subscribe(lambda event: s.stop(), EventType.CYCLE_COMPLETED)
    await asyncio.wait_for(s.start(), timeout=5)
    assert s.cycle_count == 1
    assert not s.running


@pytest.mark.asyncio
async def test_start_max_cycles() -> None:
    s = _scheduler(interval_sec=0.01)
    await asyncio.wait_for(s.start(max_cycles=3), timeout=5)
    assert s.cycle_count == 3


@pytest.mark.asyncio
async def test_state_and_circuit_breaker_controls() -> None:
    s = _scheduler()
    _propose(s)
    await s.run_cycle()
    s.trip_circuit_breaker("manual")
    state = s.get_state()
    assert state["cycle_count"] == 1
    assert len(state["deployed_markets"]) == 1
    assert state["risk_health"]["circuit_broken"] is True
    assert len(s.consensus_history()) == 1
    assert s.pending_proposals() == []
    s.reset_circuit_breaker()
    assert not s.risk_health()["circuit_broken"]


def test_build_scheduler_picks_collaborators() -> None:
    simulated = build_scheduler(PolisConfig())
    assert isinstance(simulated.settlement, SimulatedSettlementExecutor)
    live = build_scheduler(PolisConfig(settlement_url="http://relay.local"))
    assert isinstance(live.settlement, HttpSettlementExecutor)
