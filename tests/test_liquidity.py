"""Tests for initial odds calibration and liquidity seeding."""

import pytest

from polis.amm import MarketLedger
from polis.liquidity import LiquidityProvider, compute_initial_odds
from polis.models import Direction, Proposal
from polis.observability import EventBus, EventType

T0 = 1_700_000_000.0


def test_odds_default_without_price() -> None:
    assert compute_initial_odds(None, 100.0, Direction.ABOVE) == 50


@pytest.mark.parametrize("price", [float("nan"), float("inf"), -1.0])
def test_odds_default_for_unusable_price(price) -> None:
    assert compute_initial_odds(price, 100.0, Direction.ABOVE) == 50


def test_odds_above_in_the_money() -> None:
    """Price 2% over strike: 50 + 10 = 60."""
    assert compute_initial_odds(100.0, 98.0, Direction.ABOVE) == 60


def test_odds_above_out_of_the_money() -> None:
    assert compute_initial_odds(100.0, 102.0, Direction.ABOVE) == 40


def test_odds_below_mirrors_above() -> None:
    assert compute_initial_odds(100.0, 102.0, Direction.BELOW) == 60
    assert compute_initial_odds(100.0, 98.0, Direction.BELOW) == 40


@pytest.mark.parametrize("strike,direction", [
    (50.0, Direction.ABOVE),
    (200.0, Direction.ABOVE),
    (50.0, Direction.BELOW),
    (200.0, Direction.BELOW),
])
def test_odds_bounded(strike, direction) -> None:
    assert 20 <= compute_initial_odds(100.0, strike, direction) <= 80


def test_seed_creates_market_and_publishes() -> None:
    bus = EventBus()
    ledger = MarketLedger(bus)
    provider = LiquidityProvider(ledger, bus, liquidity_units=1_000_000)
    proposal = Proposal(
        proposal_id="prop_liq",
        question="Will ETH be above $2,000 in 60 minutes?",
        asset="ETH/USD",
        strike=2000.0,
        direction=Direction.ABOVE,
        duration_minutes=60,
        created_at=T0,
    )
    market = provider.seed(proposal, 2040.0, market_ref="0xabc", now=T0)

    assert market.implied_yes_price == pytest.approx(0.60)
    assert provider.total_provided == 1_000_000
    assert provider.active_positions(T0) == {"ETH/USD": 1}
    assert provider.active_positions(market.expiry_ts) == {}

    events = bus.recent(EventType.LIQUIDITY_ADDED)
    assert events[0]["data"]["initial_yes_odds"] == 60
    assert events[0]["data"]["initial_no_odds"] == 40
