"""Tests for candidate discovery: round numbers, momentum, synthetic, rate limits."""

import random

from polis.candidates import (
    CandidateRateLimiter,
    CandidateScout,
    format_price,
    round_number_targets,
)
from polis.models import CandidateSource, Direction
from polis.oracle import PriceQuote

T0 = 1_700_000_000.0


def _snap(**prices):
    return {
        symbol.replace("_", "/"): PriceQuote.from_price(symbol.replace("_", "/"), price, T0)
        for symbol, price in prices.items()
    }


# ── Round numbers ─────────────────────────────────────────────────────────────

def test_round_number_targets_btc() -> None:
    """BTC at 70,400: 71,000 above (0.85%) and 70,000 below (0.57%)."""
    targets = round_number_targets("BTC/USD", 70400.0)
    assert len(targets) == 2
    assert targets[0]["value"] == 71000.0 and targets[0]["direction"] is Direction.ABOVE
    assert targets[1]["value"] == 70000.0 and targets[1]["direction"] is Direction.BELOW
    assert targets[1]["confidence"] == 64


def test_round_number_targets_skip_trivial() -> None:
    """A price sitting on a round number yields no trivial target."""
    targets = round_number_targets("BTC/USD", 70000.0)
    assert all(t["value"] != 70000.0 for t in targets)


def test_format_price() -> None:
    assert format_price(70500.0) == "70,500"
    assert format_price(2.5) == "2.50"
    assert format_price(0.099) == "0.0990"
    assert format_price(0.0098) == "0.009800"


# ── Scout ─────────────────────────────────────────────────────────────────────

def test_scout_needs_history() -> None:
    """No analysis until three samples are recorded for the symbol."""
    scout = CandidateScout(rng=random.Random(1), synthetic_every=0)
    assert scout.scan(_snap(BTC_USD=70400.0), T0) == []
    assert scout.scan(_snap(BTC_USD=70400.0), T0) == []
    found = scout.scan(_snap(BTC_USD=70400.0), T0)
    assert found
    assert all(c["source"] is CandidateSource.PRICE_ANALYSIS for c in found)
    assert all(30 <= c["duration_minutes"] < 120 for c in found)


def test_scout_dedupes_round_targets() -> None:
    scout = CandidateScout(rng=random.Random(1), synthetic_every=0)
    for _ in range(3):
        scout.scan(_snap(BTC_USD=70400.0), T0)
    assert scout.scan(_snap(BTC_USD=70400.0), T0) == []


def test_scout_momentum() -> None:
    """A jump well above the recent mean proposes a rise-above market."""
    scout = CandidateScout(rng=random.Random(1), synthetic_every=0)
    for _ in range(4):
        scout.scan(_snap(XRP_USD=1.4000), T0)
    found = scout.scan(_snap(XRP_USD=1.4300), T0)
    momentum = [c for c in found if c["source"] is CandidateSource.VOLATILITY_DETECTION]
    assert len(momentum) == 1
    assert momentum[0]["direction"] is Direction.ABOVE
    assert momentum[0]["duration_minutes"] == 60
    assert momentum[0]["confidence"] == 85


def test_scout_momentum_not_repeated_until_move_subsides() -> None:
    scout = CandidateScout(
        rate_limiter=CandidateRateLimiter(global_max=1000, per_asset_max=1000),
        rng=random.Random(1),
        synthetic_every=0,
    )
    prices = [1.40] * 4 + [1.43] * 5 + [1.46]
    momentum_per_scan = []
    for price in prices:
        found = scout.scan(_snap(XRP_USD=price), T0)
        momentum_per_scan.append(
            sum(1 for c in found if c["source"] is CandidateSource.VOLATILITY_DETECTION)
        )
    # Breakout on scan 5, held while it persists, released once the mean catches up.
    assert momentum_per_scan == [0, 0, 0, 0, 1, 0, 0, 0, 0, 1]


def test_scout_synthetic_every_other_scan() -> None:
    """Templates rotate on even scans; ETH comes up on the fourth."""
    scout = CandidateScout(rng=random.Random(1))
    batches = [scout.scan(_snap(ETH_USD=2030.0), T0) for _ in range(4)]
    synthetic = [
        (i + 1, c) for i, batch in enumerate(batches) for c in batch
        if c["source"] is CandidateSource.SYNTHETIC_GENERATION
    ]
    assert [scan for scan, _ in synthetic] == [4]
    synthetic = [c for _, c in synthetic]
    assert synthetic[0]["asset"] == "ETH/USD"
    assert synthetic[0]["strike"] == 2050
    assert synthetic[0]["duration_minutes"] == 120
    assert synthetic[0]["confidence"] == 65


# ── Rate limiter ──────────────────────────────────────────────────────────────

def test_rate_limiter_per_asset() -> None:
    limiter = CandidateRateLimiter(global_max=10, per_asset_max=2)
    for _ in range(2):
        assert limiter.can_enqueue("BTC/USD", T0)
        limiter.record_enqueue("BTC/USD", T0)
    assert not limiter.can_enqueue("BTC/USD", T0)
    assert limiter.can_enqueue("ETH/USD", T0)
    assert limiter.can_enqueue("BTC/USD", T0 + 61)


def test_rate_limiter_global() -> None:
    limiter = CandidateRateLimiter(global_max=3, per_asset_max=3)
    for asset in ("A", "B", "C"):
        limiter.record_enqueue(asset, T0)
    assert not limiter.can_enqueue("D", T0 + 1)


def test_scout_applies_rate_limit() -> None:
    scout = CandidateScout(
        rate_limiter=CandidateRateLimiter(global_max=1, per_asset_max=1),
        rng=random.Random(1),
        synthetic_every=0,
    )
    for _ in range(3):
        found = scout.scan(_snap(BTC_USD=70400.0), T0)
    assert len(found) == 1
