"""Candidate discovery — turn price snapshots into market proposals.

Three sources per scan:
- Round-number thresholds near the current price (price_analysis)
- Momentum: price departs from its recent mean (volatility_detection)
- Rotating synthetic templates every SYNTHETIC_EVERY_N_CYCLES scans

Every candidate is deduplicated by key and passes a global + per-asset
rate limit before it is handed to the registry.
"""

from __future__ import annotations

import logging
import math
import random
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from polis.constants import (
    CANDIDATES_PER_MIN_MAX,
    MOMENTUM_MIN_PCT,
    MOMENTUM_SAMPLE,
    PER_ASSET_CANDIDATES_PER_MIN_MAX,
    ROUND_NUMBER_MAX_PCT,
    ROUND_NUMBER_MIN_PCT,
    SCOUT_HISTORY_MAX,
    SYNTHETIC_EVERY_N_CYCLES,
)
from polis.models import CandidateSource, Direction
from polis.oracle import PriceHistory, PriceQuote

logger = logging.getLogger(__name__)

# Round-number step sizes per asset; fall back to price-scaled steps.
ROUND_STEPS = {
    "BTC": (1000.0, 5000.0),
    "ETH": (50.0, 100.0),
    "SOL": (5.0, 10.0),
}

MIN_HISTORY_FOR_ANALYSIS = 3
MAX_ROUND_TARGETS = 2


def format_price(value: float) -> str:
    if value >= 1000:
        return "{:,.0f}".format(value)
    if value >= 1:
        return "{:.2f}".format(value)
    if value >= 0.01:
        return "{:.4f}".format(value)
    return "{:.6f}".format(value)


def asset_name(symbol: str) -> str:
    return symbol.split("/")[0]


def round_steps(symbol: str, price: float) -> Tuple[float, float]:
    name = asset_name(symbol)
    if name in ROUND_STEPS:
        return ROUND_STEPS[name]
    if price < 0.1:
        return (0.001, 0.005)
    if price < 1:
        return (0.05, 0.1)
    return (0.5, 1.0)


def round_number_targets(symbol: str, price: float) -> List[Dict[str, Any]]:
    """Round numbers within (ROUND_NUMBER_MIN_PCT, ROUND_NUMBER_MAX_PCT) of price.

    Closer targets get higher confidence. At most MAX_ROUND_TARGETS returned.
    """
    targets = []  # type: List[Dict[str, Any]]
    for step in round_steps(symbol, price):
        above = math.ceil(price / step) * step
        below = math.floor(price / step) * step
        d_above = (above - price) / price
        d_below = (price - below) / price
        if ROUND_NUMBER_MIN_PCT < d_above < ROUND_NUMBER_MAX_PCT:
            targets.append({
                "value": above,
                "direction": Direction.ABOVE,
                "confidence": int(round(70 - d_above * 1000)),
            })
        if ROUND_NUMBER_MIN_PCT < d_below < ROUND_NUMBER_MAX_PCT:
            targets.append({
                "value": below,
                "direction": Direction.BELOW,
                "confidence": int(round(70 - d_below * 1000)),
            })
    return targets[:MAX_ROUND_TARGETS]


class SyntheticTemplate:
    def __init__(
        self,
        symbol: str,
        question: Callable[[float], str],
        strike: Callable[[float], float],
        duration_minutes: int,
    ) -> None:
        self.symbol = symbol
        self.question = question
        self.strike = strike
        self.duration_minutes = duration_minutes


SYNTHETIC_TEMPLATES = (
    SyntheticTemplate(
        "BTC/USD",
        lambda p: "Will BTC hold above ${}?".format(format_price(math.floor(p / 1000) * 1000)),
        lambda p: math.floor(p / 1000) * 1000,
        60,
    ),
    SyntheticTemplate(
        "ETH/USD",
        lambda p: "Will ETH break ${} in 2h?".format(format_price(math.ceil(p / 50) * 50)),
        lambda p: math.ceil(p / 50) * 50,
        120,
    ),
    SyntheticTemplate(
        "FLR/USD",
        lambda p: "Will FLR gain 5% from ${:.4f} in 1h?".format(p),
        lambda p: p * 1.05,
        60,
    ),
)


class CandidateRateLimiter:
    """Global and per-asset candidate caps over a trailing minute."""

    def __init__(
        self,
        global_max: int = CANDIDATES_PER_MIN_MAX,
        per_asset_max: int = PER_ASSET_CANDIDATES_PER_MIN_MAX,
    ) -> None:
        self.global_max = global_max
        self.per_asset_max = per_asset_max
        self._global_timestamps = []  # type: List[float]
        self._asset_timestamps = defaultdict(list)  # type: Dict[str, List[float]]

    def _prune(self, timestamps: List[float], now: float) -> List[float]:
        cutoff = now - 60.0
        return [t for t in timestamps if t > cutoff]

    def can_enqueue(self, asset: str, now: Optional[float] = None) -> bool:
        ts = now if now is not None else time.time()
        self._global_timestamps = self._prune(self._global_timestamps, ts)
        self._asset_timestamps[asset] = self._prune(self._asset_timestamps[asset], ts)

        if len(self._global_timestamps) >= self.global_max:
            return False
        if len(self._asset_timestamps[asset]) >= self.per_asset_max:
            return False
        return True

    def record_enqueue(self, asset: str, now: Optional[float] = None) -> None:
        ts = now if now is not None else time.time()
        self._global_timestamps.append(ts)
        self._asset_timestamps[asset].append(ts)


class CandidateScout:
    """Watches price snapshots and proposes markets worth creating."""

    def __init__(
        self,
        rate_limiter: Optional[CandidateRateLimiter] = None,
        rng: Optional[random.Random] = None,
        synthetic_every: int = SYNTHETIC_EVERY_N_CYCLES,
    ) -> None:
        self.history = PriceHistory(SCOUT_HISTORY_MAX)
        self.rate_limiter = rate_limiter or CandidateRateLimiter()
        self.synthetic_every = synthetic_every
        self._rng = rng or random.Random()
        self._proposed = set()  # type: Set[str]
        self.scan_count = 0

    def scan(self, snapshot: Dict[str, PriceQuote], now: Optional[float] = None) -> List[Dict[str, Any]]:
        """Record the snapshot and return new candidate proposal data."""
        ts = now if now is not None else time.time()
        self.scan_count += 1

        found = []  # type: List[Dict[str, Any]]
        for symbol, quote in snapshot.items():
            self.history.record(quote)
            found.extend(self._analyze(symbol, quote.price))

        if self.synthetic_every > 0 and self.scan_count % self.synthetic_every == 0:
            found.extend(self._synthetic(snapshot))

        accepted = []  # type: List[Dict[str, Any]]
        for candidate in found:
            if not self.rate_limiter.can_enqueue(candidate["asset"], ts):
                logger.debug("Candidate rate-limited: %s", candidate["question"])
                continue
            self.rate_limiter.record_enqueue(candidate["asset"], ts)
            candidate["created_at"] = ts
            accepted.append(candidate)

        if accepted:
            logger.info("Scan #%d: %d candidates", self.scan_count, len(accepted))
        return accepted

    def _claim(self, key: str) -> bool:
        if key in self._proposed:
            return False
        self._proposed.add(key)
        return True

    def _analyze(self, symbol: str, price: float) -> List[Dict[str, Any]]:
        found = []  # type: List[Dict[str, Any]]
        if len(self.history.recent(symbol, MIN_HISTORY_FOR_ANALYSIS)) < MIN_HISTORY_FOR_ANALYSIS:
            return found
        name = asset_name(symbol)

        for target in round_number_targets(symbol, price):
            direction = target["direction"]
            if not self._claim("{}_{}_{}".format(name, direction.value, target["value"])):
                continue
            duration = 30 + self._rng.randrange(90)
            found.append({
                "question": "Will {} be {} ${} in {} minutes?".format(
                    name, direction.value, format_price(target["value"]), duration,
                ),
                "resolution_criteria": "Resolves on the {} oracle feed at expiry".format(symbol),
                "asset": symbol,
                "strike": target["value"],
                "direction": direction,
                "duration_minutes": duration,
                "source": CandidateSource.PRICE_ANALYSIS,
                "current_price": price,
                "confidence": target["confidence"],
            })

        recent = self.history.recent(symbol, MOMENTUM_SAMPLE)
        if len(recent) >= MOMENTUM_SAMPLE:
            avg = sum(recent) / len(recent)
            move = abs(price - avg) / avg
            rising = price > avg
            if move <= MOMENTUM_MIN_PCT:
                # Move subsided; the next breakout may be proposed again.
                self._proposed.discard("{}_momentum_up".format(name))
                self._proposed.discard("{}_momentum_down".format(name))
            elif self._claim("{}_momentum_{}".format(name, "up" if rising else "down")):
                target = price * 1.01 if rising else price * 0.99
                found.append({
                    "question": "Will {} {} ${} in the next hour?".format(
                        name, "rise above" if rising else "fall below", format_price(target),
                    ),
                    "resolution_criteria": "Resolves on the {} oracle feed".format(symbol),
                    "asset": symbol,
                    "strike": target,
                    "direction": Direction.ABOVE if rising else Direction.BELOW,
                    "duration_minutes": 60,
                    "source": CandidateSource.VOLATILITY_DETECTION,
                    "current_price": price,
                    "confidence": min(85, 50 + int(round(move * 5000))),
                })

        return found

    def _synthetic(self, snapshot: Dict[str, PriceQuote]) -> List[Dict[str, Any]]:
        template = SYNTHETIC_TEMPLATES[self.scan_count % len(SYNTHETIC_TEMPLATES)]
        quote = snapshot.get(template.symbol)
        if quote is None:
            return []
        price = quote.price
        return [{
            "question": template.question(price),
            "resolution_criteria": "Resolves via the {} oracle feed".format(template.symbol),
            "asset": template.symbol,
            "strike": template.strike(price),
            "direction": Direction.ABOVE,
            "duration_minutes": template.duration_minutes,
            "source": CandidateSource.SYNTHETIC_GENERATION,
            "current_price": price,
            "confidence": 65,
        }]
