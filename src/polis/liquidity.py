"""Liquidity seeding for newly approved markets.

Initial odds are calibrated from the distance between the current price
and the strike, then bounded to [INITIAL_ODDS_MIN, INITIAL_ODDS_MAX] so no
market opens near-certain on either side.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Dict, List, Optional

from polis.amm import Market, MarketLedger
from polis.constants import (
    DEFAULT_LIQUIDITY_UNITS,
    INITIAL_ODDS_MAX,
    INITIAL_ODDS_MIN,
    INITIAL_ODDS_SENSITIVITY,
)
from polis.models import Direction, Proposal
from polis.observability import EventBus, EventType

logger = logging.getLogger(__name__)


def compute_initial_odds(
    current_price: Optional[float],
    strike: float,
    direction: Direction,
) -> int:
    """YES odds in percent. 50 when no usable price is known."""
    if not current_price or not math.isfinite(current_price) or current_price <= 0:
        return 50

    distance = (current_price - strike) / current_price
    shift = int(round(abs(distance) * INITIAL_ODDS_SENSITIVITY))

    if direction is Direction.ABOVE:
        odds = 50 + shift if current_price > strike else 50 - shift
    else:
        odds = 50 + shift if current_price < strike else 50 - shift

    return max(INITIAL_ODDS_MIN, min(INITIAL_ODDS_MAX, odds))


class LiquidityProvider:
    """Seeds markets into the ledger and tracks what it has provided."""

    def __init__(
        self,
        ledger: MarketLedger,
        bus: Optional[EventBus] = None,
        liquidity_units: int = DEFAULT_LIQUIDITY_UNITS,
    ) -> None:
        self.ledger = ledger
        self._bus = bus
        self.liquidity_units = liquidity_units
        self.total_provided = 0
        self._positions = []  # type: List[Dict[str, Any]]

    def seed(
        self,
        proposal: Proposal,
        current_price: Optional[float],
        market_ref: Optional[str] = None,
        simulated: bool = False,
        now: Optional[float] = None,
    ) -> Market:
        odds = compute_initial_odds(current_price, proposal.strike, proposal.direction)
        market = self.ledger.create_market(
            proposal,
            self.liquidity_units,
            yes_odds=odds,
            market_ref=market_ref,
            simulated=simulated,
            now=now,
        )

        position = {
            "market_id": market.market_id,
            "market_ref": market_ref,
            "asset": proposal.asset,
            "amount": self.liquidity_units,
            "initial_yes_odds": odds,
            "initial_no_odds": 100 - odds,
            "timestamp": now if now is not None else time.time(),
        }
        self._positions.append(position)
        self.total_provided += self.liquidity_units

        logger.info(
            "Liquidity added: %s amount=%d yes/no=%d/%d",
            market.market_id, self.liquidity_units, odds, 100 - odds,
        )
        if self._bus is not None:
            payload = dict(position)
            payload["question"] = proposal.question
            self._bus.publish(EventType.LIQUIDITY_ADDED, payload)
        return market

    def active_positions(self, now: Optional[float] = None) -> Dict[str, int]:
        """Active seeded markets per asset."""
        counts = {}  # type: Dict[str, int]
        for market in self.ledger.active_markets(now):
            counts[market.asset] = counts.get(market.asset, 0) + 1
        return counts

    @property
    def positions(self) -> List[Dict[str, Any]]:
        return list(self._positions)
