"""Market Ledger — constant-product AMM for binary YES/NO markets.

Pools hold integer value units. Buying YES adds value to the NO pool and
removes YES shares so that yes_pool * no_pool does not fall below k; pool
rounding always favors the pool, so k only grows by rounding dust.

Lifecycle: UNRESOLVED -> {YES, NO, INVALID}, terminal.

Every mutating operation holds the market's lock, computes the new state
on locals and assigns it only after every check has passed.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from polis.constants import DEFAULT_FEE_BPS, RESOLUTION_GRACE_SEC
from polis.errors import (
    InsufficientPool,
    MarketInactive,
    NothingToRedeem,
    SlippageExceeded,
    StateError,
    UnknownMarket,
    ValidationError,
)
from polis.models import Direction, Outcome, Proposal, Side
from polis.observability import EventBus, EventType
from polis.settlement import outcome_for

logger = logging.getLogger(__name__)

BPS = 10000


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def _fee(amount: int, fee_bps: int) -> int:
    return _ceil_div(amount * fee_bps, BPS)


def _side(side: Any) -> Side:
    try:
        return Side(side)
    except ValueError:
        raise ValidationError("side must be 'yes' or 'no', got {!r}".format(side))


class Position:
    __slots__ = ("yes_shares", "no_shares")

    def __init__(self, yes_shares: int = 0, no_shares: int = 0) -> None:
        self.yes_shares = yes_shares
        self.no_shares = no_shares

    def shares(self, side: Side) -> int:
        return self.yes_shares if side is Side.YES else self.no_shares

    @property
    def total(self) -> int:
        return self.yes_shares + self.no_shares

    def to_dict(self) -> Dict[str, int]:
        return {"yes_shares": self.yes_shares, "no_shares": self.no_shares}


class TradeResult:
    """Outcome of one buy or sell."""

    def __init__(
        self,
        market_id: str,
        holder: str,
        side: Side,
        action: str,
        amount: int,
        shares: int,
        fee: int,
        yes_price: float,
        timestamp: Optional[float] = None,
    ) -> None:
        self.market_id = market_id
        self.holder = holder
        self.side = side
        self.action = action
        self.amount = amount
        self.shares = shares
        self.fee = fee
        self.yes_price = yes_price
        self.timestamp = timestamp if timestamp is not None else time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.market_id,
            "holder": self.holder,
            "side": self.side.value,
            "action": self.action,
            "amount": self.amount,
            "shares": self.shares,
            "fee": self.fee,
            "yes_price": round(self.yes_price, 4),
            "timestamp": self.timestamp,
        }


class Market:
    """One live binary market created from an approved proposal."""

    def __init__(
        self,
        market_id: str,
        proposal: Proposal,
        yes_pool: int,
        no_pool: int,
        fee_bps: int = DEFAULT_FEE_BPS,
        created_at: Optional[float] = None,
        market_ref: Optional[str] = None,
        simulated: bool = False,
    ) -> None:
        if yes_pool <= 0 or no_pool <= 0:
            raise ValidationError("both pools must be positive, got yes={} no={}".format(yes_pool, no_pool))
        if not 0 <= fee_bps < BPS:
            raise ValidationError("fee_bps must be in [0, {}), got {}".format(BPS, fee_bps))

        self.market_id = market_id
        self.proposal = proposal
        self.yes_pool = int(yes_pool)
        self.no_pool = int(no_pool)
        self.k = self.yes_pool * self.no_pool
        self.fee_bps = fee_bps
        self.balance = self.yes_pool + self.no_pool
        self.seed_liquidity = self.balance

        self.created_at = created_at if created_at is not None else time.time()
        self.expiry_ts = self.created_at + proposal.duration_minutes * 60
        self.resolution_ts = self.expiry_ts + RESOLUTION_GRACE_SEC

        self.outcome = Outcome.UNRESOLVED
        self.settlement_price = None  # type: Optional[float]
        self.resolved_at = None  # type: Optional[float]
        self.invalid_reason = None  # type: Optional[str]
        self.market_ref = market_ref
        self.simulated = simulated

        self.positions = {}  # type: Dict[str, Position]
        self.trade_count = 0
        self.volume = 0
        self.fees_collected = 0
        self.lock = threading.Lock()

    # Copied from the proposal for convenience.
    @property
    def asset(self) -> str:
        return self.proposal.asset

    @property
    def strike(self) -> float:
        return self.proposal.strike

    @property
    def direction(self) -> Direction:
        return self.proposal.direction

    @property
    def implied_yes_price(self) -> float:
        return self.no_pool / float(self.yes_pool + self.no_pool)

    @property
    def implied_no_price(self) -> float:
        return 1.0 - self.implied_yes_price

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not Outcome.UNRESOLVED

    def is_active(self, now: Optional[float] = None) -> bool:
        ts = now if now is not None else time.time()
        return not self.is_resolved and ts < self.expiry_ts

    def _check_tradeable(self, now: Optional[float]) -> None:
        if self.is_resolved:
            raise MarketInactive("market {} is resolved ({})".format(self.market_id, self.outcome.value))
        if not self.is_active(now):
            raise MarketInactive("market {} expired".format(self.market_id))

    # ── Trading ───────────────────────────────────────────────────────────────

    def buy(
        self,
        holder: str,
        side: Side,
        amount: int,
        min_shares: int = 0,
        now: Optional[float] = None,
    ) -> TradeResult:
        """Spend `amount` value units on `side` shares; the fee stays in the market."""
        side = _side(side)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer, got {!r}".format(amount))

        with self.lock:
            self._check_tradeable(now)

            fee = _fee(amount, self.fee_bps)
            delta = amount - fee
            if delta <= 0:
                raise InsufficientPool("amount {} does not cover the fee".format(amount))

            if side is Side.YES:
                same, other = self.yes_pool, self.no_pool
            else:
                same, other = self.no_pool, self.yes_pool

            new_other = other + delta
            new_same = _ceil_div(self.k, new_other)
            shares = same - new_same
            if new_same <= 0 or shares <= 0:
                raise InsufficientPool("trade of {} yields no {} shares".format(amount, side.value))
            if shares < min_shares:
                raise SlippageExceeded(shares, min_shares)

            position = self.positions.get(holder) or Position()
            if side is Side.YES:
                self.yes_pool, self.no_pool = new_same, new_other
                position.yes_shares += shares
            else:
                self.no_pool, self.yes_pool = new_same, new_other
                position.no_shares += shares
            self.positions[holder] = position
            self.k = self.yes_pool * self.no_pool
            self.balance += amount
            self.trade_count += 1
            self.volume += amount
            self.fees_collected += fee

            return TradeResult(self.market_id, holder, side, "buy", amount, shares, fee, self.implied_yes_price, now)

    def sell(
        self,
        holder: str,
        side: Side,
        shares: int,
        min_payout: int = 0,
        now: Optional[float] = None,
    ) -> TradeResult:
        """Return `shares` to the pool for value; payout is net of fee and capped at balance."""
        side = _side(side)
        if isinstance(shares, bool) or not isinstance(shares, int) or shares <= 0:
            raise ValidationError("shares must be a positive integer, got {!r}".format(shares))

        with self.lock:
            self._check_tradeable(now)

            position = self.positions.get(holder)
            owned = position.shares(side) if position is not None else 0
            if owned < shares:
                raise ValidationError("{} owns {} {} shares, cannot sell {}".format(holder, owned, side.value, shares))

            if side is Side.YES:
                same, other = self.yes_pool, self.no_pool
            else:
                same, other = self.no_pool, self.yes_pool

            new_same = same + shares
            new_other = _ceil_div(self.k, new_same)
            gross = other - new_other
            fee = _fee(gross, self.fee_bps) if gross > 0 else 0
            payout = min(gross - fee, self.balance)
            if new_other <= 0 or payout <= 0:
                raise InsufficientPool("selling {} {} shares yields nothing".format(shares, side.value))
            if payout < min_payout:
                raise SlippageExceeded(payout, min_payout)

            if side is Side.YES:
                self.yes_pool, self.no_pool = new_same, new_other
                position.yes_shares -= shares
            else:
                self.no_pool, self.yes_pool = new_same, new_other
                position.no_shares -= shares
            if position.total == 0:
                del self.positions[holder]
            self.k = self.yes_pool * self.no_pool
            self.balance -= payout
            self.trade_count += 1
            self.volume += gross
            self.fees_collected += fee

            return TradeResult(self.market_id, holder, side, "sell", payout, shares, fee, self.implied_yes_price, now)

    # ── Resolution ────────────────────────────────────────────────────────────

    def resolve(
        self,
        settlement_price: Optional[float],
        now: Optional[float] = None,
        outcome: Optional[Outcome] = None,
    ) -> Outcome:
        """Settle against the oracle price, or record an outcome decided elsewhere.

        A missing or non-positive price resolves INVALID.
        """
        ts = now if now is not None else time.time()
        with self.lock:
            if self.is_resolved:
                raise StateError("market {} already resolved ({})".format(self.market_id, self.outcome.value))
            if ts < self.resolution_ts:
                raise StateError("market {} not resolvable until {:.0f}".format(self.market_id, self.resolution_ts))

            if outcome is None or outcome is Outcome.UNRESOLVED:
                outcome = outcome_for(settlement_price, self.strike, self.direction)

            self.outcome = outcome
            self.settlement_price = settlement_price
            self.resolved_at = ts
            return outcome

    def invalidate(self, reason: str, now: Optional[float] = None) -> None:
        with self.lock:
            if self.is_resolved:
                raise StateError("market {} already resolved ({})".format(self.market_id, self.outcome.value))
            self.outcome = Outcome.INVALID
            self.invalid_reason = reason
            self.resolved_at = now if now is not None else time.time()

    def redeem(self, holder: str) -> int:
        """Pay out a holder's position after resolution and clear it.

        YES / NO pay winning shares 1:1. INVALID refunds pro rata:
        holder_total * balance // outstanding_total.
        """
        with self.lock:
            if not self.is_resolved:
                raise StateError("market {} is not resolved".format(self.market_id))

            position = self.positions.get(holder)
            if position is None:
                raise NothingToRedeem("{} holds nothing in {}".format(holder, self.market_id))

            if self.outcome is Outcome.YES:
                payout = position.yes_shares
            elif self.outcome is Outcome.NO:
                payout = position.no_shares
            else:
                outstanding = sum(p.total for p in self.positions.values())
                payout = position.total * self.balance // outstanding if outstanding else 0

            payout = min(payout, self.balance)
            if payout <= 0:
                raise NothingToRedeem("{} has no winning shares in {}".format(holder, self.market_id))

            del self.positions[holder]
            self.balance -= payout
            return payout

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.market_id,
            "proposal_id": self.proposal.proposal_id,
            "question": self.proposal.question,
            "asset": self.asset,
            "strike": self.strike,
            "direction": self.direction.value,
            "yes_pool": self.yes_pool,
            "no_pool": self.no_pool,
            "k": self.k,
            "yes_price": round(self.implied_yes_price, 4),
            "balance": self.balance,
            "fee_bps": self.fee_bps,
            "expiry_ts": self.expiry_ts,
            "resolution_ts": self.resolution_ts,
            "outcome": self.outcome.value,
            "settlement_price": self.settlement_price,
            "market_ref": self.market_ref,
            "simulated": self.simulated,
            "holders": len(self.positions),
            "trade_count": self.trade_count,
        }


class MarketLedger:
    """Owns every market; publishes trade and resolution events."""

    def __init__(self, bus: Optional[EventBus] = None, fee_bps: int = DEFAULT_FEE_BPS) -> None:
        self._bus = bus
        self.fee_bps = fee_bps
        self._markets = {}  # type: Dict[str, Market]
        self._by_proposal = {}  # type: Dict[str, str]
        self._lock = threading.Lock()

    def create_market(
        self,
        proposal: Proposal,
        liquidity: int,
        yes_odds: int = 50,
        market_ref: Optional[str] = None,
        simulated: bool = False,
        now: Optional[float] = None,
    ) -> Market:
        """Seed a market so that the implied YES price equals yes_odds / 100."""
        if isinstance(liquidity, bool) or not isinstance(liquidity, int) or liquidity <= 0:
            raise ValidationError("liquidity must be a positive integer, got {!r}".format(liquidity))
        if not 0 < yes_odds < 100:
            raise ValidationError("yes_odds must be in (0, 100), got {}".format(yes_odds))

        no_pool = liquidity * yes_odds // 100
        yes_pool = liquidity - no_pool
        if no_pool <= 0 or yes_pool <= 0:
            raise ValidationError("liquidity {} too small for odds {}".format(liquidity, yes_odds))

        with self._lock:
            if proposal.proposal_id in self._by_proposal:
                raise ValidationError("proposal {} already has a market".format(proposal.proposal_id))
            market_id = "mkt_{}".format(uuid.uuid4().hex[:16])
            market = Market(
                market_id,
                proposal,
                yes_pool,
                no_pool,
                fee_bps=self.fee_bps,
                created_at=now,
                market_ref=market_ref,
                simulated=simulated,
            )
            self._markets[market_id] = market
            self._by_proposal[proposal.proposal_id] = market_id

        logger.info(
            "Market created: %s asset=%s strike=%s yes_odds=%d%% liquidity=%d%s",
            market_id, proposal.asset, proposal.strike, yes_odds, liquidity,
            " (simulated)" if simulated else "",
        )
        return market

    def get(self, market_id: str) -> Market:
        market = self._markets.get(market_id)
        if market is None:
            raise UnknownMarket(market_id)
        return market

    def for_proposal(self, proposal_id: str) -> Optional[Market]:
        market_id = self._by_proposal.get(proposal_id)
        return self._markets.get(market_id) if market_id else None

    # ── Operations ────────────────────────────────────────────────────────────

    def buy(self, market_id: str, holder: str, side: Side, amount: int,
            min_shares: int = 0, now: Optional[float] = None) -> TradeResult:
        result = self.get(market_id).buy(holder, side, amount, min_shares, now)
        self._publish_trade(result)
        return result

    def sell(self, market_id: str, holder: str, side: Side, shares: int,
             min_payout: int = 0, now: Optional[float] = None) -> TradeResult:
        result = self.get(market_id).sell(holder, side, shares, min_payout, now)
        self._publish_trade(result)
        return result

    def _publish_trade(self, result: TradeResult) -> None:
        logger.debug(
            "Trade %s %s %s: amount=%d shares=%d fee=%d",
            result.market_id, result.action, result.side.value, result.amount, result.shares, result.fee,
        )
        if self._bus is not None:
            self._bus.publish(EventType.TRADE_EXECUTED, result.to_dict())

    def resolve(self, market_id: str, settlement_price: Optional[float],
                now: Optional[float] = None, outcome: Optional[Outcome] = None) -> Outcome:
        market = self.get(market_id)
        outcome = market.resolve(settlement_price, now, outcome)
        self._publish_resolution(market)
        return outcome

    def invalidate(self, market_id: str, reason: str, now: Optional[float] = None) -> None:
        market = self.get(market_id)
        market.invalidate(reason, now)
        logger.warning("Market %s invalidated: %s", market_id, reason)
        self._publish_resolution(market)

    def _publish_resolution(self, market: Market) -> None:
        logger.info(
            "Market resolved: %s outcome=%s price=%s",
            market.market_id, market.outcome.value.upper(), market.settlement_price,
        )
        if self._bus is not None:
            self._bus.publish(EventType.MARKET_RESOLVED, {
                "market_id": market.market_id,
                "proposal_id": market.proposal.proposal_id,
                "outcome": market.outcome.value,
                "settlement_price": market.settlement_price,
                "reason": market.invalid_reason,
            })

    def redeem(self, market_id: str, holder: str) -> int:
        payout = self.get(market_id).redeem(holder)
        logger.info("Redeemed %d from %s for %s", payout, market_id, holder)
        return payout

    # ── Queries ───────────────────────────────────────────────────────────────

    def all_markets(self) -> List[Market]:
        return list(self._markets.values())

    def active_markets(self, now: Optional[float] = None) -> List[Market]:
        return [m for m in self.all_markets() if m.is_active(now)]

    def due_for_resolution(self, now: Optional[float] = None) -> List[Market]:
        ts = now if now is not None else time.time()
        return [m for m in self.all_markets() if not m.is_resolved and ts >= m.resolution_ts]

    def markets_for_asset(self, asset: str, active_only: bool = True, now: Optional[float] = None) -> List[Market]:
        markets = self.active_markets(now) if active_only else self.all_markets()
        return [m for m in markets if m.asset == asset]

    def __len__(self) -> int:
        return len(self._markets)

    @property
    def stats(self) -> Dict[str, Any]:
        by_outcome = {o.value: 0 for o in Outcome}
        volume = 0
        for m in self.all_markets():
            by_outcome[m.outcome.value] += 1
            volume += m.volume
        return {
            "total_markets": len(self._markets),
            "by_outcome": by_outcome,
            "total_volume": volume,
        }
