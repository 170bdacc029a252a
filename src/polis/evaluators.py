"""Evaluator Set — four heuristic scorers that vote on every proposal.

Each evaluator starts from a baseline, applies additive adjustments from
fixed bands and clamps into its own range. Missing data lowers the score;
it never raises.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

from polis.constants import (
    ACCEPTABLE_DATA_SEC,
    CIRCUIT_BREAKER_RATIONALE,
    CONCENTRATION_MAX_ACTIVE,
    CONCENTRATION_MAX_RECENT,
    DENSITY_HIGH,
    DENSITY_MED,
    DURATION_FEE_CAPTURE_MAX,
    DURATION_FEE_CAPTURE_MIN,
    DURATION_IDEAL_MAX,
    DURATION_IDEAL_MIN,
    DURATION_OK_MAX,
    DURATION_OK_MIN,
    DURATION_RISK_LONG_MIN,
    DURATION_RISK_SHORT_MIN,
    FEED_SYMBOLS,
    FRESH_DATA_SEC,
    QUESTION_GOOD_CHARS,
    QUESTION_MIN_CHARS,
    QUESTION_OK_CHARS,
    RATE_HIGH_PER_HOUR,
    RATE_MED_PER_HOUR,
    SHORT_MARKET_MAX_DATA_AGE_SEC,
    SHORT_MARKET_MIN,
    STRIKE_FAR_PCT,
    STRIKE_MODERATE_PCT,
    STRIKE_NEAR_PCT,
    STRIKE_TRIVIAL_PCT,
    VOLATILITY_LOW,
    VOLATILITY_MED,
    VOLATILITY_SAMPLE,
)
from polis.models import EvaluatorKind, Proposal
from polis.oracle import PriceHistory, PriceQuote
from polis.risk_guard import RiskGuard

logger = logging.getLogger(__name__)


class EvaluationContext:
    """Read-only inputs shared by all evaluators for one cycle."""

    def __init__(
        self,
        now: Optional[float] = None,
        quotes: Optional[Dict[str, PriceQuote]] = None,
        history: Optional[PriceHistory] = None,
        deployed_count: int = 0,
        active_positions: Optional[Dict[str, int]] = None,
    ) -> None:
        self.now = now if now is not None else time.time()
        self.quotes = quotes or {}
        self.history = history if history is not None else PriceHistory()
        self.deployed_count = deployed_count
        self.active_positions = active_positions or {}

    def reference_price(self, proposal: Proposal) -> Optional[float]:
        """Price at discovery if the proposal carries one, else the latest quote."""
        if proposal.current_price:
            return proposal.current_price
        quote = self.quotes.get(proposal.asset)
        return quote.price if quote is not None else None


def strike_distance(strike: float, price: float) -> float:
    return abs(strike - price) / price


def _clamp(score: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, score))


class Evaluator:
    """Base class. Subclasses set `kind`, `baseline`, `floor`, `ceiling`."""

    kind = None  # type: Optional[EvaluatorKind]
    baseline = 50
    floor = 0
    ceiling = 100

    def __init__(self, name: Optional[str] = None) -> None:
        self.name = name or (self.kind.value if self.kind is not None else type(self).__name__)

    @classmethod
    def build(cls, config: Any = None, risk_guard: Optional[RiskGuard] = None) -> "Evaluator":
        return cls()

    def score(self, proposal: Proposal, context: EvaluationContext) -> Tuple[int, str]:
        raise NotImplementedError

    def _finish(self, score: int, reasons: List[str]) -> Tuple[int, str]:
        return _clamp(score, self.floor, self.ceiling), "; ".join(reasons)

    def __repr__(self) -> str:
        return "{}(name={})".format(type(self).__name__, self.name)


EVALUATOR_REGISTRY = {}  # type: Dict[EvaluatorKind, Type[Evaluator]]


def register_evaluator(kind: EvaluatorKind) -> Callable[[Type[Evaluator]], Type[Evaluator]]:
    """Class decorator: make `cls` the implementation for `kind`."""

    def decorator(cls: Type[Evaluator]) -> Type[Evaluator]:
        cls.kind = kind
        if kind in EVALUATOR_REGISTRY and EVALUATOR_REGISTRY[kind] is not cls:
            logger.info(
                "Evaluator %s replaced: %s -> %s",
                kind.value, EVALUATOR_REGISTRY[kind].__name__, cls.__name__,
            )
        EVALUATOR_REGISTRY[kind] = cls
        return cls

    return decorator


@register_evaluator(EvaluatorKind.FEASIBILITY)
class FeasibilityEvaluator(Evaluator):
    """Is the market well-formed, sensibly timed and not over-supplied?"""

    baseline = 40
    floor = 10
    ceiling = 95

    def score(self, proposal: Proposal, context: EvaluationContext) -> Tuple[int, str]:
        score = self.baseline
        reasons = []  # type: List[str]

        if proposal.asset and proposal.strike and proposal.strike > 0:
            score += 15
            reasons.append("valid asset and strike")

        duration = proposal.duration_minutes
        if DURATION_IDEAL_MIN <= duration <= DURATION_IDEAL_MAX:
            score += 15
            reasons.append("ideal duration")
        elif DURATION_OK_MIN <= duration <= DURATION_OK_MAX:
            score += 8
            reasons.append("acceptable duration")
        elif duration > DURATION_OK_MAX:
            score += 3
            reasons.append("long duration")
        else:
            score -= 5
            reasons.append("duration too short")

        if proposal.confidence >= 80:
            score += 18
            reasons.append("high scout confidence")
        elif proposal.confidence >= 60:
            score += 10
            reasons.append("moderate scout confidence")
        elif proposal.confidence >= 40:
            score += 3

        if len(proposal.question) > QUESTION_GOOD_CHARS:
            score += 8
            reasons.append("clear question")
        elif len(proposal.question) > QUESTION_OK_CHARS:
            score += 3

        if context.deployed_count > DENSITY_HIGH:
            score -= 12
            reasons.append("market density high")
        elif context.deployed_count > DENSITY_MED:
            score -= 5
            reasons.append("market density moderate")
        else:
            score += 5
            reasons.append("room for new markets")

        return self._finish(score, reasons)


@register_evaluator(EvaluatorKind.DATA_CONFIDENCE)
class DataConfidenceEvaluator(Evaluator):
    """Can the oracle settle this market reliably?"""

    baseline = 35
    floor = 5
    ceiling = 95

    def __init__(self, name: Optional[str] = None, symbols: Optional[Iterable[str]] = None) -> None:
        super().__init__(name)
        self.symbols = frozenset(symbols if symbols is not None else FEED_SYMBOLS)

    @classmethod
    def build(cls, config: Any = None, risk_guard: Optional[RiskGuard] = None) -> "Evaluator":
        return cls(symbols=config.symbols if config is not None else None)

    def score(self, proposal: Proposal, context: EvaluationContext) -> Tuple[int, str]:
        score = self.baseline
        reasons = []  # type: List[str]

        quote = context.quotes.get(proposal.asset)
        if quote is not None:
            score += 25
            reasons.append("feed available")

            age = quote.age(context.now)
            if age < FRESH_DATA_SEC:
                score += 20
                reasons.append("fresh data ({:.0f}s)".format(age))
            elif age < ACCEPTABLE_DATA_SEC:
                score += 10
                reasons.append("acceptable data age ({:.0f}s)".format(age))
            else:
                score -= 5
                reasons.append("stale data ({:.0f}s)".format(age))

            if proposal.duration_minutes < SHORT_MARKET_MIN and age > SHORT_MARKET_MAX_DATA_AGE_SEC:
                score -= 10
                reasons.append("short market on aging data")
        else:
            score -= 20
            reasons.append("no feed data")

        vol = context.history.volatility(proposal.asset, VOLATILITY_SAMPLE)
        if vol is not None:
            if vol < VOLATILITY_LOW:
                score += 15
                reasons.append("stable price feed")
            elif vol < VOLATILITY_MED:
                score += 5
                reasons.append("moderate volatility")
            else:
                score -= 10
                reasons.append("high volatility")

        if proposal.asset in self.symbols:
            score += 8
            reasons.append("known feed symbol")

        return self._finish(score, reasons)


@register_evaluator(EvaluatorKind.LIQUIDITY_VIABILITY)
class LiquidityViabilityEvaluator(Evaluator):
    """Will two-sided trading plausibly happen at seeded odds?"""

    baseline = 50
    floor = 10
    ceiling = 95

    def score(self, proposal: Proposal, context: EvaluationContext) -> Tuple[int, str]:
        score = self.baseline
        reasons = []  # type: List[str]

        price = context.reference_price(proposal)
        if price:
            distance = strike_distance(proposal.strike, price)
            if distance < STRIKE_NEAR_PCT:
                score += 25
                reasons.append("strike near price ({:.2%})".format(distance))
            elif distance < STRIKE_MODERATE_PCT:
                score += 15
                reasons.append("strike moderately near ({:.2%})".format(distance))
            else:
                score -= 10
                reasons.append("strike far from price ({:.2%})".format(distance))
        else:
            score -= 15
            reasons.append("no price reference")

        if DURATION_FEE_CAPTURE_MIN <= proposal.duration_minutes <= DURATION_FEE_CAPTURE_MAX:
            score += 10
            reasons.append("good duration for fee capture")

        if proposal.confidence >= 60:
            score += 10
            reasons.append("confident proposer")

        active = context.active_positions.get(proposal.asset, 0)
        if active >= CONCENTRATION_MAX_ACTIVE:
            score -= 15
            reasons.append("{} active markets on {}".format(active, proposal.asset))

        return self._finish(score, reasons)


@register_evaluator(EvaluatorKind.RISK)
class RiskEvaluator(Evaluator):
    """Reads and writes Risk Guard state. Scores 0 while the breaker is tripped."""

    baseline = 70
    floor = 0
    ceiling = 95

    def __init__(self, risk_guard: RiskGuard, name: Optional[str] = None) -> None:
        super().__init__(name)
        self.risk_guard = risk_guard

    @classmethod
    def build(cls, config: Any = None, risk_guard: Optional[RiskGuard] = None) -> "Evaluator":
        return cls(risk_guard if risk_guard is not None else RiskGuard())

    def score(self, proposal: Proposal, context: EvaluationContext) -> Tuple[int, str]:
        guard = self.risk_guard
        if guard.circuit_broken:
            return 0, CIRCUIT_BREAKER_RATIONALE

        score = self.baseline
        risks = []  # type: List[str]

        rate = guard.markets_last_hour(context.now)
        if rate > RATE_HIGH_PER_HOUR:
            score -= 30
            risks.append("HIGH: {} markets in the last hour".format(rate))
        elif rate > RATE_MED_PER_HOUR:
            score -= 10
            risks.append("MED: {} markets in the last hour".format(rate))

        duration = proposal.duration_minutes
        if duration < DURATION_RISK_SHORT_MIN:
            score -= 25
            risks.append("HIGH: duration {}m too short".format(duration))
        elif duration > DURATION_RISK_LONG_MIN:
            score -= 10
            risks.append("MED: duration {}m very long".format(duration))
        else:
            score += 5

        price = context.reference_price(proposal)
        if price:
            distance = strike_distance(proposal.strike, price)
            if distance > STRIKE_FAR_PCT:
                score -= 15
                risks.append("MED: strike {:.1%} from price".format(distance))
            elif distance < STRIKE_TRIVIAL_PCT:
                score -= 10
                risks.append("LOW: strike trivially close to price")
            else:
                score += 5

        if not proposal.question or len(proposal.question) < QUESTION_MIN_CHARS:
            score -= 15
            risks.append("MED: question too short")

        recent = guard.recent_deployments(proposal.asset, context.now)
        if recent >= CONCENTRATION_MAX_RECENT:
            score -= 15
            risks.append("MED: {} recent markets on {}".format(recent, proposal.asset))

        final, _ = self._finish(score, [])
        rationale = "; ".join(risks) if risks else "no significant risks"
        guard.record_assessment(proposal.proposal_id, final, risks, rationale, proposal.question)
        return final, rationale


def build_evaluators(config: Any = None, risk_guard: Optional[RiskGuard] = None) -> List[Evaluator]:
    """One instance per registered kind, in EvaluatorKind order."""
    evaluators = []  # type: List[Evaluator]
    for kind in EvaluatorKind:
        cls = EVALUATOR_REGISTRY.get(kind)
        if cls is None:
            logger.warning("No evaluator registered for %s", kind.value)
            continue
        evaluators.append(cls.build(config, risk_guard))
    return evaluators
