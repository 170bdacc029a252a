"""Cycle Scheduler — drives discovery, consensus, deployment and resolution.

One cycle:
  1. Oracle snapshot (failure or timeout means no data this cycle)
  2. Candidate discovery
  3. Proposal creation
  4. Evaluator votes on every pending proposal
  5. Approved proposals: settlement submit (simulated fallback), ledger
     market seeded with initial odds, Risk Guard notified. Nothing is
     deployed while the circuit breaker is tripped.
  6. Risk Guard maintenance
  7. Resolution polling for markets past their resolution time

Cycles never overlap; stop() is cooperative and takes effect between cycles.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from polis.amm import Market, MarketLedger
from polis.candidates import CandidateScout
from polis.config import PolisConfig
from polis.constants import RESOLUTION_MAX_WAIT_SEC
from polis.conviction import ConvictionRegistry
from polis.errors import ExternalFailure, StateError, ValidationError
from polis.evaluators import EvaluationContext, Evaluator, build_evaluators
from polis.liquidity import LiquidityProvider
from polis.models import ConsensusResult, Outcome, Proposal
from polis.observability import EventBus, EventType
from polis.oracle import HttpFeedProvider, OracleFeedProvider, PriceHistory, PriceQuote, SimulatedFeedProvider
from polis.risk_guard import RiskGuard
from polis.settlement import (
    HttpSettlementExecutor,
    SettlementExecutor,
    SimulatedSettlementExecutor,
    simulated_market_ref,
)

logger = logging.getLogger(__name__)


class CycleScheduler:
    """Owns and wires every component for one running collective."""

    def __init__(
        self,
        config: PolisConfig,
        oracle: OracleFeedProvider,
        settlement: SettlementExecutor,
        bus: Optional[EventBus] = None,
        risk_guard: Optional[RiskGuard] = None,
        registry: Optional[ConvictionRegistry] = None,
        ledger: Optional[MarketLedger] = None,
        evaluators: Optional[List[Evaluator]] = None,
        scout: Optional[CandidateScout] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.oracle = oracle
        self.settlement = settlement
        self.bus = bus or EventBus()
        self.risk_guard = risk_guard or RiskGuard(self.bus)
        self.registry = registry or ConvictionRegistry(
            self.bus, quorum=config.quorum, threshold=config.threshold, known_assets=config.symbols,
        )
        self.ledger = ledger or MarketLedger(self.bus, fee_bps=config.fee_bps)
        self.liquidity = LiquidityProvider(self.ledger, self.bus, config.liquidity_units)
        self.evaluators = evaluators if evaluators is not None else build_evaluators(config, self.risk_guard)
        if self.registry.quorum > len(self.evaluators):
            raise ValidationError("quorum {} is unreachable with {} evaluators".format(
                self.registry.quorum, len(self.evaluators),
            ))
        self.scout = scout or CandidateScout()
        self._clock = clock

        self.latest_quotes = {}  # type: Dict[str, PriceQuote]
        self.history = PriceHistory()
        self.deployed = []  # type: List[str]
        self.cycle_count = 0
        self.price_update_count = 0

        self._running = False
        self._stop_event = None  # type: Optional[asyncio.Event]
        self._cycle_lock = asyncio.Lock()

    # ── Loop control ──────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, max_cycles: Optional[int] = None) -> None:
        """Run cycles every config.interval_sec until stop() or max_cycles."""
        self._running = True
        self._stop_event = asyncio.Event()
        logger.info(
            "Scheduler started: interval=%.1fs symbols=%d evaluators=%d",
            self.config.interval_sec, len(self.config.symbols), len(self.evaluators),
        )

        cycles = 0
        while self._running:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error("Cycle #%d failed: %s", self.cycle_count, e)
                self.bus.publish(EventType.SYSTEM_ERROR, {"cycle": self.cycle_count, "error": str(e)})

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            if not self._running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.interval_sec)
            except asyncio.TimeoutError:
                pass

        self._running = False
        logger.info("Scheduler stopped after %d cycles", self.cycle_count)

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    # ── One cycle ─────────────────────────────────────────────────────────────

    async def run_cycle(self) -> Dict[str, Any]:
        async with self._cycle_lock:
            self.cycle_count += 1
            started = time.monotonic()
            now = self._clock()

            snapshot = await self._fetch_snapshot()

            candidates = self.scout.scan(snapshot, now) if snapshot else []
            created = self._create_proposals(candidates)
            decisions = self._collect_votes(now)

            deployed = []  # type: List[Market]
            held = 0
            failed = 0
            for proposal, result in decisions:
                if result.approved and self.risk_guard.circuit_broken:
                    held += 1
                    logger.warning(
                        "Circuit breaker active; not deploying \"%s\"", proposal.question[:50],
                    )
                elif result.approved:
                    try:
                        deployed.append(await self._deploy(proposal, now))
                    except Exception as e:
                        failed += 1
                        logger.error("Deploy of %s failed: %r", proposal.proposal_id, e)
                        self.bus.publish(EventType.SYSTEM_ERROR, {
                            "proposal_id": proposal.proposal_id, "error": repr(e),
                        })
                else:
                    logger.info(
                        "Rejected: \"%s\" (avg %.1f)", proposal.question[:50], result.avg_score,
                    )

            self.risk_guard.maintain(now)
            resolved = await self._poll_resolutions(now)

            summary = {
                "cycle": self.cycle_count,
                "quotes": len(snapshot),
                "proposals_created": len(created),
                "decisions": len(decisions),
                "approved": sum(1 for _, r in decisions if r.approved),
                "deployed": len(deployed),
                "held": held,
                "deploy_failed": failed,
                "resolved": len(resolved),
                "duration_ms": int((time.monotonic() - started) * 1000),
            }
            logger.info(
                "Cycle #%d done in %dms: quotes=%d proposals=%d approved=%d resolved=%d markets=%d",
                self.cycle_count, summary["duration_ms"], summary["quotes"], summary["proposals_created"],
                summary["approved"], summary["resolved"], len(self.deployed),
            )
            self.bus.publish(EventType.CYCLE_COMPLETED, summary)
            return summary

    async def _fetch_snapshot(self) -> Dict[str, PriceQuote]:
        try:
            snapshot = await asyncio.wait_for(
                self.oracle.get_snapshot(self.config.symbols),
                timeout=self.config.oracle_timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.warning("Oracle snapshot timed out after %.1fs; no data this cycle", self.config.oracle_timeout_sec)
            return {}
        except ExternalFailure as e:
            logger.warning("Oracle snapshot failed: %s; no data this cycle", e)
            return {}

        for symbol, quote in snapshot.items():
            self.latest_quotes[symbol] = quote
            self.history.record(quote)
        if snapshot:
            self.price_update_count += 1
            self.bus.publish(EventType.PRICE_UPDATE, {
                "prices": {s: q.price for s, q in snapshot.items()},
                "count": len(snapshot),
            })
        return snapshot

    def _create_proposals(self, candidates: List[Dict[str, Any]]) -> List[Proposal]:
        created = []  # type: List[Proposal]
        for candidate in candidates:
            try:
                created.append(self.registry.create_proposal(candidate))
            except ValidationError as e:
                logger.warning("Candidate skipped: %s", e)
        return created

    def _collect_votes(self, now: float) -> List[Tuple[Proposal, ConsensusResult]]:
        context = EvaluationContext(
            now=now,
            quotes=dict(self.latest_quotes),
            history=self.history,
            deployed_count=len(self.deployed),
            active_positions=self.liquidity.active_positions(now),
        )

        decisions = []  # type: List[Tuple[Proposal, ConsensusResult]]
        for proposal in self.registry.pending():
            for evaluator in self.evaluators:
                score, rationale = evaluator.score(proposal, context)
                outcome = self.registry.vote(proposal.proposal_id, evaluator.name, score, rationale)
                if isinstance(outcome, ConsensusResult):
                    decisions.append((proposal, outcome))
                    break
        return decisions

    async def _deploy(self, proposal: Proposal, now: float) -> Market:
        params = {
            "proposal_id": proposal.proposal_id,
            "question": proposal.question,
            "asset": proposal.asset,
            "strike": proposal.strike,
            "direction": proposal.direction.value,
            "duration_minutes": proposal.duration_minutes,
            "created_at": now,
        }

        simulated = False
        try:
            market_ref = await asyncio.wait_for(
                self.settlement.submit_market_creation(params),
                timeout=self.config.settlement_timeout_sec,
            )
        except (ExternalFailure, asyncio.TimeoutError) as e:
            logger.warning("Market creation submit failed (%s); falling back to simulated", str(e) or "timeout")
            market_ref = simulated_market_ref(params)
            simulated = True
        except Exception as e:
            logger.error("Settlement executor error on market creation: %r; falling back to simulated", e)
            self.bus.publish(EventType.SYSTEM_ERROR, {"proposal_id": proposal.proposal_id, "error": repr(e)})
            market_ref = simulated_market_ref(params)
            simulated = True

        quote = self.latest_quotes.get(proposal.asset)
        price = proposal.current_price or (quote.price if quote is not None else None)
        market = self.liquidity.seed(proposal, price, market_ref=market_ref, simulated=simulated, now=now)

        self.risk_guard.on_market_deployed(proposal.asset, now)
        self.deployed.append(market.market_id)

        self.bus.publish(EventType.MARKET_DEPLOYED, {
            "market_id": market.market_id,
            "market_ref": market_ref,
            "proposal_id": proposal.proposal_id,
            "question": proposal.question,
            "asset": proposal.asset,
            "strike": proposal.strike,
            "expiry_ts": market.expiry_ts,
            "resolution_ts": market.resolution_ts,
            "simulated": simulated,
        })
        logger.info(
            "Deployed: %s ref=%s...%s", market.market_id, market_ref[:18], " (simulated)" if simulated else "",
        )
        return market

    async def _poll_resolutions(self, now: float) -> List[Market]:
        resolved = []  # type: List[Market]
        for market in self.ledger.due_for_resolution(now):
            # Settlement needs a price observed at or after expiry.
            quote = self.latest_quotes.get(market.asset)
            price = quote.price if quote is not None and quote.timestamp >= market.expiry_ts else None

            if price is None:
                waited = now - market.resolution_ts
                if waited < RESOLUTION_MAX_WAIT_SEC:
                    logger.debug("No price for %s yet; retrying next cycle", market.market_id)
                    continue
                try:
                    self.ledger.invalidate(
                        market.market_id,
                        "no settlement price after {:.0f}s".format(waited),
                        now,
                    )
                except StateError as e:
                    logger.warning("Invalidate %s skipped: %s", market.market_id, e)
                    continue
                resolved.append(market)
                continue

            outcome = None  # type: Optional[Outcome]
            if not market.simulated and market.market_ref:
                try:
                    outcome = await asyncio.wait_for(
                        self.settlement.submit_resolution(market.market_ref, price),
                        timeout=self.config.settlement_timeout_sec,
                    )
                except (ExternalFailure, asyncio.TimeoutError) as e:
                    logger.warning("Resolution submit failed for %s (%s); resolving locally", market.market_id, e)
                except Exception as e:
                    logger.error("Settlement executor error resolving %s: %r; resolving locally", market.market_id, e)
                    self.bus.publish(EventType.SYSTEM_ERROR, {"market_id": market.market_id, "error": repr(e)})

            try:
                self.ledger.resolve(market.market_id, price, now, outcome)
            except StateError as e:
                logger.warning("Resolve %s skipped: %s", market.market_id, e)
                continue
            resolved.append(market)
        return resolved

    # ── Queries / admin ───────────────────────────────────────────────────────

    def pending_proposals(self) -> List[Proposal]:
        return self.registry.pending()

    def consensus_history(self, count: int = 20) -> List[ConsensusResult]:
        return self.registry.history(count)

    def active_markets(self, now: Optional[float] = None) -> List[Market]:
        return self.ledger.active_markets(now if now is not None else self._clock())

    def risk_health(self) -> Dict[str, Any]:
        return self.risk_guard.health(self._clock())

    def trip_circuit_breaker(self, reason: str) -> None:
        self.risk_guard.trigger_circuit_breaker(reason)

    def reset_circuit_breaker(self) -> None:
        self.risk_guard.reset()

    def get_state(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "cycle_count": self.cycle_count,
            "deployed_markets": [self.ledger.get(mid).to_dict() for mid in self.deployed],
            "prices": {s: q.to_dict() for s, q in self.latest_quotes.items()},
            "pending_proposals": [p.to_dict() for p in self.pending_proposals()],
            "consensus_history": [r.to_dict() for r in self.consensus_history()],
            "risk_health": self.risk_health(),
            "registry": self.registry.stats,
            "ledger": self.ledger.stats,
            "scout": {"scan_count": self.scout.scan_count},
            "oracle": {"update_count": self.price_update_count},
            "liquidity": {"total_provided": self.liquidity.total_provided},
            "recent_events": self.bus.recent(count=30),
        }


def build_scheduler(config: PolisConfig, bus: Optional[EventBus] = None) -> CycleScheduler:
    """Wire HTTP collaborators when URLs are configured, simulated ones otherwise."""
    if config.oracle_url:
        oracle = HttpFeedProvider(config.oracle_url, config.oracle_timeout_sec)  # type: OracleFeedProvider
    else:
        oracle = SimulatedFeedProvider()

    if config.settlement_url:
        settlement = HttpSettlementExecutor(config.settlement_url, config.settlement_timeout_sec)  # type: SettlementExecutor
    else:
        settlement = SimulatedSettlementExecutor()

    logger.info(
        "Collaborators: oracle=%s settlement=%s",
        type(oracle).__name__, type(settlement).__name__,
    )
    return CycleScheduler(config, oracle, settlement, bus=bus)
