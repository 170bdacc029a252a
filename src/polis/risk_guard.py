"""Risk Guard — market-creation rate limit, asset concentration, kill-switch.

Implements:
- Hourly rolling deployment counter, lazily reset on read
- Trailing window of per-asset deployment timestamps
- Administrative circuit breaker (trip / reset)
- Bounded risk-assessment log and alert counter
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from polis.constants import (
    CONCENTRATION_WINDOW_SEC,
    RATE_WINDOW_SEC,
    RISK_LOG_MAX,
)
from polis.errors import ValidationError
from polis.observability import EventBus, EventType

logger = logging.getLogger(__name__)


class RiskGuard:
    """Shared risk state read by evaluators and written by the scheduler."""

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        rate_window_sec: float = RATE_WINDOW_SEC,
        concentration_window_sec: float = CONCENTRATION_WINDOW_SEC,
        now: Optional[float] = None,
    ) -> None:
        self._bus = bus
        self.rate_window_sec = rate_window_sec
        self.concentration_window_sec = concentration_window_sec
        # Deployments are kept long enough to answer any window up to this.
        self.retention_sec = max(concentration_window_sec, rate_window_sec)

        self._markets_in_window = 0
        self._window_started_at = now if now is not None else time.time()

        self._recent = deque()  # type: Deque[Tuple[str, float]]
        self._risk_log = deque(maxlen=RISK_LOG_MAX)  # type: Deque[Dict[str, Any]]
        self._alert_count = 0

        self.circuit_broken = False
        self.circuit_reason = None  # type: Optional[str]
        self.circuit_tripped_at = None  # type: Optional[float]

    # ── Rate limiting ─────────────────────────────────────────────────────────

    def _roll_window(self, now: float) -> None:
        if now - self._window_started_at > self.rate_window_sec:
            if self._markets_in_window:
                logger.info("Hourly deployment window reset (was %d)", self._markets_in_window)
            self._markets_in_window = 0
            self._window_started_at = now

    def markets_last_hour(self, now: Optional[float] = None) -> int:
        """Deployments in the current window; resets the window if it has elapsed."""
        self._roll_window(now if now is not None else time.time())
        return self._markets_in_window

    def on_market_deployed(self, asset: str, now: Optional[float] = None) -> None:
        ts = now if now is not None else time.time()
        self._roll_window(ts)
        self._markets_in_window += 1
        self._recent.append((asset, ts))
        logger.debug("Deployment recorded: asset=%s hourly=%d", asset, self._markets_in_window)

    # ── Concentration ─────────────────────────────────────────────────────────

    def _prune(self, now: float) -> None:
        cutoff = now - self.retention_sec
        while self._recent and self._recent[0][1] <= cutoff:
            self._recent.popleft()

    def recent_deployments(
        self,
        asset: str,
        now: Optional[float] = None,
        window_sec: Optional[float] = None,
    ) -> int:
        """Deployments referencing `asset` inside the trailing window.

        `window_sec` defaults to the concentration window and may not exceed
        `retention_sec`.
        """
        window = window_sec if window_sec is not None else self.concentration_window_sec
        if window > self.retention_sec:
            raise ValidationError("window {}s exceeds retention of {}s".format(window, self.retention_sec))
        ts = now if now is not None else time.time()
        self._prune(ts)
        cutoff = ts - window
        return sum(1 for a, t in self._recent if a == asset and t > cutoff)

    def maintain(self, now: Optional[float] = None) -> None:
        """Per-cycle housekeeping: roll the hourly window and prune old deployments."""
        ts = now if now is not None else time.time()
        self._roll_window(ts)
        self._prune(ts)

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def trigger_circuit_breaker(self, reason: str) -> None:
        if self.circuit_broken:
            logger.info("Circuit breaker already active (%s)", self.circuit_reason)
            return
        self.circuit_broken = True
        self.circuit_reason = reason
        self.circuit_tripped_at = time.time()
        logger.warning("CIRCUIT BREAKER TRIPPED: %s", reason)
        if self._bus is not None:
            self._bus.publish(EventType.CIRCUIT_BREAKER_TOGGLED, {
                "active": True,
                "reason": reason,
            })

    def reset(self) -> None:
        if not self.circuit_broken:
            return
        logger.warning("Circuit breaker reset (was: %s)", self.circuit_reason)
        self.circuit_broken = False
        self.circuit_reason = None
        self.circuit_tripped_at = None
        if self._bus is not None:
            self._bus.publish(EventType.CIRCUIT_BREAKER_TOGGLED, {"active": False, "reason": None})

    # ── Assessment log ────────────────────────────────────────────────────────

    def record_assessment(
        self,
        proposal_id: str,
        score: int,
        risks: List[str],
        rationale: str,
        question: str = "",
    ) -> None:
        """Log a risk evaluation; HIGH / CRITICAL risks raise an alert."""
        self._risk_log.append({
            "proposal_id": proposal_id,
            "score": score,
            "risks": list(risks),
            "rationale": rationale,
            "ts": time.time(),
        })

        alerts = [r for r in risks if r.startswith("HIGH") or r.startswith("CRITICAL")]
        if alerts:
            self._alert_count += 1
            logger.warning("Risk alert on %s: %s", proposal_id, "; ".join(alerts))
            if self._bus is not None:
                self._bus.publish(EventType.RISK_ALERT, {
                    "proposal_id": proposal_id,
                    "alerts": alerts,
                    "question": question[:60],
                })

    @property
    def alert_count(self) -> int:
        return self._alert_count

    def health(self, now: Optional[float] = None) -> Dict[str, Any]:
        return {
            "alert_count": self._alert_count,
            "markets_last_hour": self.markets_last_hour(now),
            "circuit_broken": self.circuit_broken,
            "circuit_reason": self.circuit_reason,
            "recent_risks": list(self._risk_log)[-5:],
        }
