"""Observability — typed event bus with bounded history.

Implements:
- Closed set of event types published by registry, ledger, risk guard
  and scheduler
- Fire-and-forget fan-out to per-type and wildcard subscribers
- Ring-buffer history (last EVENT_HISTORY_MAX events) for late subscribers
- Per-type event counts
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from polis.constants import EVENT_HISTORY_MAX

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PROPOSAL_CREATED = "proposal:created"
    VOTE_CAST = "conviction:vote"
    CONSENSUS_REACHED = "conviction:consensus"
    MARKET_DEPLOYED = "market:deployed"
    LIQUIDITY_ADDED = "liquidity:added"
    TRADE_EXECUTED = "trade:executed"
    MARKET_RESOLVED = "market:resolved"
    RISK_ALERT = "risk:alert"
    CIRCUIT_BREAKER_TOGGLED = "circuit:breaker"
    PRICE_UPDATE = "price:update"
    CYCLE_COMPLETED = "cycle:completed"
    SYSTEM_ERROR = "system:error"


Subscriber = Callable[[Dict[str, Any]], None]


class EventBus:
    """Publish/subscribe sink with no delivery guarantee."""

    def __init__(self, history_max: int = EVENT_HISTORY_MAX) -> None:
        self._history = deque(maxlen=history_max)  # type: Deque[Dict[str, Any]]
        self._subscribers = {}  # type: Dict[Optional[EventType], List[Subscriber]]
        self._counts = {}  # type: Dict[str, int]
        self._seq = itertools.count(1)

    def publish(self, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Record and fan out one event. Subscriber errors are logged, never raised."""
        event = {
            "id": "evt_{}".format(next(self._seq)),
            "type": event_type.value,
            "ts": time.time(),
            "data": data or {},
        }
        self._history.append(event)
        self._counts[event_type.value] = self._counts.get(event_type.value, 0) + 1

        logger.debug("Event: type=%s id=%s", event_type.value, event["id"])

        handlers = list(self._subscribers.get(event_type, [])) + list(self._subscribers.get(None, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning("Event subscriber failed for %s: %s", event_type.value, e)

        return event

    def subscribe(self, handler: Subscriber, event_type: Optional[EventType] = None) -> None:
        """Register a handler for one type, or for every event when event_type is None."""
        self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, handler: Subscriber, event_type: Optional[EventType] = None) -> bool:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def recent(self, event_type: Optional[EventType] = None, count: int = 10) -> List[Dict[str, Any]]:
        """Last `count` retained events, optionally filtered by type."""
        events = [
            e for e in self._history
            if event_type is None or e["type"] == event_type.value
        ]
        return events[-count:] if count > 0 else []

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "retained_events": len(self._history),
            "total_published": sum(self._counts.values()),
            "by_type": dict(self._counts),
        }
