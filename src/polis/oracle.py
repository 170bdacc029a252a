"""Oracle feed providers and price history.

Feeds return {symbol: PriceQuote} with an integer value, a decimal scale
and an update timestamp. Providers may fail per call or return partial
results; callers treat ExternalFailure as "no data this cycle".

Supports a simulated random-walk feed for running without an oracle.
"""

from __future__ import annotations

import asyncio
import logging
import random
import statistics
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

import aiohttp

from polis.constants import (
    ORACLE_TIMEOUT_SEC,
    PRICE_HISTORY_MAX,
    SIMULATED_BASE_PRICES,
    SIMULATED_WALK_PCT,
)
from polis.errors import ExternalFailure

logger = logging.getLogger(__name__)


class PriceQuote:
    """One point-in-time oracle read for a symbol."""

    def __init__(
        self,
        symbol: str,
        value: int,
        decimals: int,
        timestamp: float,
        source: str = "oracle",
    ) -> None:
        self.symbol = symbol
        self.value = value
        self.decimals = decimals
        self.timestamp = timestamp
        self.source = source

    @property
    def price(self) -> float:
        return self.value / float(10 ** self.decimals)

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    @classmethod
    def from_price(cls, symbol: str, price: float, timestamp: float, source: str = "simulated") -> "PriceQuote":
        decimals = 2 if price > 100 else 4 if price > 1 else 6
        return cls(symbol, int(round(price * 10 ** decimals)), decimals, timestamp, source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "value": self.value,
            "decimals": self.decimals,
            "price": self.price,
            "timestamp": self.timestamp,
            "source": self.source,
        }


class PriceHistory:
    """Bounded per-symbol price samples for volatility checks."""

    def __init__(self, max_samples: int = PRICE_HISTORY_MAX) -> None:
        self._max = max_samples
        self._samples = {}  # type: Dict[str, Deque[float]]

    def record(self, quote: PriceQuote) -> None:
        if quote.symbol not in self._samples:
            self._samples[quote.symbol] = deque(maxlen=self._max)
        self._samples[quote.symbol].append(quote.price)

    def recent(self, symbol: str, count: int) -> List[float]:
        samples = list(self._samples.get(symbol, ()))
        return samples[-count:]

    def volatility(self, symbol: str, sample: int) -> Optional[float]:
        """Population stdev / mean over the last `sample` prices.

        None when fewer than two samples exist or the mean is zero.
        """
        recent = self.recent(symbol, sample)
        if len(recent) < 2:
            return None
        mean = statistics.mean(recent)
        if mean == 0:
            return None
        return statistics.pstdev(recent) / mean

    def __len__(self) -> int:
        return len(self._samples)


class OracleFeedProvider:
    """Interface: fetch the latest quote for each requested symbol."""

    async def get_snapshot(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        raise NotImplementedError


class SimulatedFeedProvider(OracleFeedProvider):
    """Random-walk prices around fixed base values.

    Each call moves every symbol by up to ±(walk_pct / 2).
    """

    def __init__(
        self,
        base_prices: Optional[Dict[str, float]] = None,
        walk_pct: float = SIMULATED_WALK_PCT,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._base = dict(base_prices or SIMULATED_BASE_PRICES)
        self._walk_pct = walk_pct
        self._rng = rng or random.Random()
        self._last = {}  # type: Dict[str, float]

    async def get_snapshot(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        now = time.time()
        snapshot = {}  # type: Dict[str, PriceQuote]
        for symbol in symbols:
            prev = self._last.get(symbol, self._base.get(symbol, 1.0))
            change = 1 + (self._rng.random() - 0.5) * self._walk_pct
            price = prev * change
            self._last[symbol] = price
            snapshot[symbol] = PriceQuote.from_price(symbol, price, now)
        return snapshot


class HttpFeedProvider(OracleFeedProvider):
    """Oracle relay reachable over HTTP.

    Expects GET {base_url}/prices?symbols=A,B to return
    {"A": {"value": int, "decimals": int, "timestamp": float}, ...}.
    Malformed entries are skipped; transport errors raise ExternalFailure.
    """

    def __init__(self, base_url: str, timeout_sec: float = ORACLE_TIMEOUT_SEC) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec

    async def get_snapshot(self, symbols: Iterable[str]) -> Dict[str, PriceQuote]:
        wanted = list(symbols)
        url = "{}/prices".format(self.base_url)
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, params={"symbols": ",".join(wanted)}) as resp:
                    if resp.status != 200:
                        raise ExternalFailure("Oracle HTTP {}".format(resp.status))
                    payload = await resp.json()
        except asyncio.TimeoutError:
            raise ExternalFailure("Oracle timeout after {}s".format(self.timeout_sec))
        except aiohttp.ClientError as e:
            raise ExternalFailure("Oracle request failed: {}".format(e))
        except ValueError as e:
            raise ExternalFailure("Oracle returned a malformed body: {}".format(e))

        return parse_snapshot(payload, wanted)


def parse_snapshot(payload: Any, symbols: List[str]) -> Dict[str, PriceQuote]:
    """Turn a relay payload into quotes, dropping anything malformed."""
    snapshot = {}  # type: Dict[str, PriceQuote]
    if not isinstance(payload, dict):
        logger.warning("Oracle payload is not an object: %s", type(payload).__name__)
        return snapshot

    for symbol in symbols:
        entry = payload.get(symbol)
        if not isinstance(entry, dict):
            continue
        try:
            value = int(entry["value"])
            decimals = int(entry["decimals"])
            timestamp = float(entry["timestamp"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Oracle entry for %s malformed: %s", symbol, entry)
            continue
        if value <= 0 or decimals < 0:
            logger.warning("Oracle entry for %s out of range: value=%s decimals=%s", symbol, value, decimals)
            continue
        snapshot[symbol] = PriceQuote(symbol, value, decimals, timestamp, source="oracle")

    return snapshot
