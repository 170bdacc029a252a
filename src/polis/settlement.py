"""Settlement executors — market creation and resolution submission.

The scheduler submits approved markets and settlement prices here. Any
failure surfaces as ExternalFailure; the scheduler then falls back to a
simulated instantiation so consensus and ledger logic still run.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from polis.constants import SETTLEMENT_TIMEOUT_SEC
from polis.errors import ExternalFailure
from polis.models import Direction, Outcome

logger = logging.getLogger(__name__)


def simulated_market_ref(params: Dict[str, Any]) -> str:
    """Deterministic pseudo-address for a market that never reached a chain."""
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return "0x" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:40]


def outcome_for(settlement_price: Optional[float], strike: float, direction: Direction) -> Outcome:
    if settlement_price is None or settlement_price <= 0:
        return Outcome.INVALID
    return Outcome.YES if direction.is_yes(settlement_price, strike) else Outcome.NO


class SettlementExecutor:
    """Interface for the on-chain (or relay) settlement side."""

    async def submit_market_creation(self, params: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def submit_resolution(self, market_ref: str, price: Optional[float]) -> Outcome:
        raise NotImplementedError


class SimulatedSettlementExecutor(SettlementExecutor):
    """In-memory executor; remembers strike and direction per market ref."""

    def __init__(self) -> None:
        self._markets = {}  # type: Dict[str, Dict[str, Any]]

    async def submit_market_creation(self, params: Dict[str, Any]) -> str:
        ref = simulated_market_ref(params)
        self._markets[ref] = dict(params)
        logger.info("Simulated market created: ref=%s asset=%s", ref[:18], params.get("asset"))
        return ref

    async def submit_resolution(self, market_ref: str, price: Optional[float]) -> Outcome:
        params = self._markets.get(market_ref)
        if params is None:
            raise ExternalFailure("Unknown market ref: {}".format(market_ref))
        return outcome_for(price, float(params["strike"]), Direction(params["direction"]))

    @property
    def market_count(self) -> int:
        return len(self._markets)


class HttpSettlementExecutor(SettlementExecutor):
    """Relay service that signs and submits transactions on our behalf.

    POST {base_url}/markets     -> {"market_ref": "..."}
    POST {base_url}/resolutions -> {"outcome": "yes|no|invalid"}
    """

    def __init__(self, base_url: str, timeout_sec: float = SETTLEMENT_TIMEOUT_SEC) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = "{}{}".format(self.base_url, path)
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as resp:
                    if resp.status != 200:
                        raise ExternalFailure("Settlement HTTP {} on {}".format(resp.status, path))
                    data = await resp.json()
        except asyncio.TimeoutError:
            raise ExternalFailure("Settlement timeout after {}s on {}".format(self.timeout_sec, path))
        except aiohttp.ClientError as e:
            raise ExternalFailure("Settlement request failed on {}: {}".format(path, e))
        except ValueError as e:
            raise ExternalFailure("Settlement returned a malformed body on {}: {}".format(path, e))

        if not isinstance(data, dict):
            raise ExternalFailure("Settlement response on {} is not an object".format(path))
        return data

    async def submit_market_creation(self, params: Dict[str, Any]) -> str:
        data = await self._post("/markets", params)
        ref = data.get("market_ref")
        if not ref:
            raise ExternalFailure("Settlement response missing market_ref")
        return str(ref)

    async def submit_resolution(self, market_ref: str, price: Optional[float]) -> Outcome:
        data = await self._post("/resolutions", {"market_ref": market_ref, "price": price})
        try:
            outcome = Outcome(data.get("outcome"))
        except ValueError:
            raise ExternalFailure("Settlement returned unknown outcome: {!r}".format(data.get("outcome")))
        if outcome is Outcome.UNRESOLVED:
            raise ExternalFailure("Settlement returned unresolved outcome for {}".format(market_ref))
        return outcome
