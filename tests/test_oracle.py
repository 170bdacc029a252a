"""Tests for oracle quotes, price history and feed providers."""

import json
import random
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from polis.errors import ExternalFailure
from polis.oracle import (
    HttpFeedProvider,
    PriceHistory,
    PriceQuote,
    SimulatedFeedProvider,
    parse_snapshot,
)


def test_quote_price_and_age() -> None:
    q = PriceQuote("BTC/USD", 7050012, 2, 1000.0)
    assert q.price == pytest.approx(70500.12)
    assert q.age(1030.0) == 30.0


def test_from_price_decimals() -> None:
    assert PriceQuote.from_price("BTC/USD", 70500.0, 0).decimals == 2
    assert PriceQuote.from_price("XRP/USD", 1.47, 0).decimals == 4
    assert PriceQuote.from_price("FLR/USD", 0.0098, 0).decimals == 6


def test_history_volatility() -> None:
    history = PriceHistory(max_samples=3)
    assert history.volatility("ETH/USD", 3) is None
    history.record(PriceQuote.from_price("ETH/USD", 2000.0, 0))
    assert history.volatility("ETH/USD", 3) is None
    for p in (2000.0, 2000.0, 2000.0):
        history.record(PriceQuote.from_price("ETH/USD", p, 0))
    assert history.volatility("ETH/USD", 3) == 0.0
    assert len(history.recent("ETH/USD", 10)) == 3


def test_parse_snapshot_skips_malformed() -> None:
    payload = {
        "BTC/USD": {"value": 7050000, "decimals": 2, "timestamp": 10},
        "ETH/USD": {"value": "oops", "decimals": 2, "timestamp": 10},
        "SOL/USD": {"value": -5, "decimals": 2, "timestamp": 10},
        "XRP/USD": "garbage",
    }
    snap = parse_snapshot(payload, ["BTC/USD", "ETH/USD", "SOL/USD", "XRP/USD", "ADA/USD"])
    assert list(snap) == ["BTC/USD"]
    assert snap["BTC/USD"].price == pytest.approx(70500.0)
    assert parse_snapshot([1, 2], ["BTC/USD"]) == {}


@pytest.mark.asyncio
async def test_simulated_feed_walks_near_base() -> None:
    feed = SimulatedFeedProvider({"BTC/USD": 70000.0}, rng=random.Random(7))
    first = await feed.get_snapshot(["BTC/USD"])
    second = await feed.get_snapshot(["BTC/USD"])
    assert abs(first["BTC/USD"].price - 70000.0) <= 70000.0 * 0.005 + 0.01
    assert abs(second["BTC/USD"].price / first["BTC/USD"].price - 1) <= 0.0051


def _session_returning(status: int, payload, json_error=None):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=payload, side_effect=json_error)
    resp_ctx = MagicMock()
    resp_ctx.__aenter__ = AsyncMock(return_value=resp)
    resp_ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.get = MagicMock(return_value=resp_ctx)
    session_ctx = MagicMock()
    session_ctx.__aenter__ = AsyncMock(return_value=session)
    session_ctx.__aexit__ = AsyncMock(return_value=False)
    return session_ctx


@pytest.mark.asyncio
async def test_http_feed_parses_payload() -> None:
    payload = {"BTC/USD": {"value": 7000000, "decimals": 2, "timestamp": 1.0}}
    with patch("polis.oracle.aiohttp.ClientSession", return_value=_session_returning(200, payload)):
        snap = await HttpFeedProvider("http://oracle.local/").get_snapshot(["BTC/USD"])
    assert snap["BTC/USD"].price == pytest.approx(70000.0)
    assert snap["BTC/USD"].source == "oracle"


@pytest.mark.asyncio
async def test_http_feed_non_200_raises() -> None:
    with patch("polis.oracle.aiohttp.ClientSession", return_value=_session_returning(503, {})):
        with pytest.raises(ExternalFailure):
            await HttpFeedProvider("http://oracle.local").get_snapshot(["BTC/USD"])


@pytest.mark.asyncio
async def test_http_feed_malformed_body_raises() -> None:
    bad_json = json.JSONDecodeError("Expecting value", "<html>", 0)
    with patch("polis.oracle.aiohttp.ClientSession", return_value=_session_returning(200, None, bad_json)):
        with pytest.raises(ExternalFailure):
            await HttpFeedProvider("http://oracle.local").get_snapshot(["BTC/USD"])


@pytest.mark.asyncio
async def test_http_feed_client_error_raises() -> None:
    session_ctx = MagicMock()
    session_ctx.__aenter__ = AsyncMock(side_effect=aiohttp.ClientError("refused"))
    session_ctx.__aexit__ = AsyncMock(return_value=False)
    with patch("polis.oracle.aiohttp.ClientSession", return_value=session_ctx):
        with pytest.raises(ExternalFailure):
            await HttpFeedProvider("http://oracle.local").get_snapshot(["BTC/USD"])
