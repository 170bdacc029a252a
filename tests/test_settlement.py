"""Tests for settlement executors and outcome computation."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from polis.errors import ExternalFailure
from polis.models import Direction, Outcome
from polis.settlement import (
    HttpSettlementExecutor,
    SimulatedSettlementExecutor,
    outcome_for,
    simulated_market_ref,
)


def test_outcome_for_directions() -> None:
    assert outcome_for(100.0, 100.0, Direction.ABOVE) is Outcome.YES
    assert outcome_for(99.9, 100.0, Direction.ABOVE) is Outcome.NO
    assert outcome_for(99.9, 100.0, Direction.BELOW) is Outcome.YES
    assert outcome_for(100.0, 100.0, Direction.BELOW) is Outcome.NO


def test_outcome_for_bad_price_is_invalid() -> None:
    assert outcome_for(None, 100.0, Direction.ABOVE) is Outcome.INVALID
    assert outcome_for(0.0, 100.0, Direction.ABOVE) is Outcome.INVALID
    assert outcome_for(-3.0, 100.0, Direction.BELOW) is Outcome.INVALID


def test_simulated_ref_deterministic() -> None:
    params = {"asset": "BTC/USD", "strike": 70000.0}
    ref = simulated_market_ref(params)
    assert ref.startswith("0x") and len(ref) == 42
    assert ref == simulated_market_ref(dict(reversed(list(params.items()))))


@pytest.mark.asyncio
async def test_simulated_executor_round_trip() -> None:
    ex = SimulatedSettlementExecutor()
    ref = await ex.submit_market_creation({"asset": "ETH/USD", "strike": 2000.0, "direction": "above"})
    assert ex.market_count == 1
    assert await ex.submit_resolution(ref, 2100.0) is Outcome.YES
    with pytest.raises(ExternalFailure):
        await ex.submit_resolution("0xdeadbeef", 2100.0)


def _session_posting(status: int, payload, json_error=None):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=payload, side_effect=json_error)
    resp_ctx = MagicMock()
    resp_ctx.__aenter__ = AsyncMock(return_value=resp)
    resp_ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=resp_ctx)
    session_ctx = MagicMock()
    session_ctx.__aenter__ = AsyncMock(return_value=session)
    session_ctx.__aexit__ = AsyncMock(return_value=False)
    return session_ctx, session


@pytest.mark.asyncio
async def test_http_executor_create_and_resolve() -> None:
    ctx, session = _session_posting(200, {"market_ref": "0xabc", "outcome": "no"})
    with patch("polis.settlement.aiohttp.ClientSession", return_value=ctx):
        ex = HttpSettlementExecutor("http://relay.local/")
        assert await ex.submit_market_creation({"asset": "BTC/USD"}) == "0xabc"
        assert await ex.submit_resolution("0xabc", 69000.0) is Outcome.NO
    urls = [call.args[0] for call in session.post.call_args_list]
    assert urls == ["http://relay.local/markets", "http://relay.local/resolutions"]


@pytest.mark.asyncio
async def test_http_executor_errors() -> None:
    ctx, _ = _session_posting(500, {})
    with patch("polis.settlement.aiohttp.ClientSession", return_value=ctx):
        with pytest.raises(ExternalFailure):
            await HttpSettlementExecutor("http://relay.local").submit_market_creation({})

    ctx, _ = _session_posting(200, {"outcome": "maybe"})
    with patch("polis.settlement.aiohttp.ClientSession", return_value=ctx):
        with pytest.raises(ExternalFailure):
            await HttpSettlementExecutor("http://relay.local").submit_resolution("0x1", 1.0)


@pytest.mark.asyncio
async def test_http_executor_malformed_body() -> None:
    ctx, _ = _session_posting(200, None, json.JSONDecodeError("Expecting value", "<html>", 0))
    with patch("polis.settlement.aiohttp.ClientSession", return_value=ctx):
        with pytest.raises(ExternalFailure):
            await HttpSettlementExecutor("http://relay.local").submit_market_creation({"asset": "BTC/USD"})
