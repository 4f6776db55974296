"""
Test the HTTP API over a paper trading stack.
"""
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from ta_trader.adapters.base import TradingAdapter
from ta_trader.api.server import _http_error, create_app
from ta_trader.common.errors import (
    InvalidTradeRequest,
    TradingError,
    UnsupportedSymbol,
    UpstreamUnavailable,
)
from ta_trader.components import build_components

from .conftest import SYMBOL, bullish


@pytest.fixture
def components(config, context):
    source = AsyncMock()
    source.fetch_latest = AsyncMock(side_effect=lambda symbol: bullish(100.0, symbol))
    return build_components(config, context=context, source=source)


@pytest.fixture
def client(components):
    with TestClient(create_app(components)) as client:
        yield client


async def _open_position(components, clock):
    components.adapter.set_current_price(SYMBOL, 100.0)
    await components.engine.evaluate(bullish(100.0))
    clock.advance(1)
    await components.engine.evaluate(bullish(100.0))


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_balance(client):
    response = client.get("/balance")
    assert response.status_code == 200
    assert response.json() == {"adapter": "paper", "balance": 1000.0}


@pytest.mark.asyncio
async def test_positions_signals_and_close_all(components, clock):
    await _open_position(components, clock)

    with TestClient(create_app(components)) as client:
        [position] = client.get("/positions").json()
        assert position["symbol"] == SYMBOL
        assert position["direction"] == "LONG"
        assert len(position["partials"]) == 1

        page = client.get(f"/signals/{SYMBOL}", params={"limit": 1}).json()
        assert page["total_count"] == 2
        assert page["signals"][0]["type"] == "HOLD"
        assert page["next_cursor"] == page["signals"][0]["timestamp"]

        entries = client.get(f"/signals/{SYMBOL}", params={"type": "ENTRY"}).json()
        assert [s["type"] for s in entries["signals"]] == ["ENTRY"]

        [closed] = client.post("/close-all").json()
        assert closed["reason"] == "MANUAL"
        assert client.get("/positions").json() == []

        [trade] = client.get("/positions/history", params={"symbol": SYMBOL}).json()
        assert trade["is_long"] is True

        stats = client.get(f"/stats/{SYMBOL}").json()
        assert stats["total_trades"] == 1


def test_signals_reject_unknown_type(client):
    response = client.get(f"/signals/{SYMBOL}", params={"type": "MAYBE"})
    assert response.status_code == 422


def test_history_requires_capability(components):
    adapter = MagicMock(spec=TradingAdapter)
    adapter.name = "spot"
    app = create_app(replace(components, adapter=adapter))

    with TestClient(app) as client:
        response = client.get("/positions/history")
    assert response.status_code == 501


def test_upstream_failure_is_503(components):
    adapter = MagicMock(spec=TradingAdapter)
    adapter.name = "spot"
    adapter.get_balance = AsyncMock(side_effect=UpstreamUnavailable("venue down"))
    app = create_app(replace(components, adapter=adapter))

    with TestClient(app) as client:
        response = client.get("/balance")
    assert response.status_code == 503


def test_http_error_mapping():
    assert _http_error(UnsupportedSymbol("PERP_X_USDC")).status_code == 404
    assert _http_error(UpstreamUnavailable("down")).status_code == 503
    assert _http_error(InvalidTradeRequest("bad")).status_code == 400
    assert _http_error(TradingError("other")).status_code == 500


def test_status_before_start(client):
    response = client.get("/status")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "stopped"
    assert [m["symbol"] for m in body["markets"]] == [SYMBOL, "PERP_ETH_USDC"]
    assert body["markets"][0]["signal"] == "-"


def test_stop_without_runner(client):
    assert client.post("/runner/stop").json() == {"status": "not_running"}


@pytest.mark.asyncio
async def test_latest_signal(components, clock):
    with TestClient(create_app(components)) as client:
        assert client.get(f"/signals/{SYMBOL}/latest").status_code == 404

    await _open_position(components, clock)

    with TestClient(create_app(components)) as client:
        latest = client.get(f"/signals/{SYMBOL}/latest").json()
    assert latest["type"] == "HOLD"


def test_market_info(client):
    body = client.get(f"/markets/{SYMBOL}").json()
    assert body["type"] == "ORDERBOOK"
    assert body["market_id"] == SYMBOL
    assert client.get("/markets/PERP_DOGE_USDC").status_code == 404
