"""
Test the Supabase stores against a mocked client.
"""
from unittest.mock import MagicMock

import pytest

from ta_trader.common.errors import UpstreamUnavailable
from ta_trader.common.types import PartialPosition, Position, PositionStats, SignalQuery
from ta_trader.signals.supabase_store import SupabaseSignalStore
from ta_trader.storage.supabase_store import SupabasePositionStore

from .conftest import SYMBOL


def rows(client, data, count=None):
    """Make every builder chain end in an execute() returning data."""
    result = MagicMock(data=data, count=count)
    builder = MagicMock()
    for method in ("select", "eq", "gte", "lte", "lt", "order", "limit", "insert", "upsert", "delete"):
        getattr(builder, method).return_value = builder
    builder.execute.return_value = result
    client.table.return_value = builder
    return builder


@pytest.mark.asyncio
async def test_get_position_from_row():
    client = MagicMock()
    position = Position(symbol=SYMBOL, size=1.0, is_long=True, entry_price=100.0,
                        partials=[PartialPosition(1.0, 100.0, 0)])
    builder = rows(client, [{"account": "paper", "symbol": SYMBOL, "data": position.to_dict()}])
    store = SupabasePositionStore(client)

    assert await store.get(SYMBOL) == position
    client.table.assert_called_with("positions")
    builder.eq.assert_any_call("account", "paper")
    builder.eq.assert_any_call("symbol", SYMBOL)


@pytest.mark.asyncio
async def test_missing_rows():
    client = MagicMock()
    rows(client, [])
    store = SupabasePositionStore(client, account="orderly")

    assert await store.get(SYMBOL) is None
    assert await store.get_balance() is None
    assert await store.get_stats(SYMBOL) == PositionStats()
    assert await store.list_symbols() == []


@pytest.mark.asyncio
async def test_put_balance_upserts_per_account():
    client = MagicMock()
    builder = rows(client, [])
    store = SupabasePositionStore(client, account="ref")

    await store.put_balance(950.0)

    builder.upsert.assert_called_once_with(
        {"account": "ref", "asset": "USDC", "amount": 950.0}, on_conflict="account,asset"
    )


@pytest.mark.asyncio
async def test_client_errors_become_upstream_unavailable():
    client = MagicMock()
    client.table.side_effect = RuntimeError("connection refused")
    store = SupabasePositionStore(client)

    with pytest.raises(UpstreamUnavailable):
        await store.get(SYMBOL)


@pytest.mark.asyncio
async def test_signal_query_pages_with_extra_row():
    client = MagicMock()
    data = [
        {"symbol": SYMBOL, "timestamp": ts, "type": "HOLD", "reason": "TA_SCORE", "ta_score": 0.5,
         "threshold": 2.0, "price": 100.0, "indicators": {"total": 0.5}}
        for ts in (30, 20, 10)
    ]
    builder = rows(client, data, count=7)
    store = SupabaseSignalStore(client)

    page = await store.query(SYMBOL, SignalQuery(limit=2, cursor=40))

    assert page.total_count == 7
    assert [s.timestamp for s in page.signals] == [30, 20]
    assert page.next_cursor == 20
    builder.lt.assert_called_once_with("timestamp", 40)
    builder.limit.assert_any_call(3)
