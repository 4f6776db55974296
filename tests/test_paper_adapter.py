"""
Test the paper trading simulator: margin, fees, funding, merging, liquidation.
"""
import json
from pathlib import Path

import pytest

from ta_trader.adapters.base import Liquidatable, ShortSellable
from ta_trader.adapters.models import AmmTradeOptions, OrderbookTradeOptions, OrderbookTradeResult
from ta_trader.adapters.paper import PaperTradingAdapter
from ta_trader.common.errors import (
    InsufficientBalance,
    InvalidOptionsType,
    InvalidTradeRequest,
    LiquidationTriggered,
    UnsupportedSymbol,
    UpstreamUnavailable,
)
from ta_trader.common.types import PaperPosition, to_ms
from ta_trader.config.config import PaperConfig, TradingConfig
from ta_trader.context import make_context
from ta_trader.storage.memory import MemoryPositionStore

from .conftest import SYMBOL, Clock, FlakyStore

FIXTURE = Path(__file__).parent / "fixtures" / "near_usdt_history.json"
NEAR = "PERP_NEAR_USDC"


def options(leverage: float = 1.0) -> OrderbookTradeOptions:
    return OrderbookTradeOptions(leverage=leverage)


@pytest.mark.asyncio
async def test_round_trip_against_history():
    candles = json.loads(FIXTURE.read_text())
    open_price = candles[0]['indicators']['candle']['open']
    close_price = candles[-1]['indicators']['candle']['close']

    clock = Clock(to_ms(candles[0]['timestamp']))
    context = make_context(TradingConfig(symbols=(NEAR,)), clock=clock)
    cfg = context.config.paper
    store = MemoryPositionStore()
    adapter = PaperTradingAdapter(store, context)

    adapter.set_current_price(NEAR, open_price)
    opened = await adapter.open_long_position(NEAR, 500.0, options())

    assert opened.success
    assert opened.executed_size == pytest.approx(500.0 / open_price)
    expected_balance = 1000.0 - 500.0 * cfg.fee_rate - 500.0 * cfg.initial_margin_rate
    assert round(await adapter.get_balance(), 6) == round(expected_balance, 6)

    clock.now = to_ms(candles[-1]['timestamp'])
    adapter.set_current_price(NEAR, close_price)
    position = await adapter.get_position(NEAR)
    closed = await adapter.close_long_position(NEAR, position.size, options())

    qty = opened.executed_size
    pnl = (close_price - open_price) * qty
    close_fee = qty * close_price * cfg.fee_rate
    funding = qty * close_price * cfg.funding_rate_per_hour * (5 / 60)
    margin = 500.0 * cfg.initial_margin_rate
    final = expected_balance + margin + pnl - close_fee - funding

    assert closed.realized_pnl == pytest.approx(pnl)
    assert round(await adapter.get_balance(), 6) == round(final, 6)
    assert await adapter.get_position(NEAR) is None

    history = await adapter.get_position_history(NEAR)
    assert len(history) == 1
    assert history[0].exit_price == close_price


@pytest.mark.asyncio
async def test_capabilities(paper):
    assert isinstance(paper, ShortSellable)
    assert isinstance(paper, Liquidatable)
    assert await paper.get_supported_markets() == [SYMBOL, "PERP_ETH_USDC"]
    fees = await paper.get_fees(SYMBOL)
    assert fees.taker_fee == 0.0005


@pytest.mark.asyncio
async def test_unknown_symbol_and_missing_price(paper):
    with pytest.raises(UnsupportedSymbol):
        paper.set_current_price("PERP_DOGE_USDC", 1.0)
    with pytest.raises(UnsupportedSymbol):
        await paper.get_price("PERP_DOGE_USDC")
    with pytest.raises(UpstreamUnavailable):
        await paper.get_price(SYMBOL)
    with pytest.raises(ValueError):
        paper.set_current_price(SYMBOL, 0)


@pytest.mark.asyncio
async def test_wrong_options_type(paper):
    paper.set_current_price(SYMBOL, 100.0)
    with pytest.raises(InvalidOptionsType):
        await paper.open_long_position(SYMBOL, 100.0, AmmTradeOptions())


@pytest.mark.asyncio
async def test_insufficient_balance_leaves_state(paper, store):
    paper.set_current_price(SYMBOL, 100.0)
    with pytest.raises(InsufficientBalance):
        await paper.open_long_position(SYMBOL, 20_000.0, options())

    assert await paper.get_balance() == 1000.0
    assert await paper.get_position(SYMBOL) is None


@pytest.mark.asyncio
async def test_failed_store_write_rolls_back(context):
    store = FlakyStore()
    paper = PaperTradingAdapter(store, context)
    paper.set_current_price(SYMBOL, 100.0)

    store.fail_next = "put_balance"
    with pytest.raises(UpstreamUnavailable):
        await paper.open_long_position(SYMBOL, 100.0, options())
    assert await paper.get_position(SYMBOL) is None
    assert await paper.get_balance() == 1000.0

    await paper.open_long_position(SYMBOL, 100.0, options())
    balance = await paper.get_balance()
    store.fail_next = "append_closed_trade"
    with pytest.raises(UpstreamUnavailable):
        await paper.close_long_position(SYMBOL, 1.0, options())
    assert (await paper.get_position(SYMBOL)).size == pytest.approx(1.0)
    assert await paper.get_balance() == balance
    assert await store.get_closed_trades() == []


@pytest.mark.asyncio
async def test_invalid_requests(paper):
    paper.set_current_price(SYMBOL, 100.0)
    with pytest.raises(InvalidTradeRequest):
        await paper.open_long_position(SYMBOL, 100.0, options(leverage=50.0))
    with pytest.raises(InvalidTradeRequest):
        await paper.open_long_position(SYMBOL, -5.0, options())
    with pytest.raises(InvalidTradeRequest):
        await paper.close_long_position(SYMBOL, 1.0, options())


@pytest.mark.asyncio
async def test_merge_uses_weighted_entry(paper):
    paper.set_current_price(SYMBOL, 100.0)
    await paper.open_long_position(SYMBOL, 100.0, options())
    paper.set_current_price(SYMBOL, 200.0)
    await paper.open_long_position(SYMBOL, 100.0, options())

    position = await paper.get_position(SYMBOL)
    assert position.size == pytest.approx(1.5)
    assert position.entry_price == pytest.approx((1.0 * 100.0 + 0.5 * 200.0) / 1.5)


@pytest.mark.asyncio
async def test_opposite_direction_rejected(paper):
    paper.set_current_price(SYMBOL, 100.0)
    await paper.open_long_position(SYMBOL, 100.0, options())
    with pytest.raises(InvalidTradeRequest):
        await paper.open_short_position(SYMBOL, 100.0, options())


@pytest.mark.asyncio
async def test_partial_close_and_over_close(paper):
    paper.set_current_price(SYMBOL, 100.0)
    await paper.open_long_position(SYMBOL, 200.0, options())

    with pytest.raises(InvalidTradeRequest):
        await paper.close_long_position(SYMBOL, 5.0, options())

    await paper.close_long_position(SYMBOL, 0.5, options())
    position = await paper.get_position(SYMBOL)
    assert position.size == pytest.approx(1.5)

    raw = await paper.store.get_raw(paper._key(SYMBOL))
    assert raw['margin'] == pytest.approx(20.0 * 0.75)


@pytest.mark.asyncio
async def test_short_profits_when_price_falls(paper):
    paper.set_current_price(SYMBOL, 100.0)
    await paper.open_short_position(SYMBOL, 100.0, options())

    paper.set_current_price(SYMBOL, 90.0)
    position = await paper.get_position(SYMBOL)
    assert not position.is_long
    assert position.unrealized_pnl == pytest.approx(10.0)

    result = await paper.close_short_position(SYMBOL, 1.0, options())
    assert result.realized_pnl == pytest.approx(10.0)


@pytest.mark.asyncio
async def test_quote_matches_execution(paper):
    paper.set_current_price(SYMBOL, 100.0)
    quote = await paper.get_expected_trade_return(SYMBOL, 300.0, True, True, options(2.0))
    assert quote.expected_size == pytest.approx(3.0)
    assert quote.margin == pytest.approx(15.0)

    result = await paper.open_long_position(SYMBOL, 300.0, options(2.0))
    assert result.executed_size == pytest.approx(quote.expected_size)
    assert result.fee == pytest.approx(quote.fee)


def _liquidation_stack(threshold: float):
    clock = Clock()
    config = TradingConfig(symbols=(SYMBOL,), paper=PaperConfig(liquidation_threshold=threshold))
    context = make_context(config, clock=clock)
    return PaperTradingAdapter(MemoryPositionStore(), context)


@pytest.mark.asyncio
async def test_liquidation_boundary_is_inclusive():
    # Margin ratio of a 500 long from 100 when the price reaches 91
    boundary = PaperPosition(
        symbol=SYMBOL, size=500.0 / 100.0, entry_price=100.0, timestamp=0,
        is_long=True, leverage=1.0, margin=500.0 * 0.1 / 1.0,
    ).margin_ratio(91.0)
    adapter = _liquidation_stack(boundary)

    adapter.set_current_price(SYMBOL, 100.0)
    await adapter.open_long_position(SYMBOL, 500.0, options())

    adapter.set_current_price(SYMBOL, 91.01)
    assert await adapter.get_position(SYMBOL) is not None

    adapter.set_current_price(SYMBOL, 91.0)
    with pytest.raises(LiquidationTriggered) as exc:
        await adapter.get_position(SYMBOL)

    assert isinstance(exc.value.result, OrderbookTradeResult)
    assert await adapter.store.get_raw(adapter._key(SYMBOL)) is None
    # 949.75 after open, then margin 50 + pnl -45 - fee 0.2275 credited back
    assert await adapter.get_balance() == pytest.approx(954.5225)


@pytest.mark.asyncio
async def test_liquidation_credit_floored_at_zero():
    adapter = _liquidation_stack(0.05)
    adapter.set_current_price(SYMBOL, 100.0)
    await adapter.open_long_position(SYMBOL, 500.0, options())

    adapter.set_current_price(SYMBOL, 50.0)
    result = await adapter.check_liquidation(SYMBOL)

    assert result is not None
    assert result.executed_size == pytest.approx(5.0)
    assert await adapter.get_balance() == pytest.approx(949.75)
    assert await adapter.check_liquidation(SYMBOL) is None
