"""
Test the decision engine against the paper simulator.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ta_trader.adapters.base import TradingAdapter
from ta_trader.adapters.models import OrderbookTradeOptions, OrderbookTradeQuote
from ta_trader.common.errors import InsufficientBalance, UnsupportedSymbol
from ta_trader.common.types import (
    Direction,
    PartialPosition,
    Position,
    SignalAction,
    SignalQuery,
    SignalReason,
    SignalType,
)
from ta_trader.config.config import RiskConfig
from ta_trader.engine.decision import DecisionEngine, next_position_size, partial_exit_reason

from .conftest import SYMBOL, bearish, bullish, neutral, very_bullish

ETH = "PERP_ETH_USDC"


async def _enter_long(engine, paper, price=100.0):
    paper.set_current_price(SYMBOL, price)
    [signal] = await engine.evaluate(bullish(price))
    assert signal.type == SignalType.ENTRY
    return signal


def test_next_position_size():
    assert next_position_size(1000.0, 0, 4) == pytest.approx(250.0)
    assert next_position_size(600.0, 1, 4) == pytest.approx(200.0)
    # Last slot takes everything, no slot left gives nothing
    assert next_position_size(300.0, 3, 4) == pytest.approx(300.0)
    assert next_position_size(300.0, 4, 4) == 0.0


def test_stop_loss_precedes_reversal_and_take_profit():
    risk = RiskConfig()
    partial = PartialPosition(1.0, 100.0, 0)
    pair = risk.tier(0).long

    assert partial_exit_reason(partial, 98.0, True, risk, total=-10.0, pair=pair) == SignalReason.STOP_LOSS
    assert partial_exit_reason(partial, 102.0, True, risk, total=-10.0, pair=pair) == SignalReason.TAKE_PROFIT
    assert partial_exit_reason(partial, 100.5, True, risk, total=-10.0, pair=pair) == SignalReason.SIGNAL_REVERSAL
    assert partial_exit_reason(partial, 100.5, True, risk, total=1.0, pair=pair) is None
    # Shorts mirror
    assert partial_exit_reason(partial, 102.0, False, risk) == SignalReason.STOP_LOSS


@pytest.mark.asyncio
async def test_opens_long_on_bullish_score(engine, paper, store):
    signal = await _enter_long(engine, paper)

    assert signal.action == SignalAction.OPEN
    assert signal.direction == Direction.LONG
    assert signal.reason == SignalReason.TA_SCORE
    assert signal.threshold == 2.0
    assert signal.ta_score == pytest.approx(2.78)
    assert signal.position_size == pytest.approx(2.5)

    position = await store.get(SYMBOL)
    assert len(position.partials) == 1
    assert position.entry_price == pytest.approx(100.0)
    assert await paper.get_balance() == pytest.approx(1000.0 - 25.0 - 0.125)


@pytest.mark.asyncio
async def test_below_threshold_is_no_action(engine, paper, store):
    paper.set_current_price(SYMBOL, 100.0)
    [signal] = await engine.evaluate(neutral(100.0))

    assert signal.type == SignalType.NO_ACTION
    assert signal.reason == SignalReason.BELOW_THRESHOLD
    assert signal.threshold == 2.0
    assert await store.get(SYMBOL) is None


@pytest.mark.asyncio
async def test_hold_then_add_then_partial_reversal(engine, paper, store):
    await _enter_long(engine, paper)

    [hold] = await engine.evaluate(bullish(100.0))
    assert hold.type == SignalType.HOLD
    assert hold.unrealized_pnl == pytest.approx(0.0)

    [add] = await engine.evaluate(very_bullish(100.0))
    assert add.type == SignalType.ADJUSTMENT
    assert add.action == SignalAction.INCREASE
    assert add.reason == SignalReason.STRENGTHENED_SIGNAL
    assert add.threshold == 5.5

    position = await store.get(SYMBOL)
    assert len(position.partials) == 2
    second = position.partials[1].size
    assert second == pytest.approx((1000.0 - 25.125) / 3 / 100.0)
    assert position.size == pytest.approx(2.5 + second)

    # A neutral score is a reversal for tier two (sell 1.0) but not tier one (sell -0.5)
    [exit_signal] = await engine.evaluate(neutral(100.0))
    assert exit_signal.type == SignalType.EXIT
    assert exit_signal.reason == SignalReason.SIGNAL_REVERSAL
    assert exit_signal.action == SignalAction.DECREASE
    assert exit_signal.position_size == pytest.approx(second)

    position = await store.get(SYMBOL)
    assert len(position.partials) == 1
    assert position.size == pytest.approx(2.5)
    venue = await paper.get_position(SYMBOL)
    assert venue.size == pytest.approx(2.5)


@pytest.mark.asyncio
async def test_stop_loss_beats_bullish_score(engine, paper, store):
    await _enter_long(engine, paper)

    paper.set_current_price(SYMBOL, 98.0)
    [signal] = await engine.evaluate(very_bullish(98.0))

    assert signal.type == SignalType.STOP_LOSS
    assert signal.reason == SignalReason.STOP_LOSS
    assert signal.action == SignalAction.CLOSE
    assert signal.realized_pnl == pytest.approx(-5.0)
    assert await store.get(SYMBOL) is None
    assert await paper.get_position(SYMBOL) is None

    stats = await store.get_stats(SYMBOL)
    assert stats.total_trades == 1
    assert stats.successful_trades == 0
    assert stats.cumulative_pnl == pytest.approx(-5.0 - 2.5 * 98.0 * 0.0005)


@pytest.mark.asyncio
async def test_take_profit(engine, paper, store):
    await _enter_long(engine, paper)

    paper.set_current_price(SYMBOL, 102.0)
    [signal] = await engine.evaluate(bullish(102.0))

    assert signal.type == SignalType.TAKE_PROFIT
    assert signal.realized_pnl == pytest.approx(5.0)
    assert (await store.get_stats(SYMBOL)).successful_trades == 1


@pytest.mark.asyncio
async def test_reversal_closes_position(engine, paper, store):
    await _enter_long(engine, paper)

    paper.set_current_price(SYMBOL, 100.5)
    [signal] = await engine.evaluate(bearish(100.5))

    assert signal.type == SignalType.EXIT
    assert signal.reason == SignalReason.SIGNAL_REVERSAL
    assert signal.action == SignalAction.CLOSE
    assert signal.threshold == -0.5
    assert await store.get(SYMBOL) is None


@pytest.mark.asyncio
async def test_short_entry_and_take_profit(engine, paper, store):
    paper.set_current_price(SYMBOL, 100.0)
    [entry] = await engine.evaluate(bearish(100.0))
    assert entry.type == SignalType.ENTRY
    assert entry.direction == Direction.SHORT
    assert entry.threshold == -2.0

    position = await store.get(SYMBOL)
    assert not position.is_long
    assert position.size > 0

    paper.set_current_price(SYMBOL, 98.0)
    [exit_signal] = await engine.evaluate(bearish(98.0))
    assert exit_signal.type == SignalType.TAKE_PROFIT
    assert exit_signal.direction == Direction.SHORT
    assert exit_signal.realized_pnl == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_min_order_size_refuses_open(engine, paper, store):
    await store.put_balance(100.0)
    paper.set_current_price(SYMBOL, 100.0)

    [signal] = await engine.evaluate(bullish(100.0))
    assert signal.type == SignalType.NO_ACTION
    assert await store.get(SYMBOL) is None


@pytest.mark.asyncio
async def test_liquidation_emits_exit(engine, paper, store):
    await _enter_long(engine, paper)

    paper.set_current_price(SYMBOL, 94.0)
    [signal] = await engine.evaluate(neutral(94.0))

    assert signal.type == SignalType.EXIT
    assert signal.reason == SignalReason.LIQUIDATION
    assert signal.direction == Direction.LONG
    assert await store.get(SYMBOL) is None
    assert (await store.get_stats(SYMBOL)).total_trades == 1


@pytest.mark.asyncio
async def test_monitor_checks_price_thresholds_only(engine, paper):
    paper.set_current_price(SYMBOL, 100.0)
    assert await engine.monitor(SYMBOL) == []

    await _enter_long(engine, paper)
    assert await engine.monitor(SYMBOL) == []

    paper.set_current_price(SYMBOL, 102.0)
    [signal] = await engine.monitor(SYMBOL)
    assert signal.type == SignalType.TAKE_PROFIT
    assert signal.ta_score == 0.0


@pytest.mark.asyncio
async def test_close_all(engine, paper, store):
    await _enter_long(engine, paper)

    [signal] = await engine.close_all()
    assert signal.type == SignalType.EXIT
    assert signal.reason == SignalReason.MANUAL
    assert signal.action == SignalAction.CLOSE
    assert await store.list_symbols() == []
    assert await paper.get_position(SYMBOL) is None


@pytest.mark.asyncio
async def test_close_all_skips_failing_market(engine, paper, store):
    await _enter_long(engine, paper)
    paper.set_current_price(ETH, 2000.0)
    [entry] = await engine.evaluate(bullish(2000.0, symbol=ETH))
    assert entry.type == SignalType.ENTRY
    paper._prices.pop(SYMBOL)

    [signal] = await engine.close_all()

    assert signal.symbol == ETH
    assert signal.reason == SignalReason.MANUAL
    assert await paper.get_position(ETH) is None
    assert (await paper.get_position(SYMBOL)).size == pytest.approx(2.5)
    assert await store.list_symbols() == [SYMBOL]


@pytest.mark.asyncio
async def test_multi_reason_close_pages_without_gaps(engine, paper, signals, clock):
    await _enter_long(engine, paper)
    clock.advance(1)
    paper.set_current_price(SYMBOL, 100.5)
    [add] = await engine.evaluate(very_bullish(100.5))
    assert add.type == SignalType.ADJUSTMENT

    # First partial is past take-profit, the second reverses on a neutral score
    clock.advance(1)
    paper.set_current_price(SYMBOL, 101.9)
    closes = await engine.evaluate(neutral(101.9))
    assert [s.reason for s in closes] == [SignalReason.TAKE_PROFIT, SignalReason.SIGNAL_REVERSAL]
    assert closes[0].timestamp < closes[1].timestamp

    seen, cursor = [], None
    while True:
        page = await signals.query(SYMBOL, SignalQuery(limit=1, cursor=cursor))
        seen.extend(page.signals)
        if page.next_cursor is None:
            break
        cursor = page.next_cursor

    assert page.total_count == 4
    assert [s.type for s in seen] == [
        SignalType.EXIT, SignalType.TAKE_PROFIT, SignalType.ADJUSTMENT, SignalType.ENTRY,
    ]


@pytest.mark.asyncio
async def test_same_symbol_evaluations_are_serialized(engine, paper, store):
    paper.set_current_price(SYMBOL, 100.0)
    get_position = paper.get_position

    async def yielding_get_position(symbol):
        await asyncio.sleep(0)
        return await get_position(symbol)

    paper.get_position = yielding_get_position

    results = await asyncio.gather(engine.evaluate(bullish(100.0)), engine.evaluate(bullish(100.0)))

    types = [signal.type for signals in results for signal in signals]
    assert types.count(SignalType.ENTRY) == 1
    assert types.count(SignalType.HOLD) == 1
    ledger = await store.get(SYMBOL)
    assert len(ledger.partials) == 1
    assert (await get_position(SYMBOL)).size == pytest.approx(ledger.size)


@pytest.mark.asyncio
async def test_other_symbols_run_while_one_is_locked(engine, paper):
    paper.set_current_price(SYMBOL, 100.0)
    paper.set_current_price(ETH, 2000.0)

    async with engine.lock_for(SYMBOL):
        blocked = asyncio.create_task(engine.evaluate(bullish(100.0)))
        [eth] = await asyncio.wait_for(engine.evaluate(bullish(2000.0, symbol=ETH)), timeout=1.0)
        assert eth.type == SignalType.ENTRY
        assert not blocked.done()

    [btc] = await blocked
    assert btc.type == SignalType.ENTRY


@pytest.mark.asyncio
async def test_venue_position_is_adopted(engine, paper, store):
    paper.set_current_price(SYMBOL, 100.0)
    await paper.open_long_position(SYMBOL, 300.0, OrderbookTradeOptions(leverage=1.0))

    [signal] = await engine.evaluate(bullish(100.0))
    assert signal.type == SignalType.HOLD

    ledger = await store.get(SYMBOL)
    assert ledger.size == pytest.approx(3.0)
    assert len(ledger.partials) == 1


@pytest.mark.asyncio
async def test_stale_ledger_is_dropped(engine, paper, store):
    await store.put(SYMBOL, Position(symbol=SYMBOL, size=1.0, is_long=True, entry_price=100.0,
                                     partials=[PartialPosition(1.0, 100.0, 0)]))
    paper.set_current_price(SYMBOL, 100.0)

    [signal] = await engine.evaluate(neutral(100.0))
    assert signal.type == SignalType.NO_ACTION
    assert await store.get(SYMBOL) is None


@pytest.mark.asyncio
async def test_unsupported_symbol_propagates(engine):
    with pytest.raises(UnsupportedSymbol):
        await engine.evaluate(neutral(100.0, symbol="PERP_DOGE_USDC"))


@pytest.mark.asyncio
async def test_signals_are_logged(engine, paper, signals):
    await _enter_long(engine, paper)
    await engine.evaluate(bullish(100.0))

    page = await signals.query(SYMBOL, SignalQuery())
    assert page.total_count == 2
    assert {s.type for s in page.signals} == {SignalType.ENTRY, SignalType.HOLD}


def _spot_adapter():
    """Long-only adapter double."""
    adapter = MagicMock(spec=TradingAdapter)
    adapter.name = "spot"
    adapter.get_price = AsyncMock(return_value=100.0)
    adapter.get_position = AsyncMock(return_value=None)
    adapter.get_balance = AsyncMock(return_value=1000.0)
    adapter.default_trade_options = MagicMock(return_value=OrderbookTradeOptions())
    adapter.get_expected_trade_return = AsyncMock(return_value=OrderbookTradeQuote(
        expected_price=100.0, expected_size=2.5, fee=0.0,
    ))
    adapter.open_long_position = AsyncMock()
    return adapter


@pytest.mark.asyncio
async def test_short_signal_without_short_support(store, signals, context):
    adapter = _spot_adapter()
    engine = DecisionEngine(adapter, store, signals, context)

    [signal] = await engine.evaluate(bearish(100.0))

    assert signal.type == SignalType.NO_ACTION
    assert signal.reason == SignalReason.TA_SCORE
    assert signal.direction == Direction.SHORT
    adapter.open_long_position.assert_not_awaited()


@pytest.mark.asyncio
async def test_insufficient_balance_is_no_action(store, signals, context):
    adapter = _spot_adapter()
    adapter.open_long_position = AsyncMock(side_effect=InsufficientBalance(250.0, 10.0))
    engine = DecisionEngine(adapter, store, signals, context)

    [signal] = await engine.evaluate(bullish(100.0))

    assert signal.type == SignalType.NO_ACTION
    assert await store.get(SYMBOL) is None
