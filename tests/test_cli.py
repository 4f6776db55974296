"""
Test the CLI parser and table rendering.
"""
import pytest
from rich.console import Console

from ta_trader.main import build_parser
from ta_trader.tables import positions_table, signals_table, trades_table

from .conftest import SYMBOL, bullish


def render(renderable) -> str:
    console = Console(record=True, width=250)
    console.print(renderable)
    return console.export_text()


def test_parser_commands():
    parser = build_parser()

    args = parser.parse_args(["--symbols", "PERP_BTC_USDC", "--storage", "memory", "run"])
    assert args.command == "run"
    assert args.symbols == ["PERP_BTC_USDC"]
    assert args.storage == "memory"

    args = parser.parse_args(["signals", SYMBOL, "--type", "ENTRY", "--limit", "5"])
    assert args.symbol == SYMBOL
    assert args.type == "ENTRY"
    assert args.limit == 5
    assert args.cursor is None

    with pytest.raises(SystemExit):
        parser.parse_args(["signals", SYMBOL, "--type", "MAYBE"])
    with pytest.raises(SystemExit):
        parser.parse_args([])


@pytest.mark.asyncio
async def test_tables_render(engine, paper, store):
    paper.set_current_price(SYMBOL, 100.0)
    [entry] = await engine.evaluate(bullish(100.0))
    [close] = await engine.close_all()

    assert "ENTRY" in render(signals_table([entry, close]))
    assert "MANUAL" in render(signals_table([entry, close]))
    trades = render(trades_table(await store.get_closed_trades()))
    assert SYMBOL in trades
    assert "LONG" in trades

    paper.set_current_price(SYMBOL, 100.0)
    await engine.evaluate(bullish(100.0))
    text = render(positions_table(await paper.get_positions()))
    assert SYMBOL in text
    assert "LONG" in text
