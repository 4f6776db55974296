"""
Main Entry Point.

    python -m ta_trader [--config config.yaml] run
    python -m ta_trader balance | positions | close-all | signals SYMBOL
"""
import argparse
import asyncio
from typing import Optional

from rich.console import Console

from .adapters.base import PositionHistoryProvider
from .common.types import SignalQuery, SignalType
from .components import Components, build_components
from .config.config import load_config
from .tables import positions_table, signals_table, trades_table

console = Console()


async def run(components: Components):
    runner = components.runner
    config = components.context.config
    components.context.logger.log_config(config.to_dict())

    console.print(
        f"Starting runner: [cyan bold]{components.adapter.name}[/cyan bold] "
        f"on {', '.join(config.symbols)}"
    )
    try:
        await runner.run_forever()
    finally:
        runner.stop()


async def show_balance(components: Components):
    balance = await components.adapter.get_balance()
    console.print(f"[cyan bold]{components.adapter.name}[/cyan bold] balance: ${balance:,.2f}")


async def show_positions(components: Components):
    positions = await components.adapter.get_positions()
    if not positions:
        console.print("No open positions.")
    else:
        console.print(positions_table(positions))

    if isinstance(components.adapter, PositionHistoryProvider):
        trades = await components.adapter.get_position_history(limit=20)
        if trades:
            console.print(trades_table(trades))


async def close_all(components: Components):
    signals = await components.runner.close_all()
    if not signals:
        console.print("Nothing to close.")
        return
    console.print(signals_table(signals, title="Closed"))


async def show_signals(components: Components, symbol: str, signal_type: Optional[str],
                       limit: int, cursor: Optional[int]):
    query = SignalQuery(
        type=SignalType(signal_type) if signal_type else None,
        cursor=cursor,
        limit=limit,
    )
    page = await components.signals.query(symbol, query)
    console.print(signals_table(page.signals, title=f"{symbol} ({page.total_count} total)"))
    if page.next_cursor is not None:
        console.print(f"[dim]next cursor: {page.next_cursor}[/dim]")


async def main(args: argparse.Namespace):
    overrides = {}
    if args.symbols:
        overrides['symbols'] = args.symbols
    if args.storage:
        overrides['storage'] = args.storage
    try:
        config = load_config(args.config, overrides)
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {args.config}[/red]")
        return

    components = build_components(config)
    try:
        if args.command == "run":
            await run(components)
        elif args.command == "balance":
            await show_balance(components)
        elif args.command == "positions":
            await show_positions(components)
        elif args.command == "close-all":
            await close_all(components)
        elif args.command == "signals":
            await show_signals(components, args.symbol, args.type, args.limit, args.cursor)
    finally:
        await components.cleanup()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ta_trader", description="Technical-analysis position trader")
    parser.add_argument("--config", type=str, default=None, help="Path to config file")
    parser.add_argument("--symbols", nargs="+", help="Override symbols list")
    parser.add_argument("--storage", choices=["memory", "supabase"], help="Override storage backend")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run the trading loop")
    sub.add_parser("balance", help="Show account balance")
    sub.add_parser("positions", help="Show open positions and recent closed trades")
    sub.add_parser("close-all", help="Force-close every open position")
    signals_parser = sub.add_parser("signals", help="Show signal history for a market")
    signals_parser.add_argument("symbol")
    signals_parser.add_argument("--type", choices=[t.value for t in SignalType])
    signals_parser.add_argument("--limit", type=int, default=20)
    signals_parser.add_argument("--cursor", type=int, default=None)
    return parser


def cli():
    args = build_parser().parse_args()
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        console.print("Stopped by user.")


if __name__ == "__main__":
    cli()
