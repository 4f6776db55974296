"""
Rich tables for CLI output.
"""
from datetime import datetime
from typing import List

from rich import box
from rich.table import Table

from .common.types import ClosedTrade, Position, TradingSignal, format_price

SIGNAL_COLORS = {
    "ENTRY": "green",
    "ADJUSTMENT": "cyan",
    "EXIT": "magenta",
    "STOP_LOSS": "red",
    "TAKE_PROFIT": "green",
    "HOLD": "yellow",
    "NO_ACTION": "dim white",
}


def pnl_text(value: float) -> str:
    color = "green" if value >= 0 else "red"
    return f"[{color}]{value:+.2f}[/{color}]"


def positions_table(positions: List[Position]) -> Table:
    table = Table(show_header=True, header_style="bold cyan", expand=True, box=box.ROUNDED)
    table.add_column("Symbol", style="white bold")
    table.add_column("Side", justify="center")
    table.add_column("Size", justify="right")
    table.add_column("Entry", justify="right", style="yellow")
    table.add_column("Mark", justify="right")
    table.add_column("uPnL", justify="right")
    table.add_column("Partials", justify="right")

    for p in positions:
        side = "[green]LONG[/green]" if p.is_long else "[red]SHORT[/red]"
        table.add_row(
            p.symbol,
            side,
            f"{p.size:.6f}",
            format_price(p.entry_price),
            format_price(p.mark_price) if p.mark_price else "-",
            pnl_text(p.unrealized_pnl),
            str(len(p.partials)),
        )
    return table


def signals_table(signals: List[TradingSignal], title: str = "Signals") -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan", expand=True, box=box.ROUNDED)
    table.add_column("Time", style="dim")
    table.add_column("Symbol", style="white bold")
    table.add_column("Type", justify="center")
    table.add_column("Reason")
    table.add_column("Score", justify="right")
    table.add_column("Threshold", justify="right", style="dim")
    table.add_column("Price", justify="right", style="yellow")

    for s in signals:
        color = SIGNAL_COLORS.get(s.type.value, "white")
        table.add_row(
            datetime.fromtimestamp(s.timestamp / 1000).strftime("%m-%d %H:%M:%S"),
            s.symbol,
            f"[{color}]{s.type.value}[/{color}]",
            s.reason.value,
            f"{s.ta_score:+.3f}",
            f"{s.threshold:+.3f}",
            format_price(s.price),
        )
    return table


def trades_table(trades: List[ClosedTrade]) -> Table:
    table = Table(title="Closed Trades", show_header=True, header_style="bold cyan", expand=True, box=box.ROUNDED)
    table.add_column("Closed", style="dim")
    table.add_column("Symbol", style="white bold")
    table.add_column("Side", justify="center")
    table.add_column("Size", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Exit", justify="right")
    table.add_column("PnL", justify="right")

    for t in trades:
        table.add_row(
            datetime.fromtimestamp(t.closed_at / 1000).strftime("%m-%d %H:%M:%S"),
            t.symbol,
            "LONG" if t.is_long else "SHORT",
            f"{t.size:.6f}",
            format_price(t.entry_price),
            format_price(t.exit_price),
            pnl_text(t.realized_pnl),
        )
    return table
