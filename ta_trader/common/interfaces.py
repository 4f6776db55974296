"""
Abstract interfaces for the collaborators the engine consumes.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from .types import (
    ClosedTrade,
    IndicatorSnapshot,
    Position,
    PositionStats,
    SignalPage,
    SignalQuery,
    TradingSignal,
)


class IndicatorSource(ABC):
    """
    Supplies the latest indicator values per market.
    """

    @abstractmethod
    async def fetch_latest(self, symbol: str) -> IndicatorSnapshot:
        """
        Latest price, VWAP, Bollinger bands, RSI and OBV plus a recent
        price/OBV history window (oldest first).
        Raises UpstreamUnavailable when the data cannot be fetched.
        """
        pass

    async def cleanup(self):
        """Close connections. Optional."""
        pass


class PositionStore(ABC):
    """
    Durable per-market position state, account balance and running stats.
    """

    @abstractmethod
    async def get(self, symbol: str) -> Optional[Position]:
        pass

    @abstractmethod
    async def put(self, symbol: str, position: Position):
        pass

    @abstractmethod
    async def delete(self, symbol: str):
        pass

    @abstractmethod
    async def get_balance(self) -> Optional[float]:
        """Stored balance, or None if nothing was ever stored."""
        pass

    @abstractmethod
    async def put_balance(self, balance: float):
        pass

    @abstractmethod
    async def get_stats(self, symbol: str) -> PositionStats:
        pass

    @abstractmethod
    async def put_stats(self, symbol: str, stats: PositionStats):
        pass

    @abstractmethod
    async def list_symbols(self) -> List[str]:
        """Symbols that currently hold a position."""
        pass

    @abstractmethod
    async def append_closed_trade(self, trade: ClosedTrade):
        pass

    @abstractmethod
    async def get_closed_trades(self, symbol: Optional[str] = None, limit: int = 50) -> List[ClosedTrade]:
        """Most recent closed trades first."""
        pass

    # Raw per-key storage for adapter-internal records (paper margin book etc.)

    @abstractmethod
    async def get_raw(self, key: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def put_raw(self, key: str, value: dict):
        pass

    @abstractmethod
    async def delete_raw(self, key: str):
        pass


class SignalStore(ABC):
    """
    Append-only signal log.
    """

    @abstractmethod
    async def append(self, signal: TradingSignal):
        pass

    @abstractmethod
    async def query(self, symbol: str, query: SignalQuery) -> SignalPage:
        """
        Filtered, timestamp-descending page. The cursor is the timestamp of the
        last row of the previous page (strict <). total_count ignores the cursor.
        """
        pass
