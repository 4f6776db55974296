"""
Trading adapter interface.

TradingAdapter is the capability contract every venue implements. Optional
features are separate ABCs (ShortSellable, FeeQuotable, ...) that callers
check with isinstance instead of checking for missing methods.

Sizes: opens take a quote-currency amount, closes a base-asset quantity.
Every mutating call either fully succeeds or leaves balance and position
untouched.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from ..common.interfaces import PositionStore
from ..common.types import ClosedTrade, ExchangeType, Position
from .models import (
    Fees,
    LiquidityDepth,
    MarketInfo,
    TradeOptions,
    TradeQuote,
    TradeResult,
    default_trade_options,
)


class TradingAdapter(ABC):
    """
    Venue-agnostic price discovery, balance, positions and execution.
    """

    name = "adapter"

    @abstractmethod
    def get_exchange_type(self) -> ExchangeType:
        """Fixed per adapter instance."""
        pass

    @abstractmethod
    async def get_market_info(self, symbol: str) -> MarketInfo:
        """MarketInfo variant for the symbol. Raises UnsupportedSymbol."""
        pass

    @abstractmethod
    async def get_price(self, symbol: str, size: Optional[float] = None) -> float:
        """
        Current price; size-aware venues (AMMs) return the effective
        price for a trade of that quote size. Raises UnsupportedSymbol.
        """
        pass

    @abstractmethod
    async def get_liquidity_depth(self, symbol: str, depth: Optional[int] = None) -> LiquidityDepth:
        pass

    @abstractmethod
    async def get_balance(self) -> float:
        """Free quote-currency balance."""
        pass

    @abstractmethod
    async def get_position(self, symbol: str) -> Optional[Position]:
        pass

    async def get_positions(self) -> List[Position]:
        """All open positions. Adapters with a bulk endpoint should override."""
        return []

    @abstractmethod
    async def open_long_position(self, symbol: str, size: float, options: TradeOptions) -> TradeResult:
        pass

    @abstractmethod
    async def close_long_position(self, symbol: str, size: float, options: TradeOptions) -> TradeResult:
        pass

    @abstractmethod
    async def get_expected_trade_return(self, symbol: str, size: float, is_long: bool,
                                        is_open: bool, options: TradeOptions) -> TradeQuote:
        """
        Side-effect-free simulation of a trade, priced from the same source
        as the real execution path.
        """
        pass

    @abstractmethod
    async def is_market_active(self, symbol: str) -> bool:
        pass

    def default_trade_options(self, leverage: Optional[float] = None) -> TradeOptions:
        return default_trade_options(self.get_exchange_type(), leverage=leverage)

    async def cleanup(self):
        """Close network sessions. Optional."""
        pass


class ShortSellable(ABC):
    @abstractmethod
    async def open_short_position(self, symbol: str, size: float, options: TradeOptions) -> TradeResult:
        pass

    @abstractmethod
    async def close_short_position(self, symbol: str, size: float, options: TradeOptions) -> TradeResult:
        pass


class FeeQuotable(ABC):
    @abstractmethod
    async def get_fees(self, symbol: str) -> Fees:
        """Fees variant matching the adapter's exchange type."""
        pass


class PositionHistoryProvider(ABC):
    @abstractmethod
    async def get_position_history(self, symbol: Optional[str] = None, limit: int = 50) -> List[ClosedTrade]:
        pass


class MarketCatalog(ABC):
    @abstractmethod
    async def get_supported_markets(self) -> List[str]:
        pass

    @abstractmethod
    async def get_minimum_trade_size(self, symbol: str) -> float:
        pass


class Liquidatable(ABC):
    @abstractmethod
    async def check_liquidation(self, symbol: str) -> Optional[TradeResult]:
        """
        Force-close the position if it sits at or below the liquidation
        margin ratio. Returns the forced TradeResult, or None.
        """
        pass


async def commit_ledger(store: PositionStore, key: str, balance: float, position: Optional[dict],
                        trade: Optional[ClosedTrade] = None, default_balance: float = 0.0):
    """
    Write balance, position and closed trade as one unit for adapters that
    book fills in a PositionStore. On failure the previous balance and
    position are restored before the error propagates.
    """
    previous_balance = await store.get_balance()
    previous_position = await store.get_raw(key)
    try:
        if position is None:
            await store.delete_raw(key)
        else:
            await store.put_raw(key, position)
        await store.put_balance(balance)
        if trade is not None:
            await store.append_closed_trade(trade)
    except Exception:
        if previous_position is None:
            await store.delete_raw(key)
        else:
            await store.put_raw(key, previous_position)
        await store.put_balance(default_balance if previous_balance is None else previous_balance)
        raise
