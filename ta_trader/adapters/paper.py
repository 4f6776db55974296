"""
Paper trading adapter.

Simulates a leveraged orderbook venue on top of a PositionStore:
margin, fees, funding and liquidation, with prices pushed in per symbol.
"""
import asyncio
import itertools
from typing import Dict, Iterable, List, Optional, Tuple

from ..common.errors import (
    InsufficientBalance,
    InvalidTradeRequest,
    LiquidationTriggered,
    UnsupportedSymbol,
    UpstreamUnavailable,
)
from ..common.interfaces import PositionStore
from ..common.types import ClosedTrade, ExchangeType, PaperPosition, Position, split_symbol
from ..context import TradingContext
from .base import (
    FeeQuotable,
    Liquidatable,
    MarketCatalog,
    PositionHistoryProvider,
    ShortSellable,
    TradingAdapter,
    commit_ledger,
)
from .models import (
    BookLevel,
    OrderBook,
    OrderbookFees,
    OrderbookLiquidityDepth,
    OrderbookMarketInfo,
    OrderbookTradeQuote,
    OrderbookTradeResult,
    ensure_options_type,
)

MS_PER_HOUR = 60 * 60 * 1000
SIZE_EPSILON = 1e-12


class PaperTradingAdapter(TradingAdapter, ShortSellable, FeeQuotable, PositionHistoryProvider,
                          MarketCatalog, Liquidatable):
    """
    Reference ORDERBOOK adapter.

    Open: required margin = size * initial_margin_rate / leverage, fee = size * fee_rate.
    Close: balance += released margin + pnl - fee - funding.
    Any position whose margin ratio is at or below the liquidation threshold is
    force-closed before a position read, quote or trade touches it.
    """

    name = "paper"

    def __init__(self, store: PositionStore, context: TradingContext,
                 symbols: Optional[Iterable[str]] = None):
        self.store = store
        self.context = context
        self.config = context.config.paper
        self.logger = context.logger
        self.symbols: Tuple[str, ...] = tuple(symbols or context.config.symbols)
        self._prices: Dict[str, float] = {}
        self._order_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    # --- Prices ---

    def set_current_price(self, symbol: str, price: float):
        self._check_symbol(symbol)
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")
        self._prices[symbol] = float(price)

    def _check_symbol(self, symbol: str):
        if symbol not in self.symbols:
            raise UnsupportedSymbol(symbol)

    def _current_price(self, symbol: str) -> float:
        self._check_symbol(symbol)
        price = self._prices.get(symbol)
        if price is None:
            raise UpstreamUnavailable(f"No price set for {symbol}", symbol)
        return price

    # --- Market Queries ---

    def get_exchange_type(self) -> ExchangeType:
        return ExchangeType.ORDERBOOK

    async def get_market_info(self, symbol: str) -> OrderbookMarketInfo:
        self._check_symbol(symbol)
        base, quote = split_symbol(symbol)
        return OrderbookMarketInfo(
            symbol=symbol,
            base_token=base,
            quote_token=quote,
            base_decimals=self.config.base_decimals,
            quote_decimals=self.config.quote_decimals,
            min_trade_size=self.config.min_trade_size,
            max_trade_size=self.config.max_trade_size,
            market_id=symbol,
            tick_size=0.01,
            step_size=0.01,
        )

    async def get_price(self, symbol: str, size: Optional[float] = None) -> float:
        return self._current_price(symbol)

    async def get_liquidity_depth(self, symbol: str, depth: Optional[int] = None) -> OrderbookLiquidityDepth:
        price = self._current_price(symbol)
        size = self.config.infinite_liquidity_size
        return OrderbookLiquidityDepth(order_book=OrderBook(
            bids=[BookLevel(price=price * (1 - self.config.spread), size=size)],
            asks=[BookLevel(price=price * (1 + self.config.spread), size=size)],
        ))

    async def is_market_active(self, symbol: str) -> bool:
        return symbol in self.symbols

    async def get_supported_markets(self) -> List[str]:
        return list(self.symbols)

    async def get_minimum_trade_size(self, symbol: str) -> float:
        self._check_symbol(symbol)
        return self.config.min_trade_size

    async def get_fees(self, symbol: str) -> OrderbookFees:
        self._check_symbol(symbol)
        return OrderbookFees(maker_fee=self.config.fee_rate, taker_fee=self.config.fee_rate)

    # --- Account ---

    async def get_balance(self) -> float:
        balance = await self.store.get_balance()
        return self.config.initial_balance if balance is None else balance

    async def get_position(self, symbol: str) -> Optional[Position]:
        self._check_symbol(symbol)
        async with self._lock:
            price = self._prices.get(symbol)
            if price is not None:
                await self._guard(symbol, price)
            paper = await self._get_paper(symbol)
            return paper.to_position(price) if paper else None

    async def get_positions(self) -> List[Position]:
        positions = []
        for symbol in self.symbols:
            position = await self.get_position(symbol)
            if position:
                positions.append(position)
        return positions

    async def get_position_history(self, symbol: Optional[str] = None, limit: int = 50) -> List[ClosedTrade]:
        return await self.store.get_closed_trades(symbol, limit)

    # --- Trading ---

    async def open_long_position(self, symbol: str, size: float, options) -> OrderbookTradeResult:
        return await self._open(symbol, size, options, is_long=True)

    async def open_short_position(self, symbol: str, size: float, options) -> OrderbookTradeResult:
        return await self._open(symbol, size, options, is_long=False)

    async def close_long_position(self, symbol: str, size: float, options) -> OrderbookTradeResult:
        return await self._close(symbol, size, options, is_long=True)

    async def close_short_position(self, symbol: str, size: float, options) -> OrderbookTradeResult:
        return await self._close(symbol, size, options, is_long=False)

    async def get_expected_trade_return(self, symbol: str, size: float, is_long: bool,
                                        is_open: bool, options) -> OrderbookTradeQuote:
        ensure_options_type(options, ExchangeType.ORDERBOOK)
        price = self._current_price(symbol)
        async with self._lock:
            await self._guard(symbol, price)

        leverage = options.leverage or 1.0
        if is_open:
            # Opens are quoted in quote currency
            value = size
            expected_size = size / price
            margin = value * self.config.initial_margin_rate / leverage
        else:
            value = size * price
            expected_size = size
            margin = 0.0

        return OrderbookTradeQuote(
            expected_price=price,
            expected_size=expected_size,
            fee=value * self.config.fee_rate,
            margin=margin,
        )

    async def check_liquidation(self, symbol: str) -> Optional[OrderbookTradeResult]:
        price = self._current_price(symbol)
        async with self._lock:
            try:
                await self._guard(symbol, price)
            except LiquidationTriggered as e:
                return e.result
        return None

    # --- Internals ---

    def _key(self, symbol: str) -> str:
        return f"paper:position:{symbol}"

    def _next_order_id(self) -> str:
        return f"paper-{self.context.now()}-{next(self._order_ids)}"

    async def _get_paper(self, symbol: str) -> Optional[PaperPosition]:
        data = await self.store.get_raw(self._key(symbol))
        return PaperPosition.from_dict(data) if data else None

    async def _open(self, symbol: str, size: float, options, is_long: bool) -> OrderbookTradeResult:
        ensure_options_type(options, ExchangeType.ORDERBOOK)
        price = self._current_price(symbol)
        if size <= 0:
            raise InvalidTradeRequest(f"Trade size must be positive, got {size}")

        leverage = options.leverage or 1.0
        if leverage <= 0 or leverage > self.config.max_leverage:
            raise InvalidTradeRequest(f"Leverage must be in (0, {self.config.max_leverage}], got {leverage}")

        async with self._lock:
            await self._guard(symbol, price)

            qty = size / price
            required_margin = size * self.config.initial_margin_rate / leverage
            fee = size * self.config.fee_rate
            total_required = required_margin + fee

            balance = await self.get_balance()
            if total_required > balance:
                raise InsufficientBalance(total_required, balance)

            now = self.context.now()
            existing = await self._get_paper(symbol)
            if existing and existing.is_long != is_long:
                raise InvalidTradeRequest(
                    f"Cannot open {'long' if is_long else 'short'} on {symbol}: opposite position is open"
                )

            if existing:
                merged_size = existing.size + qty
                position = PaperPosition(
                    symbol=symbol,
                    size=merged_size,
                    entry_price=(existing.size * existing.entry_price + qty * price) / merged_size,
                    timestamp=now,
                    is_long=is_long,
                    leverage=existing.leverage,
                    margin=existing.margin + required_margin,
                    funding_paid=existing.funding_paid,
                )
            else:
                position = PaperPosition(
                    symbol=symbol,
                    size=qty,
                    entry_price=price,
                    timestamp=now,
                    is_long=is_long,
                    leverage=leverage,
                    margin=required_margin,
                )

            await self._commit(symbol, balance - total_required, position)

        self.logger.info(
            f"Opened {'long' if is_long else 'short'} {qty:.6f} @ {price}",
            symbol, "paper_open", margin=required_margin, fee=fee, leverage=leverage,
        )
        return OrderbookTradeResult(
            success=True,
            executed_price=price,
            executed_size=qty,
            fee=fee,
            order_id=self._next_order_id(),
        )

    async def _close(self, symbol: str, qty: float, options, is_long: bool) -> OrderbookTradeResult:
        ensure_options_type(options, ExchangeType.ORDERBOOK)
        price = self._current_price(symbol)
        if qty <= 0:
            raise InvalidTradeRequest(f"Close size must be positive, got {qty}")

        async with self._lock:
            await self._guard(symbol, price)

            position = await self._get_paper(symbol)
            if position is None or position.is_long != is_long:
                raise InvalidTradeRequest(f"No {'long' if is_long else 'short'} position on {symbol}")
            if qty > position.size * (1 + 1e-9):
                raise InvalidTradeRequest(
                    f"Close size {qty} exceeds position size {position.size} on {symbol}"
                )
            qty = min(qty, position.size)

            result = await self._settle(position, qty, price, floor_at_zero=False)

        self.logger.info(
            f"Closed {'long' if is_long else 'short'} {qty:.6f} @ {price}",
            symbol, "paper_close", pnl=result.realized_pnl, fee=result.fee,
        )
        return result

    async def _settle(self, position: PaperPosition, qty: float, price: float,
                      floor_at_zero: bool) -> OrderbookTradeResult:
        """Realize qty of position at price and commit balance + position together."""
        now = self.context.now()
        hours = max(0, now - position.timestamp) / MS_PER_HOUR
        funding = abs(position.size * price) * self.config.funding_rate_per_hour * hours

        fee = qty * price * self.config.fee_rate
        if position.is_long:
            pnl = (price - position.entry_price) * qty
        else:
            pnl = (position.entry_price - price) * qty
        released = position.margin * qty / position.size
        credit = released + pnl - fee - funding
        if floor_at_zero:
            credit = max(0.0, credit)

        remaining_size = position.size - qty
        remaining = None
        if remaining_size > SIZE_EPSILON:
            remaining = PaperPosition(
                symbol=position.symbol,
                size=remaining_size,
                entry_price=position.entry_price,
                timestamp=now,
                is_long=position.is_long,
                leverage=position.leverage,
                margin=position.margin - released,
                funding_paid=position.funding_paid + funding,
            )

        trade = ClosedTrade(
            symbol=position.symbol,
            is_long=position.is_long,
            size=qty,
            entry_price=position.entry_price,
            exit_price=price,
            realized_pnl=pnl - fee - funding,
            opened_at=position.timestamp,
            closed_at=now,
        )
        balance = await self.get_balance()
        await self._commit(position.symbol, balance + credit, remaining, trade)

        return OrderbookTradeResult(
            success=True,
            executed_price=price,
            executed_size=qty,
            fee=fee,
            realized_pnl=pnl,
            order_id=self._next_order_id(),
        )

    async def _guard(self, symbol: str, price: float):
        """Liquidate the symbol's position if its margin ratio is at or below the threshold."""
        position = await self._get_paper(symbol)
        if position is None:
            return
        ratio = position.margin_ratio(price)
        if ratio > self.config.liquidation_threshold:
            return

        result = await self._settle(position, position.size, price, floor_at_zero=True)
        self.logger.warning(
            f"Liquidated {position.size:.6f} @ {price}", symbol, "liquidation",
            margin_ratio=ratio, pnl=result.realized_pnl,
        )
        raise LiquidationTriggered(symbol, price, ratio, result)

    async def _commit(self, symbol: str, balance: float, position: Optional[PaperPosition],
                      trade: Optional[ClosedTrade] = None):
        await commit_ledger(
            self.store, self._key(symbol), balance,
            None if position is None else position.to_dict(),
            trade, default_balance=self.config.initial_balance,
        )
