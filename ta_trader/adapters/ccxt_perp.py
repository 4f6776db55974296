"""
Perpetual orderbook adapter on top of ccxt.

Defaults to woofipro (an Orderly Network broker). Venue symbols use the
Orderly form PERP_<BASE>_<QUOTE>; ccxt unified symbols are derived from them.
Market orders only; closes are sent reduce-only.
"""
from typing import Iterable, List, Optional, Tuple

import ccxt.async_support as ccxt

from ..common.errors import (
    InsufficientBalance,
    InvalidTradeRequest,
    UnsupportedSymbol,
    UpstreamUnavailable,
)
from ..common.types import ClosedTrade, ExchangeType, PartialPosition, Position, split_symbol
from ..context import TradingContext
from .base import FeeQuotable, MarketCatalog, PositionHistoryProvider, ShortSellable, TradingAdapter
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

QTY_EPSILON = 0.000001


def to_ccxt_symbol(symbol: str) -> str:
    """PERP_BTC_USDC -> BTC/USDC:USDC"""
    base, quote = split_symbol(symbol)
    return f"{base}/{quote}:{quote}"


class CCXTPerpAdapter(TradingAdapter, ShortSellable, FeeQuotable, PositionHistoryProvider, MarketCatalog):
    name = "orderly"

    def __init__(self, context: TradingContext, exchange=None,
                 symbols: Optional[Iterable[str]] = None, credentials: Optional[dict] = None):
        cfg = context.config.exchange
        self.context = context
        self.logger = context.logger
        self.symbols: Tuple[str, ...] = tuple(symbols or context.config.symbols)
        if exchange is None:
            exchange_class = getattr(ccxt, cfg.exchange_id)
            exchange = exchange_class({
                'enableRateLimit': True,
                'options': {'defaultType': 'swap'},
                **(credentials or {}),
            })
            if cfg.sandbox:
                exchange.set_sandbox_mode(True)
        self.exchange = exchange
        self._markets_loaded = False

    async def cleanup(self):
        await self.exchange.close()

    # --- Helpers ---

    def _market_symbol(self, symbol: str) -> str:
        if symbol not in self.symbols:
            raise UnsupportedSymbol(symbol)
        return to_ccxt_symbol(symbol)

    async def _call(self, symbol: Optional[str], method: str, *args, **kwargs):
        """Invoke a ccxt method, translating its errors into the trading taxonomy."""
        try:
            if not self._markets_loaded:
                await self.exchange.load_markets()
                self._markets_loaded = True
            return await getattr(self.exchange, method)(*args, **kwargs)
        except ccxt.BadSymbol as e:
            raise UnsupportedSymbol(symbol or str(args[0] if args else "")) from e
        except ccxt.InsufficientFunds as e:
            raise InsufficientBalance(message=f"{self.exchange.id}: {e}") from e
        except ccxt.InvalidOrder as e:
            raise InvalidTradeRequest(f"{self.exchange.id}: {e}") from e
        except ccxt.AuthenticationError:
            raise
        except (ccxt.NetworkError, ccxt.ExchangeError) as e:
            raise UpstreamUnavailable(f"{self.exchange.id}.{method} failed: {e}", symbol) from e

    def _leverage_params(self, options) -> dict:
        return {'leverage': options.leverage} if options.leverage else {}

    # --- Market Queries ---

    def get_exchange_type(self) -> ExchangeType:
        return ExchangeType.ORDERBOOK

    async def get_market_info(self, symbol: str) -> OrderbookMarketInfo:
        market_symbol = self._market_symbol(symbol)
        await self._call(symbol, 'load_markets')
        try:
            market = self.exchange.market(market_symbol)
        except ccxt.BadSymbol as e:
            raise UnsupportedSymbol(symbol) from e

        limits = market.get('limits', {}).get('amount', {})
        precision = market.get('precision', {})
        base, quote = split_symbol(symbol)
        return OrderbookMarketInfo(
            symbol=symbol,
            base_token=base,
            quote_token=quote,
            base_decimals=18,
            quote_decimals=6,
            min_trade_size=limits.get('min') or 0.001,
            max_trade_size=limits.get('max') or 1_000_000,
            market_id=market.get('id', symbol),
            tick_size=precision.get('price') or 0.01,
            step_size=precision.get('amount') or 0.001,
        )

    async def get_price(self, symbol: str, size: Optional[float] = None) -> float:
        market_symbol = self._market_symbol(symbol)
        ticker = await self._call(symbol, 'fetch_ticker', market_symbol)
        price = ticker.get('markPrice') or ticker.get('last')
        if not price:
            raise UpstreamUnavailable(f"No mark price for {symbol}", symbol)
        return float(price)

    async def get_liquidity_depth(self, symbol: str, depth: Optional[int] = None) -> OrderbookLiquidityDepth:
        market_symbol = self._market_symbol(symbol)
        book = await self._call(symbol, 'fetch_order_book', market_symbol, depth or 20)
        return OrderbookLiquidityDepth(order_book=OrderBook(
            bids=[BookLevel(price=p, size=s) for p, s, *_ in book.get('bids', [])],
            asks=[BookLevel(price=p, size=s) for p, s, *_ in book.get('asks', [])],
        ))

    async def is_market_active(self, symbol: str) -> bool:
        if symbol not in self.symbols:
            return False
        try:
            await self.get_price(symbol)
            return True
        except UpstreamUnavailable:
            return False

    async def get_supported_markets(self) -> List[str]:
        await self._call(None, 'load_markets')
        return [s for s in self.symbols if to_ccxt_symbol(s) in self.exchange.markets]

    async def get_minimum_trade_size(self, symbol: str) -> float:
        info = await self.get_market_info(symbol)
        return info.min_trade_size

    async def get_fees(self, symbol: str) -> OrderbookFees:
        market_symbol = self._market_symbol(symbol)
        fee = await self._call(symbol, 'fetch_trading_fee', market_symbol)
        return OrderbookFees(maker_fee=float(fee.get('maker') or 0.0), taker_fee=float(fee.get('taker') or 0.0))

    # --- Account ---

    async def get_balance(self) -> float:
        balance = await self._call(None, 'fetch_balance')
        free = balance.get('free', {}) or {}
        return float(free.get('USDC') or 0.0)

    def _parse_position(self, symbol: str, raw: dict) -> Optional[Position]:
        contracts = float(raw.get('contracts') or 0.0)
        if abs(contracts) < QTY_EPSILON:
            return None
        side = raw.get('side')
        is_long = side == 'long' if side else contracts > 0
        entry = float(raw.get('entryPrice') or 0.0)
        timestamp = int(raw.get('timestamp') or self.context.now())
        size = abs(contracts)
        return Position(
            symbol=symbol,
            size=size,
            is_long=is_long,
            entry_price=entry,
            mark_price=raw.get('markPrice'),
            unrealized_pnl=float(raw.get('unrealizedPnl') or 0.0),
            realized_pnl=float(raw.get('realizedPnl') or 0.0),
            last_update_time=timestamp,
            partials=[PartialPosition(size, entry, timestamp)],
        )

    async def get_position(self, symbol: str) -> Optional[Position]:
        market_symbol = self._market_symbol(symbol)
        raw = await self._call(symbol, 'fetch_position', market_symbol)
        return self._parse_position(symbol, raw) if raw else None

    async def get_positions(self) -> List[Position]:
        by_market = {to_ccxt_symbol(s): s for s in self.symbols}
        raws = await self._call(None, 'fetch_positions', list(by_market))
        positions = []
        for raw in raws or []:
            symbol = by_market.get(raw.get('symbol'))
            if symbol is None:
                continue
            position = self._parse_position(symbol, raw)
            if position:
                positions.append(position)
        return positions

    async def get_position_history(self, symbol: Optional[str] = None, limit: int = 50) -> List[ClosedTrade]:
        if not self.exchange.has.get('fetchPositionsHistory'):
            return []
        markets = [self._market_symbol(symbol)] if symbol else [to_ccxt_symbol(s) for s in self.symbols]
        by_market = {to_ccxt_symbol(s): s for s in self.symbols}
        raws = await self._call(symbol, 'fetch_positions_history', markets, None, limit)
        trades = []
        for raw in raws or []:
            venue_symbol = by_market.get(raw.get('symbol'))
            if venue_symbol is None:
                continue
            info = raw.get('info') or {}
            trades.append(ClosedTrade(
                symbol=venue_symbol,
                is_long=raw.get('side') == 'long',
                size=abs(float(raw.get('contracts') or info.get('closed_position_qty') or 0.0)),
                entry_price=float(raw.get('entryPrice') or 0.0),
                exit_price=float(raw.get('markPrice') or info.get('avg_close_price') or 0.0),
                realized_pnl=float(raw.get('realizedPnl') or 0.0),
                opened_at=int(info.get('open_timestamp') or raw.get('timestamp') or 0),
                closed_at=int(raw.get('lastUpdateTimestamp') or raw.get('timestamp') or 0),
            ))
        return trades[:limit]

    # --- Trading ---

    async def _market_order(self, symbol: str, side: str, qty: float, options,
                            reduce_only: bool) -> OrderbookTradeResult:
        market_symbol = self._market_symbol(symbol)
        if qty <= 0:
            raise InvalidTradeRequest(f"Order quantity must be positive, got {qty}")
        amount = float(self.exchange.amount_to_precision(market_symbol, qty))
        params = {'reduceOnly': True} if reduce_only else self._leverage_params(options)

        self.logger.info(f"Sending {side} market order {amount}", symbol, "order", reduce_only=reduce_only)
        order = await self._call(symbol, 'create_order', market_symbol, 'market', side, amount, None, params)

        fee = order.get('fee') or {}
        return OrderbookTradeResult(
            success=True,
            executed_price=float(order.get('average') or order.get('price') or await self.get_price(symbol)),
            executed_size=float(order.get('filled') or amount),
            fee=float(fee.get('cost') or 0.0),
            order_id=str(order.get('id')),
        )

    async def open_long_position(self, symbol: str, size: float, options) -> OrderbookTradeResult:
        ensure_options_type(options, ExchangeType.ORDERBOOK)
        price = await self.get_price(symbol)
        return await self._market_order(symbol, 'buy', size / price, options, reduce_only=False)

    async def open_short_position(self, symbol: str, size: float, options) -> OrderbookTradeResult:
        ensure_options_type(options, ExchangeType.ORDERBOOK)
        price = await self.get_price(symbol)
        return await self._market_order(symbol, 'sell', size / price, options, reduce_only=False)

    async def close_long_position(self, symbol: str, size: float, options) -> OrderbookTradeResult:
        ensure_options_type(options, ExchangeType.ORDERBOOK)
        return await self._market_order(symbol, 'sell', size, options, reduce_only=True)

    async def close_short_position(self, symbol: str, size: float, options) -> OrderbookTradeResult:
        ensure_options_type(options, ExchangeType.ORDERBOOK)
        return await self._market_order(symbol, 'buy', size, options, reduce_only=True)

    async def get_expected_trade_return(self, symbol: str, size: float, is_long: bool,
                                        is_open: bool, options) -> OrderbookTradeQuote:
        ensure_options_type(options, ExchangeType.ORDERBOOK)
        price = await self.get_price(symbol)
        fees = await self.get_fees(symbol)
        expected_size = size / price if is_open else size
        value = size if is_open else size * price
        leverage = options.leverage or 1.0
        return OrderbookTradeQuote(
            expected_price=price,
            expected_size=expected_size,
            fee=value * fees.taker_fee,
            margin=value / leverage if is_open else 0.0,
        )
