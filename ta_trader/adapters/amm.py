"""
Ref Finance AMM adapter (NEAR).

Quotes come from the Ref smart router, pool state from a NEAR RPC view call.
Fills are simulated at the quoted route output and booked in the PositionStore,
so the adapter can run the full decision loop without signing transactions.
Spot only: no shorts, no leverage.
"""
import asyncio
import base64
import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from ..common.errors import (
    InsufficientBalance,
    InvalidTradeRequest,
    UnsupportedSymbol,
    UpstreamUnavailable,
)
from ..common.interfaces import PositionStore
from ..common.types import ClosedTrade, ExchangeType, PartialPosition, Position, split_symbol
from ..context import TradingContext
from .base import FeeQuotable, MarketCatalog, TradingAdapter, commit_ledger
from .models import (
    AmmFees,
    AmmLiquidityDepth,
    AmmMarketInfo,
    AmmTradeOptions,
    AmmTradeQuote,
    AmmTradeResult,
    RouteHop,
    ensure_options_type,
)

MIN_TRADE_SIZE = 1.0
MAX_TRADE_SIZE = 100_000.0
SIZE_EPSILON = 1e-12


def decode_view_result(payload: Dict[str, Any]) -> Any:
    """NEAR RPC call_function result (list of byte values) -> parsed JSON."""
    if 'error' in payload:
        raise UpstreamUnavailable(f"NEAR RPC error: {payload['error']}")
    raw = bytes(payload['result']['result'])
    return json.loads(raw.decode('utf-8'))


class RefAmmAdapter(TradingAdapter, FeeQuotable, MarketCatalog):
    name = "ref"

    def __init__(self, store: PositionStore, context: TradingContext,
                 client: Optional[httpx.AsyncClient] = None,
                 symbols: Optional[Iterable[str]] = None):
        self.store = store
        self.context = context
        self.config = context.config.exchange
        self.logger = context.logger
        self.symbols: Tuple[str, ...] = tuple(symbols or context.config.symbols)
        self.client = client or httpx.AsyncClient(timeout=10.0)
        self._lock = asyncio.Lock()

    async def cleanup(self):
        await self.client.aclose()

    # --- Helpers ---

    def _market(self, symbol: str) -> Dict[str, Any]:
        """Pool id and token contracts for a venue symbol."""
        if symbol not in self.symbols or symbol not in self.config.ref_pools:
            raise UnsupportedSymbol(symbol)
        base, quote = split_symbol(symbol)
        if base not in self.config.ref_tokens or quote not in self.config.ref_tokens:
            raise UnsupportedSymbol(symbol)
        base_id, base_decimals = self.config.ref_tokens[base]
        quote_id, quote_decimals = self.config.ref_tokens[quote]
        return {
            'pool_id': int(self.config.ref_pools[symbol]),
            'base': base,
            'quote': quote,
            'base_id': base_id,
            'quote_id': quote_id,
            'base_decimals': int(base_decimals),
            'quote_decimals': int(quote_decimals),
        }

    async def _view(self, method: str, args: Dict[str, Any], symbol: Optional[str] = None) -> Any:
        body = {
            'jsonrpc': '2.0',
            'id': 'dontcare',
            'method': 'query',
            'params': {
                'request_type': 'call_function',
                'finality': 'final',
                'account_id': self.config.ref_contract_id,
                'method_name': method,
                'args_base64': base64.b64encode(json.dumps(args).encode()).decode(),
            },
        }
        try:
            response = await self.client.post(self.config.near_rpc_url, json=body)
            response.raise_for_status()
            return decode_view_result(response.json())
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"NEAR RPC {method} failed: {e}", symbol) from e

    async def _get_pool(self, symbol: str) -> Dict[str, Any]:
        market = self._market(symbol)
        return await self._view('get_pool', {'pool_id': market['pool_id']}, symbol)

    async def _pool_fee(self, symbol: str) -> float:
        """Pool fee as a fraction, cached per context."""
        market = self._market(symbol)
        key = f"ref:pool_fee:{market['pool_id']}"
        if key not in self.context.cache:
            pool = await self._get_pool(symbol)
            self.context.cache[key] = pool['total_fee'] / 10000
        return self.context.cache[key]

    async def _reserves(self, symbol: str) -> Tuple[float, float, Dict[str, Any]]:
        """(base reserve, quote reserve) in token units, plus the raw pool."""
        market = self._market(symbol)
        pool = await self._get_pool(symbol)
        amounts = dict(zip(pool['token_account_ids'], pool['amounts']))
        if market['base_id'] not in amounts or market['quote_id'] not in amounts:
            raise UpstreamUnavailable(f"Pool {market['pool_id']} does not hold {symbol}", symbol)
        base_reserve = int(amounts[market['base_id']]) / 10 ** market['base_decimals']
        quote_reserve = int(amounts[market['quote_id']]) / 10 ** market['quote_decimals']
        return base_reserve, quote_reserve, pool

    async def _find_path(self, symbol: str, token_in: str, token_out: str,
                         amount_in: int, slippage: float) -> Dict[str, Any]:
        params = {
            'amountIn': str(amount_in),
            'tokenIn': token_in,
            'tokenOut': token_out,
            'pathDeep': self.config.ref_route_hops,
            'slippage': slippage,
        }
        try:
            response = await self.client.get(f"{self.config.ref_router_url}/findPath", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Smart router request failed: {e}", symbol) from e

        if data.get('result_code') != 0:
            raise UpstreamUnavailable(f"Smart router error: {data.get('result_message')}", symbol)
        result = data.get('result_data') or {}
        if not result.get('routes') or int(result.get('amount_out') or 0) <= 0:
            raise UpstreamUnavailable(f"No route for {symbol}", symbol)
        return result

    def _key(self, symbol: str) -> str:
        return f"ref:position:{symbol}"

    async def _commit(self, symbol: str, balance: float, position: Optional[Position],
                      trade: Optional[ClosedTrade] = None):
        await commit_ledger(
            self.store, self._key(symbol), balance,
            None if position is None else position.to_dict(),
            trade, default_balance=self.context.config.paper.initial_balance,
        )

    # --- Market Queries ---

    def get_exchange_type(self) -> ExchangeType:
        return ExchangeType.AMM

    def default_trade_options(self, leverage: Optional[float] = None) -> AmmTradeOptions:
        # Spot swaps: leverage does not apply
        return AmmTradeOptions(
            slippage=self.config.ref_slippage,
            max_price_impact=self.context.config.risk.max_price_impact,
        )

    async def get_market_info(self, symbol: str) -> AmmMarketInfo:
        market = self._market(symbol)
        pool_fee = await self._pool_fee(symbol)
        return AmmMarketInfo(
            symbol=symbol,
            base_token=market['base'],
            quote_token=market['quote'],
            base_decimals=market['base_decimals'],
            quote_decimals=market['quote_decimals'],
            min_trade_size=MIN_TRADE_SIZE,
            max_trade_size=MAX_TRADE_SIZE,
            pool_id=str(market['pool_id']),
            pool_fee=pool_fee,
        )

    async def get_price(self, symbol: str, size: Optional[float] = None) -> float:
        """Spot price from reserves, or the effective router price for a quote-size buy."""
        if size:
            quote = await self.get_expected_trade_return(
                symbol, size, True, True, self.default_trade_options()
            )
            return quote.expected_price
        base_reserve, quote_reserve, _ = await self._reserves(symbol)
        if base_reserve <= 0:
            raise UpstreamUnavailable(f"Empty pool for {symbol}", symbol)
        return quote_reserve / base_reserve

    async def get_liquidity_depth(self, symbol: str, depth: Optional[int] = None) -> AmmLiquidityDepth:
        base_reserve, quote_reserve, _ = await self._reserves(symbol)
        spot = quote_reserve / base_reserve if base_reserve > 0 else 0.0
        return AmmLiquidityDepth(
            pool_liquidity={
                'base_reserve': base_reserve,
                'quote_reserve': quote_reserve,
                'total_liquidity': quote_reserve + base_reserve * spot,
            },
            spot_price=spot,
        )

    async def is_market_active(self, symbol: str) -> bool:
        try:
            pool = await self._get_pool(symbol)
        except (UnsupportedSymbol, UpstreamUnavailable):
            return False
        return all(int(amount) > 0 for amount in pool['amounts'])

    async def get_supported_markets(self) -> List[str]:
        return [s for s in self.symbols if s in self.config.ref_pools]

    async def get_minimum_trade_size(self, symbol: str) -> float:
        self._market(symbol)
        return MIN_TRADE_SIZE

    async def get_fees(self, symbol: str) -> AmmFees:
        return AmmFees(pool_fee=await self._pool_fee(symbol))

    async def get_expected_trade_return(self, symbol: str, size: float, is_long: bool,
                                        is_open: bool, options) -> AmmTradeQuote:
        """
        Opens swap `size` quote for base; closes swap `size` base for quote.
        Price impact is measured against the pool's spot price.
        """
        ensure_options_type(options, ExchangeType.AMM)
        if not is_long:
            raise InvalidTradeRequest(f"{self.name} cannot trade shorts")
        market = self._market(symbol)

        if is_open:
            token_in, token_out = market['quote_id'], market['base_id']
            decimals_in, decimals_out = market['quote_decimals'], market['base_decimals']
        else:
            token_in, token_out = market['base_id'], market['quote_id']
            decimals_in, decimals_out = market['base_decimals'], market['quote_decimals']

        amount_in = int(size * 10 ** decimals_in)
        if amount_in <= 0:
            raise InvalidTradeRequest(f"Trade size too small: {size}")

        result = await self._find_path(symbol, token_in, token_out, amount_in, options.slippage)
        amount_out = int(result['amount_out']) / 10 ** decimals_out

        base_reserve, quote_reserve, pool = await self._reserves(symbol)
        spot = quote_reserve / base_reserve
        if is_open:
            price = size / amount_out
            impact = max(0.0, (price - spot) / spot)
            fee = size * pool['total_fee'] / 10000
        else:
            price = amount_out / size
            impact = max(0.0, (spot - price) / spot)
            fee = amount_out * pool['total_fee'] / 10000

        route = []
        for hop in result['routes'][0].get('pools', []):
            route.append(RouteHop(
                pool_id=str(hop['pool_id']),
                token_in=hop['token_in'],
                token_out=hop['token_out'],
                amount_in=float(hop.get('amount_in') or 0),
                amount_out=float(hop.get('amount_out') or 0),
            ))

        return AmmTradeQuote(
            expected_price=price,
            expected_size=amount_out,
            fee=fee,
            price_impact=impact,
            route=route,
        )

    # --- Account ---

    async def get_balance(self) -> float:
        balance = await self.store.get_balance()
        return self.context.config.paper.initial_balance if balance is None else balance

    async def get_position(self, symbol: str) -> Optional[Position]:
        self._market(symbol)
        data = await self.store.get_raw(self._key(symbol))
        return Position.from_dict(data) if data else None

    async def get_positions(self) -> List[Position]:
        positions = []
        for symbol in await self.get_supported_markets():
            position = await self.get_position(symbol)
            if position:
                positions.append(position)
        return positions

    # --- Trading ---

    async def open_long_position(self, symbol: str, size: float, options) -> AmmTradeResult:
        ensure_options_type(options, ExchangeType.AMM)
        if size <= 0:
            raise InvalidTradeRequest(f"Trade size must be positive, got {size}")

        quote = await self.get_expected_trade_return(symbol, size, True, True, options)
        if quote.price_impact > options.max_price_impact:
            raise InvalidTradeRequest(
                f"Price impact {quote.price_impact:.4f} exceeds {options.max_price_impact:.4f} on {symbol}"
            )

        async with self._lock:
            balance = await self.get_balance()
            if size > balance:
                raise InsufficientBalance(size, balance)

            now = self.context.now()
            existing = await self.get_position(symbol)
            if existing:
                merged = existing.size + quote.expected_size
                entry = (existing.size * existing.entry_price
                         + quote.expected_size * quote.expected_price) / merged
            else:
                merged, entry = quote.expected_size, quote.expected_price
            position = Position(
                symbol=symbol,
                size=merged,
                is_long=True,
                entry_price=entry,
                last_update_time=now,
                partials=[PartialPosition(merged, entry, now)],
            )

            await self._commit(symbol, balance - size, position)

        self.logger.info(
            f"Swapped {size:.2f} for {quote.expected_size:.6f} @ {quote.expected_price}",
            symbol, "ref_open", price_impact=quote.price_impact,
        )
        return AmmTradeResult(
            success=True,
            executed_price=quote.expected_price,
            executed_size=quote.expected_size,
            fee=quote.fee,
            price_impact=quote.price_impact,
            route=quote.route,
        )

    async def close_long_position(self, symbol: str, size: float, options) -> AmmTradeResult:
        ensure_options_type(options, ExchangeType.AMM)
        if size <= 0:
            raise InvalidTradeRequest(f"Close size must be positive, got {size}")

        existing = await self.get_position(symbol)
        if existing is None:
            raise InvalidTradeRequest(f"No long position on {symbol}")
        if size > existing.size * (1 + 1e-9):
            raise InvalidTradeRequest(f"Close size {size} exceeds position size {existing.size} on {symbol}")
        size = min(size, existing.size)

        quote = await self.get_expected_trade_return(symbol, size, True, False, options)
        if quote.price_impact > options.max_price_impact:
            raise InvalidTradeRequest(
                f"Price impact {quote.price_impact:.4f} exceeds {options.max_price_impact:.4f} on {symbol}"
            )

        pnl = quote.expected_size - size * existing.entry_price
        now = self.context.now()
        async with self._lock:
            remaining = existing.size - size
            position = None
            if remaining > SIZE_EPSILON:
                position = existing.with_partials(
                    [PartialPosition(remaining, existing.entry_price, now)], now
                )
            balance = await self.get_balance()
            await self._commit(symbol, balance + quote.expected_size, position, ClosedTrade(
                symbol=symbol,
                is_long=True,
                size=size,
                entry_price=existing.entry_price,
                exit_price=quote.expected_price,
                realized_pnl=pnl,
                opened_at=existing.last_update_time,
                closed_at=now,
            ))

        self.logger.info(
            f"Swapped {size:.6f} back for {quote.expected_size:.2f} @ {quote.expected_price}",
            symbol, "ref_close", pnl=pnl,
        )
        return AmmTradeResult(
            success=True,
            executed_price=quote.expected_price,
            executed_size=size,
            fee=quote.fee,
            realized_pnl=pnl,
            price_impact=quote.price_impact,
            route=quote.route,
        )
