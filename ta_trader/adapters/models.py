"""
Tagged market/trade models shared by all trading adapters.

Every union is discriminated on `type`, which must equal the adapter's own
ExchangeType. Consumers dispatch with isinstance over the variants and end
in a TypeError, so a new variant fails loudly instead of being half-handled.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from ..common.errors import InvalidOptionsType
from ..common.types import ExchangeType

# --- Market Info ---

class _MarketInfoBase(BaseModel):
    symbol: str
    base_token: str
    quote_token: str
    base_decimals: int
    quote_decimals: int
    min_trade_size: float
    max_trade_size: float

class AmmMarketInfo(_MarketInfoBase):
    type: Literal[ExchangeType.AMM] = ExchangeType.AMM
    pool_id: str
    pool_fee: float

class OrderbookMarketInfo(_MarketInfoBase):
    type: Literal[ExchangeType.ORDERBOOK] = ExchangeType.ORDERBOOK
    market_id: str
    tick_size: float
    step_size: float

class HybridMarketInfo(_MarketInfoBase):
    type: Literal[ExchangeType.HYBRID] = ExchangeType.HYBRID
    pool_id: str
    pool_fee: float
    market_id: str
    tick_size: float
    step_size: float

MarketInfo = Annotated[
    Union[AmmMarketInfo, OrderbookMarketInfo, HybridMarketInfo], Field(discriminator="type")
]

# --- Liquidity ---

class BookLevel(BaseModel):
    price: float
    size: float

class OrderBook(BaseModel):
    bids: List[BookLevel] = Field(default_factory=list)
    asks: List[BookLevel] = Field(default_factory=list)

class AmmLiquidityDepth(BaseModel):
    type: Literal[ExchangeType.AMM] = ExchangeType.AMM
    pool_liquidity: Dict[str, float]
    spot_price: float

class OrderbookLiquidityDepth(BaseModel):
    type: Literal[ExchangeType.ORDERBOOK] = ExchangeType.ORDERBOOK
    order_book: OrderBook

class HybridLiquidityDepth(BaseModel):
    type: Literal[ExchangeType.HYBRID] = ExchangeType.HYBRID
    pool_liquidity: Dict[str, float]
    spot_price: float
    order_book: OrderBook

LiquidityDepth = Annotated[
    Union[AmmLiquidityDepth, OrderbookLiquidityDepth, HybridLiquidityDepth],
    Field(discriminator="type"),
]

# --- Trade Options ---

class AmmTradeOptions(BaseModel):
    type: Literal[ExchangeType.AMM] = ExchangeType.AMM
    max_price_impact: float = 0.05
    slippage: float = 0.005

class OrderbookTradeOptions(BaseModel):
    type: Literal[ExchangeType.ORDERBOOK] = ExchangeType.ORDERBOOK
    order_type: Literal["market", "limit"] = "market"
    limit_price: Optional[float] = None
    leverage: Optional[float] = None
    reduce_only: bool = False

class HybridTradeOptions(BaseModel):
    type: Literal[ExchangeType.HYBRID] = ExchangeType.HYBRID
    max_price_impact: float = 0.05
    slippage: float = 0.005
    order_type: Literal["market", "limit"] = "market"
    limit_price: Optional[float] = None
    leverage: Optional[float] = None

TradeOptions = Annotated[
    Union[AmmTradeOptions, OrderbookTradeOptions, HybridTradeOptions], Field(discriminator="type")
]

# --- Trade Results ---

class RouteHop(BaseModel):
    pool_id: str
    token_in: str
    token_out: str
    amount_in: float
    amount_out: float

class _TradeResultBase(BaseModel):
    success: bool
    executed_price: float
    executed_size: float
    fee: float
    realized_pnl: Optional[float] = None
    error: Optional[str] = None

class AmmTradeResult(_TradeResultBase):
    type: Literal[ExchangeType.AMM] = ExchangeType.AMM
    price_impact: float
    route: List[RouteHop] = Field(default_factory=list)

class OrderbookTradeResult(_TradeResultBase):
    type: Literal[ExchangeType.ORDERBOOK] = ExchangeType.ORDERBOOK
    order_id: str

class HybridTradeResult(_TradeResultBase):
    type: Literal[ExchangeType.HYBRID] = ExchangeType.HYBRID
    order_id: Optional[str] = None
    price_impact: Optional[float] = None
    route: List[RouteHop] = Field(default_factory=list)

TradeResult = Annotated[
    Union[AmmTradeResult, OrderbookTradeResult, HybridTradeResult], Field(discriminator="type")
]

# --- Quotes (expected trade return) ---

class _QuoteBase(BaseModel):
    expected_price: float
    expected_size: float
    fee: float

class AmmTradeQuote(_QuoteBase):
    type: Literal[ExchangeType.AMM] = ExchangeType.AMM
    price_impact: float
    route: List[RouteHop] = Field(default_factory=list)

class OrderbookTradeQuote(_QuoteBase):
    type: Literal[ExchangeType.ORDERBOOK] = ExchangeType.ORDERBOOK
    margin: float = 0.0

class HybridTradeQuote(_QuoteBase):
    type: Literal[ExchangeType.HYBRID] = ExchangeType.HYBRID
    margin: float = 0.0
    price_impact: Optional[float] = None
    route: List[RouteHop] = Field(default_factory=list)

TradeQuote = Annotated[
    Union[AmmTradeQuote, OrderbookTradeQuote, HybridTradeQuote], Field(discriminator="type")
]

# --- Fees ---

class AmmFees(BaseModel):
    type: Literal[ExchangeType.AMM] = ExchangeType.AMM
    pool_fee: float

class OrderbookFees(BaseModel):
    type: Literal[ExchangeType.ORDERBOOK] = ExchangeType.ORDERBOOK
    maker_fee: float
    taker_fee: float

class HybridFees(BaseModel):
    type: Literal[ExchangeType.HYBRID] = ExchangeType.HYBRID
    pool_fee: float
    maker_fee: float
    taker_fee: float

Fees = Annotated[Union[AmmFees, OrderbookFees, HybridFees], Field(discriminator="type")]

# --- Helpers ---

def default_trade_options(exchange_type: ExchangeType, leverage: Optional[float] = None,
                          max_price_impact: float = 0.05):
    """Market-order options tagged for the given exchange type."""
    if exchange_type == ExchangeType.AMM:
        return AmmTradeOptions(max_price_impact=max_price_impact)
    if exchange_type == ExchangeType.ORDERBOOK:
        return OrderbookTradeOptions(order_type="market", leverage=leverage)
    if exchange_type == ExchangeType.HYBRID:
        return HybridTradeOptions(max_price_impact=max_price_impact, leverage=leverage)
    raise TypeError(f"Unhandled exchange type: {exchange_type!r}")


def ensure_options_type(options: Any, expected: ExchangeType):
    """Fail fast when options are tagged for another exchange type."""
    got = getattr(options, "type", None)
    if got != expected:
        raise InvalidOptionsType(expected.value, got.value if isinstance(got, ExchangeType) else got)
    return options


def trade_result_details(result: Any) -> Dict[str, Any]:
    """Venue-specific fields of a trade result, flattened for logs and signals."""
    if isinstance(result, AmmTradeResult):
        return {"price_impact": result.price_impact, "route": [h.pool_id for h in result.route]}
    if isinstance(result, OrderbookTradeResult):
        return {"order_id": result.order_id}
    if isinstance(result, HybridTradeResult):
        return {
            "order_id": result.order_id,
            "price_impact": result.price_impact,
            "route": [h.pool_id for h in result.route],
        }
    raise TypeError(f"Unhandled trade result variant: {type(result).__name__}")
