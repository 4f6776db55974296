"""
Trading adapters and the factory that picks one from config.
"""
import os

from ..common.interfaces import PositionStore
from ..context import TradingContext
from .base import (
    FeeQuotable,
    Liquidatable,
    MarketCatalog,
    PositionHistoryProvider,
    ShortSellable,
    TradingAdapter,
)

ADAPTERS = ("paper", "orderly", "ref")


def get_adapter(name: str, store: PositionStore, context: TradingContext) -> TradingAdapter:
    """Build the named adapter. Exchange credentials come from the environment."""
    if name == "paper":
        from .paper import PaperTradingAdapter
        return PaperTradingAdapter(store, context)
    if name == "orderly":
        from .ccxt_perp import CCXTPerpAdapter
        credentials = {
            'apiKey': os.getenv("ORDERLY_API_KEY"),
            'secret': os.getenv("ORDERLY_SECRET"),
            'accountId': os.getenv("ORDERLY_ACCOUNT_ID") or context.config.exchange.account_id,
        }
        return CCXTPerpAdapter(context, credentials={k: v for k, v in credentials.items() if v})
    if name == "ref":
        from .amm import RefAmmAdapter
        return RefAmmAdapter(store, context)
    raise ValueError(f"Unknown adapter: {name} (expected one of {', '.join(ADAPTERS)})")


__all__ = [
    "ADAPTERS",
    "FeeQuotable",
    "Liquidatable",
    "MarketCatalog",
    "PositionHistoryProvider",
    "ShortSellable",
    "TradingAdapter",
    "get_adapter",
]
