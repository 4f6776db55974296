"""
CCXT Indicator Source.
Fetches OHLCV through ccxt and derives VWAP, Bollinger bands, RSI and OBV.
"""
import math
from typing import Dict, Optional

import ccxt.async_support as ccxt

from ..common.errors import UpstreamUnavailable
from ..common.interfaces import IndicatorSource
from ..common.types import IndicatorSnapshot
from ..context import TradingContext
from .indicators import candles_to_frame, compute_indicators

BB_PERIOD = 20
RSI_PERIOD = 14


class CCXTIndicatorSource(IndicatorSource):
    """
    Async CCXT wrapper producing IndicatorSnapshots.
    Venue symbols (PERP_BTC_USDC) are mapped to the data exchange's pairs.
    """

    def __init__(self, context: TradingContext, exchange=None,
                 symbol_map: Optional[Dict[str, str]] = None):
        cfg = context.config.exchange
        self.context = context
        self.logger = context.logger
        self.timeframe = cfg.timeframe
        self.history_limit = max(cfg.history_limit, context.config.scoring.obv_window)
        self.symbol_map = symbol_map if symbol_map is not None else dict(cfg.symbol_map)
        if exchange is None:
            exchange_class = getattr(ccxt, cfg.data_exchange_id)
            exchange = exchange_class({'enableRateLimit': True})
        self.exchange = exchange

    async def cleanup(self):
        await self.exchange.close()

    async def fetch_latest(self, symbol: str) -> IndicatorSnapshot:
        market = self.symbol_map.get(symbol, symbol)
        # Enough candles to warm up the slowest indicator plus the history window
        limit = self.history_limit + max(BB_PERIOD, RSI_PERIOD) * 3

        try:
            candles = await self.exchange.fetch_ohlcv(market, self.timeframe, limit=limit)
        except ccxt.BaseError as e:
            raise UpstreamUnavailable(f"OHLCV fetch failed for {market}: {e}", symbol) from e

        if not candles:
            raise UpstreamUnavailable(f"No candles returned for {market}", symbol)

        df = compute_indicators(candles_to_frame(candles), BB_PERIOD, 2.0, RSI_PERIOD)
        last = df.iloc[-1]
        required = ('close', 'vwap', 'bb_upper', 'bb_lower', 'rsi', 'obv')
        if any(math.isnan(float(last[col])) for col in required):
            raise UpstreamUnavailable(f"Not enough history for {market} ({len(df)} candles)", symbol)

        history = df.tail(self.history_limit)
        self.logger.debug(
            f"Indicators: price={last['close']} vwap={last['vwap']:.4f} rsi={last['rsi']:.2f}",
            symbol, "indicators",
        )
        return IndicatorSnapshot(
            symbol=symbol,
            price=float(last['close']),
            vwap=float(last['vwap']),
            bb_upper=float(last['bb_upper']),
            bb_lower=float(last['bb_lower']),
            rsi=float(last['rsi']),
            obv=float(last['obv']),
            price_history=[float(v) for v in history['close']],
            obv_history=[float(v) for v in history['obv']],
            timestamp=int(last['timestamp'].timestamp() * 1000),
        )
