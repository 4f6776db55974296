"""
Technical Indicators computed from OHLCV candles.
"""
from typing import List

import numpy as np
import pandas as pd

OHLCV_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']


def candles_to_frame(candles: List[list]) -> pd.DataFrame:
    """CCXT OHLCV rows -> DataFrame with UTC timestamps, oldest first."""
    df = pd.DataFrame(candles, columns=OHLCV_COLUMNS)
    df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms', utc=True)
    return df.sort_values('timestamp').reset_index(drop=True)


def calculate_vwap(df: pd.DataFrame) -> pd.Series:
    """
    Session VWAP, anchored at each UTC day.
    """
    typical = (df['high'] + df['low'] + df['close']) / 3
    session = df['timestamp'].dt.floor('D')
    pv = (typical * df['volume']).groupby(session).cumsum()
    volume = df['volume'].groupby(session).cumsum()
    return (pv / volume.replace(0, np.nan)).fillna(df['close'])


def calculate_bollinger_bands(close: pd.Series, period: int = 20, num_std: float = 2.0) -> pd.DataFrame:
    sma = close.rolling(period).mean()
    std = close.rolling(period).std(ddof=0)
    return pd.DataFrame({
        'bb_upper': sma + num_std * std,
        'bb_middle': sma,
        'bb_lower': sma - num_std * std,
    })


def calculate_rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """
    Wilder's RSI.
    """
    delta = close.diff()
    gain = delta.clip(lower=0)
    loss = -delta.clip(upper=0)
    avg_gain = gain.ewm(alpha=1 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1 / period, adjust=False, min_periods=period).mean()
    rs = avg_gain / avg_loss
    rsi = 100 - (100 / (1 + rs))
    # No losses in the window -> fully overbought
    return rsi.where(avg_loss != 0, 100.0)


def calculate_obv(df: pd.DataFrame) -> pd.Series:
    direction = np.sign(df['close'].diff().fillna(0))
    return (direction * df['volume']).cumsum()


def compute_indicators(df: pd.DataFrame, bb_period: int = 20, bb_std: float = 2.0,
                       rsi_period: int = 14) -> pd.DataFrame:
    out = df.copy()
    out['vwap'] = calculate_vwap(df)
    out = out.join(calculate_bollinger_bands(df['close'], bb_period, bb_std))
    out['rsi'] = calculate_rsi(df['close'], rsi_period)
    out['obv'] = calculate_obv(df)
    return out
