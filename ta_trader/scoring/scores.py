"""
Technical-analysis scoring.

Pure functions mapping indicator values to a signed composite score.
Positive is bullish, negative is bearish. Nothing here reads a clock,
touches I/O or keeps state: the same inputs always give the same total.
"""
import math
from dataclasses import dataclass, asdict
from typing import List, Optional, Sequence

import numpy as np

from ..common.types import IndicatorBreakdown, PartialPosition, Position, average_entry_price
from ..config.config import ScoringConfig

DEFAULT_SCORING = ScoringConfig()

MS_PER_MINUTE = 60 * 1000
STEP_EPSILON = 1e-9


@dataclass(frozen=True)
class TaScores:
    """Scaled per-factor contributions plus their composite."""
    vwap: float
    bbands: float
    rsi: float
    obv: float
    profit: float
    time_decay: float
    total: float

    def to_breakdown(self) -> IndicatorBreakdown:
        return IndicatorBreakdown(**asdict(self))


def calculate_slope(values: Sequence[float], window: int) -> float:
    """
    Least-squares slope of the trailing window of values.
    Returns 0.0 if fewer than window samples are available.
    """
    if window < 2 or len(values) < window:
        return 0.0
    y = np.asarray(values[-window:], dtype=float)
    x = np.arange(window, dtype=float)
    dx = x - x.mean()
    denominator = float(np.dot(dx, dx))
    if denominator == 0:
        return 0.0
    return float(np.dot(dx, y - y.mean()) / denominator)


def vwap_score(price: float, vwap: float, threshold: float) -> float:
    """
    Zero inside the threshold band; outside it one unit per whole
    threshold-width of additional deviation. VWAP above price is bullish.
    """
    if price <= 0 or threshold <= 0:
        return 0.0
    deviation = (vwap - price) / price
    if abs(deviation) <= threshold:
        return 0.0
    # Exact multiples of the threshold must not floor one step short
    steps = float(math.floor((abs(deviation) - threshold) / threshold + STEP_EPSILON))
    return steps if deviation > 0 else -steps


def bbands_score(price: float, upper: float, lower: float) -> float:
    """Unscaled position inside the bands: +1 at the lower band, -1 at the upper."""
    if upper <= lower:
        return 0.0
    middle = (upper + lower) / 2
    half_width = (upper - lower) / 2
    return -(price - middle) / half_width


def rsi_score(rsi: float) -> float:
    """Oversold is positive, overbought negative; convex towards the extremes."""
    centered = rsi - 50
    return -math.copysign(1.0, centered) * (abs(centered) / 50) ** 2 if centered else 0.0


def obv_divergence_score(price_history: Sequence[float], obv_history: Sequence[float],
                         window: int, slope_threshold: float) -> float:
    """
    Divergence between price and OBV slopes over the same trailing window.
    Signed by the OBV slope and capped at slope_threshold.
    """
    price_slope = calculate_slope(price_history, window)
    obv_slope = calculate_slope(obv_history, window)
    if price_slope * obv_slope >= 0:
        return 0.0
    magnitude = min(abs(price_slope - obv_slope), slope_threshold)
    return math.copysign(magnitude, obv_slope)


def profit_score(position: Optional[Position], price: float) -> float:
    """
    Unrealized profit fraction against the average entry, 0 when not in profit.
    Direction aware: shorts profit when price falls.
    """
    if position is None or position.size <= 0:
        return 0.0
    entry = average_entry_price(position.partials) if position.partials else position.entry_price
    if entry <= 0:
        return 0.0
    pct = (price - entry) / entry
    if not position.is_long:
        pct = -pct
    return max(0.0, pct)


def time_decay_score(partial: Optional[PartialPosition], now_ms: int, multiplier: float) -> float:
    """Non-positive, growing in magnitude with whole minutes of partial age."""
    if partial is None:
        return 0.0
    age_minutes = max(0, (now_ms - partial.opened_at) // MS_PER_MINUTE)
    return -age_minutes * multiplier


def score(price: float, vwap: float, bb_upper: float, bb_lower: float, rsi: float,
          price_history: Sequence[float], obv_history: Sequence[float],
          config: ScoringConfig = DEFAULT_SCORING,
          position: Optional[Position] = None,
          partial: Optional[PartialPosition] = None,
          now_ms: Optional[int] = None) -> TaScores:
    """
    Composite TA score.

    Profit and time decay are reported as magnitudes (profit >= 0,
    time_decay <= 0) and applied against the position's direction in
    the total, so both push towards closing: down for longs, up for shorts.
    """
    if partial is not None and now_ms is None:
        raise ValueError("now_ms is required when scoring a partial")

    vwap_part = vwap_score(price, vwap, config.vwap_threshold) * config.vwap_multiplier
    bb_part = bbands_score(price, bb_upper, bb_lower) * config.bbands_multiplier
    rsi_part = rsi_score(rsi) * config.rsi_multiplier
    obv_part = obv_divergence_score(
        price_history, obv_history, config.obv_window, config.slope_threshold
    ) * config.obv_multiplier

    profit_part = profit_score(position, price) * config.profit_multiplier
    decay_part = time_decay_score(partial, now_ms or 0, config.time_decay_multiplier)

    total = vwap_part + bb_part + rsi_part + obv_part
    if position is not None:
        direction = 1.0 if position.is_long else -1.0
        total += -direction * profit_part + direction * decay_part

    return TaScores(
        vwap=vwap_part,
        bbands=bb_part,
        rsi=rsi_part,
        obv=obv_part,
        profit=profit_part,
        time_decay=decay_part,
        total=total,
    )


def score_partials(price: float, vwap: float, bb_upper: float, bb_lower: float, rsi: float,
                   price_history: Sequence[float], obv_history: Sequence[float],
                   config: ScoringConfig = DEFAULT_SCORING,
                   position: Optional[Position] = None,
                   now_ms: Optional[int] = None) -> List[TaScores]:
    """
    One score per partial of the position, or a single score when there is none.
    """
    if position is None or not position.partials:
        return [score(price, vwap, bb_upper, bb_lower, rsi, price_history, obv_history,
                      config, position=position)]
    return [
        score(price, vwap, bb_upper, bb_lower, rsi, price_history, obv_history,
              config, position=position, partial=partial, now_ms=now_ms)
        for partial in position.partials
    ]
