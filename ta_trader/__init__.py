"""
TA Trader

Technical-analysis position trader for perpetual and spot crypto markets.

Modules:
- config: Frozen configuration loaded from YAML + environment
- scoring: Pure TA scoring (VWAP, Bollinger bands, RSI, OBV divergence, profit, time decay)
- engine: Decision engine and position state machine (layered partial entries)
- adapters: Venue adapters (paper simulator, ccxt perpetuals, Ref AMM)
- signals: Append-only signal log with cursor pagination
- storage: Position stores (memory, Supabase)
- data: Indicator source (ccxt OHLCV + pandas)
- runner: Slow decision cycle and fast SL/TP monitor
- api: FastAPI pass-throughs

Key principles:
- Deterministic scoring
- Explicit state transitions
- Atomic adapter mutations
- Comprehensive logging
"""

__version__ = "1.0.0"

from .config.config import TradingConfig, DEFAULT_CONFIG, load_config
from .common.types import (
    Direction,
    ExchangeType,
    IndicatorSnapshot,
    Position,
    SignalAction,
    SignalReason,
    SignalType,
    TradingSignal,
)
from .context import TradingContext, make_context
from .engine.decision import DecisionEngine
from .logger import EngineLogger
from .scoring.scores import TaScores, score

__all__ = [
    # Config
    'TradingConfig',
    'DEFAULT_CONFIG',
    'load_config',

    # Types
    'Direction',
    'ExchangeType',
    'IndicatorSnapshot',
    'Position',
    'SignalAction',
    'SignalReason',
    'SignalType',
    'TradingSignal',

    # Context
    'TradingContext',
    'make_context',
    'EngineLogger',

    # Engine
    'DecisionEngine',
    'TaScores',
    'score',
]
