"""
Common types and utilities for the trading engine.
"""
import math
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any

# --- Time Utilities ---

def now_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)

def normalize_timestamp(ts: Any) -> datetime:
    """
    Ensure timestamp is a timezone-aware UTC datetime.
    Accepts: int (ms), str (iso), datetime.
    """
    if isinstance(ts, bool):
        raise ValueError(f"Unsupported timestamp format: {type(ts)} - {ts}")

    if isinstance(ts, (int, float)):
        return datetime.fromtimestamp(ts / 1000, tz=timezone.utc)

    if isinstance(ts, str):
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt

    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            return ts.replace(tzinfo=timezone.utc)
        return ts

    raise ValueError(f"Unsupported timestamp format: {type(ts)} - {ts}")

def to_ms(ts: Any) -> int:
    """Convert any supported timestamp to epoch milliseconds."""
    if isinstance(ts, int) and not isinstance(ts, bool):
        return ts
    return int(normalize_timestamp(ts).timestamp() * 1000)

# --- Formatting ---

def format_price(price: float) -> str:
    """Format price with dynamic precision up to 8 decimals."""
    return f"{price:.8f}".rstrip('0').rstrip('.')

# --- Enums ---

class ExchangeType(str, Enum):
    AMM = "AMM"
    ORDERBOOK = "ORDERBOOK"
    HYBRID = "HYBRID"

class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

class SignalType(str, Enum):
    """
    Kind of decision recorded in the signal log.

    ENTRY: First partial of a new position opened
    EXIT: Position (or some partials) closed on a score reversal or liquidation
    HOLD: Position kept, snapshot of score and PnL
    NO_ACTION: No position and nothing to do (or an open was refused)
    ADJUSTMENT: Partial added to an existing position
    STOP_LOSS / TAKE_PROFIT: Forced close on a price threshold
    """
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    HOLD = "HOLD"
    NO_ACTION = "NO_ACTION"
    ADJUSTMENT = "ADJUSTMENT"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"

class SignalAction(str, Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    INCREASE = "INCREASE"
    DECREASE = "DECREASE"

class SignalReason(str, Enum):
    TA_SCORE = "TA_SCORE"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    SIGNAL_REVERSAL = "SIGNAL_REVERSAL"
    BELOW_THRESHOLD = "BELOW_THRESHOLD"
    STRENGTHENED_SIGNAL = "STRENGTHENED_SIGNAL"
    LIQUIDATION = "LIQUIDATION"
    MANUAL = "MANUAL"

# --- Core Data Structures ---

@dataclass
class PartialPosition:
    """
    One layered entry of a position. Size is in base asset units.
    """
    size: float
    entry_price: float
    opened_at: int

def average_entry_price(partials: List[PartialPosition]) -> float:
    """Size-weighted average entry of a list of partials (0.0 when empty)."""
    total_value = 0.0
    total_size = 0.0
    for partial in partials:
        total_value += partial.size * partial.entry_price
        total_size += partial.size
    if total_size <= 0:
        return 0.0
    return total_value / total_size

@dataclass
class Position:
    """
    One logical position per market.

    Size is always an unsigned magnitude; direction lives in is_long only.
    When partials are tracked, size == sum(p.size for p in partials).
    """
    symbol: str
    size: float
    is_long: bool
    entry_price: float
    mark_price: Optional[float] = None
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    last_update_time: int = 0
    partials: List[PartialPosition] = field(default_factory=list)

    def __post_init__(self):
        if self.size < 0:
            raise ValueError(f"Position size must be a magnitude, got {self.size}")
        if self.entry_price < 0:
            raise ValueError(f"Entry price must be non-negative, got {self.entry_price}")

    @property
    def direction(self) -> Direction:
        return Direction.LONG if self.is_long else Direction.SHORT

    def with_partials(self, partials: List[PartialPosition], timestamp: int) -> "Position":
        """Copy of this position rebuilt from a new partial ledger."""
        return Position(
            symbol=self.symbol,
            size=sum(p.size for p in partials),
            is_long=self.is_long,
            entry_price=average_entry_price(partials),
            mark_price=self.mark_price,
            unrealized_pnl=self.unrealized_pnl,
            realized_pnl=self.realized_pnl,
            last_update_time=timestamp,
            partials=list(partials),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        partials = [PartialPosition(**p) for p in data.get('partials', [])]
        return cls(
            symbol=data['symbol'],
            size=float(data['size']),
            is_long=bool(data['is_long']),
            entry_price=float(data['entry_price']),
            mark_price=data.get('mark_price'),
            unrealized_pnl=float(data.get('unrealized_pnl', 0.0)),
            realized_pnl=float(data.get('realized_pnl', 0.0)),
            last_update_time=int(data.get('last_update_time', 0)),
            partials=partials,
        )

@dataclass
class PaperPosition:
    """
    Simulator-internal position with margin bookkeeping.
    Size stays a magnitude here too; PnL math reads is_long.
    """
    symbol: str
    size: float
    entry_price: float
    timestamp: int
    is_long: bool
    leverage: float
    margin: float
    funding_paid: float = 0.0

    def unrealized_pnl(self, price: float) -> float:
        current_value = self.size * price
        entry_value = self.size * self.entry_price
        return current_value - entry_value if self.is_long else entry_value - current_value

    def margin_ratio(self, price: float) -> float:
        notional = abs(self.size * price)
        if notional == 0:
            return math.inf
        return (self.margin + self.unrealized_pnl(price)) / notional

    def to_position(self, price: Optional[float] = None) -> Position:
        return Position(
            symbol=self.symbol,
            size=self.size,
            is_long=self.is_long,
            entry_price=self.entry_price,
            mark_price=price,
            unrealized_pnl=self.unrealized_pnl(price) if price is not None else 0.0,
            last_update_time=self.timestamp,
            partials=[PartialPosition(self.size, self.entry_price, self.timestamp)],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaperPosition":
        return cls(**data)

@dataclass
class PositionStats:
    """Running per-market statistics. Survives position deletion."""
    cumulative_pnl: float = 0.0
    successful_trades: int = 0
    total_trades: int = 0

    def record(self, pnl: float) -> "PositionStats":
        return PositionStats(
            cumulative_pnl=self.cumulative_pnl + pnl,
            successful_trades=self.successful_trades + (1 if pnl > 0 else 0),
            total_trades=self.total_trades + 1,
        )

    @property
    def win_rate(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return self.successful_trades / self.total_trades

@dataclass
class ClosedTrade:
    symbol: str
    is_long: bool
    size: float
    entry_price: float
    exit_price: float
    realized_pnl: float
    opened_at: int
    closed_at: int

@dataclass
class IndicatorSnapshot:
    """
    Latest indicator values for one market.
    Histories are ordered oldest first.
    """
    symbol: str
    price: float
    vwap: float
    bb_upper: float
    bb_lower: float
    rsi: float
    obv: float
    price_history: List[float] = field(default_factory=list)
    obv_history: List[float] = field(default_factory=list)
    timestamp: int = 0

# --- Signals ---

@dataclass(frozen=True)
class IndicatorBreakdown:
    vwap: float = 0.0
    bbands: float = 0.0
    rsi: float = 0.0
    obv: float = 0.0
    profit: float = 0.0
    time_decay: float = 0.0
    total: float = 0.0

@dataclass(frozen=True)
class TradingSignal:
    """
    Write-once record of one decision.
    """
    symbol: str
    timestamp: int
    type: SignalType
    reason: SignalReason
    ta_score: float
    threshold: float
    price: float
    indicators: IndicatorBreakdown
    direction: Optional[Direction] = None
    action: Optional[SignalAction] = None
    position_size: Optional[float] = None
    entry_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    realized_pnl: Optional[float] = None
    profit_score: Optional[float] = None
    time_decay_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['type'] = self.type.value
        data['reason'] = self.reason.value
        data['direction'] = self.direction.value if self.direction else None
        data['action'] = self.action.value if self.action else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingSignal":
        return cls(
            symbol=data['symbol'],
            timestamp=int(data['timestamp']),
            type=SignalType(data['type']),
            reason=SignalReason(data['reason']),
            ta_score=float(data['ta_score']),
            threshold=float(data['threshold']),
            price=float(data['price']),
            indicators=IndicatorBreakdown(**(data.get('indicators') or {})),
            direction=Direction(data['direction']) if data.get('direction') else None,
            action=SignalAction(data['action']) if data.get('action') else None,
            position_size=data.get('position_size'),
            entry_price=data.get('entry_price'),
            unrealized_pnl=data.get('unrealized_pnl'),
            realized_pnl=data.get('realized_pnl'),
            profit_score=data.get('profit_score'),
            time_decay_score=data.get('time_decay_score'),
        )

@dataclass
class SignalQuery:
    type: Optional[SignalType] = None
    from_ts: Optional[int] = None
    to_ts: Optional[int] = None
    cursor: Optional[int] = None
    limit: int = 50

@dataclass
class SignalPage:
    signals: List[TradingSignal]
    total_count: int
    next_cursor: Optional[int] = None

def split_symbol(symbol: str) -> "tuple[str, str]":
    """
    Base and quote token of a market symbol.
    Accepts venue form (PERP_NEAR_USDC) and pair form (NEAR/USDT).
    """
    if "/" in symbol:
        base, quote = symbol.split("/", 1)
        return base, quote.split(":")[0]
    parts = symbol.split("_")
    if len(parts) == 3:
        return parts[1], parts[2]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"Cannot parse symbol: {symbol}")
