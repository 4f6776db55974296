from typing import Dict, List, Optional

from pydantic import BaseModel

from ..common.types import ClosedTrade, Position, PositionStats, TradingSignal


class BalanceResponse(BaseModel):
    adapter: str
    balance: float


class PartialResponse(BaseModel):
    size: float
    entry_price: float
    opened_at: int


class PositionResponse(BaseModel):
    symbol: str
    direction: str
    size: float
    entry_price: float
    mark_price: Optional[float] = None
    unrealized_pnl: float
    realized_pnl: float
    last_update_time: int
    partials: List[PartialResponse] = []

    @classmethod
    def from_position(cls, position: Position) -> "PositionResponse":
        data = position.to_dict()
        data['direction'] = position.direction.value
        return cls(**data)


class StatsResponse(BaseModel):
    symbol: str
    cumulative_pnl: float
    successful_trades: int
    total_trades: int
    win_rate: float

    @classmethod
    def from_stats(cls, symbol: str, stats: PositionStats) -> "StatsResponse":
        return cls(
            symbol=symbol,
            cumulative_pnl=stats.cumulative_pnl,
            successful_trades=stats.successful_trades,
            total_trades=stats.total_trades,
            win_rate=stats.win_rate,
        )


class ClosedTradeResponse(BaseModel):
    symbol: str
    is_long: bool
    size: float
    entry_price: float
    exit_price: float
    realized_pnl: float
    opened_at: int
    closed_at: int

    @classmethod
    def from_trade(cls, trade: ClosedTrade) -> "ClosedTradeResponse":
        return cls(**trade.__dict__)


class SignalResponse(BaseModel):
    symbol: str
    timestamp: int
    type: str
    reason: str
    ta_score: float
    threshold: float
    price: float
    indicators: Dict[str, float]
    direction: Optional[str] = None
    action: Optional[str] = None
    position_size: Optional[float] = None
    entry_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    realized_pnl: Optional[float] = None
    profit_score: Optional[float] = None
    time_decay_score: Optional[float] = None

    @classmethod
    def from_signal(cls, signal: TradingSignal) -> "SignalResponse":
        return cls(**signal.to_dict())


class SignalPageResponse(BaseModel):
    signals: List[SignalResponse]
    total_count: int
    next_cursor: Optional[int] = None


class MarketStatusResponse(BaseModel):
    symbol: str
    signal: str
    reason: str
    score: float
    price: float
    size: Optional[float] = None
    error: Optional[str] = None


class StatusResponse(BaseModel):
    status: str
    markets: List[MarketStatusResponse]


class RunnerActionResponse(BaseModel):
    status: str
