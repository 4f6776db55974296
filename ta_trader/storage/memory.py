"""
In-process position store. Records are kept as plain dicts so callers
never share mutable state with the store.
"""
import copy
import threading
from collections import deque
from dataclasses import asdict
from typing import Dict, List, Optional

from ..common.interfaces import PositionStore
from ..common.types import ClosedTrade, Position, PositionStats


class MemoryPositionStore(PositionStore):
    def __init__(self, history_size: int = 5000):
        self._positions: Dict[str, dict] = {}
        self._stats: Dict[str, dict] = {}
        self._raw: Dict[str, dict] = {}
        self._balance: Optional[float] = None
        self._closed: deque = deque(maxlen=history_size)
        self._lock = threading.RLock()

    async def get(self, symbol: str) -> Optional[Position]:
        with self._lock:
            data = self._positions.get(symbol)
            return Position.from_dict(data) if data else None

    async def put(self, symbol: str, position: Position):
        with self._lock:
            self._positions[symbol] = position.to_dict()

    async def delete(self, symbol: str):
        with self._lock:
            self._positions.pop(symbol, None)

    async def list_symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._positions.keys())

    async def get_balance(self) -> Optional[float]:
        with self._lock:
            return self._balance

    async def put_balance(self, balance: float):
        with self._lock:
            self._balance = float(balance)

    async def get_stats(self, symbol: str) -> PositionStats:
        with self._lock:
            data = self._stats.get(symbol)
            return PositionStats(**data) if data else PositionStats()

    async def put_stats(self, symbol: str, stats: PositionStats):
        with self._lock:
            self._stats[symbol] = asdict(stats)

    async def append_closed_trade(self, trade: ClosedTrade):
        with self._lock:
            self._closed.appendleft(asdict(trade))

    async def get_closed_trades(self, symbol: Optional[str] = None, limit: int = 50) -> List[ClosedTrade]:
        with self._lock:
            rows = [r for r in self._closed if symbol is None or r['symbol'] == symbol]
            return [ClosedTrade(**r) for r in rows[:limit]]

    async def get_raw(self, key: str) -> Optional[dict]:
        with self._lock:
            value = self._raw.get(key)
            return copy.deepcopy(value) if value is not None else None

    async def put_raw(self, key: str, value: dict):
        with self._lock:
            self._raw[key] = copy.deepcopy(value)

    async def delete_raw(self, key: str):
        with self._lock:
            self._raw.pop(key, None)
