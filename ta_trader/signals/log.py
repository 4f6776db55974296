"""
Signal log: append-only decision records with cursor pagination.

Pages are ordered newest first. The cursor is the timestamp of the last row
of the previous page and the next page starts strictly below it.
"""
import threading
from typing import List, Optional

from ..common.interfaces import SignalStore
from ..common.types import SignalPage, SignalQuery, TradingSignal

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_LIMIT
    return min(MAX_PAGE_LIMIT, max(1, int(limit)))


def matches(signal: TradingSignal, symbol: str, query: SignalQuery) -> bool:
    """Filter ignoring the cursor (used for total counts)."""
    if signal.symbol != symbol:
        return False
    if query.type is not None and signal.type != query.type:
        return False
    if query.from_ts is not None and signal.timestamp < query.from_ts:
        return False
    if query.to_ts is not None and signal.timestamp > query.to_ts:
        return False
    return True


def paginate(rows: List[TradingSignal], cursor: Optional[int], limit: int, total_count: int) -> SignalPage:
    """
    rows: filtered signals sorted newest first. Applies the cursor (strict <)
    and the limit; next_cursor is only set when more rows remain.
    """
    if cursor is not None:
        rows = [s for s in rows if s.timestamp < cursor]
    page = rows[:limit]
    next_cursor = page[-1].timestamp if len(rows) > limit else None
    return SignalPage(signals=page, total_count=total_count, next_cursor=next_cursor)


class MemorySignalStore(SignalStore):
    def __init__(self):
        self._signals: List[TradingSignal] = []
        self._lock = threading.RLock()

    async def append(self, signal: TradingSignal):
        with self._lock:
            self._signals.append(signal)

    async def query(self, symbol: str, query: SignalQuery) -> SignalPage:
        limit = clamp_limit(query.limit)
        with self._lock:
            rows = [s for s in self._signals if matches(s, symbol, query)]
        rows.sort(key=lambda s: s.timestamp, reverse=True)
        return paginate(rows, query.cursor, limit, total_count=len(rows))


async def latest_signal(store: SignalStore, symbol: str) -> Optional[TradingSignal]:
    """Newest signal for the symbol: a limit-1 query without cursor."""
    page = await store.query(symbol, SignalQuery(limit=1))
    return page.signals[0] if page.signals else None

