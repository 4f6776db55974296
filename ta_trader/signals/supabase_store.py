"""
Supabase-backed signal log (`signals` table, see migrations/0001_init.sql).
The supabase client is synchronous, so calls run in a worker thread.
"""
import asyncio
from typing import Any, Dict

from ..common.errors import UpstreamUnavailable
from ..common.interfaces import SignalStore
from ..common.types import SignalPage, SignalQuery, TradingSignal
from .log import clamp_limit


class SupabaseSignalStore(SignalStore):
    def __init__(self, client, table: str = "signals"):
        self.client = client
        self.table = table

    async def append(self, signal: TradingSignal):
        row = signal.to_dict()
        await asyncio.to_thread(self._insert, row)

    def _insert(self, row: Dict[str, Any]):
        try:
            self.client.table(self.table).insert(row).execute()
        except Exception as e:
            raise UpstreamUnavailable(f"Signal insert failed: {e}", row.get("symbol")) from e

    def _filtered(self, columns: str, symbol: str, query: SignalQuery, count: bool = False):
        builder = self.client.table(self.table)
        builder = builder.select(columns, count="exact") if count else builder.select(columns)
        builder = builder.eq("symbol", symbol)
        if query.type is not None:
            builder = builder.eq("type", query.type.value)
        if query.from_ts is not None:
            builder = builder.gte("timestamp", query.from_ts)
        if query.to_ts is not None:
            builder = builder.lte("timestamp", query.to_ts)
        return builder

    def _query(self, symbol: str, query: SignalQuery) -> SignalPage:
        limit = clamp_limit(query.limit)
        try:
            # Count ignores the cursor
            counted = self._filtered("id", symbol, query, count=True).limit(1).execute()
            total_count = counted.count or 0

            page = self._filtered("*", symbol, query)
            if query.cursor is not None:
                page = page.lt("timestamp", query.cursor)
            # One extra row tells us whether another page exists
            rows = page.order("timestamp", desc=True).limit(limit + 1).execute().data or []
        except Exception as e:
            raise UpstreamUnavailable(f"Signal query failed: {e}", symbol) from e

        signals = [TradingSignal.from_dict(r) for r in rows[:limit]]
        next_cursor = signals[-1].timestamp if len(rows) > limit else None
        return SignalPage(signals=signals, total_count=total_count, next_cursor=next_cursor)

    async def query(self, symbol: str, query: SignalQuery) -> SignalPage:
        return await asyncio.to_thread(self._query, symbol, query)
