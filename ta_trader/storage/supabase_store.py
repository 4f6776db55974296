"""
Supabase-backed position store.

Tables (migrations/0001_init.sql): positions, position_stats, balances,
closed_trades, kv. Calls are synchronous and run in a worker thread.
"""
import asyncio
from dataclasses import asdict
from typing import List, Optional

from ..common.errors import UpstreamUnavailable
from ..common.interfaces import PositionStore
from ..common.types import ClosedTrade, Position, PositionStats

BALANCE_KEY = "USDC"


class SupabasePositionStore(PositionStore):
    def __init__(self, client, account: str = "paper"):
        self.client = client
        self.account = account

    async def _run(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except UpstreamUnavailable:
            raise
        except Exception as e:
            raise UpstreamUnavailable(f"Position store call failed: {e}") from e

    def _one(self, table: str, **filters) -> Optional[dict]:
        builder = self.client.table(table).select("*").eq("account", self.account)
        for column, value in filters.items():
            builder = builder.eq(column, value)
        rows = builder.limit(1).execute().data or []
        return rows[0] if rows else None

    def _upsert(self, table: str, row: dict, conflict: str):
        row = {"account": self.account, **row}
        self.client.table(table).upsert(row, on_conflict=conflict).execute()

    def _delete(self, table: str, **filters):
        builder = self.client.table(table).delete().eq("account", self.account)
        for column, value in filters.items():
            builder = builder.eq(column, value)
        builder.execute()

    # --- Positions ---

    async def get(self, symbol: str) -> Optional[Position]:
        row = await self._run(self._one, "positions", symbol=symbol)
        return Position.from_dict(row["data"]) if row else None

    async def put(self, symbol: str, position: Position):
        await self._run(self._upsert, "positions",
                        {"symbol": symbol, "data": position.to_dict()}, "account,symbol")

    async def delete(self, symbol: str):
        await self._run(self._delete, "positions", symbol=symbol)

    async def list_symbols(self) -> List[str]:
        def fetch():
            rows = self.client.table("positions").select("symbol").eq("account", self.account).execute().data
            return sorted(r["symbol"] for r in rows or [])
        return await self._run(fetch)

    # --- Balance ---

    async def get_balance(self) -> Optional[float]:
        row = await self._run(self._one, "balances", asset=BALANCE_KEY)
        return float(row["amount"]) if row else None

    async def put_balance(self, balance: float):
        await self._run(self._upsert, "balances",
                        {"asset": BALANCE_KEY, "amount": balance}, "account,asset")

    # --- Stats ---

    async def get_stats(self, symbol: str) -> PositionStats:
        row = await self._run(self._one, "position_stats", symbol=symbol)
        if not row:
            return PositionStats()
        return PositionStats(
            cumulative_pnl=float(row["cumulative_pnl"]),
            successful_trades=int(row["successful_trades"]),
            total_trades=int(row["total_trades"]),
        )

    async def put_stats(self, symbol: str, stats: PositionStats):
        await self._run(self._upsert, "position_stats",
                        {"symbol": symbol, **asdict(stats)}, "account,symbol")

    # --- History ---

    async def append_closed_trade(self, trade: ClosedTrade):
        def insert():
            self.client.table("closed_trades").insert({"account": self.account, **asdict(trade)}).execute()
        await self._run(insert)

    async def get_closed_trades(self, symbol: Optional[str] = None, limit: int = 50) -> List[ClosedTrade]:
        def fetch():
            builder = self.client.table("closed_trades").select("*").eq("account", self.account)
            if symbol:
                builder = builder.eq("symbol", symbol)
            return builder.order("closed_at", desc=True).limit(limit).execute().data or []
        rows = await self._run(fetch)
        fields = ClosedTrade.__dataclass_fields__
        return [ClosedTrade(**{k: v for k, v in r.items() if k in fields}) for r in rows]

    # --- Raw ---

    async def get_raw(self, key: str) -> Optional[dict]:
        row = await self._run(self._one, "kv", key=key)
        return row["value"] if row else None

    async def put_raw(self, key: str, value: dict):
        await self._run(self._upsert, "kv", {"key": key, "value": value}, "account,key")

    async def delete_raw(self, key: str):
        await self._run(self._delete, "kv", key=key)
