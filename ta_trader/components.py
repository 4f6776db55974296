"""
Wiring of stores, adapter, engine and runner from a TradingConfig.
Shared by the CLI and the HTTP API.
"""
from dataclasses import dataclass
from typing import Optional

from .adapters import get_adapter
from .adapters.base import TradingAdapter
from .common.interfaces import IndicatorSource, PositionStore, SignalStore
from .config.config import TradingConfig
from .context import TradingContext
from .data.ccxt_source import CCXTIndicatorSource
from .engine.decision import DecisionEngine
from .runner.runner import TradingRunner
from .signals.log import MemorySignalStore
from .storage.memory import MemoryPositionStore


@dataclass
class Components:
    context: TradingContext
    store: PositionStore
    signals: SignalStore
    adapter: TradingAdapter
    engine: DecisionEngine
    source: IndicatorSource
    runner: TradingRunner

    async def cleanup(self):
        await self.runner.cleanup()
        self.context.logger.close()


def build_stores(config: TradingConfig):
    """(PositionStore, SignalStore) for the configured storage backend."""
    if config.storage == "memory":
        return MemoryPositionStore(), MemorySignalStore()
    if config.storage == "supabase":
        from .signals.supabase_store import SupabaseSignalStore
        from .storage.supabase_client import create_supabase_client
        from .storage.supabase_store import SupabasePositionStore

        client = create_supabase_client()
        return SupabasePositionStore(client, account=config.exchange.adapter), SupabaseSignalStore(client)
    raise ValueError(f"Unknown storage backend: {config.storage}")


def build_components(config: TradingConfig, context: Optional[TradingContext] = None,
                     source: Optional[IndicatorSource] = None) -> Components:
    context = context or TradingContext(config=config)
    store, signals = build_stores(config)
    adapter = get_adapter(config.exchange.adapter, store, context)
    engine = DecisionEngine(adapter, store, signals, context)
    source = source or CCXTIndicatorSource(context)
    runner = TradingRunner(engine, source, store, context)
    return Components(context, store, signals, adapter, engine, source, runner)
