"""
Async Runner.
Drives the slow decision cycle and the fast stop-loss/take-profit monitor
for every configured market.
"""
import asyncio
from typing import Dict, List, Optional

from ..adapters.base import TradingAdapter
from ..adapters.paper import PaperTradingAdapter
from ..common.interfaces import IndicatorSource, PositionStore
from ..common.types import TradingSignal
from ..config.config import ScheduleConfig
from ..context import TradingContext
from ..engine.decision import DecisionEngine


def should_skip_monitor(now_ms: int, schedule: ScheduleConfig) -> bool:
    """
    True when now is within the collision window of a slow-cycle boundary,
    on either side of it.
    """
    cycle_ms = schedule.cycle_interval_seconds * 1000
    window_ms = schedule.collision_window_seconds * 1000
    into_cycle = now_ms % cycle_ms
    return into_cycle < window_ms or cycle_ms - into_cycle < window_ms


class TradingRunner:
    def __init__(self, engine: DecisionEngine, source: IndicatorSource, store: PositionStore,
                 context: TradingContext):
        self.engine = engine
        self.adapter: TradingAdapter = engine.adapter
        self.source = source
        self.store = store
        self.context = context
        self.config = context.config
        self.logger = context.logger
        self.running = False
        self.last_signals: Dict[str, TradingSignal] = {}
        self.failures: Dict[str, str] = {}

    async def _refresh(self, symbol: str):
        snapshot = await self.source.fetch_latest(symbol)
        # The simulator has no feed of its own
        if isinstance(self.adapter, PaperTradingAdapter):
            self.adapter.set_current_price(symbol, snapshot.price)
        return snapshot

    async def _run_market(self, symbol: str) -> List[TradingSignal]:
        async with self.logger.timed("cycle", symbol):
            snapshot = await self._refresh(symbol)
            return await self.engine.evaluate(snapshot)

    async def _monitor_market(self, symbol: str) -> List[TradingSignal]:
        async with self.logger.timed("monitor", symbol):
            if isinstance(self.adapter, PaperTradingAdapter):
                await self._refresh(symbol)
            return await self.engine.monitor(symbol)

    async def _gather(self, symbols: List[str], worker) -> Dict[str, List[TradingSignal]]:
        """Run worker per market; one market's failure never aborts the others."""
        results = await asyncio.gather(*(worker(s) for s in symbols), return_exceptions=True)

        emitted: Dict[str, List[TradingSignal]] = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, Exception):
                # Already logged with timing by logger.timed
                self.failures[symbol] = f"{type(result).__name__}: {result}"
                emitted[symbol] = []
                continue
            if isinstance(result, BaseException):
                raise result
            self.failures.pop(symbol, None)
            emitted[symbol] = result
            if result:
                self.last_signals[symbol] = result[-1]
        return emitted

    async def run_cycle(self) -> Dict[str, List[TradingSignal]]:
        """Refresh indicators and evaluate every market concurrently."""
        symbols = list(self.config.symbols)
        self.logger.debug(f"Starting cycle for {len(symbols)} markets", operation="cycle")
        return await self._gather(symbols, self._run_market)

    async def run_monitor(self) -> Dict[str, List[TradingSignal]]:
        """Stop-loss / take-profit pass over markets holding a position."""
        if should_skip_monitor(self.context.now(), self.config.schedule):
            self.logger.debug("Monitor skipped: too close to cycle boundary", operation="monitor")
            return {}
        held = set(await self.store.list_symbols())
        symbols = [s for s in self.config.symbols if s in held]
        if not symbols:
            return {}
        return await self._gather(symbols, self._monitor_market)

    async def run_forever(self):
        """
        Main loop. Cycles fire on wall-clock boundaries of the cycle interval,
        the monitor runs in between. A failed cycle is simply retried next tick.
        """
        schedule = self.config.schedule
        cycle_ms = schedule.cycle_interval_seconds * 1000
        monitor_ms = schedule.monitor_interval_seconds * 1000

        self.running = True
        next_cycle = self.context.now()
        next_monitor = next_cycle + monitor_ms
        while self.running:
            now = self.context.now()
            if now >= next_cycle:
                await self.run_cycle()
                next_cycle = (now // cycle_ms + 1) * cycle_ms
            elif now >= next_monitor:
                await self.run_monitor()
                next_monitor = now + monitor_ms

            wait_ms = min(next_cycle, next_monitor) - self.context.now()
            await asyncio.sleep(max(wait_ms, 0) / 1000)

    async def close_all(self) -> List[TradingSignal]:
        """Force-close every position. The simulator gets fresh prices first."""
        if isinstance(self.adapter, PaperTradingAdapter):
            symbols = list(self.config.symbols)
            results = await asyncio.gather(*(self._refresh(s) for s in symbols), return_exceptions=True)
            for symbol, result in zip(symbols, results):
                if isinstance(result, Exception):
                    self.logger.error(f"Price refresh failed: {result}", symbol, "close_all", error=result)
        return await self.engine.close_all()

    def stop(self):
        self.running = False

    def get_stats(self) -> List[Dict]:
        stats = []
        for symbol in self.config.symbols:
            signal = self.last_signals.get(symbol)
            stats.append({
                "symbol": symbol,
                "signal": signal.type.value if signal else "-",
                "reason": signal.reason.value if signal else "-",
                "score": signal.ta_score if signal else 0.0,
                "price": signal.price if signal else 0.0,
                "size": signal.position_size if signal else None,
                "error": self.failures.get(symbol),
            })
        return stats

    async def cleanup(self):
        """
        Close network sessions of the indicator source and the adapter.
        """
        self.logger.info("Cleaning up", operation="cleanup")
        await self.source.cleanup()
        await self.adapter.cleanup()
