"""
Decision engine and position state machine.

NO_POSITION -> OPEN(1..N partials) -> CLOSED -> NO_POSITION

The engine keeps the partial ledger in the PositionStore, scores every
partial, and drives the adapter. Per market, evaluation is serialized by an
asyncio.Lock so overlapping cycles for one symbol cannot interleave their
read-modify-write against the store.
"""
import asyncio
from typing import Dict, List, Optional, Tuple

from ..adapters.base import Liquidatable, ShortSellable, TradingAdapter
from ..adapters.models import (
    AmmTradeQuote,
    HybridTradeQuote,
    OrderbookTradeQuote,
    trade_result_details,
)
from ..common.errors import (
    AdapterCapabilityMissing,
    InsufficientBalance,
    InvalidOptionsType,
    LiquidationTriggered,
    TradingError,
    UnsupportedSymbol,
)
from ..common.interfaces import PositionStore, SignalStore
from ..common.types import (
    Direction,
    IndicatorBreakdown,
    IndicatorSnapshot,
    PartialPosition,
    Position,
    SignalAction,
    SignalReason,
    SignalType,
    TradingSignal,
)
from ..config.config import RiskConfig, ThresholdPair
from ..context import TradingContext
from ..scoring.scores import TaScores, score, score_partials

# Exit reasons in evaluation order, and the signal type each one produces
EXIT_SIGNAL_TYPES = {
    SignalReason.STOP_LOSS: SignalType.STOP_LOSS,
    SignalReason.TAKE_PROFIT: SignalType.TAKE_PROFIT,
    SignalReason.SIGNAL_REVERSAL: SignalType.EXIT,
    SignalReason.MANUAL: SignalType.EXIT,
    SignalReason.LIQUIDATION: SignalType.EXIT,
}


def price_diff(entry_price: float, price: float, is_long: bool) -> float:
    """Directional return of an entry: positive when the position is in profit."""
    if entry_price <= 0:
        return 0.0
    diff = (price - entry_price) / entry_price
    return diff if is_long else -diff


def is_reversed(total: float, pair: ThresholdPair, is_long: bool) -> bool:
    return total < pair.sell if is_long else total > pair.sell


def partial_exit_reason(partial: PartialPosition, price: float, is_long: bool, risk: RiskConfig,
                        total: Optional[float] = None,
                        pair: Optional[ThresholdPair] = None) -> Optional[SignalReason]:
    """
    Why a partial should be closed, or None to hold it.

    Stop-loss is checked strictly before take-profit, and both strictly before
    a score reversal, whatever the score says. Passing total=None checks the
    price thresholds only.
    """
    diff = price_diff(partial.entry_price, price, is_long)
    if diff <= risk.stop_loss_threshold:
        return SignalReason.STOP_LOSS
    if diff >= risk.take_profit_threshold:
        return SignalReason.TAKE_PROFIT
    if total is not None and pair is not None and is_reversed(total, pair, is_long):
        return SignalReason.SIGNAL_REVERSAL
    return None


def next_position_size(balance: float, partial_count: int, max_partials: int) -> float:
    """
    Quote size of the next partial: balance split evenly over the remaining
    slots, the last slot takes everything, no slot left gives 0.
    """
    remaining = max_partials - partial_count
    if remaining <= 0 or balance <= 0:
        return 0.0
    if remaining == 1:
        return balance
    return balance / remaining


class DecisionEngine:
    def __init__(self, adapter: TradingAdapter, store: PositionStore, signals: SignalStore,
                 context: TradingContext):
        self.adapter = adapter
        self.store = store
        self.signals = signals
        self.context = context
        self.config = context.config
        self.risk = context.config.risk
        self.logger = context.logger
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = self._locks[symbol] = asyncio.Lock()
        return lock

    # --- Public API ---

    async def evaluate(self, snapshot: IndicatorSnapshot) -> List[TradingSignal]:
        """
        Full decision cycle for one market. Returns the signals emitted.
        InsufficientBalance and missing short support become NO_ACTION signals;
        configuration errors (UnsupportedSymbol, InvalidOptionsType) propagate.
        """
        async with self.lock_for(snapshot.symbol):
            try:
                return await self._evaluate(snapshot)
            except LiquidationTriggered as e:
                return [await self._on_liquidation(snapshot.symbol, e.result, e.price)]

    async def monitor(self, symbol: str) -> List[TradingSignal]:
        """Fast path: stop-loss / take-profit only, no scoring."""
        async with self.lock_for(symbol):
            try:
                price = await self.adapter.get_price(symbol)
                liquidation = await self._check_liquidation(symbol, price)
                if liquidation:
                    return [liquidation]

                position = await self._load_position(symbol)
                if position is None:
                    return []

                closing = []
                for partial in position.partials:
                    reason = partial_exit_reason(partial, price, position.is_long, self.risk)
                    if reason:
                        closing.append((partial, reason))
                if not closing:
                    return []
                return await self._close_partials(position, closing, price, scores=None)
            except LiquidationTriggered as e:
                return [await self._on_liquidation(symbol, e.result, e.price)]

    async def close_all(self, symbols: Optional[List[str]] = None) -> List[TradingSignal]:
        """
        Force-close every open position (MANUAL). A market that fails is
        logged and skipped; configuration errors still propagate.
        """
        if symbols is None:
            symbols = sorted(set(self.config.symbols) | set(await self.store.list_symbols()))

        emitted: List[TradingSignal] = []
        for symbol in symbols:
            async with self.lock_for(symbol):
                try:
                    position = await self._load_position(symbol)
                    if position is None:
                        continue
                    price = await self.adapter.get_price(symbol)
                    closing = [(p, SignalReason.MANUAL) for p in position.partials]
                    emitted.extend(await self._close_partials(position, closing, price, scores=None))
                except LiquidationTriggered as e:
                    emitted.append(await self._on_liquidation(symbol, e.result, e.price))
                except (InvalidOptionsType, UnsupportedSymbol):
                    raise
                except TradingError as e:
                    self.logger.error(f"Close failed: {e}", symbol, "close_all", error=e)
        return emitted

    # --- Cycle ---

    async def _evaluate(self, snapshot: IndicatorSnapshot) -> List[TradingSignal]:
        symbol = snapshot.symbol
        now = self.context.now()

        # Score at the adapter's executable price so decisions match fills
        price = await self.adapter.get_price(symbol)

        liquidation = await self._check_liquidation(symbol, price)
        if liquidation:
            return [liquidation]

        position = await self._load_position(symbol)
        partial_scores = score_partials(
            price, snapshot.vwap, snapshot.bb_upper, snapshot.bb_lower, snapshot.rsi,
            snapshot.price_history, snapshot.obv_history,
            self.config.scoring, position=position, now_ms=now,
        )

        if position is None:
            return [await self._evaluate_entry(symbol, price, partial_scores[0])]

        closing: List[Tuple[PartialPosition, SignalReason]] = []
        for index, (partial, scores) in enumerate(zip(position.partials, partial_scores)):
            pair = self.risk.tier(index).for_direction(position.is_long)
            reason = partial_exit_reason(partial, price, position.is_long, self.risk,
                                         total=scores.total, pair=pair)
            if reason:
                closing.append((partial, reason))

        if closing:
            return await self._close_partials(position, closing, price, partial_scores)

        # Fresh entries carry no age, so adds are judged on the undecayed score
        entry_scores = score(
            price, snapshot.vwap, snapshot.bb_upper, snapshot.bb_lower, snapshot.rsi,
            snapshot.price_history, snapshot.obv_history,
            self.config.scoring, position=position,
        )
        count = len(position.partials)
        if count < self.risk.max_partials:
            pair = self.risk.tier(count).for_direction(position.is_long)
            if self._crosses_buy(entry_scores.total, pair, position.is_long):
                return [await self._open(symbol, position.is_long, price, entry_scores, position)]

        return [await self._hold(position, price, partial_scores)]

    async def _evaluate_entry(self, symbol: str, price: float, scores: TaScores) -> TradingSignal:
        tier = self.risk.tier(0)
        total = scores.total

        if self._crosses_buy(total, tier.long, is_long=True):
            return await self._open(symbol, True, price, scores, None)

        if self._crosses_buy(total, tier.short, is_long=False):
            if not isinstance(self.adapter, ShortSellable):
                self.logger.warning(
                    f"Short signal {total:.4f} ignored: {self.adapter.name} cannot short",
                    symbol, "entry",
                )
                return await self._emit(self._signal(
                    symbol, SignalType.NO_ACTION, SignalReason.TA_SCORE, scores,
                    tier.short.buy, price, direction=Direction.SHORT,
                ))
            return await self._open(symbol, False, price, scores, None)

        threshold = tier.long.buy if total >= 0 else tier.short.buy
        self.logger.debug(f"Score {total:.4f} inside thresholds", symbol, "entry")
        return await self._emit(self._signal(
            symbol, SignalType.NO_ACTION, SignalReason.BELOW_THRESHOLD, scores, threshold, price,
        ))

    @staticmethod
    def _crosses_buy(total: float, pair: ThresholdPair, is_long: bool) -> bool:
        return total > pair.buy if is_long else total < pair.buy

    # --- Opening ---

    async def _open(self, symbol: str, is_long: bool, price: float, scores: TaScores,
                    position: Optional[Position]) -> TradingSignal:
        index = len(position.partials) if position else 0
        pair = self.risk.tier(index).for_direction(is_long)
        direction = Direction.LONG if is_long else Direction.SHORT
        if position is None:
            signal_type, action, reason = SignalType.ENTRY, SignalAction.OPEN, SignalReason.TA_SCORE
        else:
            signal_type, action, reason = (
                SignalType.ADJUSTMENT, SignalAction.INCREASE, SignalReason.STRENGTHENED_SIGNAL
            )

        def refused(why: str) -> TradingSignal:
            self.logger.warning(f"Open refused: {why}", symbol, "open")
            return self._signal(symbol, SignalType.NO_ACTION, reason, scores, pair.buy, price,
                                direction=direction, position=position)

        if not is_long and not isinstance(self.adapter, ShortSellable):
            return await self._emit(refused(f"{self.adapter.name} cannot short"))

        balance = await self.adapter.get_balance()
        size = next_position_size(balance, index, self.risk.max_partials)
        if size < self.risk.min_order_size_usd:
            return await self._emit(refused(
                f"size {size:.2f} below minimum {self.risk.min_order_size_usd} (balance {balance:.2f})"
            ))

        options = self.adapter.default_trade_options(leverage=self.risk.leverage_for(symbol))
        quote = await self.adapter.get_expected_trade_return(symbol, size, is_long, True, options)
        impact = self._quote_price_impact(quote)
        if impact is not None and impact > self.risk.max_price_impact:
            return await self._emit(refused(f"price impact {impact:.4f} above {self.risk.max_price_impact}"))

        try:
            if is_long:
                result = await self.adapter.open_long_position(symbol, size, options)
            else:
                result = await self.adapter.open_short_position(symbol, size, options)
        except InsufficientBalance as e:
            return await self._emit(refused(str(e)))

        now = self.context.now()
        partial = PartialPosition(result.executed_size, result.executed_price, now)
        if position is None:
            updated = Position(
                symbol=symbol,
                size=partial.size,
                is_long=is_long,
                entry_price=partial.entry_price,
                mark_price=price,
                last_update_time=now,
                partials=[partial],
            )
        else:
            updated = position.with_partials(position.partials + [partial], now)
        await self.store.put(symbol, updated)

        self.logger.info(
            f"{'Opened' if position is None else 'Added'} partial #{index + 1} "
            f"{'long' if is_long else 'short'} {partial.size:.6f} @ {partial.entry_price}",
            symbol, "open", quote_size=size, fee=result.fee, **trade_result_details(result),
        )
        return await self._emit(self._signal(
            symbol, signal_type, reason, scores, pair.buy, result.executed_price,
            direction=direction, action=action, position=updated,
        ))

    @staticmethod
    def _quote_price_impact(quote) -> Optional[float]:
        if isinstance(quote, AmmTradeQuote):
            return quote.price_impact
        if isinstance(quote, HybridTradeQuote):
            return quote.price_impact
        if isinstance(quote, OrderbookTradeQuote):
            return None
        raise TypeError(f"Unhandled quote variant: {type(quote).__name__}")

    # --- Closing ---

    async def _close_partials(self, position: Position,
                              closing: List[Tuple[PartialPosition, SignalReason]],
                              price: float, scores: Optional[List[TaScores]]) -> List[TradingSignal]:
        symbol = position.symbol
        closing_ids = {id(p) for p, _ in closing}
        survivors = [p for p in position.partials if id(p) not in closing_ids]
        closes_all = not survivors

        qty = sum(p.size for p, _ in closing)
        if closes_all:
            # Close whatever the venue actually holds
            venue_position = await self.adapter.get_position(symbol)
            if venue_position is not None:
                qty = venue_position.size

        options = self.adapter.default_trade_options(leverage=self.risk.leverage_for(symbol))
        if position.is_long:
            result = await self.adapter.close_long_position(symbol, qty, options)
        elif isinstance(self.adapter, ShortSellable):
            result = await self.adapter.close_short_position(symbol, qty, options)
        else:
            raise AdapterCapabilityMissing("ShortSellable", self.adapter.name)

        exit_price = result.executed_price
        now = self.context.now()

        # Group by reason so each exit path is reported once
        groups: Dict[SignalReason, List[PartialPosition]] = {}
        for partial, reason in closing:
            groups.setdefault(reason, []).append(partial)

        total_pnl = -result.fee
        group_pnl: Dict[SignalReason, float] = {}
        for reason, partials in groups.items():
            pnl = 0.0
            for p in partials:
                move = exit_price - p.entry_price
                pnl += (move if position.is_long else -move) * p.size
            group_pnl[reason] = pnl
            total_pnl += pnl

        stats = await self.store.get_stats(symbol)
        await self.store.put_stats(symbol, stats.record(total_pnl))

        if closes_all:
            await self.store.delete(symbol)
            remaining = None
        else:
            remaining = position.with_partials(survivors, now)
            remaining.realized_pnl = position.realized_pnl + total_pnl
            remaining.mark_price = exit_price
            await self.store.put(symbol, remaining)

        self.logger.info(
            f"Closed {len(closing)}/{len(position.partials)} partials, {qty:.6f} @ {exit_price}",
            symbol, "close", pnl=total_pnl, fee=result.fee, **trade_result_details(result),
        )

        first_scores = scores[0] if scores else None
        emitted = []
        # One millisecond apart so the timestamp cursor never skips a sibling
        for offset, (reason, partials) in enumerate(groups.items()):
            index = position.partials.index(partials[0])
            partial_scores = scores[index] if scores else first_scores
            pair = self.risk.tier(index).for_direction(position.is_long)
            threshold = self._exit_threshold(reason, pair)
            signal = self._signal(
                symbol, EXIT_SIGNAL_TYPES[reason], reason, partial_scores, threshold, exit_price,
                direction=position.direction,
                action=SignalAction.CLOSE if closes_all else SignalAction.DECREASE,
                position=remaining,
                position_size=sum(p.size for p in partials),
                entry_price=sum(p.size * p.entry_price for p in partials) / sum(p.size for p in partials),
                realized_pnl=group_pnl[reason],
                timestamp=now + offset,
            )
            emitted.append(await self._emit(signal))
        return emitted

    def _exit_threshold(self, reason: SignalReason, pair: ThresholdPair) -> float:
        if reason == SignalReason.STOP_LOSS:
            return self.risk.stop_loss_threshold
        if reason == SignalReason.TAKE_PROFIT:
            return self.risk.take_profit_threshold
        return pair.sell

    async def _hold(self, position: Position, price: float, scores: List[TaScores]) -> TradingSignal:
        now = self.context.now()
        upnl = sum(
            price_diff(p.entry_price, price, position.is_long) * p.entry_price * p.size
            for p in position.partials
        )
        position.mark_price = price
        position.unrealized_pnl = upnl
        position.last_update_time = now
        await self.store.put(position.symbol, position)

        head = scores[0]
        pair = self.risk.tier(0).for_direction(position.is_long)
        return await self._emit(self._signal(
            position.symbol, SignalType.HOLD, SignalReason.TA_SCORE, head, pair.sell, price,
            direction=position.direction, position=position, unrealized_pnl=upnl,
        ))

    # --- Liquidation ---

    async def _check_liquidation(self, symbol: str, price: float) -> Optional[TradingSignal]:
        if not isinstance(self.adapter, Liquidatable):
            return None
        result = await self.adapter.check_liquidation(symbol)
        if result is None:
            return None
        return await self._on_liquidation(symbol, result, price)

    async def _on_liquidation(self, symbol: str, result, price: float) -> TradingSignal:
        ledger = await self.store.get(symbol)
        await self.store.delete(symbol)

        pnl = result.realized_pnl if result is not None and result.realized_pnl is not None else 0.0
        fee = result.fee if result is not None else 0.0
        stats = await self.store.get_stats(symbol)
        await self.store.put_stats(symbol, stats.record(pnl - fee))

        self.logger.warning(f"Position liquidated @ {price}", symbol, "liquidation", pnl=pnl)
        return await self._emit(TradingSignal(
            symbol=symbol,
            timestamp=self.context.now(),
            type=SignalType.EXIT,
            reason=SignalReason.LIQUIDATION,
            ta_score=0.0,
            threshold=self.config.paper.liquidation_threshold,
            price=price,
            indicators=IndicatorBreakdown(),
            direction=ledger.direction if ledger else None,
            action=SignalAction.CLOSE,
            position_size=result.executed_size if result is not None else None,
            entry_price=ledger.entry_price if ledger else None,
            realized_pnl=pnl,
        ))

    # --- Ledger ---

    async def _load_position(self, symbol: str) -> Optional[Position]:
        """
        Engine ledger reconciled with the venue: a venue position without a
        ledger is adopted as one partial; a ledger without a venue position
        is dropped.
        """
        ledger = await self.store.get(symbol)
        venue = await self.adapter.get_position(symbol)

        if venue is None:
            if ledger is not None:
                self.logger.warning("Ledger position missing on venue, dropping it", symbol, "reconcile")
                await self.store.delete(symbol)
            return None

        if ledger is None or ledger.is_long != venue.is_long or not ledger.partials:
            partials = venue.partials or [
                PartialPosition(venue.size, venue.entry_price, venue.last_update_time)
            ]
            ledger = venue.with_partials(partials, venue.last_update_time or self.context.now())
            await self.store.put(symbol, ledger)
            self.logger.info("Adopted venue position into ledger", symbol, "reconcile", size=venue.size)
            return ledger

        if venue.mark_price is not None:
            ledger.mark_price = venue.mark_price
        return ledger

    # --- Signals ---

    def _signal(self, symbol: str, signal_type: SignalType, reason: SignalReason,
                scores: Optional[TaScores], threshold: float, price: float,
                direction: Optional[Direction] = None, action: Optional[SignalAction] = None,
                position: Optional[Position] = None, timestamp: Optional[int] = None,
                **fields) -> TradingSignal:
        if position is not None:
            fields.setdefault("position_size", position.size)
            fields.setdefault("entry_price", position.entry_price)
        return TradingSignal(
            symbol=symbol,
            timestamp=timestamp if timestamp is not None else self.context.now(),
            type=signal_type,
            reason=reason,
            ta_score=scores.total if scores else 0.0,
            threshold=threshold,
            price=price,
            indicators=scores.to_breakdown() if scores else IndicatorBreakdown(),
            direction=direction,
            action=action,
            profit_score=scores.profit if scores and position is not None else None,
            time_decay_score=scores.time_decay if scores and position is not None else None,
            **fields,
        )

    async def _emit(self, signal: TradingSignal) -> TradingSignal:
        await self.signals.append(signal)
        self.logger.log_signal(signal)
        return signal
