"""
Shared fixtures: fixed clock, paper trading stack, snapshot builders.
"""
import pytest

from ta_trader.adapters.paper import PaperTradingAdapter
from ta_trader.common.errors import UpstreamUnavailable
from ta_trader.common.types import IndicatorSnapshot
from ta_trader.config.config import TradingConfig
from ta_trader.context import make_context
from ta_trader.engine.decision import DecisionEngine
from ta_trader.signals.log import MemorySignalStore
from ta_trader.storage.memory import MemoryPositionStore

SYMBOL = "PERP_BTC_USDC"
T0 = 1_700_000_100_000


class Clock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: float):
        self.now += int(minutes * 60 * 1000)


class FlakyStore(MemoryPositionStore):
    """Memory store whose next write to a named method fails once."""

    def __init__(self):
        super().__init__()
        self.fail_next = None

    def _maybe_fail(self, method: str):
        if self.fail_next == method:
            self.fail_next = None
            raise UpstreamUnavailable(f"{method} failed")

    async def put_balance(self, balance: float):
        self._maybe_fail("put_balance")
        await super().put_balance(balance)

    async def append_closed_trade(self, trade):
        self._maybe_fail("append_closed_trade")
        await super().append_closed_trade(trade)


def bullish(price: float, symbol: str = SYMBOL) -> IndicatorSnapshot:
    """Price on the lower band, RSI 10: total 2.78."""
    return IndicatorSnapshot(symbol=symbol, price=price, vwap=price, bb_upper=price + 10,
                             bb_lower=price, rsi=10, obv=0.0)


def very_bullish(price: float, symbol: str = SYMBOL) -> IndicatorSnapshot:
    """Price three half-widths below the band middle, RSI 0: total 6.5."""
    return IndicatorSnapshot(symbol=symbol, price=price, vwap=price, bb_upper=price + 4,
                             bb_lower=price + 2, rsi=0, obv=0.0)


def bearish(price: float, symbol: str = SYMBOL) -> IndicatorSnapshot:
    """Mirror of bullish: total -2.78."""
    return IndicatorSnapshot(symbol=symbol, price=price, vwap=price, bb_upper=price,
                             bb_lower=price - 10, rsi=90, obv=0.0)


def neutral(price: float, symbol: str = SYMBOL) -> IndicatorSnapshot:
    return IndicatorSnapshot(symbol=symbol, price=price, vwap=price, bb_upper=price + 5,
                             bb_lower=price - 5, rsi=50, obv=0.0)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def config():
    return TradingConfig(symbols=(SYMBOL, "PERP_ETH_USDC"))


@pytest.fixture
def context(config, clock):
    return make_context(config, clock=clock)


@pytest.fixture
def store():
    return MemoryPositionStore()


@pytest.fixture
def signals():
    return MemorySignalStore()


@pytest.fixture
def paper(store, context):
    return PaperTradingAdapter(store, context)


@pytest.fixture
def engine(paper, store, signals, context):
    return DecisionEngine(paper, store, signals, context)
