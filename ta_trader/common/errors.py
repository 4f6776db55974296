"""
Error taxonomy shared by adapters, the decision engine and the runner.
"""
from typing import Any, Optional


class TradingError(Exception):
    """Base class for all trading errors."""


class UpstreamUnavailable(TradingError):
    """Indicator or price fetch failed. The market's cycle is aborted and retried next tick."""

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class InsufficientBalance(TradingError):
    def __init__(self, required: Optional[float] = None, available: Optional[float] = None,
                 message: Optional[str] = None):
        if message is None:
            message = f"Insufficient balance: required {required:.6f}, available {available:.6f}"
        super().__init__(message)
        self.required = required
        self.available = available


class InvalidOptionsType(TradingError):
    """Trade options tagged for a different exchange type than the adapter's own."""

    def __init__(self, expected: Any, got: Any):
        super().__init__(f"Invalid options type: expected {expected}, got {got}")
        self.expected = expected
        self.got = got


class UnsupportedSymbol(TradingError):
    def __init__(self, symbol: str):
        super().__init__(f"Unsupported symbol: {symbol}")
        self.symbol = symbol


class AdapterCapabilityMissing(TradingError):
    def __init__(self, capability: str, adapter: str = ""):
        super().__init__(f"Adapter {adapter or 'unknown'} lacks capability {capability}")
        self.capability = capability
        self.adapter = adapter


class InvalidTradeRequest(TradingError):
    """Bad leverage, non-positive size, over-close or direction conflict."""


class LiquidationTriggered(TradingError):
    """
    A position was force-closed because its margin ratio fell to the
    liquidation threshold. Carries the result of the forced close.
    """

    def __init__(self, symbol: str, price: float, margin_ratio: float, result: Any = None):
        super().__init__(
            f"Position {symbol} liquidated at {price} (margin ratio {margin_ratio:.6f})"
        )
        self.symbol = symbol
        self.price = price
        self.margin_ratio = margin_ratio
        self.result = result
