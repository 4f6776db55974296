"""
Structured logging for the trading engine.

Every decision is logged with full context:
- symbol, operation, request id
- signal type, reason, score, threshold
- price, position size, PnL

Logs are JSON lines for easy parsing and analysis.
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any

from .common.types import TradingSignal, format_price


class EngineLogger:
    """
    Structured logger for trading decisions.

    Writes to both file (JSON lines) and console (human-readable).
    Supports partial disabling (no file) by passing log_file=None.
    """

    def __init__(self, log_file: Optional[str] = "logs/ta_trader.log", log_level: str = "INFO",
                 name: str = "ta_trader"):
        self.log_file = log_file
        self.json_file = None

        if self.log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self.json_file = open(log_file, 'a', encoding='utf-8')

        self.console_logger = logging.getLogger(name)
        self.console_logger.setLevel(getattr(logging, log_level.upper()))

        if not self.console_logger.handlers:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, log_level.upper()))
            formatter = logging.Formatter(
                '%(asctime)s [%(levelname)s] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(formatter)
            self.console_logger.addHandler(console_handler)

    def _write(self, entry: Dict[str, Any]):
        if self.json_file:
            self.json_file.write(json.dumps(entry, default=_json_default) + '\n')
            self.json_file.flush()

    def _log(self, level: int, message: str, symbol: Optional[str] = None,
             operation: Optional[str] = None, error: Optional[BaseException] = None, **data):
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": logging.getLevelName(level),
            "message": message,
        }
        context = {}
        if symbol:
            context["symbol"] = symbol
        if operation:
            context["operation"] = operation
        if "request_id" in data:
            context["request_id"] = data.pop("request_id")
        if context:
            entry["context"] = context
        if data:
            entry["data"] = {k: _round(v) for k, v in data.items() if v is not None}
        if error is not None:
            entry["error"] = {"type": type(error).__name__, "message": str(error)}
        self._write(entry)

        prefix = f"[{symbol}] " if symbol else ""
        if operation:
            prefix += f"[{operation}] "
        line = prefix + message
        if error is not None:
            line += f" | {type(error).__name__}: {error}"
        self.console_logger.log(level, line)

    def debug(self, message: str, symbol: Optional[str] = None, operation: Optional[str] = None, **data):
        self._log(logging.DEBUG, message, symbol, operation, **data)

    def info(self, message: str, symbol: Optional[str] = None, operation: Optional[str] = None, **data):
        self._log(logging.INFO, message, symbol, operation, **data)

    def warning(self, message: str, symbol: Optional[str] = None, operation: Optional[str] = None, **data):
        self._log(logging.WARNING, message, symbol, operation, **data)

    def error(self, message: str, symbol: Optional[str] = None, operation: Optional[str] = None,
              error: Optional[BaseException] = None, **data):
        self._log(logging.ERROR, message, symbol, operation, error=error, **data)

    def log_signal(self, signal: TradingSignal):
        """
        Log a trading decision.
        """
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), "event": "SIGNAL"}
        entry.update(signal.to_dict())
        self._write(entry)

        parts = [f"[{signal.symbol}]", f"[{signal.type.value}]", signal.reason.value]
        if signal.direction:
            parts.append(signal.direction.value)
        metrics = [
            f"score={signal.ta_score:.4f}",
            f"thr={signal.threshold:.2f}",
            f"price={format_price(signal.price)}",
        ]
        if signal.position_size is not None:
            metrics.append(f"size={signal.position_size:.6f}")
        if signal.realized_pnl is not None:
            metrics.append(f"pnl={signal.realized_pnl:.2f}")
        elif signal.unrealized_pnl is not None:
            metrics.append(f"upnl={signal.unrealized_pnl:.2f}")
        message = " ".join(parts) + " | " + " ".join(metrics)

        # Trades stand out from holds
        if signal.type.value in ("HOLD", "NO_ACTION"):
            self.console_logger.info(message)
        else:
            self.console_logger.warning(message)

    def log_config(self, config_dict: Dict[str, Any]):
        """
        Log configuration at startup.
        """
        self._write({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": "CONFIG_LOADED",
            "config": config_dict
        })
        self.console_logger.info("Configuration loaded:")
        for key, value in config_dict.items():
            self.console_logger.info(f"  {key}: {value}")

    @asynccontextmanager
    async def timed(self, operation: str, symbol: Optional[str] = None):
        """
        Time an async block. Logs duration on success, and the error with
        full context (symbol, operation, elapsed) on failure before re-raising.
        """
        request_id = uuid.uuid4().hex[:8]
        start = time.perf_counter()
        try:
            yield request_id
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.error(f"{operation} failed after {elapsed_ms:.1f}ms", symbol, operation,
                       error=e, request_id=request_id, elapsed_ms=elapsed_ms)
            raise
        elapsed_ms = (time.perf_counter() - start) * 1000
        self.debug(f"{operation} completed in {elapsed_ms:.1f}ms", symbol, operation,
                   request_id=request_id, elapsed_ms=elapsed_ms)

    def close(self):
        """Close log file."""
        if self.json_file:
            self.json_file.close()
            self.json_file = None

    def __del__(self):
        self.close()


def _round(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, 6)
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return str(value)
