"""
Test structured JSON-lines logging.
"""
import json

import pytest

from ta_trader.common.types import IndicatorBreakdown, SignalReason, SignalType, TradingSignal
from ta_trader.logger import EngineLogger

from .conftest import SYMBOL


def read_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_signal_is_written_as_json(tmp_path):
    path = tmp_path / "logs" / "trader.log"
    logger = EngineLogger(log_file=str(path), log_level="WARNING", name="test_signal")

    logger.log_signal(TradingSignal(
        symbol=SYMBOL, timestamp=1, type=SignalType.ENTRY, reason=SignalReason.TA_SCORE,
        ta_score=2.78, threshold=2.0, price=100.0, indicators=IndicatorBreakdown(total=2.78),
    ))
    logger.close()

    [entry] = read_lines(path)
    assert entry["event"] == "SIGNAL"
    assert entry["type"] == "ENTRY"
    assert entry["indicators"]["total"] == 2.78


@pytest.mark.asyncio
async def test_timed_logs_failure_and_reraises(tmp_path):
    path = tmp_path / "trader.log"
    logger = EngineLogger(log_file=str(path), log_level="WARNING", name="test_timed")

    with pytest.raises(RuntimeError):
        async with logger.timed("cycle", SYMBOL):
            raise RuntimeError("feed down")
    logger.close()

    [entry] = read_lines(path)
    assert entry["level"] == "ERROR"
    assert entry["context"]["symbol"] == SYMBOL
    assert entry["context"]["operation"] == "cycle"
    assert entry["error"] == {"type": "RuntimeError", "message": "feed down"}
    assert "elapsed_ms" in entry["data"]
