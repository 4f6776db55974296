"""
Explicit context passed to every component: configuration, logger and clock.
Replaces module-level singletons so tests can build isolated instances.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .common.types import now_ms
from .config.config import TradingConfig, DEFAULT_CONFIG
from .logger import EngineLogger


@dataclass
class TradingContext:
    config: TradingConfig = DEFAULT_CONFIG
    logger: Optional[EngineLogger] = None
    clock: Callable[[], int] = now_ms
    # Per-context cache (static pool metadata), never shared between contexts
    cache: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.logger is None:
            self.logger = EngineLogger(log_file=self.config.log_file, log_level=self.config.log_level)

    def now(self) -> int:
        return self.clock()


def make_context(config: TradingConfig = DEFAULT_CONFIG, clock: Optional[Callable[[], int]] = None) -> TradingContext:
    """Context with console-only logging, for tests and one-off scripts."""
    return TradingContext(
        config=config,
        logger=EngineLogger(log_file=None, log_level="WARNING"),
        clock=clock or now_ms,
    )
