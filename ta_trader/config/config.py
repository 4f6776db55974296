"""
Configuration Schemas.

Single source of truth for all tunable parameters.
Everything here is frozen and read-only during a run.
"""
import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

ALL_PERP_SYMBOLS = (
    "PERP_NEAR_USDC",
    "PERP_SOL_USDC",
    "PERP_BTC_USDC",
    "PERP_ETH_USDC",
    "PERP_BNB_USDC",
)

TESTNET_SYMBOLS = ("PERP_BTC_USDC", "PERP_ETH_USDC", "PERP_BNB_USDC")


@dataclass(frozen=True)
class ThresholdPair:
    """
    Score thresholds for one direction.

    Longs open when score > buy and reverse when score < sell.
    Shorts open when score < buy and reverse when score > sell.
    """
    buy: float
    sell: float


@dataclass(frozen=True)
class ThresholdTier:
    long: ThresholdPair
    short: ThresholdPair

    def for_direction(self, is_long: bool) -> ThresholdPair:
        return self.long if is_long else self.short


DEFAULT_TIERS: Tuple[ThresholdTier, ...] = (
    ThresholdTier(ThresholdPair(2.0, -0.5), ThresholdPair(-2.0, 0.5)),
    ThresholdTier(ThresholdPair(5.5, 1.0), ThresholdPair(-5.5, -1.0)),
    ThresholdTier(ThresholdPair(8.5, 3.0), ThresholdPair(-8.5, -3.0)),
    ThresholdTier(ThresholdPair(11.5, 5.0), ThresholdPair(-11.5, -5.0)),
)


@dataclass(frozen=True)
class ScoringConfig:
    # === Multipliers ===
    vwap_multiplier: float = 0.2
    bbands_multiplier: float = 1.5
    rsi_multiplier: float = 2.0
    obv_multiplier: float = 0.8
    profit_multiplier: float = 0.75
    time_decay_multiplier: float = 0.01  # per minute

    # === Indicator Parameters ===
    vwap_threshold: float = 0.01
    obv_window: int = 12
    slope_threshold: float = 0.0001


@dataclass(frozen=True)
class RiskConfig:
    # === Exits ===
    stop_loss_threshold: float = -0.013
    take_profit_threshold: float = 0.018

    # === Partial Tiers ===
    # Tier i holds the thresholds for the (i+1)th partial.
    tiers: Tuple[ThresholdTier, ...] = DEFAULT_TIERS
    max_partials: int = 4

    # === Leverage ===
    leverage: float = 1.0
    max_leverage_per_symbol: Dict[str, float] = field(default_factory=lambda: {
        "PERP_BTC_USDC": 8.0,
        "PERP_ETH_USDC": 8.0,
        "PERP_SOL_USDC": 6.0,
        "PERP_BNB_USDC": 6.0,
        "PERP_NEAR_USDC": 5.0,
    })

    # === Sizing ===
    min_order_size_usd: float = 50.0
    max_price_impact: float = 0.05

    def tier(self, index: int) -> ThresholdTier:
        """Thresholds for the partial at index; falls back to the last tier."""
        if index < len(self.tiers):
            return self.tiers[index]
        return self.tiers[-1]

    def leverage_for(self, symbol: str) -> float:
        cap = self.max_leverage_per_symbol.get(symbol)
        if cap is None:
            return self.leverage
        return min(self.leverage, cap)


@dataclass(frozen=True)
class PaperConfig:
    initial_balance: float = 1000.0
    fee_rate: float = 0.0005
    initial_margin_rate: float = 0.1
    max_leverage: float = 10.0
    liquidation_threshold: float = 0.05
    funding_rate_per_hour: float = 0.0001
    spread: float = 0.0005
    base_decimals: int = 8
    quote_decimals: int = 6
    min_trade_size: float = 10.0
    max_trade_size: float = 1_000_000.0
    infinite_liquidity_size: float = 1_000_000_000.0


@dataclass(frozen=True)
class ScheduleConfig:
    cycle_interval_seconds: int = 300
    monitor_interval_seconds: int = 60
    collision_window_seconds: int = 30


@dataclass(frozen=True)
class ExchangeConfig:
    adapter: str = "paper"  # paper, orderly, ref
    exchange_id: str = "woofipro"
    sandbox: bool = True
    data_exchange_id: str = "binance"
    timeframe: str = "5m"
    history_limit: int = 24
    ref_router_url: str = "https://smartrouter.ref.finance"
    near_rpc_url: str = "https://rpc.mainnet.near.org"
    ref_contract_id: str = "v2.ref-finance.near"
    account_id: str = ""
    ref_slippage: float = 0.005
    ref_route_hops: int = 2
    # Venue symbol -> Ref pool id (must be set per deployment)
    ref_pools: Dict[str, int] = field(default_factory=dict)
    # Token symbol -> (NEAR contract id, decimals)
    ref_tokens: Dict[str, Tuple[str, int]] = field(default_factory=lambda: {
        "NEAR": ("wrap.near", 24),
        "USDC": ("17208628f84f5d6ad33f0da3bbbeb27ffcb398eac501a31bd6ad2011e36133a1", 6),
        "USDT": ("usdt.tether-token.near", 6),
    })
    # Venue symbol -> indicator-source symbol
    symbol_map: Dict[str, str] = field(default_factory=lambda: {
        "PERP_NEAR_USDC": "NEAR/USDT",
        "PERP_SOL_USDC": "SOL/USDT",
        "PERP_BTC_USDC": "BTC/USDT",
        "PERP_ETH_USDC": "ETH/USDT",
        "PERP_BNB_USDC": "BNB/USDT",
    })


@dataclass(frozen=True)
class TradingConfig:
    network: str = "testnet"  # testnet or mainnet
    symbols: Tuple[str, ...] = TESTNET_SYMBOLS
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    paper: PaperConfig = field(default_factory=PaperConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)

    # === Storage ===
    storage: str = "memory"  # memory or supabase

    # === Logging ===
    log_file: Optional[str] = "logs/ta_trader.log"
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        """Flatten to a plain dict for logging at startup."""
        return asdict(self)


DEFAULT_CONFIG = TradingConfig()


def _tiers_from(data: List[Dict[str, Any]]) -> Tuple[ThresholdTier, ...]:
    tiers = []
    for tier in data:
        tiers.append(ThresholdTier(
            long=ThresholdPair(**tier['long']),
            short=ThresholdPair(**tier['short']),
        ))
    return tuple(tiers)


def _risk_from(data: Dict[str, Any]) -> RiskConfig:
    data = dict(data)
    if 'tiers' in data:
        data['tiers'] = _tiers_from(data['tiers'])
    if 'max_partials' not in data and 'tiers' in data:
        data['max_partials'] = len(data['tiers'])
    return RiskConfig(**data)


def load_config(path: Optional[str] = None, user_overrides: Dict = None) -> TradingConfig:
    """
    Load configuration from a YAML file, environment and overrides.

    Environment (via .env): TRADER_NETWORK picks testnet/mainnet,
    TRADER_ADAPTER picks the trading adapter, TRADER_STORAGE the store.
    """
    load_dotenv()

    data: Dict[str, Any] = {}
    if path:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

    if os.environ.get("TRADER_NETWORK"):
        data['network'] = os.environ["TRADER_NETWORK"]
    if os.environ.get("TRADER_STORAGE"):
        data['storage'] = os.environ["TRADER_STORAGE"]

    if user_overrides:
        data.update(user_overrides)

    exchange_data = dict(data.get('exchange', {}))
    if os.environ.get("TRADER_ADAPTER"):
        exchange_data['adapter'] = os.environ["TRADER_ADAPTER"]

    network = data.get('network', 'testnet')
    if network not in ('testnet', 'mainnet'):
        raise ValueError(f"Unknown network: {network}")

    default_symbols = ALL_PERP_SYMBOLS if network == 'mainnet' else TESTNET_SYMBOLS
    symbols = tuple(data.get('symbols') or default_symbols)

    risk = _risk_from(data.get('risk', {}))
    if risk.max_partials < 1:
        raise ValueError("risk.max_partials must be at least 1")

    return TradingConfig(
        network=network,
        symbols=symbols,
        scoring=ScoringConfig(**data.get('scoring', {})),
        risk=risk,
        paper=PaperConfig(**data.get('paper', {})),
        schedule=ScheduleConfig(**data.get('schedule', {})),
        exchange=ExchangeConfig(**exchange_data),
        storage=data.get('storage', 'memory'),
        log_file=data.get('log_file', 'logs/ta_trader.log'),
        log_level=data.get('log_level', 'INFO'),
    )
