"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with defaults for every section
  - Env-var secrets (0x API key, cron secret, live execution switch)
  - All subsystem configs: orders, predictions, ledger, price feed,
    swap, rate limits, storage, observability, scheduler, api
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
BASE_WETH_ADDRESS = "0x4200000000000000000000000000000000000006"

# Every spelling of the chain's native asset. WETH counts: a swap paid in
# WETH is a buy, and the native price feed answers for both.
NATIVE_TOKENS = (ZERO_ADDRESS, BASE_WETH_ADDRESS, "eth", "weth")


class OrderConfig(BaseModel):
    monitor_batch_size: int = 50
    execute_batch_size: int = 10
    price_history_limit: int = 100
    default_slippage_bps: int = 50
    default_expiry_days: int = 30
    # Persist an "armed" marker for STOP_LIMIT once the stop is crossed
    stop_limit_arming: bool = False


class LiquidityTier(BaseModel):
    """Max bet allowed while pool liquidity is below ``below_usd``."""
    below_usd: float
    max_bet_usd: float


class PredictionConfig(BaseModel):
    resolve_batch_size: int = 10
    min_stake_usd: float = 0.50
    min_timeframe_minutes: int = 60
    min_threshold_pct: float = 1.0
    max_threshold_pct: float = 100.0
    min_liquidity_usd: float = 1_000_000.0
    gas_per_trade_usd: float = 0.10
    refund_on_no_winners: bool = False
    # A RESOLVING or EXECUTING claim older than this is presumed abandoned
    claim_lease_secs: int = 600
    liquidity_tiers: list[LiquidityTier] = Field(default_factory=lambda: [
        LiquidityTier(below_usd=5_000_000, max_bet_usd=50),
        LiquidityTier(below_usd=10_000_000, max_bet_usd=200),
        LiquidityTier(below_usd=50_000_000, max_bet_usd=500),
    ])
    top_tier_max_bet_usd: float = 2000.0

    def max_bet_for(self, liquidity_usd: float) -> float:
        """Tiered max bet; 0 means the token is not eligible."""
        if liquidity_usd < self.min_liquidity_usd:
            return 0.0
        for tier in sorted(self.liquidity_tiers, key=lambda t: t.below_usd):
            if liquidity_usd < tier.below_usd:
                return tier.max_bet_usd
        return self.top_tier_max_bet_usd


class LedgerConfig(BaseModel):
    native_tokens: list[str] = Field(default_factory=lambda: list(NATIVE_TOKENS))

    def is_native(self, token: str) -> bool:
        return token.lower() in {t.lower() for t in self.native_tokens}


class PriceFeedConfig(BaseModel):
    dexscreener_url: str = "https://api.dexscreener.com"
    coingecko_url: str = "https://api.coingecko.com"
    chain_id: str = "base"
    timeout_secs: float = 10.0
    cache_ttl_secs: int = 30
    liquidity_cache_ttl_secs: int = 300


class UpstreamLimit(BaseModel):
    per_second: float
    burst: int


class RateLimitConfig(BaseModel):
    """Request budgets for the three upstream APIs."""
    dexscreener: UpstreamLimit = Field(default_factory=lambda: UpstreamLimit(per_second=4.0, burst=8))
    coingecko: UpstreamLimit = Field(default_factory=lambda: UpstreamLimit(per_second=0.5, burst=3))
    zerox: UpstreamLimit = Field(default_factory=lambda: UpstreamLimit(per_second=2.0, burst=5))


class SwapConfig(BaseModel):
    base_url: str = "https://api.0x.org"
    chain_id: int = 8453
    timeout_secs: float = 20.0
    token_decimals: int = 18


class StorageConfig(BaseModel):
    sqlite_path: str = "data/swapdesk.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/swapdesk.log"
    enable_metrics: bool = True


class SchedulerConfig(BaseModel):
    monitor_interval_secs: int = 60
    execute_interval_secs: int = 60
    resolve_interval_secs: int = 60
    winner_trades_interval_secs: int = 300


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 2346


class AppConfig(BaseModel):
    orders: OrderConfig = Field(default_factory=OrderConfig)
    predictions: PredictionConfig = Field(default_factory=PredictionConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    price_feed: PriceFeedConfig = Field(default_factory=PriceFeedConfig)
    swap: SwapConfig = Field(default_factory=SwapConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return AppConfig(**raw)
    return AppConfig()


def is_live_execution_enabled() -> bool:
    """Check if automated swap submission is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_EXECUTION", "").lower() == "true"


def get_cron_secret() -> str:
    return os.environ.get("CRON_SECRET", "")


def get_zerox_api_key() -> str:
    return os.environ.get("ZEROX_API_KEY", "")
