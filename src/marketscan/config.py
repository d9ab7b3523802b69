"""Configuration via environment variables using pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from marketscan.core.enums import SegmentMode

DEFAULT_CHECKPOINT_KEY = "daily.scan.batch.checkpoint.v1"


class ScanConfig(BaseSettings):
    """All scanner settings, loaded from env vars with MARKETSCAN_ prefix."""

    model_config = {"env_prefix": "MARKETSCAN_", "extra": "ignore", "env_file": ".env"}

    # --- Paths / locale ---
    db_path: Path = Field(default=Path("data/marketscan.db"))
    zone: str = "Asia/Tokyo"

    # --- Pool / ranking ---
    threads: int = 3
    top_n: int = 15
    market_reference_top_n: int = 5
    max_universe_size: int = 0
    min_history_bars: int = 180
    min_score: float = 55.0

    # --- Cache / freshness ---
    cache_prefer_enabled: bool = True
    fresh_days: int = 2
    retry_when_cache_exists: bool = False
    max_bars: int = 300

    # --- Live fetch ---
    fetch_range: str = "2y"
    fetch_interval: str = "1d"
    request_timeout_sec: float = 20.0
    retry_count: int = 2
    retry_backoff_sec: float = 0.7
    retry_backoff_max_sec: float = 10.0
    request_pause_ms: int = 0
    circuit_timeout_streak: int = 10
    circuit_cooldown_sec: float = 60.0

    # --- Cache upsert ---
    upsert_initial_days: int = 300
    upsert_recent_days: int = 10

    # --- Tradability ---
    min_price: float = 100.0
    min_avg_volume_20: float = 50_000.0
    max_zero_volume_days_20: int = 3
    flat_lookback_days: int = 5
    max_flat_days: int = 3

    # --- Indicator coverage ---
    core_indicators: str = "sma20,sma60,rsi14,atr14"
    optional_indicators: str = "sma120,volume_ratio20,drawdown120_pct"

    # --- Batching / checkpoint ---
    batch_enabled: bool = True
    segment_mode: SegmentMode = SegmentMode.BY_MARKET
    market_chunk_size: int = 0
    resume_enabled: bool = True
    max_segments_per_run: int = 0
    checkpoint_key: str = DEFAULT_CHECKPOINT_KEY

    # --- Progress ---
    progress_log_every: int = 100

    @field_validator(
        "max_universe_size",
        "fresh_days",
        "retry_count",
        "request_pause_ms",
        "market_chunk_size",
        "max_segments_per_run",
        "progress_log_every",
        "max_zero_volume_days_20",
        "max_flat_days",
    )
    @classmethod
    def _non_negative(cls, v: int) -> int:
        return max(0, v)

    @field_validator("threads", "top_n", "market_reference_top_n", "flat_lookback_days")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, v)

    @field_validator("min_history_bars")
    @classmethod
    def _history_floor(cls, v: int) -> int:
        return max(120, v)

    @field_validator("upsert_initial_days")
    @classmethod
    def _initial_floor(cls, v: int) -> int:
        return max(60, v)

    @property
    def core_indicator_list(self) -> list[str]:
        return [s.strip() for s in self.core_indicators.split(",") if s.strip()]

    @property
    def optional_indicator_list(self) -> list[str]:
        return [s.strip() for s in self.optional_indicators.split(",") if s.strip()]
