"""Pydantic domain models for the market scanner."""

from __future__ import annotations

import math
from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketscan.core.enums import (
    DataInsufficientReason,
    DataSource,
    ScanFailureReason,
)

# ── Universe ─────────────────────────────────────────────────────────────────


class UniverseRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    ticker: str
    code: str = ""
    name: str = ""
    market: str = ""


class MarketSegment(BaseModel):
    """A contiguous, checkpoint-addressable slice of the universe."""

    model_config = ConfigDict(frozen=True)

    key: str
    records: list[UniverseRecord] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)


# ── Price data ───────────────────────────────────────────────────────────────


class BarDaily(BaseModel):
    model_config = ConfigDict(frozen=True)

    ticker: str
    trade_date: date
    open: float
    high: float
    low: float
    close: float = Field(gt=0)
    volume: float = Field(default=0.0, ge=0)

    @field_validator("close")
    @classmethod
    def _finite_close(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("close must be finite")
        return v

    @property
    def is_flat(self) -> bool:
        return abs(self.open - self.close) < 1e-9 and abs(self.high - self.low) < 1e-9


# ── Collaborator contracts ───────────────────────────────────────────────────


class IndicatorSnapshot(BaseModel):
    """Indicator values computed over a bar series.

    ``values`` maps indicator names (``sma20``, ``rsi14`` ...) to floats;
    a missing or NaN entry means the indicator could not be computed.
    """

    model_config = ConfigDict(frozen=True)

    last_close: float
    values: dict[str, float | None] = Field(default_factory=dict)

    def get(self, name: str) -> float | None:
        value = self.values.get(name)
        if value is None or not math.isfinite(value):
            return None
        return value

    def has(self, name: str) -> bool:
        return self.get(name) is not None


class IndicatorCoverage(BaseModel):
    missing_core: list[str] = Field(default_factory=list)
    missing_optional: list[str] = Field(default_factory=list)

    @property
    def core_ready(self) -> bool:
        return not self.missing_core


class FilterDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: bool
    reasons: list[str] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)


class RiskDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: bool
    penalty: float = 0.0
    flags: list[str] = Field(default_factory=list)


class ScoreResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float
    breakdown: dict[str, float] = Field(default_factory=dict)


# ── Scan outputs ─────────────────────────────────────────────────────────────


class ScoredCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    ticker: str
    code: str = ""
    name: str = ""
    market: str = ""
    score: float
    close: float = 0.0
    reasons_json: str = ""
    indicators_json: str = ""


class TickerScanResult(BaseModel):
    """Fully classified outcome of scanning one ticker."""

    model_config = ConfigDict(frozen=True)

    universe: UniverseRecord
    bars: list[BarDaily] = Field(default_factory=list)
    candidate: ScoredCandidate | None = None
    error: str | None = None

    download_nanos: int = 0
    parse_nanos: int = 0
    data_source: DataSource = DataSource.UNKNOWN
    request_failed: bool = False
    request_failure_category: str = ""
    fetch_latency_ms: int = 0
    cache_hit: bool = False
    fallback_path: str = ""

    bars_count: int = 0
    last_trade_date: date | None = None
    last_close: float = math.nan

    fetch_success: bool = False
    indicator_ready: bool = False
    data_insufficient_reason: DataInsufficientReason = DataInsufficientReason.NONE
    failure_reason: ScanFailureReason = ScanFailureReason.NONE
    missing_optional_indicators: list[str] = Field(default_factory=list)

    upserted_bars: int = 0
    upsert_nanos: int = 0
    upsert_error: str | None = None

    @property
    def ticker(self) -> str:
        return self.universe.ticker

    @property
    def is_failed(self) -> bool:
        return self.error is not None or self.upsert_error is not None

    @property
    def counts_as_scanned(self) -> bool:
        return not self.is_failed and bool(self.bars)
