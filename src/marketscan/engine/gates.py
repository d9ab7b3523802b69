"""Cheap bar-series gates applied before indicators are computed."""

from __future__ import annotations

from dataclasses import dataclass

from marketscan.core.models import BarDaily


@dataclass
class TradabilityConfig:
    """Liquidity thresholds a series must meet to be screened at all."""

    min_price: float = 100.0
    min_avg_volume_20: float = 50_000.0
    max_zero_volume_days_20: int = 3
    flat_lookback_days: int = 5
    max_flat_days: int = 3

    @classmethod
    def from_config(cls, config) -> TradabilityConfig:
        return cls(
            min_price=config.min_price,
            min_avg_volume_20=config.min_avg_volume_20,
            max_zero_volume_days_20=config.max_zero_volume_days_20,
            flat_lookback_days=config.flat_lookback_days,
            max_flat_days=config.max_flat_days,
        )


def has_screening_shape(bars: list[BarDaily]) -> bool:
    """False when every bar is flat with zero volume (a placeholder series)."""
    return any(b.volume > 0 or b.high != b.low for b in bars)


def is_tradable_and_liquid(bars: list[BarDaily], cfg: TradabilityConfig) -> bool:
    if not bars:
        return False
    if bars[-1].close < cfg.min_price:
        return False

    last20 = bars[-20:]
    avg_volume = sum(b.volume for b in last20) / len(last20)
    if avg_volume < cfg.min_avg_volume_20:
        return False

    zero_days = sum(1 for b in last20 if b.volume <= 0)
    if zero_days > cfg.max_zero_volume_days_20:
        return False

    flat_days = sum(1 for b in bars[-cfg.flat_lookback_days :] if b.is_flat)
    return flat_days <= cfg.max_flat_days
