"""Reference indicator engine and filter/risk/score rules.

A small trend-following screen over daily bars:

  Indicators: SMA(20/60/120), RSI(14, Wilder), ATR(14), 20-day volume
              ratio, 5/20-day returns, 120-day drawdown
  Filter:     price above SMA(60), SMA(20) above SMA(60), RSI not extreme
  Risk:       ATR% and drawdown caps, penalty grows with both
  Score:      0-100 blend of trend strength, momentum, RSI and volume
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from marketscan.core.models import (
    BarDaily,
    FilterDecision,
    IndicatorSnapshot,
    RiskDecision,
    ScoreResult,
)

logger = logging.getLogger(__name__)

CORE_INDICATORS = ("sma20", "sma60", "rsi14", "atr14")
OPTIONAL_INDICATORS = ("sma120", "volume_ratio20", "drawdown120_pct")


def bars_to_frame(bars: list[BarDaily]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "Open": [b.open for b in bars],
            "High": [b.high for b in bars],
            "Low": [b.low for b in bars],
            "Close": [b.close for b in bars],
            "Volume": [b.volume for b in bars],
        },
        index=pd.DatetimeIndex([pd.Timestamp(b.trade_date) for b in bars]),
    )


def compute_rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """RSI with Wilder's smoothing; 100 where the window has no losses."""
    delta = close.diff()
    gain = delta.clip(lower=0)
    loss = -delta.clip(upper=0)
    avg_gain = gain.ewm(alpha=1 / period, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1 / period, min_periods=period).mean()
    rs = avg_gain / avg_loss.replace(0, np.nan)
    rsi = 100 - (100 / (1 + rs))
    return rsi.where(~(avg_loss == 0) | avg_gain.isna(), 100.0)


def compute_atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    prev_close = df["Close"].shift(1)
    true_range = pd.concat(
        [
            df["High"] - df["Low"],
            (df["High"] - prev_close).abs(),
            (df["Low"] - prev_close).abs(),
        ],
        axis=1,
    ).max(axis=1)
    return true_range.ewm(alpha=1 / period, min_periods=period).mean()


def _last(series: pd.Series) -> float | None:
    if series.empty:
        return None
    value = series.iloc[-1]
    return float(value) if pd.notna(value) else None


class PandasIndicatorEngine:
    """Computes the indicator set over the full bar series."""

    def compute(self, bars: list[BarDaily]) -> IndicatorSnapshot | None:
        if not bars:
            return None
        try:
            df = bars_to_frame(bars)
            close = df["Close"]
            volume = df["Volume"]

            values: dict[str, float | None] = {
                "sma20": _last(close.rolling(20).mean()),
                "sma60": _last(close.rolling(60).mean()),
                "sma120": _last(close.rolling(120).mean()),
                "rsi14": _last(compute_rsi(close, 14)),
                "atr14": _last(compute_atr(df, 14)),
                "return_5d": _last(close.pct_change(5) * 100),
                "return_20d": _last(close.pct_change(20) * 100),
            }

            avg_vol = _last(volume.rolling(20).mean())
            values["volume_ratio20"] = (
                float(volume.iloc[-1]) / avg_vol if avg_vol and avg_vol > 0 else None
            )

            if len(close) >= 120:
                peak = float(close.iloc[-120:].max())
                values["drawdown120_pct"] = (float(close.iloc[-1]) / peak - 1.0) * 100
            else:
                values["drawdown120_pct"] = None

            last_close = float(close.iloc[-1])
            if values["atr14"] is not None:
                values["atr_pct"] = values["atr14"] / last_close * 100
        except (ValueError, ZeroDivisionError) as e:
            logger.debug("Indicator computation failed for %s: %s", bars[-1].ticker, e)
            return None

        return IndicatorSnapshot(last_close=last_close, values=values)


@dataclass
class TrendFilter:
    """Uptrend gate: price > SMA60, SMA20 > SMA60, RSI within bounds."""

    rsi_min: float = 35.0
    rsi_max: float = 80.0

    def evaluate(self, bars: list[BarDaily], indicators: IndicatorSnapshot) -> FilterDecision:
        close = indicators.last_close
        sma20 = indicators.get("sma20")
        sma60 = indicators.get("sma60")
        rsi = indicators.get("rsi14")

        reasons: list[str] = []
        passed = True
        if sma60 is None or close <= sma60:
            passed = False
            reasons.append("close_below_sma60")
        else:
            reasons.append("close_above_sma60")
        if sma20 is None or sma60 is None or sma20 <= sma60:
            passed = False
            reasons.append("sma20_below_sma60")
        else:
            reasons.append("sma20_above_sma60")
        if rsi is None or not (self.rsi_min <= rsi <= self.rsi_max):
            passed = False
            reasons.append("rsi_out_of_range")
        else:
            reasons.append("rsi_in_range")

        metrics = {
            "close_vs_sma60_pct": (close / sma60 - 1.0) * 100 if sma60 else None,
            "rsi14": rsi,
        }
        return FilterDecision(passed=passed, reasons=reasons, metrics=metrics)


@dataclass
class VolatilityRiskFilter:
    """Rejects names that are too volatile or too far off their highs."""

    max_atr_pct: float = 8.0
    max_drawdown_pct: float = 35.0

    def evaluate(self, indicators: IndicatorSnapshot) -> RiskDecision:
        flags: list[str] = []
        atr_pct = indicators.get("atr_pct")
        drawdown = indicators.get("drawdown120_pct")

        passed = True
        penalty = 0.0
        if atr_pct is not None:
            if atr_pct > self.max_atr_pct:
                passed = False
                flags.append("atr_too_high")
            elif atr_pct > self.max_atr_pct / 2:
                flags.append("atr_elevated")
                penalty += (atr_pct - self.max_atr_pct / 2) * 2.0
        if drawdown is not None:
            if -drawdown > self.max_drawdown_pct:
                passed = False
                flags.append("deep_drawdown")
            elif -drawdown > self.max_drawdown_pct / 2:
                flags.append("drawdown_elevated")
                penalty += (-drawdown - self.max_drawdown_pct / 2) * 0.5

        return RiskDecision(passed=passed, penalty=round(penalty, 2), flags=flags)


@dataclass
class MomentumScorer:
    """Weighted 0-100 score; the risk penalty is subtracted at the end."""

    trend_weight: float = 35.0
    momentum_weight: float = 30.0
    rsi_weight: float = 20.0
    volume_weight: float = 15.0

    def score(self, indicators: IndicatorSnapshot, risk: RiskDecision) -> ScoreResult:
        close = indicators.last_close
        sma60 = indicators.get("sma60")
        ret20 = indicators.get("return_20d") or 0.0
        rsi = indicators.get("rsi14")
        vol_ratio = indicators.get("volume_ratio20")

        trend = _clip01((close / sma60 - 1.0) / 0.10) if sma60 else 0.0
        momentum = _clip01(ret20 / 15.0)
        # Peaks at RSI 60, falls off linearly toward 35 and 85.
        rsi_part = _clip01(1.0 - abs(rsi - 60.0) / 25.0) if rsi is not None else 0.0
        volume = _clip01((vol_ratio - 0.5) / 1.5) if vol_ratio is not None else 0.5

        breakdown = {
            "trend": round(trend * self.trend_weight, 2),
            "momentum": round(momentum * self.momentum_weight, 2),
            "rsi": round(rsi_part * self.rsi_weight, 2),
            "volume": round(volume * self.volume_weight, 2),
            "risk_penalty": -risk.penalty,
        }
        total = max(0.0, min(100.0, sum(breakdown.values())))
        return ScoreResult(score=round(total, 2), breakdown=breakdown)


def _clip01(x: float) -> float:
    return float(min(1.0, max(0.0, x)))
