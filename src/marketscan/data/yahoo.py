"""Yahoo Finance daily-bar fetcher via yfinance."""

from __future__ import annotations

import logging
import math
import threading
import time

import pandas as pd
import yfinance as yf

from marketscan.core.enums import RequestFailureCategory
from marketscan.core.models import BarDaily, UniverseRecord
from marketscan.data.fetcher import FetchResult, classify_failure

logger = logging.getLogger(__name__)

# Markets whose bare numeric codes trade on the Tokyo exchange.
_TOKYO_MARKETS = {"TSE", "TYO", "JPX", "PRIME", "STANDARD", "GROWTH", "UNKNOWN", ""}

# yfinance shares one cookie/crumb session across Ticker objects.
_yf_lock = threading.Lock()


def to_yahoo_symbol(record: UniverseRecord) -> str:
    """Map a universe record onto the symbol Yahoo serves it under.

    ``7203.T`` stays as is, ``7203.jp`` becomes ``7203.T`` and a bare
    numeric code on a Tokyo market gets the ``.T`` suffix.
    """
    ticker = record.ticker.strip()
    if "." in ticker:
        base, _, suffix = ticker.rpartition(".")
        if suffix.lower() == "jp":
            return f"{base.upper()}.T"
        return ticker.upper()

    code = (record.code or ticker).strip()
    market = (record.market or "").strip().upper()
    if code and code[0].isdigit() and market in _TOKYO_MARKETS:
        return f"{code.upper()}.T"
    return ticker.upper()


def frame_to_bars(ticker: str, df: pd.DataFrame, max_bars: int = 0) -> list[BarDaily]:
    """Convert a yfinance history frame into an ascending, de-duplicated bar list.

    Rows with a missing or non-positive close are dropped, high/low are
    widened to contain open and close, negative volume is clamped to zero.
    """
    if df is None or df.empty:
        return []

    df = df.copy()
    df.columns = [str(c).title() for c in df.columns]
    if "Close" not in df.columns:
        raise ValueError(f"history frame for {ticker} has no Close column")

    by_date: dict = {}
    for idx, row in df.iterrows():
        close = _num(row.get("Close"))
        if close is None or close <= 0:
            continue
        open_ = _num(row.get("Open"))
        high = _num(row.get("High"))
        low = _num(row.get("Low"))
        volume = _num(row.get("Volume"))

        open_ = close if open_ is None or open_ <= 0 else open_
        high = max(high if high is not None else close, open_, close)
        low = min(low if low is not None and low > 0 else close, open_, close)
        volume = max(0.0, volume or 0.0)

        trade_date = idx.date() if hasattr(idx, "date") else pd.Timestamp(idx).date()
        by_date[trade_date] = BarDaily(
            ticker=ticker,
            trade_date=trade_date,
            open=open_,
            high=high,
            low=low,
            close=close,
            volume=volume,
        )

    bars = [by_date[d] for d in sorted(by_date)]
    if max_bars > 0 and len(bars) > max_bars:
        bars = bars[-max_bars:]
    return bars


def _num(value) -> float | None:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


class YahooPriceFetcher:
    """Live daily-bar source backed by ``yf.Ticker(...).history``.

    Returns a ``FetchResult`` for every call; transport and parse errors are
    classified rather than raised.
    """

    def __init__(self, timeout_sec: float = 20.0, max_bars: int = 300):
        self.timeout_sec = timeout_sec
        self.max_bars = max_bars

    def fetch_history(self, ticker: str, range_: str = "2y", interval: str = "1d") -> FetchResult:
        started = time.perf_counter_ns()
        try:
            with _yf_lock:
                yt = yf.Ticker(ticker)
            df = yt.history(
                period=range_,
                interval=interval,
                auto_adjust=False,
                timeout=self.timeout_sec,
                raise_errors=True,
            )
        except Exception as e:
            elapsed = time.perf_counter_ns() - started
            category = classify_failure(e)
            logger.debug("Yahoo history failed for %s: %s (%s)", ticker, category, e)
            return FetchResult.failure(category, str(e), download_nanos=elapsed)
        download_nanos = time.perf_counter_ns() - started

        parse_started = time.perf_counter_ns()
        try:
            bars = frame_to_bars(ticker, df, self.max_bars)
        except (KeyError, ValueError, TypeError) as e:
            return FetchResult.failure(
                RequestFailureCategory.PARSE_ERROR,
                str(e),
                download_nanos=download_nanos,
                parse_nanos=time.perf_counter_ns() - parse_started,
            )
        parse_nanos = time.perf_counter_ns() - parse_started

        if not bars:
            return FetchResult.failure(
                RequestFailureCategory.NO_DATA,
                f"No data returned for {ticker}",
                download_nanos=download_nanos,
                parse_nanos=parse_nanos,
            )
        return FetchResult.success(bars, download_nanos=download_nanos, parse_nanos=parse_nanos)
