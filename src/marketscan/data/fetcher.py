"""Fetch results, failure classification and the retrying fetch wrapper."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field, replace

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_exponential

from marketscan.core.enums import RequestFailureCategory
from marketscan.core.models import BarDaily
from marketscan.data.provider import PriceFetcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one live fetch: bars on success, a category on failure."""

    bars: list[BarDaily] = field(default_factory=list)
    category: RequestFailureCategory | None = None
    error: str = ""
    download_nanos: int = 0
    parse_nanos: int = 0
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.category is None

    @classmethod
    def success(
        cls, bars: list[BarDaily], download_nanos: int = 0, parse_nanos: int = 0
    ) -> FetchResult:
        return cls(bars=list(bars), download_nanos=download_nanos, parse_nanos=parse_nanos)

    @classmethod
    def failure(
        cls,
        category: RequestFailureCategory,
        error: str = "",
        download_nanos: int = 0,
        parse_nanos: int = 0,
    ) -> FetchResult:
        return cls(
            category=category,
            error=error or category.value,
            download_nanos=download_nanos,
            parse_nanos=parse_nanos,
        )


_TIMEOUT_MARKERS = ("timed out", "timeout", "connection reset")
_RATE_LIMIT_MARKERS = ("rate limit", "ratelimit", "too many requests", "429", "rate_limit")
_NO_DATA_MARKERS = (
    "no data",
    "no_data",
    "404",
    "not found",
    "delisted",
    "no price data",
    "no timezone found",
)
_PARSE_MARKERS = ("json", "parse", "decode", "unexpected payload", "expecting value")


def classify_failure(error: BaseException | str | None) -> RequestFailureCategory:
    """Normalise an exception or error message into a request-failure category."""
    if isinstance(error, TimeoutError):
        return RequestFailureCategory.TIMEOUT
    if isinstance(error, json.JSONDecodeError):
        return RequestFailureCategory.PARSE_ERROR
    if isinstance(error, BaseException):
        name = type(error).__name__.lower()
        if "timeout" in name:
            return RequestFailureCategory.TIMEOUT
        if "ratelimit" in name:
            return RequestFailureCategory.RATE_LIMIT
        message = f"{name}: {error}".lower()
    else:
        message = (error or "").lower()

    if any(m in message for m in _TIMEOUT_MARKERS):
        return RequestFailureCategory.TIMEOUT
    if any(m in message for m in _RATE_LIMIT_MARKERS):
        return RequestFailureCategory.RATE_LIMIT
    if any(m in message for m in _NO_DATA_MARKERS):
        return RequestFailureCategory.NO_DATA
    if any(m in message for m in _PARSE_MARKERS):
        return RequestFailureCategory.PARSE_ERROR
    return RequestFailureCategory.OTHER


class FetchInterrupted(Exception):
    """Raised inside the retry loop when the stop event is set."""


class RetryingFetcher:
    """Wraps a ``PriceFetcher`` with bounded retries and request pacing.

    Retries use exponential backoff and only trigger for retryable
    categories (timeout, rate limit, generic transient). Backoff, throttle
    and circuit-breaker waits all block on ``stop_event`` so an interrupt
    ends them promptly with an ``interrupted`` result.

    After ``timeout_streak`` consecutive timeouts across all workers the
    circuit opens and every request waits ``cooldown_sec`` before going out.
    """

    def __init__(
        self,
        fetcher: PriceFetcher,
        retry_count: int = 2,
        backoff_sec: float = 0.7,
        backoff_max_sec: float = 10.0,
        request_pause_ms: int = 0,
        timeout_streak: int = 10,
        cooldown_sec: float = 60.0,
        stop_event: threading.Event | None = None,
    ):
        self.fetcher = fetcher
        self.retry_count = max(0, retry_count)
        self.backoff_sec = max(0.0, backoff_sec)
        self.backoff_max_sec = max(self.backoff_sec, backoff_max_sec)
        self.request_pause = max(0, request_pause_ms) / 1000.0
        self.timeout_streak = max(1, timeout_streak)
        self.cooldown_sec = max(0.0, cooldown_sec)
        self.stop_event = stop_event or threading.Event()

        self._lock = threading.Lock()
        self._last_request_at = 0.0
        self._streak = 0
        self._circuit_open_until = 0.0

    # ── Public API ───────────────────────────────────────────────────────

    def fetch(
        self,
        symbol: str,
        range_: str = "2y",
        interval: str = "1d",
        retries: int | None = None,
    ) -> FetchResult:
        """Fetch with retries. ``retries`` overrides the configured retry count."""
        limit = self.retry_count if retries is None else max(0, retries)
        attempts: list[FetchResult] = []

        retrying = Retrying(
            stop=stop_after_attempt(limit + 1),
            wait=wait_exponential(multiplier=self.backoff_sec, max=self.backoff_max_sec),
            retry=retry_if_result(_should_retry),
            sleep=self._sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        try:
            result = retrying(self._attempt, symbol, range_, interval, attempts)
        except FetchInterrupted:
            logger.debug("Fetch interrupted for %s after %d attempts", symbol, len(attempts))
            result = FetchResult.failure(
                RequestFailureCategory.INTERRUPTED, f"fetch interrupted: {symbol}"
            )

        return replace(
            result,
            download_nanos=sum(a.download_nanos for a in attempts),
            parse_nanos=sum(a.parse_nanos for a in attempts),
            attempts=max(1, len(attempts)),
        )

    # ── Internals ────────────────────────────────────────────────────────

    def _attempt(
        self, symbol: str, range_: str, interval: str, attempts: list[FetchResult]
    ) -> FetchResult:
        self._wait_if_circuit_open()
        self._throttle()
        try:
            result = self.fetcher.fetch_history(symbol, range_, interval)
        except Exception as e:
            result = FetchResult.failure(classify_failure(e), str(e))
        attempts.append(result)
        self._on_result(result)
        if not result.ok:
            logger.debug(
                "Fetch attempt %d for %s failed: %s (%s)",
                len(attempts),
                symbol,
                result.category,
                result.error,
            )
        return result

    def _sleep(self, seconds: float) -> None:
        if self.stop_event.wait(seconds):
            raise FetchInterrupted()

    def _throttle(self) -> None:
        if self.request_pause <= 0:
            return
        while True:
            with self._lock:
                now = time.monotonic()
                wait_for = self._last_request_at + self.request_pause - now
                if wait_for <= 0:
                    self._last_request_at = now
                    return
            self._sleep(wait_for)

    def _wait_if_circuit_open(self) -> None:
        if self.stop_event.is_set():
            raise FetchInterrupted()
        while True:
            with self._lock:
                wait_for = self._circuit_open_until - time.monotonic()
            if wait_for <= 0:
                return
            self._sleep(wait_for)

    def _on_result(self, result: FetchResult) -> None:
        with self._lock:
            if result.category != RequestFailureCategory.TIMEOUT:
                self._streak = 0
                return
            self._streak += 1
            if self._streak < self.timeout_streak or self.cooldown_sec <= 0:
                return
            self._streak = 0
            self._circuit_open_until = max(
                self._circuit_open_until, time.monotonic() + self.cooldown_sec
            )
        logger.warning(
            "Circuit breaker open: %d consecutive timeouts, pausing requests for %.0fs",
            self.timeout_streak,
            self.cooldown_sec,
        )

    @property
    def circuit_open(self) -> bool:
        with self._lock:
            return self._circuit_open_until > time.monotonic()


def _should_retry(result: FetchResult) -> bool:
    return result.category is not None and result.category.retryable
