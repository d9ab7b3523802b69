"""Domain enumerations for the market scanner."""

from __future__ import annotations

from enum import StrEnum


class ScanFailureReason(StrEnum):
    """Why a ticker did not become usable data or a candidate.

    Exactly one reason applies per scan result.
    """

    NONE = "none"
    TIMEOUT = "timeout"
    HTTP_404_NO_DATA = "http_404/no_data"
    PARSE_ERROR = "parse_error"
    STALE = "stale"
    HISTORY_SHORT = "history_short"
    FILTERED_NON_TRADABLE = "filtered_non_tradable"
    RATE_LIMIT = "rate_limit"
    OTHER = "other"


class DataInsufficientReason(StrEnum):
    NONE = "NONE"
    NO_DATA = "NO_DATA"
    STALE = "STALE"
    HISTORY_SHORT = "HISTORY_SHORT"


class RequestFailureCategory(StrEnum):
    """Transport-level reason a live fetch failed."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NO_DATA = "no_data"
    PARSE_ERROR = "parse_error"
    OTHER = "other"
    INTERRUPTED = "interrupted"

    @property
    def retryable(self) -> bool:
        return self in (
            RequestFailureCategory.TIMEOUT,
            RequestFailureCategory.RATE_LIMIT,
            RequestFailureCategory.OTHER,
        )

    @property
    def scan_failure_reason(self) -> ScanFailureReason:
        return _REQUEST_TO_SCAN_REASON[self]


_REQUEST_TO_SCAN_REASON = {
    RequestFailureCategory.TIMEOUT: ScanFailureReason.TIMEOUT,
    RequestFailureCategory.RATE_LIMIT: ScanFailureReason.RATE_LIMIT,
    RequestFailureCategory.NO_DATA: ScanFailureReason.HTTP_404_NO_DATA,
    RequestFailureCategory.PARSE_ERROR: ScanFailureReason.PARSE_ERROR,
    RequestFailureCategory.OTHER: ScanFailureReason.OTHER,
    RequestFailureCategory.INTERRUPTED: ScanFailureReason.OTHER,
}


def request_failure_reason(category: str | None) -> ScanFailureReason:
    """Map a raw request-failure category string onto the scan-failure axis."""
    c = (category or "").strip().lower()
    if not c:
        return ScanFailureReason.NONE
    try:
        return RequestFailureCategory(c).scan_failure_reason
    except ValueError:
        return ScanFailureReason.OTHER


class DataSource(StrEnum):
    YAHOO = "yahoo"
    CACHE = "cache"
    UNKNOWN = ""


class SegmentMode(StrEnum):
    BY_MARKET = "by_market"
    FIXED_CHUNK = "fixed_chunk"


class RunStatus(StrEnum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class CheckpointState(StrEnum):
    NO_CHECKPOINT = "no_checkpoint"
    RESUMED = "resumed"
    INVALIDATED = "invalidated"
    COMPLETED = "completed"
