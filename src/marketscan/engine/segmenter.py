"""Split the universe into checkpoint-addressable segments."""

from __future__ import annotations

import hashlib

from marketscan.core.enums import SegmentMode
from marketscan.core.models import MarketSegment, UniverseRecord

DEFAULT_CHUNK_SIZE = 500
UNKNOWN_MARKET = "UNKNOWN"


def normalize_market(market: str | None) -> str:
    m = (market or "").strip()
    return m if m else UNKNOWN_MARKET


def segment_universe(
    universe: list[UniverseRecord],
    mode: SegmentMode = SegmentMode.BY_MARKET,
    chunk_size: int = 0,
    batch_enabled: bool = True,
) -> list[MarketSegment]:
    """Partition ``universe`` into ordered segments.

    Every record lands in exactly one segment and concatenating the segments
    reproduces the input order within each market group. An empty result
    falls back to a single ``ALL`` segment.
    """
    if not batch_enabled:
        return [MarketSegment(key="ALL", records=list(universe))]

    if mode == SegmentMode.FIXED_CHUNK:
        segments = _fixed_chunks(universe, chunk_size)
    else:
        segments = _by_market(universe, chunk_size)

    if not segments:
        return [MarketSegment(key="ALL", records=list(universe))]
    return segments


def _by_market(universe: list[UniverseRecord], chunk_size: int) -> list[MarketSegment]:
    groups: dict[str, list[UniverseRecord]] = {}
    for record in universe:
        groups.setdefault(normalize_market(record.market), []).append(record)

    segments: list[MarketSegment] = []
    for market, records in groups.items():
        if chunk_size <= 0 or len(records) <= chunk_size:
            segments.append(MarketSegment(key=market, records=records))
            continue
        total = (len(records) + chunk_size - 1) // chunk_size
        for i in range(total):
            part = records[i * chunk_size : (i + 1) * chunk_size]
            segments.append(MarketSegment(key=f"{market}#{i + 1}/{total}", records=part))
    return segments


def _fixed_chunks(universe: list[UniverseRecord], chunk_size: int) -> list[MarketSegment]:
    size = chunk_size if chunk_size > 0 else DEFAULT_CHUNK_SIZE
    return [
        MarketSegment(key=f"CHUNK#{n + 1}", records=universe[start : start + size])
        for n, start in enumerate(range(0, len(universe), size))
    ]


def universe_signature(universe: list[UniverseRecord]) -> str:
    """Fingerprint of the ordered (ticker, market) pairs: ``"<count>:<hex>"``."""
    digest = hashlib.sha256()
    for record in universe:
        digest.update(record.ticker.strip().encode("utf-8"))
        digest.update(b"|")
        digest.update(normalize_market(record.market).encode("utf-8"))
        digest.update(b"\n")
    return f"{len(universe)}:{digest.hexdigest()[:16]}"
