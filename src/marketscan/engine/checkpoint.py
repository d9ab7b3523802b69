"""Batch checkpoint schema and its load/save/clear lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pydantic import BaseModel, Field, ValidationError, field_validator

from marketscan.core.enums import CheckpointState
from marketscan.core.models import MarketSegment, ScoredCandidate
from marketscan.data.provider import KeyValueStore
from marketscan.engine.stats import ScanStats

CHECKPOINT_VERSION = 1

_log = logging.getLogger(__name__)


class BatchCheckpoint(BaseModel):
    """Persisted progress of a segmented run, stored as JSON under one key."""

    version: int = CHECKPOINT_VERSION
    universe_signature: str
    segment_count: int = Field(ge=1)
    next_segment_index: int = Field(ge=0)
    scanned: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    candidate_count: int = Field(default=0, ge=0)
    top_n: int = Field(ge=1)
    top_candidates: list[ScoredCandidate] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def _known_version(cls, v: int) -> int:
        if v != CHECKPOINT_VERSION:
            raise ValueError(f"unsupported checkpoint version {v}")
        return v


@dataclass
class BatchPlan:
    """Immutable description of how this run's universe is segmented."""

    segments: list[MarketSegment]
    signature: str
    top_n: int

    @property
    def segment_count(self) -> int:
        return len(self.segments)

    @property
    def universe_size(self) -> int:
        return sum(len(s) for s in self.segments)


@dataclass
class BatchState:
    """Mutable progress: merged stats and the next segment to scan."""

    stats: ScanStats
    next_segment_index: int = 0
    checkpoint_state: CheckpointState = CheckpointState.NO_CHECKPOINT


class CheckpointManager:
    """Owns the single checkpoint record in a key/value store.

    Loading never fails a run: anything unreadable or inconsistent with
    the current plan is deleted and a fresh state is returned. When
    ``resume_enabled`` is off every operation is a no-op.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        resume_enabled: bool = True,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.key = key
        self.resume_enabled = resume_enabled
        self.log = logger or _log

    def load(self, plan: BatchPlan) -> BatchState:
        fresh = BatchState(stats=ScanStats(top_n=plan.top_n))
        if not self.resume_enabled:
            return fresh

        raw = self.store.get(self.key)
        if raw is None or not raw.strip():
            return fresh

        try:
            checkpoint = BatchCheckpoint.model_validate_json(raw)
        except ValidationError as e:
            self.log.warning("Discarding unreadable checkpoint %s: %s", self.key, e.errors()[:1])
            return self._invalidate(fresh)

        if (
            checkpoint.universe_signature != plan.signature
            or checkpoint.segment_count != plan.segment_count
            or checkpoint.top_n != plan.top_n
        ):
            self.log.info(
                "Checkpoint %s no longer matches the universe (signature/segments/top_n); "
                "starting from segment 1",
                self.key,
            )
            return self._invalidate(fresh)

        next_index = min(checkpoint.next_segment_index, plan.segment_count)
        if next_index >= plan.segment_count:
            return self._invalidate(fresh)

        self.log.info(
            "Resume checkpoint found: segment=%d/%d scanned=%d failed=%d candidates=%d",
            next_index,
            plan.segment_count,
            checkpoint.scanned,
            checkpoint.failed,
            checkpoint.candidate_count,
        )
        stats = ScanStats.from_checkpoint(
            scanned=checkpoint.scanned,
            failed=checkpoint.failed,
            candidate_count=checkpoint.candidate_count,
            top_candidates=checkpoint.top_candidates,
            top_n=plan.top_n,
        )
        return BatchState(
            stats=stats,
            next_segment_index=next_index,
            checkpoint_state=CheckpointState.RESUMED,
        )

    def save(self, plan: BatchPlan, state: BatchState) -> None:
        if not self.resume_enabled:
            return
        checkpoint = BatchCheckpoint(
            universe_signature=plan.signature,
            segment_count=plan.segment_count,
            next_segment_index=state.next_segment_index,
            scanned=state.stats.scanned,
            failed=state.stats.failed,
            candidate_count=state.stats.candidate_count,
            top_n=plan.top_n,
            top_candidates=state.stats.top_candidates(),
        )
        self.store.put(self.key, checkpoint.model_dump_json())

    def clear(self) -> None:
        if self.resume_enabled:
            self.store.delete(self.key)

    def reset(self) -> None:
        """Drop the checkpoint on explicit request."""
        if not self.resume_enabled:
            self.log.info("Checkpoint reset skipped: resume is disabled")
            return
        self.store.delete(self.key)
        self.log.info("Batch checkpoint reset. key=%s", self.key)

    def peek(self) -> BatchCheckpoint | None:
        """Current checkpoint if one is stored and readable."""
        raw = self.store.get(self.key)
        if raw is None or not raw.strip():
            return None
        try:
            return BatchCheckpoint.model_validate_json(raw)
        except ValidationError:
            return None

    def _invalidate(self, fresh: BatchState) -> BatchState:
        self.store.delete(self.key)
        fresh.checkpoint_state = CheckpointState.INVALIDATED
        return fresh
