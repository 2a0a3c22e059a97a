"""Bayesian Knowledge Tracing mastery model.

Each (student, concept) pair carries a probability that the concept is
known. Every observed answer updates it with Bayes' rule using the guess and
slip observation model, followed by the learning transition.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, Tuple

import db
from engine_config import ENGINE_CONFIG, BKTParams, EngineConfigRegistry, MasteryLevel
from engines.base import Clock, log_json, utcnow
from engines.errors import ConcurrencyConflictError, NotFoundError
from engines.spaced_repetition import SpacedRepetitionScheduler
from knowledge_graph import KnowledgeGraph

_LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure update rule
# ---------------------------------------------------------------------------


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def posterior_known(p_known: float, is_correct: bool, params: BKTParams) -> float:
    """P(known | observation) from the pre-update probability."""

    p = _clamp(p_known)
    if is_correct:
        evidence_known = p * (1.0 - params.p_slip)
        evidence_unknown = (1.0 - p) * params.p_guess
    else:
        evidence_known = p * params.p_slip
        evidence_unknown = (1.0 - p) * (1.0 - params.p_guess)
    denominator = evidence_known + evidence_unknown
    if denominator <= 0.0:
        return p
    return _clamp(evidence_known / denominator)


def bkt_update(p_known: float, is_correct: bool, params: BKTParams) -> float:
    """Posterior followed by the unknown-to-known learning transition."""

    posterior = posterior_known(p_known, is_correct, params)
    return _clamp(posterior + (1.0 - posterior) * params.p_learn)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class MasteryRecord:
    """Per (student, concept) mastery state."""

    student_id: str
    concept_id: str
    bkt_probability: float
    level: MasteryLevel
    practice_count: int = 0
    correct_count: int = 0
    last_practiced_at: Optional[datetime] = None
    next_review_at: Optional[datetime] = None
    retention_score: Optional[float] = None
    speed_trend_ms: Optional[float] = None
    version: int = 0

    @property
    def is_mastered(self) -> bool:
        return self.level is MasteryLevel.MASTERED

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MasteryRecord":
        return cls(
            student_id=row["student_id"],
            concept_id=row["concept_id"],
            bkt_probability=float(row["bkt_probability"]),
            level=MasteryLevel(row["level"]),
            practice_count=int(row["practice_count"] or 0),
            correct_count=int(row["correct_count"] or 0),
            last_practiced_at=db.parse_timestamp(row.get("last_practiced_at")),
            next_review_at=db.parse_timestamp(row.get("next_review_at")),
            retention_score=None if row.get("retention_score") is None else float(row["retention_score"]),
            speed_trend_ms=None if row.get("speed_trend_ms") is None else float(row["speed_trend_ms"]),
            version=int(row.get("version") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "concept_id": self.concept_id,
            "bkt_probability": round(self.bkt_probability, 6),
            "level": self.level.value,
            "practice_count": self.practice_count,
            "correct_count": self.correct_count,
            "last_practiced_at": db.to_iso(self.last_practiced_at),
            "next_review_at": db.to_iso(self.next_review_at),
            "retention_score": self.retention_score,
            "speed_trend_ms": self.speed_trend_ms,
            "version": self.version,
        }


class _KeyedLocks:
    """One lock per key; locks are dropped once no thread holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._waiters: Dict[Tuple[str, str], int] = defaultdict(int)

    @contextmanager
    def hold(self, key: Tuple[str, str]) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] <= 0:
                    self._waiters.pop(key, None)
                    self._locks.pop(key, None)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class MasteryModel:
    """Persisted BKT state with per-key serialised updates.

    Parameters
    ----------
    graph:
        Knowledge graph used to validate concept ids and to pick per-domain
        calibration constants.
    config:
        Engine configuration registry. Defaults to the module singleton.
    scheduler:
        Spaced-repetition scheduler that sets ``next_review_at``.
    max_retries:
        Optimistic version-check attempts before a
        ``ConcurrencyConflictError`` is raised.
    clock:
        Callable returning the current UTC time.
    """

    def __init__(
        self,
        graph: KnowledgeGraph,
        *,
        config: Optional[EngineConfigRegistry] = None,
        scheduler: Optional[SpacedRepetitionScheduler] = None,
        max_retries: int = 5,
        clock: Optional[Clock] = None,
    ) -> None:
        if max_retries <= 0:
            raise ValueError("max_retries must be positive")
        self.graph = graph
        self.config = config or ENGINE_CONFIG
        self.scheduler = scheduler or SpacedRepetitionScheduler(self.config)
        self.max_retries = int(max_retries)
        self._clock = clock or utcnow
        self._locks = _KeyedLocks()

    # ----- public API --------------------------------------------------
    def params_for(self, concept_id: str) -> BKTParams:
        node = self.graph.require_node(concept_id)
        return self.config.bkt_params(node.domain)

    def get_mastery(self, student_id: str, concept_id: str) -> Optional[MasteryRecord]:
        row = db.get_mastery_record(student_id, concept_id)
        return MasteryRecord.from_row(row) if row else None

    def list_mastery(
        self, student_id: str, concept_ids: Optional[Sequence[str]] = None
    ) -> Dict[str, MasteryRecord]:
        return {
            row["concept_id"]: MasteryRecord.from_row(row)
            for row in db.list_mastery(student_id, concept_ids)
        }

    def update_mastery(self, student_id: str, concept_id: str, is_correct: bool) -> MasteryRecord:
        """Apply one observation and persist the updated record."""

        params = self.params_for(concept_id)
        with self._locks.hold((student_id, concept_id)):
            for attempt in range(1, self.max_retries + 1):
                current = self.get_mastery(student_id, concept_id)
                updated = self._apply(student_id, concept_id, current, bool(is_correct), params)
                values = {
                    "student_id": student_id,
                    "concept_id": concept_id,
                    "bkt_probability": updated.bkt_probability,
                    "level": updated.level.value,
                    "practice_count": updated.practice_count,
                    "correct_count": updated.correct_count,
                    "last_practiced_at": db.to_iso(updated.last_practiced_at),
                    "next_review_at": db.to_iso(updated.next_review_at),
                    "retention_score": updated.retention_score,
                    "speed_trend_ms": updated.speed_trend_ms,
                }
                if current is None:
                    written = db.insert_mastery_record(values)
                    updated.version = 1
                else:
                    written = db.update_mastery_record(values, current.version)
                    updated.version = current.version + 1
                if written:
                    log_json(
                        _LOGGER,
                        "mastery_updated",
                        {
                            "student_id": student_id,
                            "concept_id": concept_id,
                            "is_correct": bool(is_correct),
                            "before": None if current is None else round(current.bkt_probability, 4),
                            "after": round(updated.bkt_probability, 4),
                            "level": updated.level.value,
                        },
                    )
                    return updated
                _LOGGER.warning(
                    "Mastery update conflict for %s/%s (attempt %s)", student_id, concept_id, attempt
                )
        raise ConcurrencyConflictError(
            f"Mastery record {student_id}/{concept_id} kept changing; gave up after {self.max_retries} attempts"
        )

    def record_answer(
        self,
        student_id: str,
        concept_id: str,
        is_correct: bool,
        question_type: str,
        response_time_ms: int,
        *,
        session_id: Optional[str] = None,
    ) -> MasteryRecord:
        """Append the response to the log, then update the mastery record."""

        self.graph.require_node(concept_id)
        if response_time_ms < 0:
            raise ValueError("response_time_ms must be non-negative")
        if not str(question_type or "").strip():
            raise ValueError("question_type must be provided")
        db.insert_question_response(
            student_id,
            concept_id,
            str(question_type).strip(),
            bool(is_correct),
            int(response_time_ms),
            session_id=session_id,
            created_at=self._clock(),
        )
        return self.update_mastery(student_id, concept_id, is_correct)

    def record_retention_probe(self, student_id: str, concept_id: str, score: float) -> MasteryRecord:
        """Store the result of a delayed re-test for a practised concept."""

        if not 0.0 <= float(score) <= 1.0:
            raise ValueError("retention score must be within [0, 1]")
        self.graph.require_node(concept_id)
        with self._locks.hold((student_id, concept_id)):
            if not db.set_retention_score(student_id, concept_id, float(score)):
                raise NotFoundError("mastery record", f"{student_id}/{concept_id}")
        record = self.get_mastery(student_id, concept_id)
        if record is None:
            raise NotFoundError("mastery record", f"{student_id}/{concept_id}")
        return record

    # ----- internals ---------------------------------------------------
    def _apply(
        self,
        student_id: str,
        concept_id: str,
        current: Optional[MasteryRecord],
        is_correct: bool,
        params: BKTParams,
    ) -> MasteryRecord:
        now = self._clock()
        prior = params.p_init if current is None else current.bkt_probability
        probability = bkt_update(prior, is_correct, params)
        level = self.config.level_for(probability)
        return MasteryRecord(
            student_id=student_id,
            concept_id=concept_id,
            bkt_probability=probability,
            level=level,
            practice_count=(0 if current is None else current.practice_count) + 1,
            correct_count=(0 if current is None else current.correct_count) + (1 if is_correct else 0),
            last_practiced_at=now,
            next_review_at=self.scheduler.next_review(level, now),
            retention_score=None if current is None else current.retention_score,
            speed_trend_ms=None if current is None else current.speed_trend_ms,
        )


__all__ = [
    "MasteryModel",
    "MasteryRecord",
    "bkt_update",
    "posterior_known",
]
