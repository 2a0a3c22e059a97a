"""Multi-criteria "true mastery" gate.

BKT alone is a smoothed running estimate that lucky guesses can inflate. The
gate looks at the raw response log for the most recent window and checks
accuracy, consistency across question types, retention and speed trend.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from statistics import fmean
from typing import Any, Dict, List, Optional, Sequence

import db
from engine_config import ENGINE_CONFIG, EngineConfigRegistry, GateSettings
from engines.base import log_json
from knowledge_graph import KnowledgeGraph

_LOGGER = logging.getLogger(__name__)

ADVANCE = "advance"
FLUENCY_DRILL = "fluency_drill"
RETENTION_REVIEW = "retention_review"
PRACTICE = "practice"

IMPROVING = "improving"
FLAT = "flat"
SLOWING = "slowing"


@dataclass
class CriterionResult:
    score: float
    passed: bool
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GateResult:
    """Verdict of the gate together with the per-criterion breakdown."""

    passed: bool
    recommendation: str
    total_responses: int
    accuracy: CriterionResult
    consistency: CriterionResult
    retention: CriterionResult
    speed: CriterionResult
    insufficient_data: bool = False

    @property
    def criteria(self) -> Dict[str, CriterionResult]:
        return {
            "accuracy": self.accuracy,
            "consistency": self.consistency,
            "retention": self.retention,
            "speed": self.speed,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "recommendation": self.recommendation,
            "total_responses": self.total_responses,
            "insufficient_data": self.insufficient_data,
            "criteria": {name: asdict(result) for name, result in self.criteria.items()},
        }


def speed_trend(response_times_ms: Sequence[float], settings: GateSettings) -> tuple[str, float, float]:
    """Compare the mean of the second chronological half against the first.

    Returns ``(direction, first_half_mean, second_half_mean)``.
    """

    half = len(response_times_ms) // 2
    if half == 0:
        return FLAT, 0.0, 0.0
    first = fmean(response_times_ms[:half])
    second = fmean(response_times_ms[half:])
    if first <= 0:
        return FLAT, first, second
    ratio = second / first
    if ratio <= settings.improving_ratio:
        return IMPROVING, first, second
    if ratio >= settings.slowing_ratio:
        return SLOWING, first, second
    return FLAT, first, second


def recommend(accuracy: bool, consistency: bool, retention: bool, speed: bool) -> str:
    if accuracy and consistency and retention and speed:
        return ADVANCE
    if accuracy and retention and not speed:
        return FLUENCY_DRILL
    if accuracy and not retention:
        return RETENTION_REVIEW
    return PRACTICE


class MasteryGate:
    """Evaluate whether a student may advance past a concept."""

    def __init__(
        self,
        graph: Optional[KnowledgeGraph] = None,
        config: Optional[EngineConfigRegistry] = None,
    ) -> None:
        self.graph = graph
        self.config = config or ENGINE_CONFIG

    @property
    def settings(self) -> GateSettings:
        return self.config.gate

    def evaluate_gate(self, student_id: str, concept_id: str) -> GateResult:
        if self.graph is not None:
            self.graph.require_node(concept_id)

        settings = self.settings
        recent = db.list_recent_responses(student_id, concept_id, limit=settings.window)
        total = len(recent)

        if total < settings.window:
            # Too little evidence must never hold a student back
            result = GateResult(
                passed=True,
                recommendation=ADVANCE,
                total_responses=total,
                accuracy=CriterionResult(1.0, True),
                consistency=CriterionResult(1.0, True, {"types_correct": []}),
                retention=CriterionResult(1.0, True),
                speed=CriterionResult(1.0, True, {"trend": FLAT}),
                insufficient_data=True,
            )
            self._log(student_id, concept_id, result)
            return result

        chronological = list(reversed(recent))

        correct = [response for response in chronological if response["is_correct"]]
        accuracy_score = len(correct) / total
        accuracy = CriterionResult(
            round(accuracy_score, 4),
            accuracy_score >= settings.accuracy_threshold,
            {"correct": len(correct), "window": total},
        )

        types_correct = sorted({str(response["question_type"]) for response in correct})
        consistency = CriterionResult(
            float(len(types_correct)),
            len(types_correct) >= settings.min_question_types,
            {"types_correct": types_correct, "required": settings.min_question_types},
        )

        record = db.get_mastery_record(student_id, concept_id)
        retention_score = None if record is None else record.get("retention_score")
        if retention_score is None:
            retention = CriterionResult(1.0, True, {"probed": False})
        else:
            retention = CriterionResult(
                float(retention_score),
                float(retention_score) >= settings.retention_threshold,
                {"probed": True},
            )

        times = [float(response["response_time_ms"]) for response in chronological]
        direction, first_mean, second_mean = speed_trend(times, settings)
        speed = CriterionResult(
            round(second_mean / first_mean, 4) if first_mean > 0 else 1.0,
            direction != SLOWING,
            {
                "trend": direction,
                "first_half_mean_ms": round(first_mean, 2),
                "second_half_mean_ms": round(second_mean, 2),
            },
        )
        if record is not None:
            db.set_speed_trend(student_id, concept_id, second_mean)

        recommendation = recommend(accuracy.passed, consistency.passed, retention.passed, speed.passed)
        result = GateResult(
            passed=recommendation == ADVANCE,
            recommendation=recommendation,
            total_responses=total,
            accuracy=accuracy,
            consistency=consistency,
            retention=retention,
            speed=speed,
        )
        self._log(student_id, concept_id, result)
        return result

    @staticmethod
    def _log(student_id: str, concept_id: str, result: GateResult) -> None:
        log_json(
            _LOGGER,
            "mastery_gate_evaluated",
            {
                "student_id": student_id,
                "concept_id": concept_id,
                "passed": result.passed,
                "recommendation": result.recommendation,
                "total_responses": result.total_responses,
                "failed": [name for name, item in result.criteria.items() if not item.passed],
            },
        )


__all__ = [
    "ADVANCE",
    "FLUENCY_DRILL",
    "GateResult",
    "MasteryGate",
    "PRACTICE",
    "RETENTION_REVIEW",
    "recommend",
    "speed_trend",
]
