"""Learning velocity, hour adjustments and ETA recalculation for plans."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Mapping, Optional

import db
from content_oracle import SCHEDULE_MESSAGE, ContentOracle
from engine_config import ENGINE_CONFIG, EngineConfigRegistry
from engines.base import Clock, log_json, utcnow
from engines.errors import NotFoundError
from knowledge_graph import KnowledgeGraph

logger = logging.getLogger(__name__)

ACCELERATING = "accelerating"
STEADY = "steady"
SLOWING = "slowing"
INSUFFICIENT_DATA = "insufficient_data"

VELOCITY_WINDOW_DAYS = 14
HISTORY_WINDOW_DAYS = 28
MIN_SESSIONS = 3
DEFAULT_WEEKLY_HOURS = 3.0
MASTERED_PROBABILITY = 0.85


# ---------------------------------------------------------------------------
# Estimate adjustments
# ---------------------------------------------------------------------------


def partial_mastery_discount(probability: Optional[float]) -> float:
    """Share of a concept's base hours still needed given its BKT probability."""

    p = float(probability or 0.0)
    if p <= 0.3:
        return 1.0
    if p <= 0.5:
        return 0.75
    if p <= 0.7:
        return 0.5
    return 0.3


def remaining_work_discount(probability: Optional[float]) -> float:
    """Discount used for ETA; concepts at or above 0.85 count as done."""

    p = float(probability or 0.0)
    if p >= MASTERED_PROBABILITY:
        return 0.0
    if p > 0.5:
        return 0.5
    if p > 0.3:
        return 0.75
    return 1.0


def grade_factor(concept_grade_index: int, student_grade_index: int) -> float:
    diff = int(concept_grade_index) - int(student_grade_index)
    if diff <= -2:
        return 0.6
    if diff == -1:
        return 0.8
    if diff == 0:
        return 1.0
    if diff == 1:
        return 1.2
    return 1.5


def _session_hours(sessions: Iterable[Mapping[str, Any]]) -> float:
    return sum(float(session.get("duration_seconds") or 0) for session in sessions) / 3600.0


def historical_velocity_factor(student_id: str, now: Optional[datetime] = None) -> float:
    """Multiplier for estimates derived from the last four weeks of sessions.

    Needs at least three completed sessions; otherwise the factor is neutral.
    A faster student gets a factor below 1, never less than 0.5 or above 2.
    """

    now = now or utcnow()
    sessions = db.list_completed_sessions(student_id, since=now - timedelta(days=HISTORY_WINDOW_DAYS))
    if len(sessions) < MIN_SESSIONS:
        return 1.0
    hours = _session_hours(sessions)
    if hours <= 0:
        return 1.0
    answered = sum(int(session.get("questions_answered") or 0) for session in sessions)
    correct = sum(int(session.get("correct_answers") or 0) for session in sessions)
    accuracy = correct / answered if answered else 0.0
    concepts_per_hour = (correct / 10.0) / hours
    velocity = min(3.0, max(0.3, concepts_per_hour * (0.5 + accuracy * 0.5)))
    return min(2.0, max(0.5, 1.0 / velocity))


# ---------------------------------------------------------------------------
# Velocity
# ---------------------------------------------------------------------------


@dataclass
class VelocityReport:
    current_weekly_hours: float
    previous_weekly_hours: float
    trend: str
    sessions_last_4_weeks: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_weekly_hours": self.current_weekly_hours,
            "previous_weekly_hours": self.previous_weekly_hours,
            "trend": self.trend,
            "sessions_last_4_weeks": self.sessions_last_4_weeks,
        }


def calculate_student_velocity(student_id: str, now: Optional[datetime] = None) -> VelocityReport:
    """Compare weekly study hours of the last two weeks with the two before."""

    now = now or utcnow()
    recent_cutoff = now - timedelta(days=VELOCITY_WINDOW_DAYS)
    sessions = db.list_completed_sessions(
        student_id, since=now - timedelta(days=2 * VELOCITY_WINDOW_DAYS), limit=1000
    )
    current, previous = [], []
    for session in sessions:
        started = db.parse_timestamp(session.get("started_at"))
        if started is None:
            continue
        (current if started >= recent_cutoff else previous).append(session)

    current_weekly = round(_session_hours(current) / 2, 2)
    previous_weekly = round(_session_hours(previous) / 2, 2)
    total = len(current) + len(previous)

    if total < MIN_SESSIONS:
        trend = INSUFFICIENT_DATA
    elif current_weekly > previous_weekly * 1.15:
        trend = ACCELERATING
    elif current_weekly < previous_weekly * 0.85:
        trend = SLOWING
    else:
        trend = STEADY
    return VelocityReport(current_weekly, previous_weekly, trend, total)


def schedule_message(
    is_ahead: bool,
    days_difference: int,
    trend: str,
    concepts_remaining: int,
    concepts_mastered: int,
) -> str:
    days = abs(int(days_difference))
    if concepts_remaining == 0:
        return "Congratulations! You've completed all concepts in this goal!"
    if concepts_mastered == 0:
        return "Ready to begin your learning journey! Let's get started."
    if is_ahead:
        if days > 14:
            return f"You're {days} days ahead of schedule! Amazing pace!"
        if days > 7:
            return f"{days} days ahead! Keep up this great momentum."
        if days > 0:
            return f"Right on track, {days} days ahead."
        return "Right on schedule. Great consistency!"
    if days > 14:
        if trend == ACCELERATING:
            return f"{days} days behind, but you're picking up speed! Keep going."
        return f"{days} days behind schedule. Try adding an extra session this week!"
    if days > 7:
        return f"{days} days behind. A few extra practice sessions will get you back on track."
    return f"Slightly behind by {days} days. Totally catchable!"


# ---------------------------------------------------------------------------
# ETA
# ---------------------------------------------------------------------------


@dataclass
class EtaResult:
    plan_id: str
    concepts_remaining: int
    concepts_mastered: int
    total_concepts: int
    hours_remaining: float
    velocity_hours_per_week: float
    projected_completion_date: datetime
    target_completion_date: Optional[datetime]
    is_ahead_of_schedule: bool
    days_difference: int
    progress_percentage: int
    schedule_message: str
    velocity_trend: str
    insight: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "concepts_remaining": self.concepts_remaining,
            "concepts_mastered": self.concepts_mastered,
            "total_concepts": self.total_concepts,
            "hours_remaining": self.hours_remaining,
            "velocity_hours_per_week": self.velocity_hours_per_week,
            "projected_completion_date": db.to_iso(self.projected_completion_date),
            "target_completion_date": db.to_iso(self.target_completion_date),
            "is_ahead_of_schedule": self.is_ahead_of_schedule,
            "days_difference": self.days_difference,
            "progress_percentage": self.progress_percentage,
            "schedule_message": self.schedule_message,
            "velocity_trend": self.velocity_trend,
            "insight": self.insight,
        }


class EtaCalculator:
    """Recompute a plan's projection from current mastery and measured velocity."""

    def __init__(
        self,
        graph: KnowledgeGraph,
        *,
        config: Optional[EngineConfigRegistry] = None,
        oracle: Optional[ContentOracle] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.graph = graph
        self.config = config or ENGINE_CONFIG
        self.oracle = oracle
        self._clock = clock or utcnow

    def recalculate_eta(self, plan_id: str) -> EtaResult:
        plan = db.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("learning plan", plan_id)
        now = self._clock()
        sequence = list(plan["concept_sequence"])
        mastery = {row["concept_id"]: row for row in db.list_mastery(plan["student_id"], sequence)}

        mastered = 0
        hours_remaining = 0.0
        for concept_id in sequence:
            node = self.graph.get_node(concept_id)
            if node is None:
                continue
            probability = float((mastery.get(concept_id) or {}).get("bkt_probability") or 0.0)
            discount = remaining_work_discount(probability)
            if discount == 0.0:
                mastered += 1
            else:
                hours_remaining += self.config.hours_for_difficulty(node.difficulty) * discount
        total = len(sequence)
        remaining = total - mastered
        hours_remaining = round(hours_remaining, 1)

        velocity = calculate_student_velocity(plan["student_id"], now)
        if velocity.current_weekly_hours > 0:
            weekly = velocity.current_weekly_hours
        elif float(plan.get("velocity_hours_per_week") or 0) > 0:
            weekly = float(plan["velocity_hours_per_week"])
        else:
            weekly = DEFAULT_WEEKLY_HOURS
        projected = now + timedelta(days=math.ceil(hours_remaining / weekly * 7))

        target = db.parse_timestamp(plan.get("target_completion_date"))
        reference = target or db.parse_timestamp(plan.get("projected_completion_date")) or projected
        days_difference = round((reference - projected).total_seconds() / 86400)
        is_ahead = days_difference >= 0

        message = schedule_message(is_ahead, days_difference, velocity.trend, remaining, mastered)
        progress = round(mastered / total * 100) if total else 0
        insight = None
        if self.oracle is not None:
            insight = self.oracle.content_for(
                SCHEDULE_MESSAGE,
                {
                    "concepts_mastered": mastered,
                    "concepts_remaining": remaining,
                    "days_difference": days_difference,
                    "velocity_trend": velocity.trend,
                },
            ).fields["message"]

        fields: Dict[str, Any] = {
            "projected_completion_date": db.to_iso(projected),
            "velocity_hours_per_week": weekly,
            "is_ahead_of_schedule": is_ahead,
            "updated_at": db.to_iso(now),
        }
        if remaining == 0 and plan["status"] == "ACTIVE":
            fields["status"] = "COMPLETED"
        db.update_plan(plan_id, fields)
        db.insert_eta_snapshot(
            plan_id,
            db.to_iso(projected),
            hours_remaining,
            remaining,
            weekly,
            days_difference,
            created_at=now,
        )
        log_json(
            logger,
            "eta_recalculated",
            {
                "plan_id": plan_id,
                "progress": progress,
                "hours_remaining": hours_remaining,
                "days_difference": days_difference,
                "trend": velocity.trend,
            },
        )
        return EtaResult(
            plan_id=plan_id,
            concepts_remaining=remaining,
            concepts_mastered=mastered,
            total_concepts=total,
            hours_remaining=hours_remaining,
            velocity_hours_per_week=weekly,
            projected_completion_date=projected,
            target_completion_date=target,
            is_ahead_of_schedule=is_ahead,
            days_difference=days_difference,
            progress_percentage=progress,
            schedule_message=message,
            velocity_trend=velocity.trend,
            insight=insight,
        )


__all__ = [
    "EtaCalculator",
    "EtaResult",
    "VelocityReport",
    "calculate_student_velocity",
    "grade_factor",
    "historical_velocity_factor",
    "partial_mastery_discount",
    "remaining_work_discount",
    "schedule_message",
]
