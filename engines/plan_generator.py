"""Goal-driven learning plans: ordering, hour estimates, milestones and progress."""

from __future__ import annotations

import logging
import math
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import db
import notifications
from content_oracle import PLAN_NARRATIVE, ContentOracle, fallback_content
from engine_config import ENGINE_CONFIG, EngineConfigRegistry, MasteryLevel
from engines.base import Clock, log_json, utcnow
from engines.errors import DataIntegrityError, NotFoundError, PlanLimitError
from engines.eta import grade_factor, historical_velocity_factor, partial_mastery_discount
from knowledge_graph import ConceptNode, KnowledgeGraph

logger = logging.getLogger(__name__)


class PlanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


# Terminal states have no outgoing transitions.
_STATUS_TRANSITIONS: Dict[PlanStatus, frozenset] = {
    PlanStatus.ACTIVE: frozenset({PlanStatus.PAUSED, PlanStatus.COMPLETED, PlanStatus.ABANDONED}),
    PlanStatus.PAUSED: frozenset({PlanStatus.ACTIVE, PlanStatus.ABANDONED}),
    PlanStatus.COMPLETED: frozenset(),
    PlanStatus.ABANDONED: frozenset(),
}


@dataclass
class Milestone:
    week_number: int
    concept_ids: List[str]
    estimated_hours: float
    cumulative_progress: int
    concept_hours: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_number": self.week_number,
            "concept_ids": list(self.concept_ids),
            "estimated_hours": self.estimated_hours,
            "cumulative_progress": self.cumulative_progress,
            "concept_hours": dict(self.concept_hours),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Milestone":
        return cls(
            week_number=int(payload.get("week_number", 0)),
            concept_ids=[str(item) for item in payload.get("concept_ids") or []],
            estimated_hours=float(payload.get("estimated_hours") or 0.0),
            cumulative_progress=int(payload.get("cumulative_progress") or 0),
            concept_hours={str(k): float(v) for k, v in (payload.get("concept_hours") or {}).items()},
        )


@dataclass
class LearningPlan:
    id: str
    student_id: str
    goal_id: str
    status: PlanStatus
    concept_sequence: List[str]
    current_concept_index: int
    total_estimated_hours: float
    hours_completed: float
    velocity_hours_per_week: float
    weekly_hours_available: float
    target_completion_date: Optional[datetime]
    projected_completion_date: datetime
    is_ahead_of_schedule: bool
    milestones: List[Milestone]
    narrative: Optional[str]
    created_at: datetime
    updated_at: datetime

    @property
    def concept_hours(self) -> Dict[str, float]:
        merged: Dict[str, float] = {}
        for milestone in self.milestones:
            merged.update(milestone.concept_hours)
        return merged

    @property
    def current_concept_id(self) -> Optional[str]:
        if self.status is not PlanStatus.ACTIVE:
            return None
        if 0 <= self.current_concept_index < len(self.concept_sequence):
            return self.concept_sequence[self.current_concept_index]
        return None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LearningPlan":
        return cls(
            id=row["id"],
            student_id=row["student_id"],
            goal_id=row["goal_id"],
            status=PlanStatus(row["status"]),
            concept_sequence=list(row.get("concept_sequence") or []),
            current_concept_index=int(row.get("current_concept_index") or 0),
            total_estimated_hours=float(row.get("total_estimated_hours") or 0.0),
            hours_completed=float(row.get("hours_completed") or 0.0),
            velocity_hours_per_week=float(row.get("velocity_hours_per_week") or 0.0),
            weekly_hours_available=float(row.get("weekly_hours_available") or 0.0),
            target_completion_date=db.parse_timestamp(row.get("target_completion_date")),
            projected_completion_date=db.parse_timestamp(row.get("projected_completion_date")) or utcnow(),
            is_ahead_of_schedule=bool(row.get("is_ahead_of_schedule")),
            milestones=[Milestone.from_dict(item) for item in row.get("milestones") or []],
            narrative=row.get("narrative"),
            created_at=db.parse_timestamp(row.get("created_at")) or utcnow(),
            updated_at=db.parse_timestamp(row.get("updated_at")) or utcnow(),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "goal_id": self.goal_id,
            "status": self.status.value,
            "concept_sequence": list(self.concept_sequence),
            "current_concept_index": self.current_concept_index,
            "total_estimated_hours": self.total_estimated_hours,
            "hours_completed": self.hours_completed,
            "velocity_hours_per_week": self.velocity_hours_per_week,
            "weekly_hours_available": self.weekly_hours_available,
            "target_completion_date": db.to_iso(self.target_completion_date),
            "projected_completion_date": db.to_iso(self.projected_completion_date),
            "is_ahead_of_schedule": self.is_ahead_of_schedule,
            "milestones": [milestone.to_dict() for milestone in self.milestones],
            "narrative": self.narrative,
            "created_at": db.to_iso(self.created_at),
            "updated_at": db.to_iso(self.updated_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = self.to_row()
        payload["current_concept_id"] = self.current_concept_id
        return payload


def build_milestones(
    sequence: Sequence[str], hours: Mapping[str, float], weekly_hours_available: float
) -> List[Milestone]:
    """Pack the sequence into weeks without exceeding the weekly budget.

    A concept larger than the budget still gets a week of its own.
    """

    total = sum(hours[concept_id] for concept_id in sequence)
    weeks: List[List[str]] = []
    current: List[str] = []
    current_hours = 0.0
    for concept_id in sequence:
        concept_hours = hours[concept_id]
        if current and current_hours + concept_hours > weekly_hours_available + 1e-9:
            weeks.append(current)
            current, current_hours = [], 0.0
        current.append(concept_id)
        current_hours += concept_hours
    if current:
        weeks.append(current)

    milestones: List[Milestone] = []
    cumulative = 0.0
    for index, concept_ids in enumerate(weeks, start=1):
        week_hours = sum(hours[concept_id] for concept_id in concept_ids)
        cumulative += week_hours
        progress = 100 if index == len(weeks) else round(cumulative / total * 100) if total else 100
        milestones.append(
            Milestone(
                week_number=index,
                concept_ids=list(concept_ids),
                estimated_hours=round(week_hours, 2),
                cumulative_progress=progress,
                concept_hours={concept_id: hours[concept_id] for concept_id in concept_ids},
            )
        )
    return milestones


class PlanGenerator:
    """Build, persist and advance learning plans toward a goal.

    Parameters
    ----------
    graph:
        Concept catalog holding goals and prerequisites.
    config:
        Engine configuration (hour bands, grade order, plan limit).
    oracle:
        Content oracle for the plan narrative; canned text when omitted.
    notify:
        Fire-and-forget event publisher.
    clock:
        Callable returning the current UTC time.
    """

    def __init__(
        self,
        graph: KnowledgeGraph,
        *,
        config: Optional[EngineConfigRegistry] = None,
        oracle: Optional[ContentOracle] = None,
        notify: Callable[..., Any] = notifications.publish,
        clock: Optional[Clock] = None,
    ) -> None:
        self.graph = graph
        self.config = config or ENGINE_CONFIG
        self.oracle = oracle
        self.notify = notify
        self._clock = clock or utcnow
        self._create_lock = threading.Lock()

    # ------------------------------------------------------------------
    def get_plan(self, plan_id: str) -> LearningPlan:
        row = db.get_plan(plan_id)
        if row is None:
            raise NotFoundError("learning plan", plan_id)
        return LearningPlan.from_row(row)

    def get_active_plans(self, student_id: str) -> List[LearningPlan]:
        return [LearningPlan.from_row(row) for row in db.list_plans(student_id, PlanStatus.ACTIVE.value)]

    def ensure_can_create_plan(self, student_id: str, goal_id: str) -> None:
        active = self.get_active_plans(student_id)
        if any(plan.goal_id == goal_id for plan in active):
            raise PlanLimitError(f"Student {student_id} already has an active plan for goal {goal_id}")
        if len(active) >= self.config.max_active_plans:
            raise PlanLimitError(
                f"Student {student_id} already has {len(active)} active plans "
                f"(limit {self.config.max_active_plans})"
            )

    # ------------------------------------------------------------------
    def estimate_concept_hours(
        self,
        node: ConceptNode,
        *,
        probability: Optional[float] = None,
        student_grade: Optional[str] = None,
        velocity_factor: float = 1.0,
    ) -> float:
        hours = self.config.hours_for_difficulty(node.difficulty)
        hours *= partial_mastery_discount(probability)
        if student_grade:
            hours *= grade_factor(
                self.config.grade_index(node.grade_level), self.config.grade_index(student_grade)
            )
        hours *= velocity_factor
        return round(max(self.config.min_concept_hours, hours), 2)

    def _sort_key(self, node: ConceptNode):
        return (self.config.grade_index(node.grade_level), node.difficulty, node.code)

    def _resolve_goal_concepts(self, goal_id: str) -> List[str]:
        goal = self.graph.get_goal(goal_id)
        if not goal.concept_ids:
            raise DataIntegrityError(f"Goal {goal_id} has no required concepts", details={"goal_id": goal_id})
        unknown = [concept_id for concept_id in goal.concept_ids if concept_id not in self.graph]
        if unknown:
            raise DataIntegrityError(
                f"Goal {goal_id} references unknown concepts: {', '.join(unknown)}",
                details={"goal_id": goal_id, "concepts": unknown},
            )
        return list(dict.fromkeys(goal.concept_ids))

    def generate_plan(
        self,
        goal_id: str,
        student_id: str,
        weekly_hours_available: float,
        target_date: Optional[datetime] = None,
        student_grade: Optional[str] = None,
    ) -> LearningPlan:
        """Create and persist an ACTIVE plan for ``student_id`` toward ``goal_id``."""

        if not student_id:
            raise ValueError("student_id is required")
        weekly = float(weekly_hours_available)
        if weekly <= 0:
            raise ValueError("weekly_hours_available must be positive")

        try:
            concept_ids = self._resolve_goal_concepts(goal_id)
            mastery = {row["concept_id"]: row for row in db.list_mastery(student_id, concept_ids)}
            remaining = [
                concept_id
                for concept_id in concept_ids
                if (mastery.get(concept_id) or {}).get("level") != MasteryLevel.MASTERED.value
            ]
            sequence = self.graph.topological_order(remaining, sort_key=self._sort_key)
        except DataIntegrityError as exc:
            log_json(
                logger,
                "plan_generation_failed",
                {"goal_id": goal_id, "student_id": student_id, "error": str(exc), **exc.details},
                logging.ERROR,
            )
            raise

        now = self._clock()
        velocity_factor = historical_velocity_factor(student_id, now)
        hours = {
            concept_id: self.estimate_concept_hours(
                self.graph.require_node(concept_id),
                probability=(mastery.get(concept_id) or {}).get("bkt_probability"),
                student_grade=student_grade,
                velocity_factor=velocity_factor,
            )
            for concept_id in sequence
        }
        total_hours = round(sum(hours.values()), 2)
        milestones = build_milestones(sequence, hours, weekly)
        projected = now + timedelta(weeks=math.ceil(total_hours / weekly))
        if target_date is not None and target_date.tzinfo is None:
            target_date = db.parse_timestamp(target_date.isoformat())
        is_ahead = target_date is None or projected <= target_date

        plan = LearningPlan(
            id=uuid.uuid4().hex,
            student_id=student_id,
            goal_id=goal_id,
            status=PlanStatus.ACTIVE if sequence else PlanStatus.COMPLETED,
            concept_sequence=sequence,
            current_concept_index=0,
            total_estimated_hours=total_hours,
            hours_completed=0.0,
            velocity_hours_per_week=weekly,
            weekly_hours_available=weekly,
            target_completion_date=target_date,
            projected_completion_date=projected,
            is_ahead_of_schedule=is_ahead,
            milestones=milestones,
            narrative=self._narrative(goal_id, sequence, total_hours, len(milestones)),
            created_at=now,
            updated_at=now,
        )

        with self._create_lock:
            self.ensure_can_create_plan(student_id, goal_id)
            db.insert_plan(plan.to_row())

        log_json(
            logger,
            "plan_generated",
            {
                "plan_id": plan.id,
                "student_id": student_id,
                "goal_id": goal_id,
                "concepts": len(sequence),
                "total_hours": total_hours,
                "weeks": len(milestones),
                "velocity_factor": velocity_factor,
            },
        )
        return plan

    def _narrative(self, goal_id: str, sequence: Sequence[str], total_hours: float, weeks: int) -> str:
        if self.oracle is None:
            return fallback_content(PLAN_NARRATIVE).fields["narrative"]
        goal = self.graph.get_goal(goal_id)
        context = {
            "goal": goal.name,
            "concepts": [self.graph.require_node(concept_id).title for concept_id in sequence[:5]],
            "concept_count": len(sequence),
            "total_hours": total_hours,
            "weeks": weeks,
        }
        return self.oracle.content_for(PLAN_NARRATIVE, context).fields["narrative"]

    # ------------------------------------------------------------------
    def get_next_concept_in_plan(self, plan_id: str) -> Optional[ConceptNode]:
        concept_id = self.get_plan(plan_id).current_concept_id
        return self.graph.get_node(concept_id) if concept_id else None

    def advance_plan(self, plan_id: str, concept_id: str, elapsed_hours: float) -> LearningPlan:
        """Move the cursor past ``concept_id`` when it is the plan's current concept."""

        if elapsed_hours < 0:
            raise ValueError("elapsed_hours must be non-negative")
        plan = self.get_plan(plan_id)
        if plan.current_concept_id != concept_id:
            return plan

        now = self._clock()
        cursor = plan.current_concept_index
        new_index = cursor + 1
        hours_completed = round(plan.hours_completed + float(elapsed_hours), 4)
        weeks_elapsed = max((now - plan.created_at).total_seconds() / (7 * 86400), 1.0)
        velocity = round(hours_completed / weeks_elapsed, 2)
        rate = velocity if velocity > 0 else plan.weekly_hours_available

        estimates = plan.concept_hours
        remaining_hours = sum(
            estimates.get(remaining_id, self.config.default_concept_hours)
            for remaining_id in plan.concept_sequence[new_index:]
        )
        projected = now + timedelta(weeks=math.ceil(remaining_hours / rate)) if remaining_hours else now
        is_ahead = plan.target_completion_date is None or projected <= plan.target_completion_date
        completed = new_index >= len(plan.concept_sequence)

        fields: Dict[str, Any] = {
            "current_concept_index": new_index,
            "hours_completed": hours_completed,
            "velocity_hours_per_week": velocity if velocity > 0 else plan.velocity_hours_per_week,
            "projected_completion_date": db.to_iso(projected),
            "is_ahead_of_schedule": is_ahead,
            "updated_at": db.to_iso(now),
        }
        if completed:
            fields["status"] = PlanStatus.COMPLETED.value
        if not db.update_plan(plan_id, fields, expected_index=cursor):
            logger.info("Plan %s cursor moved concurrently; leaving it as is", plan_id)
            return self.get_plan(plan_id)

        self.notify(
            notifications.PLAN_ADVANCED,
            plan.student_id,
            {
                "plan_id": plan_id,
                "concept_id": concept_id,
                "current_concept_index": new_index,
                "completed": completed,
            },
        )
        log_json(
            logger,
            "plan_advanced",
            {"plan_id": plan_id, "concept_id": concept_id, "index": new_index, "velocity": velocity},
        )
        return self.get_plan(plan_id)

    def set_plan_status(self, plan_id: str, status: PlanStatus | str) -> LearningPlan:
        target = PlanStatus(status)
        plan = self.get_plan(plan_id)
        if target is plan.status:
            return plan
        if target not in _STATUS_TRANSITIONS[plan.status]:
            raise ValueError(f"Plan status cannot change from {plan.status.value} to {target.value}")
        if target is PlanStatus.ACTIVE:
            with self._create_lock:
                self.ensure_can_create_plan(plan.student_id, plan.goal_id)
                db.update_plan(plan_id, {"status": target.value, "updated_at": db.to_iso(self._clock())})
        else:
            db.update_plan(plan_id, {"status": target.value, "updated_at": db.to_iso(self._clock())})
        return self.get_plan(plan_id)


__all__ = [
    "LearningPlan",
    "Milestone",
    "PlanGenerator",
    "PlanStatus",
    "build_milestones",
]
