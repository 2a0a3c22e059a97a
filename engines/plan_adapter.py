"""Rules run against a student's plans after every completed session."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import db
from content_oracle import SCHEDULE_MESSAGE, ContentOracle
from engine_config import ENGINE_CONFIG, EngineConfigRegistry
from engines.base import log_json
from engines.branch_tree import BranchTreeEngine
from engines.errors import EngineError, NotFoundError
from engines.plan_generator import LearningPlan, PlanStatus
from knowledge_graph import KnowledgeGraph

logger = logging.getLogger(__name__)

SLOW_CONCEPT_MULTIPLIER = 2.0
FAST_CONCEPT_DISCOUNT = 0.85
INACTIVITY_THRESHOLD_DAYS = 3
REVIEW_PROBABILITY = 0.9
BEHIND_SCHEDULE_THRESHOLD_DAYS = 14
AHEAD_SCHEDULE_THRESHOLD_DAYS = 28


@dataclass
class AdaptationAction:
    rule: str
    description: str
    applied: bool
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "description": self.description,
            "applied": self.applied,
            "details": self.details,
        }


@dataclass
class AdaptationResult:
    plan_id: str
    actions: List[AdaptationAction] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def applied_rules(self) -> List[str]:
        return [action.rule for action in self.actions if action.applied]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "actions": [action.to_dict() for action in self.actions],
            "applied_rules": self.applied_rules,
            "message": self.message,
        }


def _days_between(later, earlier) -> float:
    return (later - earlier).total_seconds() / 86400


class PlanAdapter:
    """Evaluate the six post-session adaptation rules for a plan."""

    def __init__(
        self,
        graph: KnowledgeGraph,
        *,
        config: Optional[EngineConfigRegistry] = None,
        oracle: Optional[ContentOracle] = None,
        branch_engine: Optional[BranchTreeEngine] = None,
    ) -> None:
        self.graph = graph
        self.config = config or ENGINE_CONFIG
        self.oracle = oracle
        self.branch_engine = branch_engine

    # ------------------------------------------------------------------
    def adapt_plan_after_session(self, plan_id: str, session_id: str) -> Optional[AdaptationResult]:
        """Return the evaluated rules, or ``None`` when the plan is not active."""

        row = db.get_plan(plan_id)
        if row is None:
            raise NotFoundError("learning plan", plan_id)
        plan = LearningPlan.from_row(row)
        if plan.status is not PlanStatus.ACTIVE:
            return None

        recent = db.list_completed_sessions(plan.student_id, limit=10)
        session = next((entry for entry in recent if entry["id"] == session_id), None) or db.get_session(session_id)

        result = AdaptationResult(plan_id=plan_id)
        result.actions.append(self._slow_concept(plan, session))
        result.actions.append(self._fast_learner(plan, recent))
        result.actions.append(self._inactivity_review(plan, recent))
        result.actions.append(self._failed_retention(plan))

        behind, behind_message = self._behind_schedule(plan)
        result.actions.append(behind)
        ahead, ahead_message = self._ahead_of_schedule(plan)
        result.actions.append(ahead)
        result.message = behind_message or ahead_message

        if result.applied_rules:
            log_json(
                logger,
                "plan_adapted",
                {"plan_id": plan_id, "session_id": session_id, "rules": result.applied_rules},
            )
        return result

    def adapt_plans_after_session(self, student_id: str, session_id: str) -> List[AdaptationResult]:
        results: List[AdaptationResult] = []
        for row in db.list_plans(student_id, PlanStatus.ACTIVE.value):
            try:
                result = self.adapt_plan_after_session(row["id"], session_id)
            except EngineError as exc:
                log_json(
                    logger,
                    "plan_adaptation_failed",
                    {"plan_id": row["id"], "error": str(exc)},
                    logging.ERROR,
                )
                continue
            if result is not None:
                results.append(result)
        return results

    # ------------------------------------------------------------------
    def _estimate_for(self, plan: LearningPlan, concept_id: str) -> Optional[float]:
        estimate = plan.concept_hours.get(concept_id)
        if estimate is not None:
            return estimate
        node = self.graph.get_node(concept_id)
        if node is None:
            return None
        return self.config.hours_for_difficulty(node.difficulty)

    def _slow_concept(self, plan: LearningPlan, session: Optional[Mapping[str, Any]]) -> AdaptationAction:
        rule = "slow_concept"
        if not session or not session.get("current_concept_id") or not session.get("duration_seconds"):
            return AdaptationAction(rule, "No timed concept in this session", False)
        concept_id = session["current_concept_id"]
        estimated = self._estimate_for(plan, concept_id)
        node = self.graph.get_node(concept_id)
        if estimated is None or node is None:
            return AdaptationAction(rule, "Concept is not part of the catalog", False)
        actual = float(session["duration_seconds"]) / 3600
        if actual <= estimated * SLOW_CONCEPT_MULTIPLIER or concept_id not in plan.concept_sequence:
            return AdaptationAction(rule, "Concept was within expected time range", False)

        index = plan.concept_sequence.index(concept_id)
        similar = []
        for other in plan.concept_sequence[index + 1 :]:
            other_node = self.graph.get_node(other)
            if other_node is not None and abs(other_node.difficulty - node.difficulty) <= 1:
                similar.append(other)
        if not similar:
            return AdaptationAction(rule, "No similar concepts left in the plan", False)
        return AdaptationAction(
            rule,
            f"{node.code} took {round(actual * 60)}min (estimated {round(estimated * 60)}min). "
            f"{len(similar)} similar concepts may also take longer.",
            True,
            f"actual={actual:.2f}h estimated={estimated:.2f}h ratio={actual / estimated:.1f}x",
        )

    def _fast_learner(self, plan: LearningPlan, recent: Sequence[Mapping[str, Any]]) -> AdaptationAction:
        rule = "fast_learner"
        last_three = list(recent[:3])
        if len(last_three) < 3:
            return AdaptationAction(rule, "Not enough sessions to evaluate pace", False)
        for session in last_three:
            concept_id = session.get("current_concept_id")
            duration = session.get("duration_seconds")
            estimated = self._estimate_for(plan, concept_id) if concept_id else None
            if not duration or estimated is None:
                return AdaptationAction(rule, "Pace is within normal range", False)
            if float(duration) / 3600 >= estimated * FAST_CONCEPT_DISCOUNT:
                return AdaptationAction(rule, "Pace is within normal range", False)
        return AdaptationAction(
            rule,
            "Last 3 concepts completed faster than estimated. Velocity adjustment reflected in ETA.",
            True,
            f"discount={FAST_CONCEPT_DISCOUNT}",
        )

    def _inactivity_review(self, plan: LearningPlan, recent: Sequence[Mapping[str, Any]]) -> AdaptationAction:
        rule = "inactivity_review"
        if len(recent) < 2:
            return AdaptationAction(rule, "Not enough sessions to check inactivity", False)
        latest = db.parse_timestamp(recent[0].get("started_at"))
        previous = db.parse_timestamp(recent[1].get("started_at"))
        if latest is None or previous is None:
            return AdaptationAction(rule, "No significant gap detected", False)
        gap = _days_between(latest, previous)
        if gap < INACTIVITY_THRESHOLD_DAYS:
            return AdaptationAction(rule, "No significant gap detected", False)

        start = max(0, plan.current_concept_index - 2)
        review = plan.concept_sequence[start : plan.current_concept_index]
        mastery = {row["concept_id"]: row for row in db.list_mastery(plan.student_id, review)} if review else {}
        needs_review = [
            concept_id
            for concept_id in review
            if float((mastery.get(concept_id) or {}).get("bkt_probability") or 0.0) < REVIEW_PROBABILITY
        ]
        if not needs_review:
            return AdaptationAction(rule, "Recent concepts are still solid", False)
        return AdaptationAction(
            rule,
            f"{round(gap)}-day gap detected. {len(needs_review)} recent concept(s) may need review: "
            + ", ".join(needs_review),
            True,
            f"gap={gap:.1f}d review={len(needs_review)}",
        )

    def _failed_retention(self, plan: LearningPlan) -> AdaptationAction:
        rule = "failed_retention"
        threshold = self.config.gate.retention_threshold
        practised = plan.concept_sequence[: plan.current_concept_index]
        if not practised:
            return AdaptationAction(rule, "No completed concepts to re-check", False)
        failed = [
            row["concept_id"]
            for row in db.list_mastery(plan.student_id, practised)
            if row.get("retention_score") is not None and float(row["retention_score"]) < threshold
        ]
        if not failed:
            return AdaptationAction(rule, "Retention checks are passing", False)
        return AdaptationAction(
            rule,
            f"{len(failed)} concept(s) failed a retention check: {', '.join(failed)}",
            True,
            "re-review: " + ", ".join(failed),
        )

    def _message(self, context: Dict[str, Any], fallback: str) -> str:
        if self.oracle is None:
            return fallback
        result = self.oracle.content_for(SCHEDULE_MESSAGE, context)
        return fallback if result.is_fallback else result.fields["message"]

    def _behind_schedule(self, plan: LearningPlan):
        rule = "behind_schedule"
        target = plan.target_completion_date
        if plan.is_ahead_of_schedule or target is None:
            return AdaptationAction(rule, "On schedule or no target date set", False), None
        days_behind = round(_days_between(plan.projected_completion_date, target))
        if days_behind <= BEHIND_SCHEDULE_THRESHOLD_DAYS:
            description = f"{days_behind} days behind but within threshold" if days_behind > 0 else "On schedule"
            return AdaptationAction(rule, description, False), None
        goal = self.graph.get_goal(plan.goal_id)
        message = self._message(
            {"goal": goal.name, "days_behind": days_behind, "tone": "encouraging, one small actionable step"},
            f'You\'re {days_behind} days behind on "{goal.name}". Try adding one extra 15-minute session this week to catch up!',
        )
        return (
            AdaptationAction(
                rule,
                f"{days_behind} days behind target. Plan review triggered.",
                True,
                f"projected={db.to_iso(plan.projected_completion_date)} target={db.to_iso(target)}",
            ),
            message,
        )

    def _ahead_of_schedule(self, plan: LearningPlan):
        rule = "ahead_of_schedule"
        target = plan.target_completion_date
        if not plan.is_ahead_of_schedule or target is None:
            return AdaptationAction(rule, "Not ahead or no target date", False), None
        days_ahead = round(_days_between(target, plan.projected_completion_date))
        if days_ahead <= AHEAD_SCHEDULE_THRESHOLD_DAYS:
            description = f"{days_ahead} days ahead but within normal range" if days_ahead > 0 else "On schedule"
            return AdaptationAction(rule, description, False), None

        advanced: List[str] = []
        if self.branch_engine is not None:
            advanced = [
                state.branch.id
                for state in self.branch_engine.branch_states(plan.student_id)
                if state.branch.is_advanced and state.unlocked and not state.completed
            ]
        goal = self.graph.get_goal(plan.goal_id)
        message = self._message(
            {"goal": goal.name, "days_ahead": days_ahead, "tone": "celebratory, suggest an advanced challenge"},
            f'Wow, {days_ahead} days ahead on "{goal.name}"! You might be ready for some advanced challenges!',
        )
        details = f"projected={db.to_iso(plan.projected_completion_date)} target={db.to_iso(target)}"
        if advanced:
            details += " advanced_branches=" + ",".join(advanced)
        return (
            AdaptationAction(
                rule,
                f"{days_ahead} days ahead of target. Advanced branch suggestion triggered.",
                True,
                details,
            ),
            message,
        )


__all__ = [
    "AdaptationAction",
    "AdaptationResult",
    "PlanAdapter",
]
