"""Pydantic request and response schemas for the HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

__all__ = [
    "AdvanceConceptRequest",
    "AnswerRequest",
    "BranchTreeResponse",
    "EndSessionRequest",
    "EtaResponse",
    "GateResponse",
    "MasteryRecordModel",
    "PlanRequest",
    "PlanStatusRequest",
    "PlanResponse",
    "RetentionProbeRequest",
    "StartSessionRequest",
    "TransitionResponse",
]


# ---------- requests ----------
class StartSessionRequest(BaseModel):
    student_id: str = Field(min_length=1)
    concept_id: str = Field(min_length=1, description="Concept taught first in the session.")
    emotional_state: Optional[str] = Field(
        default=None, description="Self-reported mood snapshot at session start."
    )


class AnswerRequest(BaseModel):
    is_correct: bool
    question_type: str = Field(
        min_length=1,
        description="Question format (e.g. multiple_choice, word_problem); consistency counts distinct types.",
    )
    response_time_ms: int = Field(ge=0, description="Time the student took to answer, in milliseconds.")


class AdvanceConceptRequest(BaseModel):
    concept_id: Optional[str] = Field(
        default=None,
        description="Concept chosen by the student; the engine's recommendation is used when omitted.",
    )


class EndSessionRequest(BaseModel):
    emotional_state: Optional[str] = Field(default=None, description="Mood snapshot at session end.")


class PlanRequest(BaseModel):
    student_id: str = Field(min_length=1)
    goal_id: str = Field(min_length=1)
    weekly_hours_available: float = Field(gt=0, description="Study hours the student can spend per week.")
    target_date: Optional[datetime] = Field(default=None, description="Desired completion date, if any.")
    student_grade: Optional[str] = Field(
        default=None, description="Grade level (K, G1 .. G12) used to scale hour estimates."
    )


class PlanStatusRequest(BaseModel):
    status: Literal["ACTIVE", "PAUSED", "COMPLETED", "ABANDONED"]


class RetentionProbeRequest(BaseModel):
    score: float = Field(ge=0.0, le=1.0, description="Result of a delayed re-test in [0, 1].")


# ---------- responses ----------
class MasteryRecordModel(BaseModel):
    student_id: str
    concept_id: str
    bkt_probability: float
    level: str
    practice_count: int
    correct_count: int
    last_practiced_at: Optional[str] = None
    next_review_at: Optional[str] = None
    retention_score: Optional[float] = None
    speed_trend_ms: Optional[float] = None
    version: int = 0


class CriterionModel(BaseModel):
    score: float
    passed: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class GateResponse(BaseModel):
    passed: bool
    recommendation: str = Field(description="advance, fluency_drill, retention_review or practice.")
    total_responses: int
    insufficient_data: bool = False
    criteria: Dict[str, CriterionModel]


class TransitionResponse(BaseModel):
    session_id: str
    previous_state: str
    new_state: str
    event: str
    recommended_action: str
    narrative: Optional[Dict[str, Any]] = Field(
        default=None, description="Oracle or canned content; 'source' tells which."
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)
    current_concept_id: Optional[str] = None
    next_concept: Optional[Dict[str, Any]] = None
    gate: Optional[GateResponse] = None
    mastery: Optional[MasteryRecordModel] = None
    summary: Optional[Dict[str, Any]] = None


class MilestoneModel(BaseModel):
    week_number: int
    concept_ids: List[str]
    estimated_hours: float
    cumulative_progress: int
    concept_hours: Dict[str, float] = Field(default_factory=dict)


class PlanResponse(BaseModel):
    id: str
    student_id: str
    goal_id: str
    status: str
    concept_sequence: List[str]
    current_concept_index: int
    current_concept_id: Optional[str] = None
    total_estimated_hours: float
    hours_completed: float
    velocity_hours_per_week: float
    weekly_hours_available: float
    target_completion_date: Optional[str] = None
    projected_completion_date: str
    is_ahead_of_schedule: bool
    milestones: List[MilestoneModel]
    narrative: Optional[str] = None
    created_at: str
    updated_at: str


class EtaResponse(BaseModel):
    plan_id: str
    concepts_remaining: int
    concepts_mastered: int
    total_concepts: int
    hours_remaining: float
    velocity_hours_per_week: float
    projected_completion_date: str
    target_completion_date: Optional[str] = None
    is_ahead_of_schedule: bool
    days_difference: int = Field(description="Positive when ahead of schedule, negative when behind.")
    progress_percentage: int
    schedule_message: str
    velocity_trend: str
    insight: Optional[str] = None


class BranchNodeModel(BaseModel):
    concept_id: str
    code: str
    title: str
    bkt_probability: float
    mastered: bool
    is_current: bool


class BranchModel(BaseModel):
    id: str
    name: str
    domain: str
    grade_level: str
    concept_ids: List[str]
    prerequisite_branch_ids: List[str]
    is_advanced: bool
    unlocked: bool
    completed: bool
    progress_percent: int
    mastered_count: int
    total_concepts: int
    next_concept_id: Optional[str] = None
    nodes: List[BranchNodeModel]


class BranchTreeResponse(BaseModel):
    student_id: str
    branches: List[BranchModel]
    unlocked_branch_ids: List[str]
    active_branch_id: Optional[str] = None
