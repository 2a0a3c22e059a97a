"""Per-session finite state machine driving teaching, practice and celebration.

Transitions are validated against an explicit table and committed together
with their event log row in one transaction. Narrative content is requested
from the content oracle only after the commit, so an oracle outage can never
block or roll back a transition.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import db
import notifications
from content_oracle import CELEBRATING, HINT, STRUGGLING, TEACHING, ContentOracle, ContentResult, fallback_content
from engine_config import ENGINE_CONFIG, EngineConfigRegistry, MasteryLevel
from engines.base import Clock, log_json, utcnow
from engines.bkt import MasteryModel, MasteryRecord
from engines.branch_tree import BranchTreeEngine
from engines.errors import ConcurrencyConflictError, EngineError, InvalidTransitionError, NotFoundError
from engines.eta import EtaCalculator
from engines.mastery_gate import ADVANCE, GateResult, MasteryGate
from engines.plan_adapter import PlanAdapter
from engines.plan_generator import PlanGenerator
from knowledge_graph import ConceptNode, KnowledgeGraph

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    TEACHING = "TEACHING"
    PRACTICE = "PRACTICE"
    HINT_REQUESTED = "HINT_REQUESTED"
    STRUGGLING = "STRUGGLING"
    CELEBRATING = "CELEBRATING"
    COMPLETED = "COMPLETED"


class SessionEvent(str, Enum):
    START_SESSION = "START_SESSION"
    SUBMIT_ANSWER = "SUBMIT_ANSWER"
    REQUEST_HINT = "REQUEST_HINT"
    RETURN_TO_PRACTICE = "RETURN_TO_PRACTICE"
    MASTERY_ACHIEVED = "MASTERY_ACHIEVED"
    STRUGGLE_DETECTED = "STRUGGLE_DETECTED"
    ADVANCE_CONCEPT = "ADVANCE_CONCEPT"
    END_SESSION = "END_SESSION"


S = SessionState
E = SessionEvent

# (state, event) -> allowed destinations; the first one is the default.
TRANSITIONS: Dict[Tuple[SessionState, SessionEvent], Tuple[SessionState, ...]] = {
    (S.TEACHING, E.SUBMIT_ANSWER): (S.PRACTICE, S.CELEBRATING, S.STRUGGLING),
    (S.PRACTICE, E.SUBMIT_ANSWER): (S.PRACTICE, S.CELEBRATING, S.STRUGGLING),
    (S.PRACTICE, E.REQUEST_HINT): (S.HINT_REQUESTED,),
    (S.HINT_REQUESTED, E.RETURN_TO_PRACTICE): (S.PRACTICE,),
    (S.STRUGGLING, E.RETURN_TO_PRACTICE): (S.PRACTICE,),
    (S.TEACHING, E.MASTERY_ACHIEVED): (S.CELEBRATING,),
    (S.PRACTICE, E.MASTERY_ACHIEVED): (S.CELEBRATING,),
    (S.PRACTICE, E.STRUGGLE_DETECTED): (S.STRUGGLING,),
    (S.CELEBRATING, E.ADVANCE_CONCEPT): (S.TEACHING,),
    (S.TEACHING, E.END_SESSION): (S.COMPLETED,),
    (S.PRACTICE, E.END_SESSION): (S.COMPLETED,),
    (S.HINT_REQUESTED, E.END_SESSION): (S.COMPLETED,),
    (S.STRUGGLING, E.END_SESSION): (S.COMPLETED,),
    (S.CELEBRATING, E.END_SESSION): (S.COMPLETED,),
}

RECOMMENDED_ACTIONS: Dict[SessionState, str] = {
    S.TEACHING: "present_concept_explanation",
    S.PRACTICE: "present_practice_problem",
    S.HINT_REQUESTED: "provide_hint",
    S.STRUGGLING: "offer_simpler_approach",
    S.CELEBRATING: "show_mastery_celebration",
    S.COMPLETED: "show_session_summary",
}

_NARRATIVE_KIND: Dict[SessionState, str] = {
    S.TEACHING: TEACHING,
    S.HINT_REQUESTED: HINT,
    S.STRUGGLING: STRUGGLING,
    S.CELEBRATING: CELEBRATING,
}


def allowed_events(state: SessionState | str) -> List[SessionEvent]:
    state = SessionState(state)
    return [event for (source, event) in TRANSITIONS if source is state]


def transition(
    state: SessionState | str,
    event: SessionEvent | str,
    destination: Optional[SessionState] = None,
) -> SessionState:
    """Resolve ``event`` in ``state``; raises ``InvalidTransitionError`` without a rule."""

    state = SessionState(state)
    event = SessionEvent(event)
    targets = TRANSITIONS.get((state, event))
    if targets is None:
        raise InvalidTransitionError(
            state.value, event.value, [allowed.value for allowed in allowed_events(state)]
        )
    if destination is None:
        return targets[0]
    if destination not in targets:
        raise InvalidTransitionError(state.value, f"{event.value}->{destination.value}")
    return destination


@dataclass
class TransitionResult:
    session_id: str
    previous_state: SessionState
    new_state: SessionState
    event: SessionEvent
    recommended_action: str
    narrative: Optional[ContentResult] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    current_concept_id: Optional[str] = None
    next_concept: Optional[ConceptNode] = None
    gate: Optional[GateResult] = None
    mastery: Optional[MasteryRecord] = None
    summary: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "previous_state": self.previous_state.value,
            "new_state": self.new_state.value,
            "event": self.event.value,
            "recommended_action": self.recommended_action,
            "narrative": self.narrative.to_dict() if self.narrative else None,
            "metadata": dict(self.metadata),
            "current_concept_id": self.current_concept_id,
            "next_concept": self.next_concept.to_dict() if self.next_concept else None,
            "gate": self.gate.to_dict() if self.gate else None,
            "mastery": self.mastery.to_dict() if self.mastery else None,
            "summary": self.summary,
        }


class SessionEngine:
    """Orchestrates one learning session at a time per ``session_id``.

    Only ``mastery_model`` and ``gate`` are required. Plans, branches, ETA
    and adaptation are consulted when their engines are supplied.
    """

    def __init__(
        self,
        graph: KnowledgeGraph,
        mastery_model: MasteryModel,
        gate: MasteryGate,
        *,
        plan_generator: Optional[PlanGenerator] = None,
        branch_engine: Optional[BranchTreeEngine] = None,
        eta_calculator: Optional[EtaCalculator] = None,
        plan_adapter: Optional[PlanAdapter] = None,
        oracle: Optional[ContentOracle] = None,
        notify: Callable[..., Any] = notifications.publish,
        config: Optional[EngineConfigRegistry] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.graph = graph
        self.mastery_model = mastery_model
        self.gate = gate
        self.plan_generator = plan_generator
        self.branch_engine = branch_engine
        self.eta_calculator = eta_calculator
        self.plan_adapter = plan_adapter
        self.oracle = oracle
        self.notify = notify
        self.config = config or ENGINE_CONFIG
        self._clock = clock or utcnow

    # ----- reads -------------------------------------------------------
    def _require_session(self, session_id: str) -> Dict[str, Any]:
        session = db.get_session(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    def get_session(self, session_id: str) -> Dict[str, Any]:
        session = self._require_session(session_id)
        state = SessionState(session["state"])
        session["recommended_action"] = RECOMMENDED_ACTIONS[state]
        session["allowed_events"] = [event.value for event in allowed_events(state)]
        return session

    # ----- operations --------------------------------------------------
    def start_session(
        self, student_id: str, concept_id: str, emotional_state: Optional[str] = None
    ) -> TransitionResult:
        if not student_id:
            raise ValueError("student_id is required")
        node = self.graph.require_node(concept_id)
        session_id = uuid.uuid4().hex
        now = self._clock()
        with db.transaction() as con:
            db.create_session(session_id, student_id, S.TEACHING.value, node.id, now, emotional_state, con=con)
            db.insert_session_event(
                session_id,
                E.START_SESSION.value,
                "",
                S.TEACHING.value,
                {"concept_id": node.id, "emotional_state": emotional_state},
                created_at=now,
                con=con,
            )
        log_json(logger, "session_started", {"session_id": session_id, "student_id": student_id, "concept_id": node.id})
        return TransitionResult(
            session_id=session_id,
            previous_state=S.TEACHING,
            new_state=S.TEACHING,
            event=E.START_SESSION,
            recommended_action=RECOMMENDED_ACTIONS[S.TEACHING],
            narrative=self._narrative(S.TEACHING, student_id, node),
            current_concept_id=node.id,
        )

    def submit_answer(
        self,
        session_id: str,
        is_correct: bool,
        question_type: str,
        response_time_ms: int,
    ) -> TransitionResult:
        session = self._require_session(session_id)
        state = SessionState(session["state"])
        transition(state, E.SUBMIT_ANSWER)
        concept_id = session.get("current_concept_id")
        if not concept_id:
            raise ValueError(f"Session {session_id} has no concept to answer")
        student_id = session["student_id"]

        record = self.mastery_model.record_answer(
            student_id,
            concept_id,
            bool(is_correct),
            question_type,
            int(response_time_ms),
            session_id=session_id,
        )

        wrong_streak = self._wrong_streak(student_id, concept_id)
        struggle = self.config.struggle
        struggling = wrong_streak >= struggle.wrong_streak and record.bkt_probability < struggle.bkt_threshold

        gate_result: Optional[GateResult] = None
        if not struggling and is_correct and record.is_mastered:
            gate_result = self.gate.evaluate_gate(student_id, concept_id)
        celebrating = gate_result is not None and gate_result.recommendation == ADVANCE

        # Struggle wins when both guards hold.
        if struggling:
            destination = S.STRUGGLING
            event = E.STRUGGLE_DETECTED if (state, E.STRUGGLE_DETECTED) in TRANSITIONS else E.SUBMIT_ANSWER
        elif celebrating:
            destination = S.CELEBRATING
            event = E.MASTERY_ACHIEVED
        else:
            destination = S.PRACTICE
            event = E.SUBMIT_ANSWER
        transition(state, event, destination)

        metadata: Dict[str, Any] = {
            "concept_id": concept_id,
            "is_correct": bool(is_correct),
            "question_type": question_type,
            "bkt_probability": round(record.bkt_probability, 4),
            "level": record.level.value,
            "wrong_streak": wrong_streak,
        }
        if struggling:
            metadata["reason"] = "wrong_streak_low_bkt"
        elif celebrating:
            metadata["reason"] = "gate_advance"
        elif gate_result is not None:
            metadata["reason"] = f"gate_{gate_result.recommendation}"

        fields: Dict[str, Any] = {"state": destination.value}
        if celebrating:
            # the state guard protects this list; PRACTICE -> PRACTICE never writes it
            mastered = list(session.get("concepts_mastered") or [])
            if concept_id not in mastered:
                mastered.append(concept_id)
            fields["concepts_mastered"] = mastered
        self._commit(
            session_id,
            state,
            destination,
            event,
            fields,
            metadata,
            increments={"questions_answered": 1, "correct_answers": 1 if is_correct else 0},
        )

        next_concept = None
        if celebrating:
            next_concept = self._on_mastery(session, concept_id, record)
            metadata["next_concept_id"] = next_concept.id if next_concept else None
        elif destination is S.PRACTICE and self.oracle is not None:
            node = self.graph.require_node(concept_id)
            self.oracle.prefetch((session_id, concept_id), HINT, self._context(student_id, node))

        node = self.graph.require_node(concept_id)
        narrative = None
        if destination in (S.STRUGGLING, S.CELEBRATING):
            narrative = self._narrative(destination, student_id, node, next_concept)
        return TransitionResult(
            session_id=session_id,
            previous_state=state,
            new_state=destination,
            event=event,
            recommended_action=RECOMMENDED_ACTIONS[destination],
            narrative=narrative,
            metadata=metadata,
            current_concept_id=concept_id,
            next_concept=next_concept,
            gate=gate_result,
            mastery=record,
        )

    def request_hint(self, session_id: str) -> TransitionResult:
        session = self._require_session(session_id)
        state = SessionState(session["state"])
        destination = transition(state, E.REQUEST_HINT)
        concept_id = session.get("current_concept_id")
        metadata = {"concept_id": concept_id, "hints_used": int(session["hints_used"]) + 1}
        self._commit(
            session_id,
            state,
            destination,
            E.REQUEST_HINT,
            {"state": destination.value},
            metadata,
            increments={"hints_used": 1},
        )
        narrative = None
        node = self.graph.get_node(concept_id) if concept_id else None
        if node is not None:
            context = self._context(session["student_id"], node)
            if self.oracle is None:
                narrative = fallback_content(HINT, "no_oracle")
            else:
                narrative = self.oracle.take_prefetched((session_id, concept_id), HINT, context)
        return TransitionResult(
            session_id=session_id,
            previous_state=state,
            new_state=destination,
            event=E.REQUEST_HINT,
            recommended_action=RECOMMENDED_ACTIONS[destination],
            narrative=narrative,
            metadata=metadata,
            current_concept_id=concept_id,
        )

    def return_to_practice(self, session_id: str) -> TransitionResult:
        session = self._require_session(session_id)
        state = SessionState(session["state"])
        destination = transition(state, E.RETURN_TO_PRACTICE)
        metadata = {"concept_id": session.get("current_concept_id"), "from": state.value}
        self._commit(session_id, state, destination, E.RETURN_TO_PRACTICE, {"state": destination.value}, metadata)
        return TransitionResult(
            session_id=session_id,
            previous_state=state,
            new_state=destination,
            event=E.RETURN_TO_PRACTICE,
            recommended_action=RECOMMENDED_ACTIONS[destination],
            metadata=metadata,
            current_concept_id=session.get("current_concept_id"),
        )

    def advance_concept(self, session_id: str, concept_id: Optional[str] = None) -> TransitionResult:
        """Leave the celebration for ``concept_id`` or the next recommended concept.

        With nothing left to recommend the session is completed instead.
        """

        session = self._require_session(session_id)
        state = SessionState(session["state"])
        destination = transition(state, E.ADVANCE_CONCEPT)
        student_id = session["student_id"]
        if concept_id is not None:
            node: Optional[ConceptNode] = self.graph.require_node(concept_id)
        else:
            node = self._next_concept(student_id, exclude=session.get("concepts_mastered") or ())
        if node is None:
            result = self.end_session(session_id)
            result.metadata["reason"] = "curriculum_exhausted"
            return result

        metadata = {"from_concept_id": session.get("current_concept_id"), "concept_id": node.id}
        self._commit(
            session_id,
            state,
            destination,
            E.ADVANCE_CONCEPT,
            {"state": destination.value, "current_concept_id": node.id},
            metadata,
        )
        return TransitionResult(
            session_id=session_id,
            previous_state=state,
            new_state=destination,
            event=E.ADVANCE_CONCEPT,
            recommended_action=RECOMMENDED_ACTIONS[destination],
            narrative=self._narrative(destination, student_id, node),
            metadata=metadata,
            current_concept_id=node.id,
        )

    def end_session(self, session_id: str, emotional_state: Optional[str] = None) -> TransitionResult:
        session = self._require_session(session_id)
        state = SessionState(session["state"])
        if state is S.COMPLETED:
            return self._completed_result(session)
        destination = transition(state, E.END_SESSION)

        now = self._clock()
        started = db.parse_timestamp(session["started_at"]) or now
        elapsed = max(0, int((now - started).total_seconds()))
        abandoned = elapsed > self.config.max_session_seconds
        duration = 0 if abandoned else elapsed
        answered = int(session["questions_answered"])
        correct = int(session["correct_answers"])
        summary = {
            "questions_answered": answered,
            "correct_answers": correct,
            "accuracy": round(correct / answered, 4) if answered else 0.0,
            "hints_used": int(session["hints_used"]),
            "duration_seconds": duration,
            "abandoned": abandoned,
            "concepts_mastered": list(session.get("concepts_mastered") or []),
            "emotional_state_start": session.get("emotional_state_start"),
            "emotional_state_end": emotional_state,
        }
        fields = {
            "state": destination.value,
            "ended_at": db.to_iso(now),
            "duration_seconds": duration,
            "emotional_state_end": emotional_state,
            "summary": summary,
        }
        try:
            self._commit(session_id, state, destination, E.END_SESSION, fields, {"abandoned": abandoned})
        except ConcurrencyConflictError:
            current = self._require_session(session_id)
            if current["state"] == S.COMPLETED.value:
                return self._completed_result(current)
            raise

        self.notify(notifications.SESSION_COMPLETED, session["student_id"], {"session_id": session_id, **summary})
        metadata: Dict[str, Any] = {"abandoned": abandoned}
        adaptations = self._after_session(session["student_id"], session_id)
        if adaptations:
            metadata["adaptations"] = adaptations
        return TransitionResult(
            session_id=session_id,
            previous_state=state,
            new_state=destination,
            event=E.END_SESSION,
            recommended_action=RECOMMENDED_ACTIONS[destination],
            metadata=metadata,
            current_concept_id=session.get("current_concept_id"),
            summary=summary,
        )

    # ----- internals ---------------------------------------------------
    def _commit(
        self,
        session_id: str,
        state: SessionState,
        destination: SessionState,
        event: SessionEvent,
        fields: Mapping[str, Any],
        metadata: Mapping[str, Any],
        *,
        increments: Optional[Mapping[str, int]] = None,
    ) -> None:
        now = self._clock()
        with db.transaction() as con:
            if not db.update_session(
                session_id, fields, increments=increments, expected_state=state.value, con=con
            ):
                raise ConcurrencyConflictError(f"Session {session_id} changed state concurrently")
            db.insert_session_event(
                session_id, event.value, state.value, destination.value, dict(metadata), created_at=now, con=con
            )
        log_json(
            logger,
            "session_transition",
            {
                "session_id": session_id,
                "event": event.value,
                "from": state.value,
                "to": destination.value,
                "metadata": dict(metadata),
            },
        )

    def _completed_result(self, session: Mapping[str, Any]) -> TransitionResult:
        return TransitionResult(
            session_id=session["id"],
            previous_state=S.COMPLETED,
            new_state=S.COMPLETED,
            event=E.END_SESSION,
            recommended_action=RECOMMENDED_ACTIONS[S.COMPLETED],
            metadata={"already_completed": True},
            current_concept_id=session.get("current_concept_id"),
            summary=session.get("summary"),
        )

    def _wrong_streak(self, student_id: str, concept_id: str) -> int:
        streak = 0
        for response in db.list_recent_responses(student_id, concept_id, limit=self.config.gate.window):
            if response["is_correct"]:
                break
            streak += 1
        return streak

    def _concept_started_at(self, session_id: str) -> Optional[datetime]:
        started = None
        for entry in db.list_session_events(session_id):
            if entry["to_state"] == S.TEACHING.value:
                started = db.parse_timestamp(entry["created_at"])
        return started

    def _on_mastery(self, session: Mapping[str, Any], concept_id: str, record: MasteryRecord) -> Optional[ConceptNode]:
        student_id = session["student_id"]
        self.notify(
            notifications.MASTERY_ACHIEVED,
            student_id,
            {
                "session_id": session["id"],
                "concept_id": concept_id,
                "bkt_probability": round(record.bkt_probability, 4),
            },
        )
        if self.plan_generator is not None:
            now = self._clock()
            started = self._concept_started_at(session["id"]) or db.parse_timestamp(session["started_at"]) or now
            elapsed_hours = max(0.0, (now - started).total_seconds() / 3600)
            for plan in self.plan_generator.get_active_plans(student_id):
                if plan.current_concept_id == concept_id:
                    self.plan_generator.advance_plan(plan.id, concept_id, round(elapsed_hours, 4))
        mastered = set(session.get("concepts_mastered") or ()) | {concept_id}
        return self._next_concept(student_id, exclude=mastered)

    def _next_concept(self, student_id: str, exclude: Iterable[str] = ()) -> Optional[ConceptNode]:
        """Plan cursor first, then the branch tree; ``None`` when nothing is left."""

        excluded = set(exclude)
        if self.plan_generator is not None:
            for plan in self.plan_generator.get_active_plans(student_id):
                concept_id = plan.current_concept_id
                if concept_id and concept_id not in excluded:
                    return self.graph.get_node(concept_id)
        if self.branch_engine is not None:
            return self.branch_engine.get_next_branch_node(student_id, exclude=excluded)
        return None

    def _after_session(self, student_id: str, session_id: str) -> List[Dict[str, Any]]:
        if self.plan_generator is None:
            return []
        if self.eta_calculator is not None:
            for plan in self.plan_generator.get_active_plans(student_id):
                try:
                    self.eta_calculator.recalculate_eta(plan.id)
                except EngineError as exc:
                    log_json(
                        logger,
                        "eta_update_failed",
                        {"plan_id": plan.id, "session_id": session_id, "error": str(exc)},
                        logging.ERROR,
                    )
        if self.plan_adapter is None:
            return []
        return [result.to_dict() for result in self.plan_adapter.adapt_plans_after_session(student_id, session_id)]

    def _context(
        self, student_id: str, node: ConceptNode, next_concept: Optional[ConceptNode] = None
    ) -> Dict[str, Any]:
        record = self.mastery_model.get_mastery(student_id, node.id)
        context: Dict[str, Any] = {
            "concept_code": node.code,
            "concept_title": node.title,
            "grade_level": node.grade_level,
            "domain": node.domain,
            "mastery_level": record.level.value if record else MasteryLevel.NOVICE.value,
        }
        if next_concept is not None:
            context["next_concept_title"] = next_concept.title
        return context

    def _narrative(
        self,
        state: SessionState,
        student_id: str,
        node: ConceptNode,
        next_concept: Optional[ConceptNode] = None,
    ) -> Optional[ContentResult]:
        kind = _NARRATIVE_KIND.get(state)
        if kind is None:
            return None
        if self.oracle is None:
            return fallback_content(kind, "no_oracle")
        return self.oracle.content_for(kind, self._context(student_id, node, next_concept))


__all__ = [
    "RECOMMENDED_ACTIONS",
    "SessionEngine",
    "SessionEvent",
    "SessionState",
    "TRANSITIONS",
    "TransitionResult",
    "allowed_events",
    "transition",
]
