"""Tests for the session state machine and its engine."""

import threading

import pytest

from content_oracle import ContentOracle
import db
from engines.bkt import MasteryModel
from engines.branch_tree import BranchTreeEngine
from engines.eta import EtaCalculator
from engines.errors import ConcurrencyConflictError, InvalidTransitionError, NotFoundError
from engines.mastery_gate import MasteryGate
from engines.plan_adapter import PlanAdapter
from engines.plan_generator import PlanGenerator
from engines.session_machine import (
    RECOMMENDED_ACTIONS,
    SessionEngine,
    SessionEvent,
    SessionState,
    allowed_events,
    transition,
)

LOW_LEARNING_BKT = {
    "default": {"p_init": 0.3, "p_learn": 0.05, "p_guess": 0.2, "p_slip": 0.1},
    "domains": {},
}


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def __call__(self, event_type, student_id, payload=None):
        self.events.append((event_type, student_id, payload or {}))
        return True

    def types(self):
        return [event_type for event_type, _, _ in self.events]


def _engine(graph, clock, *, config=None, with_plans=False, with_adapters=False, notify=None, oracle=None):
    notify = notify or RecordingNotifier()
    plans = PlanGenerator(graph, config=config, notify=notify, clock=clock) if with_plans else None
    branches = BranchTreeEngine(graph)
    return SessionEngine(
        graph,
        MasteryModel(graph, config=config, clock=clock),
        MasteryGate(graph, config),
        plan_generator=plans,
        branch_engine=branches,
        eta_calculator=EtaCalculator(graph, config=config, clock=clock) if with_adapters else None,
        plan_adapter=PlanAdapter(graph, config=config, branch_engine=branches) if with_adapters else None,
        oracle=oracle,
        notify=notify,
        config=config,
        clock=clock,
    )


# ---------- transition table ----------
def test_every_state_has_a_recommended_action():
    assert set(RECOMMENDED_ACTIONS) == set(SessionState)


def test_completed_is_terminal():
    assert allowed_events(SessionState.COMPLETED) == []
    for event in SessionEvent:
        with pytest.raises(InvalidTransitionError):
            transition(SessionState.COMPLETED, event)


@pytest.mark.parametrize(
    "state,event",
    [
        (SessionState.TEACHING, SessionEvent.REQUEST_HINT),
        (SessionState.HINT_REQUESTED, SessionEvent.SUBMIT_ANSWER),
        (SessionState.STRUGGLING, SessionEvent.SUBMIT_ANSWER),
        (SessionState.CELEBRATING, SessionEvent.SUBMIT_ANSWER),
        (SessionState.TEACHING, SessionEvent.RETURN_TO_PRACTICE),
        (SessionState.PRACTICE, SessionEvent.ADVANCE_CONCEPT),
    ],
)
def test_undefined_pairs_raise(state, event):
    with pytest.raises(InvalidTransitionError) as excinfo:
        transition(state, event)
    assert excinfo.value.state == state.value
    assert excinfo.value.event == event.value
    assert excinfo.value.allowed == tuple(e.value for e in allowed_events(state))


def test_transition_defaults_and_explicit_destinations():
    assert transition("PRACTICE", "SUBMIT_ANSWER") is SessionState.PRACTICE
    assert transition("PRACTICE", "REQUEST_HINT") is SessionState.HINT_REQUESTED
    assert transition("STRUGGLING", "RETURN_TO_PRACTICE") is SessionState.PRACTICE
    assert (
        transition(SessionState.TEACHING, SessionEvent.SUBMIT_ANSWER, SessionState.CELEBRATING)
        is SessionState.CELEBRATING
    )
    with pytest.raises(InvalidTransitionError):
        transition(SessionState.TEACHING, SessionEvent.SUBMIT_ANSWER, SessionState.HINT_REQUESTED)


# ---------- engine ----------
@pytest.mark.usefixtures("seeded_graph")
def test_start_session_logs_start_event(graph, clock):
    engine = _engine(graph, clock)

    result = engine.start_session("stu", "c-add", "curious")

    assert result.new_state is SessionState.TEACHING
    assert result.recommended_action == "present_concept_explanation"
    assert result.narrative.source == "fallback"
    session = engine.get_session(result.session_id)
    assert session["state"] == "TEACHING"
    assert session["emotional_state_start"] == "curious"
    assert session["allowed_events"] == ["SUBMIT_ANSWER", "MASTERY_ACHIEVED", "END_SESSION"]
    events = db.list_session_events(result.session_id)
    assert [entry["event"] for entry in events] == ["START_SESSION"]


@pytest.mark.usefixtures("seeded_graph")
def test_start_session_rejects_unknown_concept(graph, clock):
    engine = _engine(graph, clock)
    with pytest.raises(NotFoundError):
        engine.start_session("stu", "c-missing")
    with pytest.raises(NotFoundError):
        engine.get_session("missing")


@pytest.mark.usefixtures("seeded_graph")
def test_two_correct_answers_celebrate(graph, clock):
    notify = RecordingNotifier()
    engine = _engine(graph, clock, notify=notify)
    session_id = engine.start_session("stu", "c-count").session_id

    first = engine.submit_answer(session_id, True, "multiple_choice", 4000)
    assert first.new_state is SessionState.PRACTICE
    assert first.gate is None

    second = engine.submit_answer(session_id, True, "word_problem", 3500)
    assert second.previous_state is SessionState.PRACTICE
    assert second.new_state is SessionState.CELEBRATING
    assert second.event is SessionEvent.MASTERY_ACHIEVED
    assert second.gate.recommendation == "advance"
    assert second.mastery.level.value == "MASTERED"
    assert second.next_concept.id == "c-add"
    assert second.narrative.kind == "celebrating"
    assert notify.types() == ["mastery_achieved"]

    session = engine.get_session(session_id)
    assert session["concepts_mastered"] == ["c-count"]
    assert session["questions_answered"] == 2
    assert session["correct_answers"] == 2


@pytest.mark.usefixtures("seeded_graph")
def test_wrong_streak_with_low_probability_struggles(graph, clock, write_engine_config):
    config = write_engine_config(bkt=LOW_LEARNING_BKT)
    engine = _engine(graph, clock, config=config)
    session_id = engine.start_session("stu", "c-add").session_id

    states = [engine.submit_answer(session_id, False, "multiple_choice", 9000) for _ in range(3)]

    assert [result.new_state for result in states] == [
        SessionState.PRACTICE,
        SessionState.PRACTICE,
        SessionState.STRUGGLING,
    ]
    assert states[-1].event is SessionEvent.STRUGGLE_DETECTED
    assert states[-1].metadata["wrong_streak"] == 3
    assert states[-1].recommended_action == "offer_simpler_approach"
    assert states[-1].narrative.kind == "struggling"

    back = engine.return_to_practice(session_id)
    assert back.new_state is SessionState.PRACTICE


@pytest.mark.usefixtures("seeded_graph")
def test_wrong_answers_with_default_calibration_stay_in_practice(graph, clock):
    engine = _engine(graph, clock)
    session_id = engine.start_session("stu", "c-add").session_id

    for _ in range(5):
        result = engine.submit_answer(session_id, False, "multiple_choice", 9000)

    assert result.new_state is SessionState.PRACTICE


@pytest.mark.usefixtures("seeded_graph")
def test_hint_only_from_practice(graph, clock):
    engine = _engine(graph, clock)
    session_id = engine.start_session("stu", "c-add").session_id

    with pytest.raises(InvalidTransitionError):
        engine.request_hint(session_id)

    engine.submit_answer(session_id, False, "multiple_choice", 5000)
    hint = engine.request_hint(session_id)
    assert hint.new_state is SessionState.HINT_REQUESTED
    assert hint.narrative.kind == "hint"
    assert hint.metadata["hints_used"] == 1

    with pytest.raises(InvalidTransitionError):
        engine.submit_answer(session_id, True, "multiple_choice", 5000)
    assert engine.return_to_practice(session_id).new_state is SessionState.PRACTICE


@pytest.mark.usefixtures("seeded_graph")
def test_end_session_is_idempotent(graph, clock):
    notify = RecordingNotifier()
    engine = _engine(graph, clock, notify=notify)
    session_id = engine.start_session("stu", "c-add", "nervous").session_id
    engine.submit_answer(session_id, True, "multiple_choice", 4000)
    clock.advance(minutes=20)

    first = engine.end_session(session_id, "happy")
    second = engine.end_session(session_id)

    assert first.new_state is SessionState.COMPLETED
    assert first.summary["duration_seconds"] == 1200
    assert first.summary["abandoned"] is False
    assert first.summary["emotional_state_end"] == "happy"
    assert second.metadata == {"already_completed": True}
    assert second.summary == first.summary
    assert notify.types().count("session_completed") == 1
    assert [entry["event"] for entry in db.list_session_events(session_id)].count("END_SESSION") == 1

    with pytest.raises(InvalidTransitionError):
        engine.submit_answer(session_id, True, "multiple_choice", 4000)


@pytest.mark.usefixtures("seeded_graph")
def test_overlong_session_is_recorded_as_abandoned(graph, clock):
    engine = _engine(graph, clock)
    session_id = engine.start_session("stu", "c-add").session_id
    clock.advance(hours=3)

    result = engine.end_session(session_id)

    assert result.summary["abandoned"] is True
    assert result.summary["duration_seconds"] == 0
    assert db.get_session(session_id)["duration_seconds"] == 0


@pytest.mark.usefixtures("seeded_graph")
def test_advance_moves_to_next_branch_concept(graph, clock):
    engine = _engine(graph, clock)
    session_id = engine.start_session("stu", "c-count").session_id
    engine.submit_answer(session_id, True, "multiple_choice", 4000)
    engine.submit_answer(session_id, True, "word_problem", 4000)

    result = engine.advance_concept(session_id)

    assert result.new_state is SessionState.TEACHING
    assert result.current_concept_id == "c-add"
    assert engine.get_session(session_id)["current_concept_id"] == "c-add"

    with pytest.raises(InvalidTransitionError):
        engine.advance_concept(session_id)


@pytest.mark.usefixtures("seeded_graph")
def test_advance_to_chosen_concept(graph, clock):
    engine = _engine(graph, clock)
    session_id = engine.start_session("stu", "c-count").session_id
    engine.submit_answer(session_id, True, "multiple_choice", 4000)
    engine.submit_answer(session_id, True, "word_problem", 4000)

    result = engine.advance_concept(session_id, "c-mul")

    assert result.current_concept_id == "c-mul"


@pytest.mark.usefixtures("seeded_graph")
def test_mastery_advances_active_plan(graph, clock):
    notify = RecordingNotifier()
    engine = _engine(graph, clock, with_plans=True, notify=notify)
    plan = engine.plan_generator.generate_plan("g-arith", "stu", 3.0)
    assert plan.current_concept_id == "c-count"

    session_id = engine.start_session("stu", "c-count").session_id
    clock.advance(minutes=30)
    engine.submit_answer(session_id, True, "multiple_choice", 4000)
    result = engine.submit_answer(session_id, True, "word_problem", 4000)

    updated = engine.plan_generator.get_plan(plan.id)
    assert updated.current_concept_index == 1
    assert updated.hours_completed == pytest.approx(0.5)
    assert result.next_concept.id == "c-add"
    assert "plan_advanced" in notify.types()


@pytest.mark.usefixtures("seeded_graph")
def test_stale_state_guard_rejects_concurrent_transition(graph, clock):
    engine = _engine(graph, clock)
    session_id = engine.start_session("stu", "c-add").session_id
    engine.submit_answer(session_id, False, "multiple_choice", 5000)

    with pytest.raises(ConcurrencyConflictError):
        engine._commit(
            session_id,
            SessionState.TEACHING,
            SessionState.COMPLETED,
            SessionEvent.END_SESSION,
            {"state": "COMPLETED"},
            {},
        )
    assert db.get_session(session_id)["state"] == "PRACTICE"


@pytest.mark.usefixtures("seeded_graph")
def test_overlapping_answers_keep_every_count(graph, clock, monkeypatch):
    engine = _engine(graph, clock)
    session_id = engine.start_session("stu", "c-add").session_id
    engine.submit_answer(session_id, False, "multiple_choice", 5000)

    # both requests read the PRACTICE row before either commits
    both_recorded = threading.Barrier(2)
    original = engine.mastery_model.record_answer

    def record_then_wait(*args, **kwargs):
        record = original(*args, **kwargs)
        both_recorded.wait(timeout=5)
        return record

    monkeypatch.setattr(engine.mastery_model, "record_answer", record_then_wait)
    errors = []

    def answer():
        try:
            engine.submit_answer(session_id, False, "word_problem", 5000)
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    workers = [threading.Thread(target=answer) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10)

    assert errors == []
    session = db.get_session(session_id)
    assert session["state"] == "PRACTICE"
    assert session["questions_answered"] == 3
    assert session["correct_answers"] == 0
    assert engine.mastery_model.get_mastery("stu", "c-add").practice_count == 3


@pytest.mark.usefixtures("seeded_graph")
def test_hint_counter_is_incremented(graph, clock):
    engine = _engine(graph, clock)
    session_id = engine.start_session("stu", "c-add").session_id
    engine.submit_answer(session_id, False, "multiple_choice", 5000)

    engine.request_hint(session_id)
    engine.return_to_practice(session_id)
    engine.request_hint(session_id)

    assert db.get_session(session_id)["hints_used"] == 2


@pytest.mark.usefixtures("seeded_graph")
def test_oracle_failure_still_celebrates_with_fallback(graph, clock):
    def broken_transport(prompt_context):
        raise RuntimeError("model offline")

    oracle = ContentOracle(url="", transport=broken_transport, enabled=True)
    try:
        engine = _engine(graph, clock, oracle=oracle)
        session_id = engine.start_session("stu", "c-count").session_id
        engine.submit_answer(session_id, True, "multiple_choice", 4000)
        result = engine.submit_answer(session_id, True, "word_problem", 4000)
    finally:
        oracle.shutdown()

    assert result.new_state is SessionState.CELEBRATING
    assert result.narrative.is_fallback
    assert result.narrative.reason.startswith("error")
    assert result.narrative.kind == "celebrating"
    session = db.get_session(session_id)
    assert session["state"] == "CELEBRATING"
    assert session["concepts_mastered"] == ["c-count"]


@pytest.mark.usefixtures("seeded_graph")
def test_advance_with_curriculum_exhausted_completes_session(graph, clock, set_mastery):
    for concept_id in ("c-add", "c-sub", "c-mul", "c-div", "c-frac"):
        set_mastery("stu", concept_id, 0.97)
    engine = _engine(graph, clock)
    session_id = engine.start_session("stu", "c-count").session_id
    engine.submit_answer(session_id, True, "multiple_choice", 4000)
    celebrated = engine.submit_answer(session_id, True, "word_problem", 4000)

    assert celebrated.new_state is SessionState.CELEBRATING
    assert celebrated.next_concept is None
    assert celebrated.metadata["next_concept_id"] is None

    result = engine.advance_concept(session_id)

    assert result.new_state is SessionState.COMPLETED
    assert result.event is SessionEvent.END_SESSION
    assert result.metadata["reason"] == "curriculum_exhausted"
    assert db.get_session(session_id)["state"] == "COMPLETED"


@pytest.mark.usefixtures("seeded_graph")
def test_end_session_reports_plan_adaptations(graph, clock):
    engine = _engine(graph, clock, with_plans=True, with_adapters=True)
    plan = engine.plan_generator.generate_plan("g-arith", "stu", 3.0)
    session_id = engine.start_session("stu", "c-count").session_id
    engine.submit_answer(session_id, False, "multiple_choice", 5000)
    clock.advance(minutes=20)

    result = engine.end_session(session_id)

    assert result.new_state is SessionState.COMPLETED
    adaptations = result.metadata["adaptations"]
    assert [item["plan_id"] for item in adaptations] == [plan.id]
    assert set(adaptations[0]) == {"plan_id", "actions", "applied_rules", "message"}
