"""Tests for velocity measurement and ETA recalculation."""

import uuid
from datetime import timedelta

import pytest

import db
from content_oracle import ContentOracle
from engines.errors import NotFoundError
from engines.eta import (
    ACCELERATING,
    INSUFFICIENT_DATA,
    SLOWING,
    STEADY,
    EtaCalculator,
    calculate_student_velocity,
    grade_factor,
    historical_velocity_factor,
    partial_mastery_discount,
    remaining_work_discount,
    schedule_message,
)
from engines.plan_generator import PlanGenerator


def _completed_session(student_id, started_at, duration_seconds, answered=10, correct=8):
    session_id = uuid.uuid4().hex
    db.create_session(session_id, student_id, "COMPLETED", "c-add", started_at)
    db.update_session(
        session_id,
        {
            "duration_seconds": duration_seconds,
            "questions_answered": answered,
            "correct_answers": correct,
            "ended_at": db.to_iso(started_at + timedelta(seconds=duration_seconds)),
        },
    )
    return session_id


def _plan(graph, clock, **kwargs):
    generator = PlanGenerator(graph, clock=clock, notify=lambda *args: True)
    return generator.generate_plan("g-arith", "stu", 3.0, **kwargs)


def test_discount_bands():
    assert partial_mastery_discount(None) == 1.0
    assert partial_mastery_discount(0.3) == 1.0
    assert partial_mastery_discount(0.45) == 0.75
    assert partial_mastery_discount(0.7) == 0.5
    assert partial_mastery_discount(0.8) == 0.3

    assert remaining_work_discount(0.9) == 0.0
    assert remaining_work_discount(0.6) == 0.5
    assert remaining_work_discount(0.4) == 0.75
    assert remaining_work_discount(0.1) == 1.0


def test_grade_factor_bands():
    assert [grade_factor(3, student) for student in (5, 4, 3, 2, 1)] == [0.6, 0.8, 1.0, 1.2, 1.5]


def test_schedule_messages():
    assert schedule_message(True, 0, STEADY, 0, 6).startswith("Congratulations")
    assert schedule_message(True, 5, STEADY, 6, 0).startswith("Ready to begin")
    assert schedule_message(True, 20, STEADY, 3, 3) == "You're 20 days ahead of schedule! Amazing pace!"
    assert schedule_message(False, -20, ACCELERATING, 3, 3).endswith("picking up speed! Keep going.")
    assert schedule_message(False, -3, SLOWING, 3, 3) == "Slightly behind by 3 days. Totally catchable!"


@pytest.mark.usefixtures("temp_db")
def test_velocity_needs_three_sessions(clock):
    _completed_session("stu", clock.now - timedelta(days=1), 3600)

    report = calculate_student_velocity("stu", clock.now)

    assert report.trend == INSUFFICIENT_DATA
    assert report.current_weekly_hours == 0.5
    assert historical_velocity_factor("stu", clock.now) == 1.0


@pytest.mark.usefixtures("temp_db")
def test_velocity_trend_compares_fortnights(clock):
    for days_ago in (1, 3, 5, 8):
        _completed_session("stu", clock.now - timedelta(days=days_ago), 3600)
    _completed_session("stu", clock.now - timedelta(days=20), 3600)

    report = calculate_student_velocity("stu", clock.now)

    assert report.current_weekly_hours == 2.0
    assert report.previous_weekly_hours == 0.5
    assert report.trend == ACCELERATING
    assert report.sessions_last_4_weeks == 5


@pytest.mark.usefixtures("temp_db")
def test_fast_history_shrinks_estimates(clock):
    for days_ago in (1, 2, 3):
        _completed_session("stu", clock.now - timedelta(days=days_ago), 1800, answered=40, correct=40)

    # eight concepts per hour at full accuracy is capped at velocity 3
    assert historical_velocity_factor("stu", clock.now) == pytest.approx(0.5)


@pytest.mark.usefixtures("temp_db")
def test_recalculate_eta_from_mastery(graph, clock, set_mastery):
    plan = _plan(graph, clock, target_date=clock.now + timedelta(days=30))
    set_mastery("stu", "c-count", 0.96)
    set_mastery("stu", "c-add", 0.9)
    set_mastery("stu", "c-sub", 0.4)

    result = EtaCalculator(graph, clock=clock).recalculate_eta(plan.id)

    assert result.concepts_mastered == 2
    assert result.concepts_remaining == 4
    assert result.progress_percentage == 33
    assert result.hours_remaining == pytest.approx(4.2)
    assert result.velocity_hours_per_week == 3.0
    assert result.projected_completion_date == clock.now + timedelta(days=10)
    assert result.days_difference == 20
    assert result.is_ahead_of_schedule is True
    assert result.schedule_message == "You're 20 days ahead of schedule! Amazing pace!"
    assert result.velocity_trend == INSUFFICIENT_DATA
    assert result.insight is None

    snapshots = db.list_eta_snapshots(plan.id)
    assert len(snapshots) == 1
    assert snapshots[0]["days_difference"] == 20
    stored = db.get_plan(plan.id)
    assert stored["projected_completion_date"] == db.to_iso(clock.now + timedelta(days=10))
    assert stored["current_concept_index"] == 0


@pytest.mark.usefixtures("temp_db")
def test_eta_behind_target(graph, clock):
    plan = _plan(graph, clock, target_date=clock.now + timedelta(days=3))

    result = EtaCalculator(graph, clock=clock).recalculate_eta(plan.id)

    assert result.is_ahead_of_schedule is False
    assert result.days_difference < 0
    assert db.get_plan(plan.id)["is_ahead_of_schedule"] is False


@pytest.mark.usefixtures("temp_db")
def test_eta_completes_plan_when_everything_is_mastered(graph, clock, set_mastery):
    plan = _plan(graph, clock)
    for concept_id in plan.concept_sequence:
        set_mastery("stu", concept_id, 0.9)

    result = EtaCalculator(graph, clock=clock).recalculate_eta(plan.id)

    assert result.concepts_remaining == 0
    assert result.progress_percentage == 100
    assert result.schedule_message.startswith("Congratulations")
    assert db.get_plan(plan.id)["status"] == "COMPLETED"


@pytest.mark.usefixtures("temp_db")
def test_eta_insight_comes_from_oracle(graph, clock):
    plan = _plan(graph, clock)
    oracle = ContentOracle(url="", transport=lambda ctx: '{"message": "Keep climbing!"}', enabled=True)
    try:
        result = EtaCalculator(graph, clock=clock, oracle=oracle).recalculate_eta(plan.id)
    finally:
        oracle.shutdown()

    assert result.insight == "Keep climbing!"


@pytest.mark.usefixtures("temp_db")
def test_missing_plan(graph, clock):
    with pytest.raises(NotFoundError):
        EtaCalculator(graph, clock=clock).recalculate_eta("missing")
