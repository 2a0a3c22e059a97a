"""Tests for the BKT update rule and the persisted mastery model."""

import threading
from datetime import timedelta

import pytest

import db
from engine_config import BKTParams, ENGINE_CONFIG, MasteryLevel
from engines.bkt import MasteryModel, bkt_update, posterior_known
from engines.errors import NotFoundError

PARAMS = BKTParams(p_init=0.3, p_learn=0.3, p_guess=0.2, p_slip=0.1)


def test_correct_answer_from_prior_matches_worked_example():
    assert bkt_update(0.3, True, PARAMS) == pytest.approx(0.761, abs=1e-3)
    assert bkt_update(0.761, True, PARAMS) == pytest.approx(0.954, abs=1e-3)


def test_posterior_moves_toward_observation():
    assert posterior_known(0.5, True, PARAMS) > 0.5
    assert posterior_known(0.5, False, PARAMS) < 0.5


@pytest.mark.parametrize("p", [0.0, 0.01, 0.3, 0.5, 0.85, 0.99, 1.0])
def test_update_stays_within_unit_interval(p):
    for is_correct in (True, False):
        updated = bkt_update(p, is_correct, PARAMS)
        assert 0.0 <= updated <= 1.0


@pytest.mark.parametrize("p", [0.0, 0.1, 0.3, 0.6, 0.9, 0.999])
def test_correct_answer_never_lowers_probability(p):
    assert bkt_update(p, True, PARAMS) >= p


def test_wrong_answers_with_default_learning_rate_settle_above_struggle_threshold():
    p = PARAMS.p_init
    for _ in range(20):
        p = bkt_update(p, False, PARAMS)
    assert p > ENGINE_CONFIG.struggle.bkt_threshold


@pytest.mark.usefixtures("temp_db")
def test_record_answer_creates_record_and_logs_response(graph, clock):
    model = MasteryModel(graph, clock=clock)

    record = model.record_answer("stu", "c-add", True, "multiple_choice", 4200, session_id="s1")

    assert record.practice_count == 1
    assert record.correct_count == 1
    assert record.version == 1
    assert record.level is MasteryLevel.PROFICIENT
    assert record.last_practiced_at == clock.now
    assert record.next_review_at == clock.now + timedelta(days=7)

    responses = db.list_recent_responses("stu", "c-add")
    assert len(responses) == 1
    assert responses[0]["session_id"] == "s1"
    assert responses[0]["question_type"] == "multiple_choice"
    assert responses[0]["is_correct"] is True


@pytest.mark.usefixtures("temp_db")
def test_two_correct_answers_reach_mastered(graph, clock):
    model = MasteryModel(graph, clock=clock)
    model.record_answer("stu", "c-add", True, "multiple_choice", 4000)
    record = model.record_answer("stu", "c-add", True, "word_problem", 3500)

    assert record.level is MasteryLevel.MASTERED
    assert record.is_mastered
    assert record.version == 2


@pytest.mark.usefixtures("temp_db")
def test_record_answer_rejects_bad_input(graph):
    model = MasteryModel(graph)
    with pytest.raises(NotFoundError):
        model.record_answer("stu", "c-unknown", True, "multiple_choice", 1000)
    with pytest.raises(ValueError):
        model.record_answer("stu", "c-add", True, "multiple_choice", -1)
    with pytest.raises(ValueError):
        model.record_answer("stu", "c-add", True, "  ", 1000)
    assert db.list_recent_responses("stu", "c-add") == []


@pytest.mark.usefixtures("temp_db")
def test_domain_override_changes_learning_rate(graph, write_engine_config):
    config = write_engine_config(
        bkt={"domains": {"math": {"p_init": 0.1, "p_learn": 0.05, "p_guess": 0.2, "p_slip": 0.1}}}
    )
    model = MasteryModel(graph, config=config)

    assert model.params_for("c-add").p_learn == 0.05
    record = model.update_mastery("stu", "c-add", True)
    assert record.bkt_probability == pytest.approx(bkt_update(0.1, True, config.bkt_params("math")))


@pytest.mark.usefixtures("temp_db")
def test_concurrent_updates_do_not_lose_counts(graph):
    model = MasteryModel(graph)
    workers = 8
    per_worker = 5
    errors = []

    def _work(index):
        try:
            for step in range(per_worker):
                model.update_mastery("stu", "c-mul", (index + step) % 2 == 0)
        except Exception as exc:  # surfaced through the errors list
            errors.append(exc)

    threads = [threading.Thread(target=_work, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    record = model.get_mastery("stu", "c-mul")
    assert record.practice_count == workers * per_worker
    assert record.version == workers * per_worker
    assert 0.0 <= record.bkt_probability <= 1.0


@pytest.mark.usefixtures("temp_db")
def test_retention_probe_requires_existing_record(graph):
    model = MasteryModel(graph)
    with pytest.raises(NotFoundError):
        model.record_retention_probe("stu", "c-add", 0.8)

    model.update_mastery("stu", "c-add", True)
    record = model.record_retention_probe("stu", "c-add", 0.55)
    assert record.retention_score == pytest.approx(0.55)
    assert record.version == 2

    with pytest.raises(ValueError):
        model.record_retention_probe("stu", "c-add", 1.5)


@pytest.mark.usefixtures("temp_db")
def test_retention_score_reports_record_removed_after_write(graph, monkeypatch):
    model = MasteryModel(graph)
    model.update_mastery("stu", "c-add", True)
    # the row disappears between the retention write and the read-back
    monkeypatch.setattr(model, "get_mastery", lambda student_id, concept_id: None)

    with pytest.raises(NotFoundError):
        model.record_retention_probe("stu", "c-add", 0.6)


@pytest.mark.usefixtures("temp_db")
def test_list_mastery_is_keyed_by_concept(graph):
    model = MasteryModel(graph)
    model.update_mastery("stu", "c-add", True)
    model.update_mastery("stu", "c-count", False)
    model.update_mastery("other", "c-add", True)

    records = model.list_mastery("stu")
    assert sorted(records) == ["c-add", "c-count"]
    assert records["c-add"].to_dict()["level"] == MasteryLevel.PROFICIENT.value
