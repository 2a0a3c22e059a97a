import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from knowledge_graph import ConceptNode, Goal, KnowledgeGraph, TopicBranch


class FrozenClock:
    """Callable clock for engines; moves only when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def build_sample_graph() -> KnowledgeGraph:
    graph = KnowledgeGraph()
    graph.add_node(ConceptNode("c-count", "K.CC.1", "Counting to 100", 1, "math", "K"))
    graph.add_node(ConceptNode("c-add", "1.OA.1", "Addition within 20", 2, "math", "G1", ("c-count",)))
    graph.add_node(ConceptNode("c-sub", "1.OA.2", "Subtraction within 20", 3, "math", "G1", ("c-add",)))
    graph.add_node(ConceptNode("c-mul", "3.OA.1", "Multiplication facts", 5, "math", "G3", ("c-add",)))
    graph.add_node(ConceptNode("c-div", "3.OA.2", "Division facts", 6, "math", "G3", ("c-mul", "c-sub")))
    graph.add_node(ConceptNode("c-frac", "4.NF.1", "Equivalent fractions", 7, "math", "G4", ("c-div",)))
    graph.add_goal(
        Goal("g-arith", "Arithmetic foundations", ("c-frac", "c-div", "c-mul", "c-sub", "c-add", "c-count"))
    )
    graph.add_branch(TopicBranch("b-basics", "Number basics", "math", "G1", ("c-count", "c-add", "c-sub")))
    graph.add_branch(
        TopicBranch("b-frac", "Fractions", "math", "G4", ("c-frac",), ("b-mult",), is_advanced=True)
    )
    graph.add_branch(TopicBranch("b-mult", "Multiplication", "math", "G3", ("c-mul", "c-div"), ("b-basics",)))
    return graph


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Fresh pool per test so no connection points at a previous file
    pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    monkeypatch.setattr(db, "_pool", pool)
    db.init()
    yield str(db_path)
    pool.close_all()


@pytest.fixture
def graph():
    return build_sample_graph()


@pytest.fixture
def seeded_graph(temp_db, graph):
    import db

    db.seed_knowledge_graph(graph)
    return graph


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def set_mastery(temp_db):
    """Write a mastery record directly, bypassing the BKT update."""
    import db
    from engine_config import ENGINE_CONFIG

    def _set(student_id, concept_id, probability, *, retention_score=None, practiced_at=None):
        values = {
            "student_id": student_id,
            "concept_id": concept_id,
            "bkt_probability": probability,
            "level": ENGINE_CONFIG.level_for(probability).value,
            "practice_count": 5,
            "correct_count": 4,
            "last_practiced_at": db.to_iso(practiced_at),
            "next_review_at": None,
            "retention_score": retention_score,
            "speed_trend_ms": None,
        }
        if not db.insert_mastery_record(values):
            current = db.get_mastery_record(student_id, concept_id)
            db.update_mastery_record(values, current["version"])
            if retention_score is not None:
                db.set_retention_score(student_id, concept_id, retention_score)

    return _set


@pytest.fixture
def write_engine_config(tmp_path):
    """Return a factory for engine configs that override the bundled one."""
    from engine_config import EngineConfigRegistry

    def _write(**overrides):
        raw = json.loads((ROOT / "engine_config.json").read_text(encoding="utf-8"))
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(raw.get(key), dict):
                raw[key] = {**raw[key], **value}
            else:
                raw[key] = value
        path = tmp_path / "engine_config.json"
        path.write_text(json.dumps(raw), encoding="utf-8")
        return EngineConfigRegistry(path)

    return _write
