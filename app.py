# app.py - Adaptive mastery & planning engine HTTP surface
# - Sessions: teaching / practice / hint / struggle / celebration state machine
# - Plans: goal-driven sequences with milestones and ETA
# - Engine errors map to HTTP status codes in one place (_run)

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import FastAPI, HTTPException

import db
from content_oracle import ContentOracle
from engine_config import ENGINE_CONFIG, EngineConfigRegistry
from engines.bkt import MasteryModel
from engines.branch_tree import BranchTreeEngine
from engines.errors import (
    ConcurrencyConflictError,
    DataIntegrityError,
    InvalidTransitionError,
    NotFoundError,
    PlanLimitError,
)
from engines.eta import EtaCalculator
from engines.mastery_gate import MasteryGate
from engines.plan_adapter import PlanAdapter
from engines.plan_generator import PlanGenerator
from engines.session_machine import SessionEngine
from knowledge_graph import KnowledgeGraph
from schemas import (
    AdvanceConceptRequest,
    AnswerRequest,
    BranchTreeResponse,
    EndSessionRequest,
    EtaResponse,
    GateResponse,
    MasteryRecordModel,
    PlanRequest,
    PlanResponse,
    PlanStatusRequest,
    RetentionProbeRequest,
    StartSessionRequest,
    TransitionResponse,
)

logger = logging.getLogger(__name__)


@dataclass
class EngineBundle:
    graph: KnowledgeGraph
    mastery: MasteryModel
    gate: MasteryGate
    plans: PlanGenerator
    eta: EtaCalculator
    adapter: PlanAdapter
    branches: BranchTreeEngine
    sessions: SessionEngine
    oracle: ContentOracle


def build_engines(
    graph: KnowledgeGraph,
    *,
    config: Optional[EngineConfigRegistry] = None,
    oracle: Optional[ContentOracle] = None,
) -> EngineBundle:
    config = config or ENGINE_CONFIG
    oracle = oracle or ContentOracle()
    mastery = MasteryModel(graph, config=config)
    gate = MasteryGate(graph, config)
    branches = BranchTreeEngine(graph)
    plans = PlanGenerator(graph, config=config, oracle=oracle)
    eta = EtaCalculator(graph, config=config, oracle=oracle)
    adapter = PlanAdapter(graph, config=config, oracle=oracle, branch_engine=branches)
    sessions = SessionEngine(
        graph,
        mastery,
        gate,
        plan_generator=plans,
        branch_engine=branches,
        eta_calculator=eta,
        plan_adapter=adapter,
        oracle=oracle,
        config=config,
    )
    return EngineBundle(graph, mastery, gate, plans, eta, adapter, branches, sessions, oracle)


ENGINES: Optional[EngineBundle] = None


def _engines() -> EngineBundle:
    global ENGINES
    if ENGINES is None:
        ENGINES = build_engines(db.load_knowledge_graph())
    return ENGINES


def _seed_curriculum() -> None:
    path = os.getenv("CURRICULUM_PATH")
    if not path:
        return
    graph = KnowledgeGraph.load(Path(path))
    db.seed_knowledge_graph(graph)
    logger.info("Seeded %s concepts from %s", len(graph), path)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    global ENGINES
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        _seed_curriculum()
        ENGINES = build_engines(db.load_knowledge_graph())
        logger.info("Engines ready with %s concepts", len(ENGINES.graph))
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    yield
    if ENGINES is not None:
        ENGINES.oracle.shutdown()


app = FastAPI(title="Mastery & Planning Engine", version="1.0.0", lifespan=_lifespan)


def _run(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call an engine operation and translate engine errors into HTTP errors."""

    try:
        return func(*args, **kwargs)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidTransitionError as exc:
        raise HTTPException(
            status_code=409,
            detail={"error": str(exc), "state": exc.state, "event": exc.event, "allowed": list(exc.allowed)},
        )
    except PlanLimitError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ConcurrencyConflictError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except DataIntegrityError as exc:
        logger.error("Data integrity fault: %s", exc)
        raise HTTPException(status_code=500, detail={"error": str(exc), **exc.details})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/health")
def health():
    engines = _engines()
    return {"status": "ok", "concepts": len(engines.graph), "oracle_enabled": engines.oracle.enabled}


@app.get("/curriculum")
def curriculum():
    return _engines().graph.to_dict()


# ---------- Sessions ----------
@app.post("/sessions", response_model=TransitionResponse)
def start_session(body: StartSessionRequest):
    result = _run(_engines().sessions.start_session, body.student_id, body.concept_id, body.emotional_state)
    return result.to_dict()


@app.get("/sessions/{session_id}")
def get_session(session_id: str):
    return _run(_engines().sessions.get_session, session_id)


@app.post("/sessions/{session_id}/answer", response_model=TransitionResponse)
def submit_answer(session_id: str, body: AnswerRequest):
    result = _run(
        _engines().sessions.submit_answer,
        session_id,
        body.is_correct,
        body.question_type,
        body.response_time_ms,
    )
    return result.to_dict()


@app.post("/sessions/{session_id}/hint", response_model=TransitionResponse)
def request_hint(session_id: str):
    return _run(_engines().sessions.request_hint, session_id).to_dict()


@app.post("/sessions/{session_id}/practice", response_model=TransitionResponse)
def return_to_practice(session_id: str):
    return _run(_engines().sessions.return_to_practice, session_id).to_dict()


@app.post("/sessions/{session_id}/advance", response_model=TransitionResponse)
def advance_concept(session_id: str, body: Optional[AdvanceConceptRequest] = None):
    concept_id = body.concept_id if body else None
    return _run(_engines().sessions.advance_concept, session_id, concept_id).to_dict()


@app.post("/sessions/{session_id}/end", response_model=TransitionResponse)
def end_session(session_id: str, body: Optional[EndSessionRequest] = None):
    emotional_state = body.emotional_state if body else None
    return _run(_engines().sessions.end_session, session_id, emotional_state).to_dict()


# ---------- Mastery ----------
@app.get("/mastery/{student_id}")
def list_mastery(student_id: str):
    records = _engines().mastery.list_mastery(student_id)
    return {"student_id": student_id, "records": [record.to_dict() for record in records.values()]}


@app.get("/mastery/{student_id}/{concept_id}/gate", response_model=GateResponse)
def evaluate_gate(student_id: str, concept_id: str):
    return _run(_engines().gate.evaluate_gate, student_id, concept_id).to_dict()


@app.post("/mastery/{student_id}/{concept_id}/retention", response_model=MasteryRecordModel)
def record_retention(student_id: str, concept_id: str, body: RetentionProbeRequest):
    return _run(_engines().mastery.record_retention_probe, student_id, concept_id, body.score).to_dict()


# ---------- Plans ----------
@app.post("/plans", response_model=PlanResponse)
def generate_plan(body: PlanRequest):
    plan = _run(
        _engines().plans.generate_plan,
        body.goal_id,
        body.student_id,
        body.weekly_hours_available,
        body.target_date,
        body.student_grade,
    )
    return plan.to_dict()


@app.get("/plans/{plan_id}", response_model=PlanResponse)
def get_plan(plan_id: str):
    return _run(_engines().plans.get_plan, plan_id).to_dict()


@app.get("/plans/{plan_id}/next-concept")
def next_concept(plan_id: str):
    node = _run(_engines().plans.get_next_concept_in_plan, plan_id)
    return {"plan_id": plan_id, "concept": node.to_dict() if node else None}


@app.post("/plans/{plan_id}/eta", response_model=EtaResponse)
def recalculate_eta(plan_id: str):
    return _run(_engines().eta.recalculate_eta, plan_id).to_dict()


@app.post("/plans/{plan_id}/status", response_model=PlanResponse)
def set_plan_status(plan_id: str, body: PlanStatusRequest):
    return _run(_engines().plans.set_plan_status, plan_id, body.status).to_dict()


@app.get("/students/{student_id}/plans")
def active_plans(student_id: str):
    plans = _engines().plans.get_active_plans(student_id)
    return {"student_id": student_id, "plans": [plan.to_dict() for plan in plans]}


# ---------- Branches ----------
@app.get("/students/{student_id}/branches", response_model=BranchTreeResponse)
def branch_tree(student_id: str, domain: Optional[str] = None):
    return _engines().branches.get_branch_tree(student_id, domain=domain).to_dict()


@app.get("/students/{student_id}/branch-choices")
def branch_choices(student_id: str, completed_branch_id: Optional[str] = None):
    return _run(_engines().branches.branch_choices, student_id, completed_branch_id).to_dict()


@app.post("/students/{student_id}/branches/{branch_id}/choose")
def choose_branch(student_id: str, branch_id: str):
    node = _run(_engines().branches.choose_branch, student_id, branch_id)
    return {"student_id": student_id, "branch_id": branch_id, "concept": node.to_dict() if node else None}
