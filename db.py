import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool
from knowledge_graph import ConceptNode, Goal, KnowledgeGraph, TopicBranch, concept_from_mapping

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def transaction():
    """Return a context manager wrapping a single write transaction."""
    return _pool.transaction()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str], default: Any = None) -> Any:
    if value in (None, ""):
        return default
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return default


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS concepts (
              id           TEXT PRIMARY KEY,
              code         TEXT NOT NULL UNIQUE,
              title        TEXT NOT NULL,
              difficulty   INTEGER NOT NULL,
              domain       TEXT NOT NULL DEFAULT '',
              grade_level  TEXT NOT NULL DEFAULT 'K',
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS concept_prerequisites (
              concept_id      TEXT NOT NULL,
              prerequisite_id TEXT NOT NULL,
              PRIMARY KEY (concept_id, prerequisite_id),
              FOREIGN KEY(concept_id) REFERENCES concepts(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS goals (
              id           TEXT PRIMARY KEY,
              name         TEXT NOT NULL,
              description  TEXT,
              concept_ids  TEXT NOT NULL DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS topic_branches (
              id                      TEXT PRIMARY KEY,
              name                    TEXT NOT NULL,
              domain                  TEXT NOT NULL DEFAULT '',
              grade_level             TEXT NOT NULL DEFAULT '',
              concept_ids             TEXT NOT NULL DEFAULT '[]',
              prerequisite_branch_ids TEXT NOT NULL DEFAULT '[]',
              is_advanced             INTEGER NOT NULL DEFAULT 0,
              position                INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS mastery_records (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id       TEXT NOT NULL,
              concept_id       TEXT NOT NULL,
              bkt_probability  REAL NOT NULL,
              level            TEXT NOT NULL,
              practice_count   INTEGER NOT NULL DEFAULT 0,
              correct_count    INTEGER NOT NULL DEFAULT 0,
              last_practiced_at TEXT,
              next_review_at   TEXT,
              retention_score  REAL,
              speed_trend_ms   REAL,
              version          INTEGER NOT NULL DEFAULT 0,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE(student_id, concept_id)
            );

            CREATE INDEX IF NOT EXISTS idx_mastery_student ON mastery_records(student_id);

            CREATE TABLE IF NOT EXISTS question_responses (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id       TEXT NOT NULL,
              concept_id       TEXT NOT NULL,
              session_id       TEXT,
              question_type    TEXT NOT NULL,
              is_correct       INTEGER NOT NULL,
              response_time_ms INTEGER NOT NULL,
              created_at       TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_responses_student_concept
              ON question_responses(student_id, concept_id, created_at DESC, id DESC);

            CREATE TABLE IF NOT EXISTS learning_sessions (
              id                    TEXT PRIMARY KEY,
              student_id            TEXT NOT NULL,
              state                 TEXT NOT NULL,
              current_concept_id    TEXT,
              questions_answered    INTEGER NOT NULL DEFAULT 0,
              correct_answers       INTEGER NOT NULL DEFAULT 0,
              hints_used            INTEGER NOT NULL DEFAULT 0,
              emotional_state_start TEXT,
              emotional_state_end   TEXT,
              concepts_mastered     TEXT NOT NULL DEFAULT '[]',
              started_at            TEXT NOT NULL,
              ended_at              TEXT,
              duration_seconds      INTEGER,
              summary               TEXT,
              updated_at            TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_student ON learning_sessions(student_id, started_at DESC);

            CREATE TABLE IF NOT EXISTS session_events (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id  TEXT NOT NULL,
              event       TEXT NOT NULL,
              from_state  TEXT NOT NULL,
              to_state    TEXT NOT NULL,
              metadata    TEXT,
              created_at  TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_session_events_session ON session_events(session_id, id);

            CREATE TABLE IF NOT EXISTS learning_plans (
              id                        TEXT PRIMARY KEY,
              student_id                TEXT NOT NULL,
              goal_id                   TEXT NOT NULL,
              status                    TEXT NOT NULL,
              concept_sequence          TEXT NOT NULL,
              current_concept_index     INTEGER NOT NULL DEFAULT 0,
              total_estimated_hours     REAL NOT NULL,
              hours_completed           REAL NOT NULL DEFAULT 0,
              velocity_hours_per_week   REAL NOT NULL,
              weekly_hours_available    REAL NOT NULL,
              target_completion_date    TEXT,
              projected_completion_date TEXT NOT NULL,
              is_ahead_of_schedule      INTEGER NOT NULL DEFAULT 1,
              milestones                TEXT NOT NULL DEFAULT '[]',
              narrative                 TEXT,
              created_at                TEXT NOT NULL,
              updated_at                TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_plans_student_status ON learning_plans(student_id, status);

            CREATE TABLE IF NOT EXISTS eta_snapshots (
              id                        INTEGER PRIMARY KEY AUTOINCREMENT,
              plan_id                   TEXT NOT NULL,
              projected_completion_date TEXT NOT NULL,
              hours_remaining           REAL NOT NULL,
              concepts_remaining        INTEGER NOT NULL,
              effective_weekly_hours    REAL NOT NULL,
              days_difference           INTEGER NOT NULL,
              created_at                TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS engine_events (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              event_type  TEXT NOT NULL,
              student_id  TEXT NOT NULL,
              payload     TEXT,
              created_at  TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_engine_events_student ON engine_events(student_id, id);
            """
        )
        con.commit()

# -------------- curriculum --------------
def upsert_concept(node: ConceptNode) -> None:
    with transaction() as con:
        con.execute(
            """
            INSERT INTO concepts(id, code, title, difficulty, domain, grade_level)
            VALUES (?,?,?,?,?,?)
            ON CONFLICT(id) DO UPDATE SET
              code = excluded.code,
              title = excluded.title,
              difficulty = excluded.difficulty,
              domain = excluded.domain,
              grade_level = excluded.grade_level
            """,
            (node.id, node.code, node.title, int(node.difficulty), node.domain, node.grade_level),
        )
        con.execute("DELETE FROM concept_prerequisites WHERE concept_id = ?", (node.id,))
        con.executemany(
            "INSERT INTO concept_prerequisites(concept_id, prerequisite_id) VALUES (?, ?)",
            [(node.id, prereq) for prereq in node.prerequisites],
        )


def list_concepts() -> list[ConceptNode]:
    rows = _query(
        "SELECT id, code, title, difficulty, domain, grade_level FROM concepts ORDER BY code"
    )
    prereq_rows = _query(
        "SELECT concept_id, prerequisite_id FROM concept_prerequisites ORDER BY concept_id, prerequisite_id"
    )
    prerequisites: Dict[str, list[str]] = {}
    for row in prereq_rows:
        prerequisites.setdefault(row["concept_id"], []).append(row["prerequisite_id"])
    nodes = []
    for row in rows:
        entry = dict(row)
        entry["prerequisites"] = prerequisites.get(row["id"], [])
        nodes.append(concept_from_mapping(entry))
    return nodes


def upsert_goal(goal: Goal) -> None:
    _exec(
        """
        INSERT INTO goals(id, name, description, concept_ids)
        VALUES (?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          name = excluded.name,
          description = excluded.description,
          concept_ids = excluded.concept_ids
        """,
        (goal.id, goal.name, goal.description, json_dumps(list(goal.concept_ids))),
    )


def list_goals() -> list[Goal]:
    rows = _query("SELECT id, name, description, concept_ids FROM goals ORDER BY id")
    return [
        Goal(
            id=row["id"],
            name=row["name"],
            concept_ids=tuple(_decode_json_field(row["concept_ids"], [])),
            description=row["description"] or "",
        )
        for row in rows
    ]


def upsert_branch(branch: TopicBranch, position: int = 0) -> None:
    _exec(
        """
        INSERT INTO topic_branches(id, name, domain, grade_level, concept_ids, prerequisite_branch_ids, is_advanced, position)
        VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          name = excluded.name,
          domain = excluded.domain,
          grade_level = excluded.grade_level,
          concept_ids = excluded.concept_ids,
          prerequisite_branch_ids = excluded.prerequisite_branch_ids,
          is_advanced = excluded.is_advanced,
          position = excluded.position
        """,
        (
            branch.id,
            branch.name,
            branch.domain,
            branch.grade_level,
            json_dumps(list(branch.concept_ids)),
            json_dumps(list(branch.prerequisite_branch_ids)),
            1 if branch.is_advanced else 0,
            int(position),
        ),
    )


def list_branches() -> list[TopicBranch]:
    rows = _query(
        """
        SELECT id, name, domain, grade_level, concept_ids, prerequisite_branch_ids, is_advanced
        FROM topic_branches
        ORDER BY position, id
        """
    )
    return [
        TopicBranch(
            id=row["id"],
            name=row["name"],
            domain=row["domain"],
            grade_level=row["grade_level"],
            concept_ids=tuple(_decode_json_field(row["concept_ids"], [])),
            prerequisite_branch_ids=tuple(_decode_json_field(row["prerequisite_branch_ids"], [])),
            is_advanced=bool(row["is_advanced"]),
        )
        for row in rows
    ]


def seed_knowledge_graph(graph: KnowledgeGraph) -> None:
    """Persist every concept, goal and branch of ``graph``."""
    for node in graph.nodes():
        upsert_concept(node)
    for goal in graph.goals():
        upsert_goal(goal)
    for position, branch in enumerate(graph.branches()):
        upsert_branch(branch, position)


def load_knowledge_graph() -> KnowledgeGraph:
    """Build a ``KnowledgeGraph`` from the curriculum tables."""
    graph = KnowledgeGraph()
    for node in list_concepts():
        graph.add_node(node)
    for goal in list_goals():
        graph.add_goal(goal)
    for branch in list_branches():
        graph.add_branch(branch)
    return graph

# -------------- mastery records --------------
_MASTERY_COLUMNS = (
    "student_id, concept_id, bkt_probability, level, practice_count, correct_count, "
    "last_practiced_at, next_review_at, retention_score, speed_trend_ms, version, updated_at"
)


def get_mastery_record(student_id: str, concept_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_MASTERY_COLUMNS} FROM mastery_records WHERE student_id = ? AND concept_id = ?",
        (student_id, concept_id),
    )
    return dict(rows[0]) if rows else None


def list_mastery(student_id: str, concept_ids: Optional[Sequence[str]] = None) -> list[Dict[str, Any]]:
    if concept_ids is not None:
        ids = list(concept_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = _query(
            f"""
            SELECT {_MASTERY_COLUMNS} FROM mastery_records
            WHERE student_id = ? AND concept_id IN ({placeholders})
            ORDER BY concept_id
            """,
            [student_id, *ids],
        )
    else:
        rows = _query(
            f"SELECT {_MASTERY_COLUMNS} FROM mastery_records WHERE student_id = ? ORDER BY concept_id",
            (student_id,),
        )
    return [dict(row) for row in rows]


def insert_mastery_record(values: Mapping[str, Any]) -> bool:
    """Create the first record for a key. Returns ``False`` if another writer won."""
    cur = _exec(
        """
        INSERT INTO mastery_records(
          student_id, concept_id, bkt_probability, level, practice_count, correct_count,
          last_practiced_at, next_review_at, retention_score, speed_trend_ms, version, updated_at
        )
        VALUES (?,?,?,?,?,?,?,?,?,?,1,CURRENT_TIMESTAMP)
        ON CONFLICT(student_id, concept_id) DO NOTHING
        """,
        (
            values["student_id"],
            values["concept_id"],
            float(values["bkt_probability"]),
            str(values["level"]),
            int(values["practice_count"]),
            int(values["correct_count"]),
            values.get("last_practiced_at"),
            values.get("next_review_at"),
            values.get("retention_score"),
            values.get("speed_trend_ms"),
        ),
    )
    return cur.rowcount == 1


def update_mastery_record(values: Mapping[str, Any], expected_version: int) -> bool:
    """Compare-and-swap update keyed on ``version``. Returns ``False`` on conflict."""
    cur = _exec(
        """
        UPDATE mastery_records SET
          bkt_probability = ?,
          level = ?,
          practice_count = ?,
          correct_count = ?,
          last_practiced_at = ?,
          next_review_at = ?,
          version = version + 1,
          updated_at = CURRENT_TIMESTAMP
        WHERE student_id = ? AND concept_id = ? AND version = ?
        """,
        (
            float(values["bkt_probability"]),
            str(values["level"]),
            int(values["practice_count"]),
            int(values["correct_count"]),
            values.get("last_practiced_at"),
            values.get("next_review_at"),
            values["student_id"],
            values["concept_id"],
            int(expected_version),
        ),
    )
    return cur.rowcount == 1


def set_retention_score(student_id: str, concept_id: str, score: float) -> bool:
    cur = _exec(
        """
        UPDATE mastery_records
        SET retention_score = ?, version = version + 1, updated_at = CURRENT_TIMESTAMP
        WHERE student_id = ? AND concept_id = ?
        """,
        (float(score), student_id, concept_id),
    )
    return cur.rowcount == 1


def set_speed_trend(student_id: str, concept_id: str, speed_trend_ms: float) -> bool:
    cur = _exec(
        """
        UPDATE mastery_records
        SET speed_trend_ms = ?, version = version + 1, updated_at = CURRENT_TIMESTAMP
        WHERE student_id = ? AND concept_id = ?
        """,
        (float(speed_trend_ms), student_id, concept_id),
    )
    return cur.rowcount == 1

# -------------- question responses --------------
def insert_question_response(
    student_id: str,
    concept_id: str,
    question_type: str,
    is_correct: bool,
    response_time_ms: int,
    *,
    session_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> int:
    cur = _exec(
        """
        INSERT INTO question_responses(student_id, concept_id, session_id, question_type, is_correct, response_time_ms, created_at)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            student_id,
            concept_id,
            session_id,
            question_type,
            1 if is_correct else 0,
            int(response_time_ms),
            to_iso(created_at or utcnow()),
        ),
    )
    return int(cur.lastrowid)


def list_recent_responses(student_id: str, concept_id: str, limit: int = 10) -> list[Dict[str, Any]]:
    """Most recent responses first."""
    rows = _query(
        """
        SELECT id, student_id, concept_id, session_id, question_type, is_correct, response_time_ms, created_at
        FROM question_responses
        WHERE student_id = ? AND concept_id = ?
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (student_id, concept_id, int(limit)),
    )
    results = []
    for row in rows:
        entry = dict(row)
        entry["is_correct"] = bool(entry["is_correct"])
        results.append(entry)
    return results

# -------------- learning sessions --------------
_SESSION_MUTABLE = {
    "state",
    "current_concept_id",
    "questions_answered",
    "correct_answers",
    "hints_used",
    "emotional_state_end",
    "concepts_mastered",
    "ended_at",
    "duration_seconds",
    "summary",
}


def _row_to_session(row: sqlite3.Row) -> Dict[str, Any]:
    entry = dict(row)
    entry["concepts_mastered"] = _decode_json_field(entry.get("concepts_mastered"), [])
    entry["summary"] = _decode_json_field(entry.get("summary"))
    return entry


def create_session(
    session_id: str,
    student_id: str,
    state: str,
    current_concept_id: Optional[str],
    started_at: datetime,
    emotional_state_start: Optional[str] = None,
    *,
    con: Optional[sqlite3.Connection] = None,
) -> None:
    sql = """
        INSERT INTO learning_sessions(id, student_id, state, current_concept_id, emotional_state_start, started_at)
        VALUES (?,?,?,?,?,?)
        """
    params = (session_id, student_id, state, current_concept_id, emotional_state_start, to_iso(started_at))
    if con is not None:
        con.execute(sql, params)
    else:
        _exec(sql, params)


def get_session(session_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM learning_sessions WHERE id = ?", (session_id,))
    return _row_to_session(rows[0]) if rows else None


_SESSION_COUNTERS = {"questions_answered", "correct_answers", "hints_used"}


def update_session(
    session_id: str,
    fields: Mapping[str, Any],
    *,
    increments: Optional[Mapping[str, int]] = None,
    expected_state: Optional[str] = None,
    con: Optional[sqlite3.Connection] = None,
) -> bool:
    """Update ``fields`` on a session, optionally guarded by its current state.

    ``increments`` are added to counter columns in SQL so concurrent writers
    never overwrite each other's counts.
    """
    increments = dict(increments or {})
    unknown = set(fields) - _SESSION_MUTABLE
    if unknown:
        raise ValueError(f"Unsupported session fields: {', '.join(sorted(unknown))}")
    bad_counters = set(increments) - _SESSION_COUNTERS
    if bad_counters or set(increments) & set(fields):
        raise ValueError(f"Unsupported session counters: {', '.join(sorted(set(increments)))}")
    assignments = []
    params: list[Any] = []
    for column, value in fields.items():
        if column in {"concepts_mastered", "summary"} and value is not None:
            value = json_dumps(value)
        assignments.append(f"{column} = ?")
        params.append(value)
    for column, amount in increments.items():
        assignments.append(f"{column} = {column} + ?")
        params.append(int(amount))
    assignments.append("updated_at = CURRENT_TIMESTAMP")
    sql = f"UPDATE learning_sessions SET {', '.join(assignments)} WHERE id = ?"
    params.append(session_id)
    if expected_state is not None:
        sql += " AND state = ?"
        params.append(expected_state)
    if con is not None:
        return con.execute(sql, params).rowcount == 1
    return _exec(sql, params).rowcount == 1


def list_completed_sessions(student_id: str, since: Optional[datetime] = None, limit: int = 100) -> list[Dict[str, Any]]:
    """Completed sessions, newest first."""
    params: list[Any] = [student_id]
    sql = "SELECT * FROM learning_sessions WHERE student_id = ? AND state = 'COMPLETED'"
    if since is not None:
        sql += " AND started_at >= ?"
        params.append(to_iso(since))
    sql += " ORDER BY started_at DESC, id DESC LIMIT ?"
    params.append(int(limit))
    return [_row_to_session(row) for row in _query(sql, params)]


def insert_session_event(
    session_id: str,
    event: str,
    from_state: str,
    to_state: str,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    created_at: Optional[datetime] = None,
    con: Optional[sqlite3.Connection] = None,
) -> None:
    params = (
        session_id,
        event,
        from_state,
        to_state,
        json_dumps(metadata or {}),
        to_iso(created_at or utcnow()),
    )
    sql = """
        INSERT INTO session_events(session_id, event, from_state, to_state, metadata, created_at)
        VALUES (?,?,?,?,?,?)
        """
    if con is not None:
        con.execute(sql, params)
    else:
        _exec(sql, params)


def list_session_events(session_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT session_id, event, from_state, to_state, metadata, created_at FROM session_events WHERE session_id = ? ORDER BY id",
        (session_id,),
    )
    events = []
    for row in rows:
        entry = dict(row)
        entry["metadata"] = _decode_json_field(entry.get("metadata"), {})
        events.append(entry)
    return events

# -------------- learning plans --------------
_PLAN_MUTABLE = {
    "status",
    "current_concept_index",
    "hours_completed",
    "velocity_hours_per_week",
    "projected_completion_date",
    "is_ahead_of_schedule",
    "narrative",
    "updated_at",
}


def _row_to_plan(row: sqlite3.Row) -> Dict[str, Any]:
    entry = dict(row)
    entry["concept_sequence"] = _decode_json_field(entry.get("concept_sequence"), [])
    entry["milestones"] = _decode_json_field(entry.get("milestones"), [])
    entry["is_ahead_of_schedule"] = bool(entry.get("is_ahead_of_schedule"))
    return entry


def insert_plan(plan: Mapping[str, Any]) -> None:
    _exec(
        """
        INSERT INTO learning_plans(
          id, student_id, goal_id, status, concept_sequence, current_concept_index,
          total_estimated_hours, hours_completed, velocity_hours_per_week, weekly_hours_available,
          target_completion_date, projected_completion_date, is_ahead_of_schedule, milestones,
          narrative, created_at, updated_at
        )
        VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            plan["id"],
            plan["student_id"],
            plan["goal_id"],
            plan["status"],
            json_dumps(list(plan["concept_sequence"])),
            int(plan.get("current_concept_index", 0)),
            float(plan["total_estimated_hours"]),
            float(plan.get("hours_completed", 0.0)),
            float(plan["velocity_hours_per_week"]),
            float(plan["weekly_hours_available"]),
            plan.get("target_completion_date"),
            plan["projected_completion_date"],
            1 if plan.get("is_ahead_of_schedule", True) else 0,
            json_dumps(plan.get("milestones") or []),
            plan.get("narrative"),
            plan["created_at"],
            plan["updated_at"],
        ),
    )


def get_plan(plan_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM learning_plans WHERE id = ?", (plan_id,))
    return _row_to_plan(rows[0]) if rows else None


def list_plans(student_id: str, status: Optional[str] = None) -> list[Dict[str, Any]]:
    if status is not None:
        rows = _query(
            "SELECT * FROM learning_plans WHERE student_id = ? AND status = ? ORDER BY created_at, id",
            (student_id, status),
        )
    else:
        rows = _query(
            "SELECT * FROM learning_plans WHERE student_id = ? ORDER BY created_at, id",
            (student_id,),
        )
    return [_row_to_plan(row) for row in rows]


def update_plan(plan_id: str, fields: Mapping[str, Any], *, expected_index: Optional[int] = None) -> bool:
    """Update ``fields``; with ``expected_index`` the write only lands if the cursor is unchanged."""
    unknown = set(fields) - _PLAN_MUTABLE
    if unknown:
        raise ValueError(f"Unsupported plan fields: {', '.join(sorted(unknown))}")
    assignments = []
    params: list[Any] = []
    for column, value in fields.items():
        if column == "is_ahead_of_schedule":
            value = 1 if value else 0
        assignments.append(f"{column} = ?")
        params.append(value)
    sql = f"UPDATE learning_plans SET {', '.join(assignments)} WHERE id = ?"
    params.append(plan_id)
    if expected_index is not None:
        sql += " AND current_concept_index = ?"
        params.append(int(expected_index))
    return _exec(sql, params).rowcount == 1


def insert_eta_snapshot(
    plan_id: str,
    projected_completion_date: str,
    hours_remaining: float,
    concepts_remaining: int,
    effective_weekly_hours: float,
    days_difference: int,
    created_at: Optional[datetime] = None,
) -> None:
    _exec(
        """
        INSERT INTO eta_snapshots(plan_id, projected_completion_date, hours_remaining, concepts_remaining, effective_weekly_hours, days_difference, created_at)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            plan_id,
            projected_completion_date,
            float(hours_remaining),
            int(concepts_remaining),
            float(effective_weekly_hours),
            int(days_difference),
            to_iso(created_at or utcnow()),
        ),
    )


def list_eta_snapshots(plan_id: str, limit: int = 30) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM eta_snapshots WHERE plan_id = ? ORDER BY id DESC LIMIT ?",
        (plan_id, int(limit)),
    )
    return [dict(row) for row in rows]

# -------------- engine event outbox --------------
def insert_engine_event(event_type: str, student_id: str, payload: Dict[str, Any]) -> int:
    cur = _exec(
        "INSERT INTO engine_events(event_type, student_id, payload, created_at) VALUES (?,?,?,?)",
        (event_type, student_id, json_dumps(payload), to_iso(utcnow())),
    )
    return int(cur.lastrowid)


def list_engine_events(student_id: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    if student_id:
        rows = _query(
            "SELECT id, event_type, student_id, payload, created_at FROM engine_events WHERE student_id = ? ORDER BY id DESC LIMIT ?",
            (student_id, int(limit)),
        )
    else:
        rows = _query(
            "SELECT id, event_type, student_id, payload, created_at FROM engine_events ORDER BY id DESC LIMIT ?",
            (int(limit),),
        )
    events = []
    for row in rows:
        entry = dict(row)
        entry["payload"] = _decode_json_field(entry.get("payload"), {})
        events.append(entry)
    return events
