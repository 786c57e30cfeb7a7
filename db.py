import json
import math
import os
import sqlite3
from uuid import uuid4
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool
from engines.classifier import (
    DEFAULT_THRESHOLDS,
    DIFFICULTY_BANDS,
    SPEED_BUCKETS,
    TimeThresholds,
    calculate_accuracy,
    calculate_average_time,
    classify_time,
    difficulty_band,
    round_half_up,
)
from engines.mastery_grid import DEFAULT_GUARDRAIL, GRID_SIZE, GUARDRAIL_LEVELS, MASTERY_THRESHOLD

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_SESSION_TYPES = {"placement", "practice"}
_THRESHOLD_SETTING = "time_thresholds"
_SESSION_METRIC_COLUMNS = (
    "items_attempted",
    "items_correct",
    "accuracy",
    "duration",
    "average_time_per_question",
    "fast_answers_count",
    "medium_answers_count",
    "slow_answers_count",
)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


# -------------- schema helpers --------------
def _add_column_if_missing(con: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    try:
        info = con.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row[1] for row in info}
        if column not in existing:
            con.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    except sqlite3.OperationalError:
        # Older SQLite builds may raise when table missing; safe to ignore here.
        pass


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    guardrails = ", ".join(f"'{level}'" for level in GUARDRAIL_LEVELS)
    with _conn() as con:
        con.executescript(
            f"""
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS students (
              student_id            TEXT PRIMARY KEY,
              email                 TEXT UNIQUE,
              grade_level           TEXT,
              guardrail             TEXT NOT NULL DEFAULT '{DEFAULT_GUARDRAIL}'
                                    CHECK (guardrail IN ({guardrails})),
              total_correct_answers INTEGER NOT NULL DEFAULT 0,
              total_attempts        INTEGER NOT NULL DEFAULT 0,
              created_at            TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at            TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS practice_sessions (
              session_id                TEXT PRIMARY KEY,
              student_id                TEXT NOT NULL,
              subject                   TEXT NOT NULL DEFAULT 'math',
              grade_level               TEXT,
              session_type              TEXT NOT NULL CHECK (session_type IN ('placement', 'practice')),
              problems_json             TEXT NOT NULL DEFAULT '[]',
              total_items               INTEGER NOT NULL DEFAULT 0,
              items_attempted           INTEGER NOT NULL DEFAULT 0,
              items_correct             INTEGER NOT NULL DEFAULT 0,
              accuracy                  INTEGER NOT NULL DEFAULT 0,
              duration                  REAL NOT NULL DEFAULT 0,
              average_time_per_question REAL,
              fast_answers_count        INTEGER,
              medium_answers_count      INTEGER,
              slow_answers_count        INTEGER,
              started_at                TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              last_activity_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              completed_at              TIMESTAMP,
              FOREIGN KEY(student_id) REFERENCES students(student_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_student
              ON practice_sessions(student_id, started_at DESC);

            CREATE TABLE IF NOT EXISTS question_attempts (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id       TEXT NOT NULL,
              student_id       TEXT NOT NULL,
              multiplicand     INTEGER NOT NULL,
              multiplier       INTEGER NOT NULL,
              given_answer     INTEGER,
              correct_answer   INTEGER NOT NULL,
              is_correct       INTEGER NOT NULL,
              elapsed_seconds  REAL NOT NULL,
              ordinal          INTEGER NOT NULL,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(session_id) REFERENCES practice_sessions(session_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_attempts_session ON question_attempts(session_id, ordinal);
            CREATE INDEX IF NOT EXISTS idx_attempts_student ON question_attempts(student_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS math_grid_cells (
              student_id                       TEXT NOT NULL,
              multiplicand                     INTEGER NOT NULL CHECK (multiplicand BETWEEN 1 AND {GRID_SIZE}),
              multiplier                       INTEGER NOT NULL CHECK (multiplier BETWEEN 1 AND {GRID_SIZE}),
              consecutive_correct              INTEGER NOT NULL DEFAULT 0,
              last_attempt_correct             INTEGER,
              attempts                         INTEGER NOT NULL DEFAULT 0,
              average_time_seconds             REAL NOT NULL DEFAULT 0,
              total_time_spent                 REAL NOT NULL DEFAULT 0,
              last_attempt_time_classification TEXT,
              mastery_achieved_at              TEXT,
              updated_at                       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (student_id, multiplicand, multiplier),
              FOREIGN KEY(student_id) REFERENCES students(student_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS app_settings (
              key         TEXT PRIMARY KEY,
              value       TEXT NOT NULL,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        _add_column_if_missing(con, "practice_sessions", "subject", "TEXT NOT NULL DEFAULT 'math'")
        con.commit()


# -------------- decoding helpers --------------
def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return value


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _bool_or_none(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


# -------------- students --------------
def upsert_student(student_id: str, email: Optional[str], grade_level: Optional[str]) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO students (student_id, email, grade_level, updated_at)
        VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(student_id) DO UPDATE SET
            email = COALESCE(excluded.email, students.email),
            grade_level = COALESCE(excluded.grade_level, students.grade_level),
            updated_at = CURRENT_TIMESTAMP
        """,
        (student_id, email, grade_level),
    )
    return get_student(student_id) or {}


def _student_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "student_id": row["student_id"],
        "email": row["email"],
        "grade_level": row["grade_level"],
        "guardrail": row["guardrail"],
        "total_correct_answers": int(row["total_correct_answers"] or 0),
        "total_attempts": int(row["total_attempts"] or 0),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def get_student(student_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM students WHERE student_id = ?", (student_id,))
    return _student_row(rows[0]) if rows else None


def get_student_by_email(email: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM students WHERE lower(email) = lower(?)", (email,))
    return _student_row(rows[0]) if rows else None


def set_guardrail(student_id: str, guardrail: str) -> None:
    if guardrail not in GUARDRAIL_LEVELS:
        raise ValueError(f"guardrail must be one of {', '.join(GUARDRAIL_LEVELS)}")
    cur = _exec(
        "UPDATE students SET guardrail = ?, updated_at = CURRENT_TIMESTAMP WHERE student_id = ?",
        (guardrail, student_id),
    )
    if cur.rowcount == 0:
        raise LookupError(f"unknown student: {student_id}")


# -------------- sessions --------------
def create_session(
    student_id: str,
    *,
    session_type: str,
    problems: Sequence[Mapping[str, Any]],
    subject: str = "math",
    grade_level: Optional[str] = None,
) -> str:
    if session_type not in _SESSION_TYPES:
        raise ValueError(f"session_type must be one of {sorted(_SESSION_TYPES)}")
    session_id = uuid4().hex
    _exec(
        """
        INSERT INTO practice_sessions
          (session_id, student_id, subject, grade_level, session_type, problems_json, total_items)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            student_id,
            subject,
            grade_level,
            session_type,
            json_dumps([dict(problem) for problem in problems]),
            len(problems),
        ),
    )
    return session_id


def update_session_metrics(session_id: str, metrics: Mapping[str, Any]) -> None:
    assignments: list[str] = []
    params: list[Any] = []
    for column in _SESSION_METRIC_COLUMNS:
        if column in metrics and metrics[column] is not None:
            assignments.append(f"{column} = ?")
            params.append(metrics[column])
    assignments.append("last_activity_at = CURRENT_TIMESTAMP")
    params.append(session_id)
    cur = _exec(
        f"UPDATE practice_sessions SET {', '.join(assignments)} WHERE session_id = ?",
        params,
    )
    if cur.rowcount == 0:
        raise LookupError(f"unknown session: {session_id}")


def complete_session(session_id: str) -> None:
    cur = _exec(
        """
        UPDATE practice_sessions
        SET completed_at = COALESCE(completed_at, CURRENT_TIMESTAMP),
            last_activity_at = CURRENT_TIMESTAMP
        WHERE session_id = ?
        """,
        (session_id,),
    )
    if cur.rowcount == 0:
        raise LookupError(f"unknown session: {session_id}")


def _session_row(row: sqlite3.Row) -> Dict[str, Any]:
    problems = _decode_json_field(row["problems_json"])
    return {
        "session_id": row["session_id"],
        "student_id": row["student_id"],
        "subject": row["subject"],
        "grade_level": row["grade_level"],
        "session_type": row["session_type"],
        "problems": problems if isinstance(problems, list) else [],
        "total_items": int(row["total_items"] or 0),
        "items_attempted": int(row["items_attempted"] or 0),
        "items_correct": int(row["items_correct"] or 0),
        "accuracy": int(row["accuracy"] or 0),
        "duration": float(row["duration"] or 0.0),
        "average_time_per_question": row["average_time_per_question"],
        "fast_answers_count": row["fast_answers_count"],
        "medium_answers_count": row["medium_answers_count"],
        "slow_answers_count": row["slow_answers_count"],
        "started_at": row["started_at"],
        "last_activity_at": row["last_activity_at"],
        "completed_at": row["completed_at"],
    }


def get_session(session_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM practice_sessions WHERE session_id = ?", (session_id,))
    return _session_row(rows[0]) if rows else None


def list_sessions(
    student_id: str,
    *,
    session_type: Optional[str] = None,
    completed: Optional[bool] = None,
    limit: int = 100,
) -> list[Dict[str, Any]]:
    clauses = ["student_id = ?"]
    params: list[Any] = [student_id]
    if session_type:
        clauses.append("session_type = ?")
        params.append(session_type)
    if completed is True:
        clauses.append("completed_at IS NOT NULL")
    elif completed is False:
        clauses.append("completed_at IS NULL")
    params.append(int(limit))
    rows = _query(
        f"""
        SELECT * FROM practice_sessions
        WHERE {' AND '.join(clauses)}
        ORDER BY started_at DESC, rowid DESC
        LIMIT ?
        """,
        params,
    )
    return [_session_row(row) for row in rows]


def list_active_sessions(student_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT session_id, session_type, items_attempted, total_items, started_at, last_activity_at
        FROM practice_sessions
        WHERE student_id = ? AND completed_at IS NULL
        ORDER BY last_activity_at DESC, rowid DESC
        """,
        (student_id,),
    )
    return [
        {
            "id": row["session_id"],
            "session_type": row["session_type"],
            "completed_items": int(row["items_attempted"] or 0),
            "total_items": int(row["total_items"] or 0),
            "started_at": row["started_at"],
            "last_activity_at": row["last_activity_at"],
        }
        for row in rows
    ]


def list_recent_session_summaries(student_id: str, limit: int = 5) -> list[Dict[str, Any]]:
    """Completed practice sessions, oldest first, for trend analysis."""
    rows = _query(
        """
        SELECT * FROM practice_sessions
        WHERE student_id = ? AND session_type = 'practice' AND completed_at IS NOT NULL
        ORDER BY completed_at DESC, rowid DESC
        LIMIT ?
        """,
        (student_id, int(limit)),
    )
    summaries = [
        {
            "session_id": row["session_id"],
            "average_time": float(row["average_time_per_question"] or 0.0),
            "accuracy": int(row["accuracy"] or 0),
            "fast_answers": int(row["fast_answers_count"] or 0),
            "slow_answers": int(row["slow_answers_count"] or 0),
            "completed_at": row["completed_at"],
        }
        for row in rows
    ]
    summaries.reverse()
    return summaries


# -------------- attempts --------------
def record_question_attempt(
    session_id: str,
    student_id: str,
    multiplicand: int,
    multiplier: int,
    given_answer: Optional[int],
    correct_answer: int,
    is_correct: bool,
    elapsed_seconds: float,
    ordinal: int,
) -> int:
    cur = _exec(
        """
        INSERT INTO question_attempts
          (session_id, student_id, multiplicand, multiplier, given_answer, correct_answer,
           is_correct, elapsed_seconds, ordinal)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            student_id,
            int(multiplicand),
            int(multiplier),
            given_answer,
            int(correct_answer),
            1 if is_correct else 0,
            float(elapsed_seconds),
            int(ordinal),
        ),
    )
    return int(cur.lastrowid)


def list_question_attempts(session_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM question_attempts WHERE session_id = ? ORDER BY ordinal, id",
        (session_id,),
    )
    return [
        {
            "session_id": row["session_id"],
            "student_id": row["student_id"],
            "multiplicand": row["multiplicand"],
            "multiplier": row["multiplier"],
            "given_answer": row["given_answer"],
            "correct_answer": row["correct_answer"],
            "is_correct": bool(row["is_correct"]),
            "elapsed_seconds": float(row["elapsed_seconds"]),
            "ordinal": row["ordinal"],
            "created_at": row["created_at"],
        }
        for row in rows
    ]


# -------------- mastery grid --------------
def list_grid_cells(student_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM math_grid_cells WHERE student_id = ? ORDER BY multiplicand, multiplier",
        (student_id,),
    )
    return [
        {
            "multiplicand": row["multiplicand"],
            "multiplier": row["multiplier"],
            "consecutive_correct": int(row["consecutive_correct"] or 0),
            "last_attempt_correct": _bool_or_none(row["last_attempt_correct"]),
            "attempts": int(row["attempts"] or 0),
            "average_time_seconds": float(row["average_time_seconds"] or 0.0),
            "total_time_spent": float(row["total_time_spent"] or 0.0),
            "last_attempt_time_classification": row["last_attempt_time_classification"],
            "mastery_achieved_at": row["mastery_achieved_at"],
        }
        for row in rows
    ]


def upsert_grid_cells(student_id: str, cells: Iterable[Mapping[str, Any]]) -> int:
    """Merge cell updates into the stored grid and bump the student's totals.

    ``mastery_achieved_at`` keeps its first stored value.
    """
    payload = [dict(cell) for cell in cells]
    if not payload:
        return 0
    with _conn() as con:
        for cell in payload:
            last_correct = cell.get("last_attempt_correct")
            con.execute(
                """
                INSERT INTO math_grid_cells (
                  student_id, multiplicand, multiplier, consecutive_correct, last_attempt_correct,
                  attempts, average_time_seconds, total_time_spent,
                  last_attempt_time_classification, mastery_achieved_at, updated_at
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,CURRENT_TIMESTAMP)
                ON CONFLICT(student_id, multiplicand, multiplier) DO UPDATE SET
                  consecutive_correct = excluded.consecutive_correct,
                  last_attempt_correct = excluded.last_attempt_correct,
                  attempts = excluded.attempts,
                  average_time_seconds = excluded.average_time_seconds,
                  total_time_spent = excluded.total_time_spent,
                  last_attempt_time_classification = excluded.last_attempt_time_classification,
                  mastery_achieved_at = COALESCE(math_grid_cells.mastery_achieved_at, excluded.mastery_achieved_at),
                  updated_at = CURRENT_TIMESTAMP
                """,
                (
                    student_id,
                    int(cell["multiplicand"]),
                    int(cell["multiplier"]),
                    int(cell.get("consecutive_correct") or 0),
                    None if last_correct is None else (1 if last_correct else 0),
                    int(cell.get("attempts") or 0),
                    float(cell.get("average_time_seconds") or 0.0),
                    float(cell.get("total_time_spent") or 0.0),
                    cell.get("last_attempt_time_classification"),
                    cell.get("mastery_achieved_at"),
                ),
            )
        correct = sum(1 for cell in payload if cell.get("last_attempt_correct"))
        con.execute(
            """
            UPDATE students
            SET total_correct_answers = total_correct_answers + ?,
                total_attempts = total_attempts + ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE student_id = ?
            """,
            (correct, len(payload), student_id),
        )
        con.commit()
    return len(payload)


# -------------- settings --------------
def get_setting(key: str) -> Any:
    rows = _query("SELECT value FROM app_settings WHERE key = ?", (key,))
    if not rows:
        return None
    return _decode_json_field(rows[0]["value"])


def set_setting(key: str, value: Any) -> None:
    _exec(
        """
        INSERT INTO app_settings (key, value, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
        """,
        (key, json_dumps(value)),
    )


def get_time_thresholds(default: TimeThresholds = DEFAULT_THRESHOLDS) -> TimeThresholds:
    stored = get_setting(_THRESHOLD_SETTING)
    if not isinstance(stored, dict):
        return default
    try:
        return TimeThresholds(
            fast=float(stored.get("fast_threshold", default.fast)),
            medium=float(stored.get("medium_threshold", default.medium)),
        )
    except (TypeError, ValueError):
        return default


def set_time_thresholds(thresholds: TimeThresholds) -> None:
    set_setting(_THRESHOLD_SETTING, thresholds.as_dict())


# -------------- cohort analytics --------------
def compute_cohort_metrics(
    window_days: int = 7,
    *,
    thresholds: Optional[TimeThresholds] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Aggregate question attempts over the trailing window for the admin dashboard.

    Speed buckets are derived from raw elapsed times with the current
    thresholds, so changing thresholds re-buckets history.
    """
    thresholds = thresholds or get_time_thresholds()
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=max(1, int(window_days)))

    rows = _query(
        """
        SELECT student_id, multiplicand, multiplier, is_correct, elapsed_seconds, created_at
        FROM question_attempts
        """
    )

    by_band: Dict[str, Dict[str, int]] = {band: {"attempted": 0, "correct": 0} for band in DIFFICULTY_BANDS}
    speed: Dict[str, int] = {bucket: 0 for bucket in SPEED_BUCKETS}
    students: set[str] = set()
    attempted = correct = 0
    total_time = 0.0
    for row in rows:
        created = _parse_timestamp(row["created_at"])
        if created is not None and created < since:
            continue
        attempted += 1
        is_correct = bool(row["is_correct"])
        correct += 1 if is_correct else 0
        elapsed = float(row["elapsed_seconds"] or 0.0)
        total_time += elapsed
        students.add(row["student_id"])
        band = difficulty_band(int(row["multiplicand"]), int(row["multiplier"]))
        by_band[band]["attempted"] += 1
        by_band[band]["correct"] += 1 if is_correct else 0
        speed[classify_time(elapsed, thresholds)] += 1

    total_students = _query("SELECT COUNT(*) AS n FROM students")[0]["n"]
    return {
        "window_days": max(1, int(window_days)),
        "total_students": int(total_students or 0),
        "active_students": len(students),
        "attempted": attempted,
        "correct": correct,
        "accuracy": calculate_accuracy(correct, attempted),
        "average_time_seconds": calculate_average_time(total_time, attempted),
        "speed_breakdown": speed,
        "difficulty_breakdown": {
            band: {**counts, "accuracy": calculate_accuracy(counts["correct"], counts["attempted"])}
            for band, counts in by_band.items()
        },
        "thresholds": thresholds.as_dict(),
    }


def list_student_summaries(page: int = 1, page_size: int = 20) -> Dict[str, Any]:
    page = max(1, int(page))
    page_size = max(1, min(100, int(page_size)))
    total = int(_query("SELECT COUNT(*) AS n FROM students")[0]["n"] or 0)
    rows = _query(
        """
        SELECT s.*,
               (SELECT COUNT(*) FROM math_grid_cells c
                 WHERE c.student_id = s.student_id AND c.consecutive_correct >= ?) AS mastered_cells,
               (SELECT MAX(p.last_activity_at) FROM practice_sessions p
                 WHERE p.student_id = s.student_id) AS last_active_at
        FROM students s
        ORDER BY s.student_id
        LIMIT ? OFFSET ?
        """,
        (MASTERY_THRESHOLD, page_size, (page - 1) * page_size),
    )
    items = []
    for row in rows:
        summary = _student_row(row)
        summary["accuracy"] = calculate_accuracy(summary["total_correct_answers"], summary["total_attempts"])
        summary["mastery_percentage"] = round_half_up(100 * int(row["mastered_cells"] or 0) / (GRID_SIZE * GRID_SIZE))
        summary["last_active_at"] = row["last_active_at"]
        items.append(summary)
    return {
        "page": page,
        "page_size": page_size,
        "total": total,
        "pages": max(1, math.ceil(total / page_size)) if total else 0,
        "items": items,
    }
