import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engines.classifier import DEFAULT_THRESHOLDS
from engines.mastery_grid import DEFAULT_GUARDRAIL, MasteryGrid
from storage import MathProgress, StorageBackend, StorageError


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()


class InMemoryStorage(StorageBackend):
    """Storage double that records every call; ``fail`` names methods that should raise."""

    def __init__(self, grid=None, guardrail=DEFAULT_GUARDRAIL, student_id="student-1", email="kid@example.com"):
        self.grid = grid if grid is not None else MasteryGrid.empty(guardrail)
        self.guardrail = guardrail
        self.student_id = student_id
        self.email = email
        self.students = {student_id: {"student_id": student_id, "email": email, "grade_level": "3", "guardrail": guardrail}}
        self.sessions = {}
        self.attempts = []
        self.updates = []
        self.completed = []
        self.grid_merges = []
        self.guardrail_writes = []
        self.summaries = []
        self.journey_state = "needs_placement"
        self.thresholds = DEFAULT_THRESHOLDS
        self.fail = set()
        self._counter = 0

    def _check(self, name):
        if name in self.fail:
            raise StorageError(f"{name} unavailable")

    def register_student(self, student_id, email, grade_level=None):
        self._check("register_student")
        record = {"student_id": student_id, "email": email, "grade_level": grade_level, "guardrail": self.guardrail}
        self.students[student_id] = record
        return record

    def get_student(self, student_id):
        self._check("get_student")
        return self.students.get(student_id)

    def create_session(self, subject, student_email, grade_level, *, session_type, problems):
        self._check("create_session")
        self._counter += 1
        session_id = f"session-{self._counter}"
        self.sessions[session_id] = {
            "session_id": session_id,
            "student_id": self.student_id,
            "session_type": session_type,
            "problems": [dict(p) for p in problems],
            "items_attempted": 0,
            "completed_at": None,
        }
        return session_id

    def update_session(self, session_id, metrics):
        self._check("update_session")
        self.updates.append((session_id, metrics))
        if session_id in self.sessions:
            self.sessions[session_id]["items_attempted"] = metrics.items_attempted
            self.sessions[session_id]["items_correct"] = metrics.items_correct

    def complete_session(self, session_id):
        self._check("complete_session")
        self.completed.append(session_id)
        if session_id in self.sessions:
            self.sessions[session_id]["completed_at"] = "2026-01-01T00:00:00"

    def record_question_attempt(self, session_id, student_id, multiplicand, multiplier, given_answer,
                                correct_answer, is_correct, elapsed_seconds, ordinal):
        self._check("record_question_attempt")
        self.attempts.append(
            {
                "session_id": session_id,
                "student_id": student_id,
                "fact": (multiplicand, multiplier),
                "given_answer": given_answer,
                "correct_answer": correct_answer,
                "is_correct": is_correct,
                "elapsed_seconds": elapsed_seconds,
                "ordinal": ordinal,
            }
        )

    def get_math_progress(self, email, grade_level):
        self._check("get_math_progress")
        return MathProgress(student_id=self.student_id, grid=self.grid, current_guardrail=self.guardrail)

    def update_math_grid(self, student_id, cells):
        self._check("update_math_grid")
        cells = list(cells)
        self.grid_merges.append((student_id, cells))
        self.grid = self.grid.merge(cells)

    def set_math_guardrail(self, student_id, guardrail):
        self._check("set_math_guardrail")
        self.guardrail_writes.append((student_id, guardrail))
        self.guardrail = guardrail
        self.grid = self.grid.with_guardrail(guardrail)

    def get_active_sessions_for_student(self, student_id):
        self._check("get_active_sessions_for_student")
        return [
            {
                "id": s["session_id"],
                "session_type": s["session_type"],
                "completed_items": s["items_attempted"],
                "total_items": len(s["problems"]),
            }
            for s in self.sessions.values()
            if not s["completed_at"]
        ]

    def get_current_journey_state(self, student_id):
        self._check("get_current_journey_state")
        return self.journey_state

    def get_session(self, session_id):
        self._check("get_session")
        return self.sessions.get(session_id)

    def list_recent_session_summaries(self, student_id, limit=5):
        self._check("list_recent_session_summaries")
        return list(self.summaries)[-limit:]

    def get_time_thresholds(self):
        self._check("get_time_thresholds")
        return self.thresholds

    def set_time_thresholds(self, thresholds):
        self._check("set_time_thresholds")
        self.thresholds = thresholds

    def get_cohort_metrics(self, window_days=7):
        self._check("get_cohort_metrics")
        return {"window_days": window_days}

    def list_student_summaries(self, page=1, page_size=20):
        self._check("list_student_summaries")
        return {"page": page, "page_size": page_size, "items": list(self.students.values())}


class StepClock:
    """Deterministic clock advancing ``step`` seconds per call."""

    def __init__(self, start=None, step=1.0):
        self.current = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
        self.step = timedelta(seconds=step)

    def __call__(self):
        value = self.current
        self.current += self.step
        return value


def run_now(task):
    task()


@pytest.fixture
def memory_storage():
    return InMemoryStorage()
