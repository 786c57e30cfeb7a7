"""Storage collaborator used by the session engine, journey resolver and coach tools.

``StorageBackend`` is the narrow contract the core depends on. Two adapters are
provided: ``SQLiteStorage`` (local tables managed by :mod:`db`) and
``HttpStorage`` (a REST service reached with ``requests``). The composing
application builds exactly one of them and injects it; nothing here is a
module-level singleton.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

import db
import journey
from engines.classifier import DEFAULT_THRESHOLDS, TimeThresholds
from engines.mastery_grid import DEFAULT_GUARDRAIL, GridCell, MasteryGrid

LOGGER = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised by storage adapters when the backing store rejects or fails a call."""


@dataclass
class MathProgress:
    student_id: str
    grid: MasteryGrid
    current_guardrail: str = DEFAULT_GUARDRAIL
    total_correct_answers: int = 0
    total_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "grid_state": self.grid.to_rows(),
            "current_guardrail": self.current_guardrail,
            "total_correct_answers": self.total_correct_answers,
            "total_attempts": self.total_attempts,
        }


@dataclass
class SessionMetrics:
    items_attempted: int
    items_correct: int
    accuracy: int
    duration: float = 0.0
    average_time_per_question: Optional[float] = None
    fast_answers_count: Optional[int] = None
    medium_answers_count: Optional[int] = None
    slow_answers_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in self.__dict__.items() if value is not None}


@dataclass
class StudentRef:
    """Who a session belongs to."""

    student_id: Optional[str]
    email: str
    grade_level: str = "default"
    subject: str = "math"


class StorageBackend:
    """Contract consumed by the core. Adapters override every method."""

    def register_student(self, student_id: str, email: str, grade_level: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def get_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def create_session(
        self,
        subject: str,
        student_email: str,
        grade_level: str,
        *,
        session_type: str,
        problems: Sequence[Mapping[str, Any]],
    ) -> str:
        raise NotImplementedError

    def update_session(self, session_id: str, metrics: SessionMetrics) -> None:
        raise NotImplementedError

    def complete_session(self, session_id: str) -> None:
        raise NotImplementedError

    def record_question_attempt(
        self,
        session_id: str,
        student_id: str,
        multiplicand: int,
        multiplier: int,
        given_answer: Optional[int],
        correct_answer: int,
        is_correct: bool,
        elapsed_seconds: float,
        ordinal: int,
    ) -> None:
        raise NotImplementedError

    def get_math_progress(self, email: str, grade_level: str) -> MathProgress:
        raise NotImplementedError

    def update_math_grid(self, student_id: str, cells: Sequence[GridCell]) -> None:
        raise NotImplementedError

    def set_math_guardrail(self, student_id: str, guardrail: str) -> None:
        raise NotImplementedError

    def get_active_sessions_for_student(self, student_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_current_journey_state(self, student_id: str) -> str:
        raise NotImplementedError

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def list_recent_session_summaries(self, student_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_time_thresholds(self) -> TimeThresholds:
        raise NotImplementedError

    def set_time_thresholds(self, thresholds: TimeThresholds) -> None:
        raise NotImplementedError

    def get_cohort_metrics(self, window_days: int = 7) -> Dict[str, Any]:
        raise NotImplementedError

    def list_student_summaries(self, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        raise NotImplementedError


def _is_not_found(exc: StorageError) -> bool:
    cause = exc.__cause__
    return isinstance(cause, requests.HTTPError) and cause.response is not None and cause.response.status_code == 404


def _progress_from_payload(payload: Mapping[str, Any]) -> MathProgress:
    guardrail = str(payload.get("current_guardrail") or DEFAULT_GUARDRAIL)
    return MathProgress(
        student_id=str(payload.get("student_id") or ""),
        grid=MasteryGrid.from_rows(payload.get("grid_state") or [], guardrail),
        current_guardrail=guardrail,
        total_correct_answers=int(payload.get("total_correct_answers") or 0),
        total_attempts=int(payload.get("total_attempts") or 0),
    )


class SQLiteStorage(StorageBackend):
    """Adapter over the pooled SQLite helpers in :mod:`db`."""

    def __init__(self, default_thresholds: TimeThresholds = DEFAULT_THRESHOLDS) -> None:
        self.default_thresholds = default_thresholds

    def _student_by_email(self, email: str) -> Dict[str, Any]:
        student = db.get_student_by_email(email)
        if not student:
            raise StorageError(f"unknown student email: {email}")
        return student

    def register_student(self, student_id, email, grade_level=None):
        try:
            return db.upsert_student(student_id, email, grade_level)
        except sqlite3.IntegrityError as exc:
            raise StorageError(f"email {email} already belongs to another student") from exc
        except sqlite3.Error as exc:
            raise StorageError(f"register_student failed: {exc}") from exc

    def get_student(self, student_id):
        try:
            return db.get_student(student_id)
        except sqlite3.Error as exc:
            raise StorageError(f"get_student failed: {exc}") from exc

    def create_session(self, subject, student_email, grade_level, *, session_type, problems):
        try:
            student = self._student_by_email(student_email)
            return db.create_session(
                student["student_id"],
                session_type=session_type,
                problems=problems,
                subject=subject,
                grade_level=grade_level,
            )
        except (sqlite3.Error, ValueError) as exc:
            raise StorageError(f"create_session failed: {exc}") from exc

    def update_session(self, session_id, metrics):
        try:
            db.update_session_metrics(session_id, metrics.to_dict())
        except (sqlite3.Error, LookupError) as exc:
            raise StorageError(f"update_session failed: {exc}") from exc

    def complete_session(self, session_id):
        try:
            db.complete_session(session_id)
        except (sqlite3.Error, LookupError) as exc:
            raise StorageError(f"complete_session failed: {exc}") from exc

    def record_question_attempt(
        self,
        session_id,
        student_id,
        multiplicand,
        multiplier,
        given_answer,
        correct_answer,
        is_correct,
        elapsed_seconds,
        ordinal,
    ):
        try:
            db.record_question_attempt(
                session_id,
                student_id,
                multiplicand,
                multiplier,
                given_answer,
                correct_answer,
                is_correct,
                elapsed_seconds,
                ordinal,
            )
        except sqlite3.Error as exc:
            raise StorageError(f"record_question_attempt failed: {exc}") from exc

    def get_math_progress(self, email, grade_level):
        try:
            student = self._student_by_email(email)
            cells = db.list_grid_cells(student["student_id"])
        except sqlite3.Error as exc:
            raise StorageError(f"get_math_progress failed: {exc}") from exc
        guardrail = student.get("guardrail") or DEFAULT_GUARDRAIL
        return MathProgress(
            student_id=student["student_id"],
            grid=MasteryGrid.from_cells((GridCell.from_mapping(cell) for cell in cells), guardrail),
            current_guardrail=guardrail,
            total_correct_answers=student["total_correct_answers"],
            total_attempts=student["total_attempts"],
        )

    def update_math_grid(self, student_id, cells):
        try:
            db.upsert_grid_cells(student_id, [cell.to_dict() for cell in cells])
        except sqlite3.Error as exc:
            raise StorageError(f"update_math_grid failed: {exc}") from exc

    def set_math_guardrail(self, student_id, guardrail):
        try:
            db.set_guardrail(student_id, guardrail)
        except (sqlite3.Error, LookupError, ValueError) as exc:
            raise StorageError(f"set_math_guardrail failed: {exc}") from exc

    def get_active_sessions_for_student(self, student_id):
        try:
            return db.list_active_sessions(student_id)
        except sqlite3.Error as exc:
            raise StorageError(f"get_active_sessions_for_student failed: {exc}") from exc

    def get_current_journey_state(self, student_id):
        try:
            sessions = db.list_sessions(student_id, limit=500)
        except sqlite3.Error as exc:
            raise StorageError(f"get_current_journey_state failed: {exc}") from exc
        return journey.derive_journey_state(sessions)

    def get_session(self, session_id):
        try:
            return db.get_session(session_id)
        except sqlite3.Error as exc:
            raise StorageError(f"get_session failed: {exc}") from exc

    def list_recent_session_summaries(self, student_id, limit=5):
        try:
            return db.list_recent_session_summaries(student_id, limit=limit)
        except sqlite3.Error as exc:
            raise StorageError(f"list_recent_session_summaries failed: {exc}") from exc

    def get_time_thresholds(self):
        try:
            return db.get_time_thresholds(self.default_thresholds)
        except sqlite3.Error as exc:
            raise StorageError(f"get_time_thresholds failed: {exc}") from exc

    def set_time_thresholds(self, thresholds):
        try:
            db.set_time_thresholds(thresholds)
        except sqlite3.Error as exc:
            raise StorageError(f"set_time_thresholds failed: {exc}") from exc

    def get_cohort_metrics(self, window_days=7):
        try:
            return db.compute_cohort_metrics(window_days=window_days)
        except sqlite3.Error as exc:
            raise StorageError(f"get_cohort_metrics failed: {exc}") from exc

    def list_student_summaries(self, page=1, page_size=20):
        try:
            return db.list_student_summaries(page=page, page_size=page_size)
        except sqlite3.Error as exc:
            raise StorageError(f"list_student_summaries failed: {exc}") from exc


class HttpStorage(StorageBackend):
    """Adapter for a REST storage service speaking JSON."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()
        self._http.headers.setdefault("Content-Type", "application/json")
        if token:
            self._http.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, *, json: Any = None, params: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(method, url, json=json, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            LOGGER.warning("Storage call %s %s returned HTTP %s", method, path, status)
            raise StorageError(f"{method} {path} failed with HTTP {status}") from exc
        except requests.RequestException as exc:
            LOGGER.warning("Storage call %s %s failed: %s", method, path, exc)
            raise StorageError(f"{method} {path} failed: {exc}") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise StorageError(f"{method} {path} returned invalid JSON") from exc

    def register_student(self, student_id, email, grade_level=None):
        data = self._request(
            "PUT",
            f"/students/{student_id}",
            json={"email": email, "grade_level": grade_level},
        )
        return dict(data or {"student_id": student_id, "email": email, "grade_level": grade_level})

    def get_student(self, student_id):
        try:
            return self._request("GET", f"/students/{student_id}")
        except StorageError as exc:
            if _is_not_found(exc):
                return None
            raise

    def create_session(self, subject, student_email, grade_level, *, session_type, problems):
        data = self._request(
            "POST",
            "/sessions",
            json={
                "subject": subject,
                "student_email": student_email,
                "grade_level": grade_level,
                "session_type": session_type,
                "problems": [dict(problem) for problem in problems],
            },
        )
        session_id = (data or {}).get("session_id")
        if not session_id:
            raise StorageError("create_session response did not include a session_id")
        return str(session_id)

    def update_session(self, session_id, metrics):
        self._request("PATCH", f"/sessions/{session_id}", json=metrics.to_dict())

    def complete_session(self, session_id):
        self._request("POST", f"/sessions/{session_id}/complete")

    def record_question_attempt(
        self,
        session_id,
        student_id,
        multiplicand,
        multiplier,
        given_answer,
        correct_answer,
        is_correct,
        elapsed_seconds,
        ordinal,
    ):
        self._request(
            "POST",
            f"/sessions/{session_id}/attempts",
            json={
                "student_id": student_id,
                "multiplicand": multiplicand,
                "multiplier": multiplier,
                "given_answer": given_answer,
                "correct_answer": correct_answer,
                "is_correct": bool(is_correct),
                "elapsed_seconds": float(elapsed_seconds),
                "ordinal": ordinal,
            },
        )

    def get_math_progress(self, email, grade_level):
        data = self._request("GET", "/math/progress", params={"email": email, "grade_level": grade_level})
        if not isinstance(data, dict):
            raise StorageError("get_math_progress returned an unexpected payload")
        return _progress_from_payload(data)

    def update_math_grid(self, student_id, cells):
        self._request(
            "POST",
            f"/math/grid/{student_id}",
            json={"cells": [cell.to_dict() for cell in cells]},
        )

    def set_math_guardrail(self, student_id, guardrail):
        self._request("PUT", f"/math/guardrail/{student_id}", json={"guardrail": guardrail})

    def get_active_sessions_for_student(self, student_id):
        data = self._request("GET", f"/students/{student_id}/active-sessions")
        return list(data or [])

    def get_current_journey_state(self, student_id):
        data = self._request("GET", f"/students/{student_id}/journey")
        if isinstance(data, dict):
            return str(data.get("journey_state") or "")
        return str(data or "")

    def get_session(self, session_id):
        try:
            return self._request("GET", f"/sessions/{session_id}")
        except StorageError as exc:
            if _is_not_found(exc):
                return None
            raise

    def list_recent_session_summaries(self, student_id, limit=5):
        data = self._request("GET", f"/students/{student_id}/session-summaries", params={"limit": limit})
        return list(data or [])

    def get_time_thresholds(self):
        data = self._request("GET", "/settings/time-thresholds") or {}
        return TimeThresholds(
            fast=float(data.get("fast_threshold", DEFAULT_THRESHOLDS.fast)),
            medium=float(data.get("medium_threshold", DEFAULT_THRESHOLDS.medium)),
        )

    def set_time_thresholds(self, thresholds):
        self._request("PUT", "/settings/time-thresholds", json=thresholds.as_dict())

    def get_cohort_metrics(self, window_days=7):
        return self._request("GET", "/analytics/cohort", params={"window_days": window_days}) or {}

    def list_student_summaries(self, page=1, page_size=20):
        return self._request("GET", "/analytics/students", params={"page": page, "page_size": page_size}) or {}
