"""Session engine for placement tests and adaptive practice runs.

One engine instance drives one session at a time::

    engine = SessionEngine(storage)
    engine.start("practice", student)
    while engine.current_problem() is not None:
        engine.submit_answer(answer, elapsed_seconds)
        engine.advance()
    engine.complete()

State transitions are ``not_started -> awaiting_answer -> (showing_result <->
awaiting_answer)* -> completed``. Storage calls on the interactive path are
either fatal to the operation (session creation, missing identity) or
best effort (attempt recording, autosave, completion), in which case the
failure is logged and the in-memory session carries on.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from engines.autosave import AutosaveScheduler
from engines.classifier import DEFAULT_THRESHOLDS, TimeThresholds, calculate_accuracy
from engines.mastery_grid import Fact, GridCell, MasteryGrid, apply_answer, empty_cell
from engines.problem_generator import (
    PRACTICE_SESSION_SIZE,
    Problem,
    generate_placement_problems,
    generate_practice_problems,
    problems_to_payload,
)

from storage import SessionMetrics, StorageBackend, StorageError, StudentRef

LOGGER = logging.getLogger(__name__)

PLACEMENT = "placement"
PRACTICE = "practice"
SESSION_TYPES = (PLACEMENT, PRACTICE)

Dispatcher = Callable[[Callable[[], None]], None]
Clock = Callable[[], datetime]


class SessionError(Exception):
    """Base class for session engine errors."""


class SessionCreationError(SessionError):
    """Storage refused or failed to create the session; the caller may retry."""


class NotAuthenticatedError(SessionError):
    """No identified student is available to attribute an answer to."""


class AttemptRecordError(SessionError):
    """Recording a raw attempt failed. Logged, never raised to the caller."""


class SessionUpdateError(SessionError):
    """Pushing aggregates or completing a session failed. Logged, never raised."""


class SessionStateError(SessionError):
    """The requested operation does not fit the current session state."""


class SessionNotFoundError(SessionError):
    """A session to resume does not exist."""


class SessionStatus:
    NOT_STARTED = "not_started"
    AWAITING_ANSWER = "awaiting_answer"
    SHOWING_RESULT = "showing_result"
    COMPLETED = "completed"


@dataclass
class SessionState:
    session_id: str
    session_type: str
    student: StudentRef
    problem_queue: List[Problem]
    started_at: datetime
    thresholds: TimeThresholds = DEFAULT_THRESHOLDS
    current_problem_index: int = 0
    incorrect_problems: List[Problem] = field(default_factory=list)
    grid_updates: Dict[Fact, GridCell] = field(default_factory=dict)
    baseline_grid: Optional[MasteryGrid] = None
    # correct answers persisted before a resume
    resumed_correct: int = 0

    @property
    def exhausted(self) -> bool:
        return self.current_problem_index >= len(self.problem_queue)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_started_at(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _spawn_daemon(task: Callable[[], None]) -> None:
    threading.Thread(target=task, daemon=True).start()


class SessionEngine:
    def __init__(
        self,
        storage: StorageBackend,
        *,
        identity: Optional[Callable[[], Optional[str]]] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        thresholds: Optional[TimeThresholds] = None,
        dispatcher: Optional[Dispatcher] = None,
        practice_session_size: int = PRACTICE_SESSION_SIZE,
        autosave_interval: Optional[float] = None,
    ) -> None:
        self.storage = storage
        self._identity = identity
        self._clock = clock or _utcnow
        self._rng = rng or random.Random()
        self._thresholds = thresholds
        self._dispatch = dispatcher or _spawn_daemon
        self.practice_session_size = practice_session_size
        self.autosave_interval = autosave_interval

        self._lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._state: Optional[SessionState] = None
        self._status = SessionStatus.NOT_STARTED
        self._autosave: Optional[AutosaveScheduler] = None

    # ------------------------------------------------------------------
    # read-only views
    # ------------------------------------------------------------------
    @property
    def state(self) -> Optional[SessionState]:
        return self._state

    @property
    def status(self) -> str:
        return self._status

    @property
    def session_id(self) -> Optional[str]:
        state = self._state
        return state.session_id if state else None

    @property
    def is_active(self) -> bool:
        return self._state is not None

    def current_problem(self) -> Optional[Problem]:
        with self._lock:
            state = self._state
            if state is None or state.exhausted:
                return None
            return state.problem_queue[state.current_problem_index]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            state = self._state
            if state is None:
                return {"status": self._status, "session_id": None}
            problem = self.current_problem()
            return {
                "session_id": state.session_id,
                "session_type": state.session_type,
                "student_id": state.student.student_id,
                "status": self._status,
                "current_problem_index": state.current_problem_index,
                "total_problems": len(state.problem_queue),
                "current_problem": problem.to_dict() if problem else None,
                "incorrect_problems": problems_to_payload(state.incorrect_problems),
                "grid_updates": [cell.to_dict() for cell in state.grid_updates.values()],
                "started_at": state.started_at.isoformat(),
            }

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self, session_type: str, student: StudentRef) -> SessionState:
        """Generate the queue, register the session with storage and begin.

        Raises :class:`SessionCreationError` when storage fails. A practice
        session with nothing left to practice is completed immediately.
        """

        if session_type not in SESSION_TYPES:
            raise ValueError(f"session_type must be one of {', '.join(SESSION_TYPES)}")

        with self._lock:
            if self._state is not None:
                raise SessionStateError(f"session {self._state.session_id} is still active")

            if session_type == PRACTICE:
                try:
                    progress = self.storage.get_math_progress(student.email, student.grade_level)
                except StorageError as exc:
                    raise SessionCreationError(f"could not load progress: {exc}") from exc
                grid: Optional[MasteryGrid] = progress.grid
                if not student.student_id and progress.student_id:
                    student.student_id = progress.student_id
                problems = generate_practice_problems(grid, self._rng, session_size=self.practice_session_size)
            else:
                grid = self._load_grid(student)
                problems = generate_placement_problems(student.grade_level, self._rng)

            try:
                session_id = self.storage.create_session(
                    student.subject,
                    student.email,
                    student.grade_level,
                    session_type=session_type,
                    problems=problems_to_payload(problems),
                )
            except StorageError as exc:
                raise SessionCreationError(f"could not create {session_type} session: {exc}") from exc

            state = SessionState(
                session_id=session_id,
                session_type=session_type,
                student=student,
                problem_queue=list(problems),
                started_at=self._clock(),
                thresholds=self._resolve_thresholds(),
                baseline_grid=grid,
            )
            self._begin(state)
            LOGGER.info(
                "Started %s session %s for %s with %s problems",
                session_type,
                session_id,
                student.student_id or student.email,
                len(problems),
            )

            if not problems:
                LOGGER.info("Session %s has no problems; completing immediately", session_id)
                self.complete()
            return state

    def resume(self, session_id: str, student: StudentRef) -> SessionState:
        """Rebuild an abandoned session from its persisted queue and cursor.

        Per-fact updates made before the interruption were never persisted and
        start empty. The persisted correct count and start time carry over.
        """

        with self._lock:
            if self._state is not None:
                raise SessionStateError(f"session {self._state.session_id} is still active")
            try:
                record = self.storage.get_session(session_id)
            except StorageError as exc:
                raise SessionCreationError(f"could not load session {session_id}: {exc}") from exc
            if not record:
                raise SessionNotFoundError(f"session {session_id} not found")
            if record.get("completed_at"):
                raise SessionStateError(f"session {session_id} is already completed")

            try:
                problems = [Problem.from_mapping(item) for item in record.get("problems") or []]
            except (KeyError, TypeError, ValueError) as exc:
                raise SessionStateError(f"session {session_id} has an unreadable problem queue: {exc}") from exc
            cursor = min(int(record.get("items_attempted") or 0), len(problems))
            resumed_correct = min(int(record.get("items_correct") or 0), cursor)
            if not student.student_id:
                student.student_id = record.get("student_id")

            state = SessionState(
                session_id=session_id,
                session_type=str(record.get("session_type") or PRACTICE),
                student=student,
                problem_queue=problems,
                started_at=_parse_started_at(record.get("started_at")) or self._clock(),
                thresholds=self._resolve_thresholds(),
                current_problem_index=cursor,
                resumed_correct=resumed_correct,
                baseline_grid=self._load_grid(student),
            )
            self._begin(state)
            LOGGER.info("Resumed %s session %s at problem %s/%s", state.session_type, session_id, cursor, len(problems))
            return state

    def submit_answer(self, answer: int, elapsed_seconds: float) -> Dict[str, bool]:
        with self._lock:
            state = self._require_state()
            if self._status == SessionStatus.SHOWING_RESULT:
                raise SessionStateError("answer already submitted for the current problem; call advance()")
            problem = self.current_problem()
            if problem is None:
                raise SessionStateError("no problem to answer; the queue is exhausted")

            student_id = self._current_student_id(state)
            if not student_id:
                raise NotAuthenticatedError("no authenticated student for this answer")

            is_correct = answer == problem.answer
            previous = state.grid_updates.get(problem.fact) or self._baseline_cell(state, problem)
            state.grid_updates[problem.fact] = apply_answer(
                previous,
                is_correct,
                elapsed_seconds,
                state.thresholds,
                now=self._clock(),
            )
            if not is_correct and state.session_type == PRACTICE:
                state.incorrect_problems.append(problem)
            self._status = SessionStatus.SHOWING_RESULT

            session_id = state.session_id
            ordinal = state.current_problem_index + 1

        self._dispatch(
            lambda: self._record_attempt(session_id, student_id, problem, answer, is_correct, elapsed_seconds, ordinal)
        )
        return {"correct": is_correct}

    def advance(self) -> Optional[Problem]:
        """Move to the next problem, whatever the last answer was."""

        with self._lock:
            state = self._require_state()
            state.current_problem_index += 1
            self._status = SessionStatus.AWAITING_ANSWER
            return self.current_problem()

    def complete(self) -> Optional[Dict[str, Any]]:
        """Persist final aggregates, merge practice results into the grid and tear down.

        Local state is cleared even when storage calls fail.
        """

        with self._lock:
            state = self._state
            if state is None:
                return None
            self._stop_autosave()
            metrics = self.build_metrics(state)
            summary: Dict[str, Any] = {
                "session_id": state.session_id,
                "session_type": state.session_type,
                **metrics.to_dict(),
                "persisted": True,
                "grid_merged": False,
            }
            try:
                summary["persisted"] = self._persist_completion(state, metrics)
                if state.session_type == PRACTICE and state.grid_updates:
                    summary["grid_merged"] = self._merge_grid(state)
            finally:
                self._state = None
                self._status = SessionStatus.COMPLETED
            LOGGER.info(
                "Completed %s session %s: %s/%s correct",
                state.session_type,
                state.session_id,
                metrics.items_correct,
                metrics.items_attempted,
            )
            return summary

    def abandon(self) -> bool:
        """Tear down without completing, pushing one last autosave first."""

        with self._lock:
            state = self._state
            if state is None:
                return False
            self._stop_autosave()

        # _lock is released here; a running tick takes _save_lock before _lock
        try:
            saved = self.autosave(wait=True)
        finally:
            with self._lock:
                if self._state is state:
                    self._state = None
                    self._status = SessionStatus.NOT_STARTED
        LOGGER.info("Abandoned session %s (final save %s)", state.session_id, "ok" if saved else "failed")
        return saved

    def autosave(self, wait: bool = False) -> bool:
        """Push current aggregates without completing. Single-flight per engine.

        Periodic ticks skip while another save is in flight; ``wait=True``
        blocks until it finishes and then saves.
        """

        if not self._save_lock.acquire(blocking=wait):
            LOGGER.debug("Autosave already in flight; skipping tick")
            return False
        try:
            with self._lock:
                state = self._state
                if state is None:
                    return False
                session_id = state.session_id
                metrics = self.build_metrics(state)

            try:
                self.storage.update_session(session_id, metrics)
            except StorageError as exc:
                LOGGER.warning("%s", SessionUpdateError(f"autosave of session {session_id} failed: {exc}"))
                return False
            return True
        finally:
            self._save_lock.release()

    # ------------------------------------------------------------------
    # aggregates
    # ------------------------------------------------------------------
    def build_metrics(self, state: SessionState) -> SessionMetrics:
        updates = list(state.grid_updates.values())
        attempted = state.current_problem_index
        correct = state.resumed_correct + sum(1 for cell in updates if cell.last_attempt_correct)
        average = sum(cell.average_time_seconds for cell in updates) / len(updates) if updates else 0.0
        buckets = {"fast": 0, "medium": 0, "slow": 0}
        for cell in updates:
            if cell.last_attempt_time_classification in buckets:
                buckets[cell.last_attempt_time_classification] += 1
        duration = max(0.0, (self._clock() - state.started_at).total_seconds())
        return SessionMetrics(
            items_attempted=attempted,
            items_correct=correct,
            accuracy=calculate_accuracy(correct, attempted),
            duration=duration,
            average_time_per_question=average,
            fast_answers_count=buckets["fast"],
            medium_answers_count=buckets["medium"],
            slow_answers_count=buckets["slow"],
        )

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _begin(self, state: SessionState) -> None:
        self._state = state
        self._status = SessionStatus.AWAITING_ANSWER
        if self.autosave_interval and state.problem_queue:
            self._autosave = AutosaveScheduler(
                self.autosave, self.autosave_interval, name=f"autosave-{state.session_id}"
            )
            self._autosave.start()

    def _stop_autosave(self) -> None:
        scheduler, self._autosave = self._autosave, None
        if scheduler is not None:
            scheduler.stop(timeout=0)

    def _require_state(self) -> SessionState:
        if self._state is None:
            raise SessionStateError("no active session")
        return self._state

    def _current_student_id(self, state: SessionState) -> Optional[str]:
        if self._identity is not None:
            return self._identity()
        return state.student.student_id

    def _resolve_thresholds(self) -> TimeThresholds:
        if self._thresholds is not None:
            return self._thresholds

        try:
            return self.storage.get_time_thresholds()
        except StorageError as exc:
            LOGGER.warning("Falling back to default time thresholds: %s", exc)
            return DEFAULT_THRESHOLDS

    def _load_grid(self, student: StudentRef) -> Optional[MasteryGrid]:
        try:
            return self.storage.get_math_progress(student.email, student.grade_level).grid
        except StorageError as exc:
            LOGGER.warning("Progress unavailable for %s; answers start from empty cells: %s", student.email, exc)
            return None

    @staticmethod
    def _baseline_cell(state: SessionState, problem: Problem) -> GridCell:
        if state.baseline_grid is not None:
            return state.baseline_grid.cell(problem.multiplicand, problem.multiplier)
        return empty_cell(problem.multiplicand, problem.multiplier)

    def _record_attempt(
        self,
        session_id: str,
        student_id: str,
        problem: Problem,
        answer: int,
        is_correct: bool,
        elapsed_seconds: float,
        ordinal: int,
    ) -> None:
        try:
            self.storage.record_question_attempt(
                session_id,
                student_id,
                problem.multiplicand,
                problem.multiplier,
                answer,
                problem.answer,
                is_correct,
                elapsed_seconds,
                ordinal,
            )
        except Exception as exc:  # runs on the dispatcher thread
            LOGGER.error("%s", AttemptRecordError(f"attempt {ordinal} of session {session_id} not recorded: {exc}"))

    def _persist_completion(self, state: SessionState, metrics: SessionMetrics) -> bool:
        ok = True
        try:
            self.storage.update_session(state.session_id, metrics)
        except StorageError as exc:
            ok = False
            LOGGER.error("%s", SessionUpdateError(f"final update of session {state.session_id} failed: {exc}"))
        try:
            self.storage.complete_session(state.session_id)
        except StorageError as exc:
            ok = False
            LOGGER.error("%s", SessionUpdateError(f"completing session {state.session_id} failed: {exc}"))
        return ok

    def _merge_grid(self, state: SessionState) -> bool:
        student_id = self._current_student_id(state)
        if not student_id:
            LOGGER.error("Skipping grid merge for session %s: no student id", state.session_id)
            return False
        try:
            self.storage.update_math_grid(student_id, list(state.grid_updates.values()))
        except StorageError as exc:
            LOGGER.error("%s", SessionUpdateError(f"grid merge for session {state.session_id} failed: {exc}"))
            return False
        return True
