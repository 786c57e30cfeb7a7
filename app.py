# app.py: Math Facts Trainer API
# - Placement and adaptive practice sessions driven by engines.session_engine
# - Journey gating, session recovery, coach analysis and admin analytics
# - Storage is SQLite by default, a REST service when STORAGE_URL is set

import logging
import threading
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

import db
import journey
from engines.classifier import TimeThresholds
from engines.difficulty_advisor import analyze_student_performance, apply_guardrail_suggestion
from engines.mastery_grid import derive_state
from engines.problem_generator import generate_personalized_problems, problems_to_payload
from engines.session_engine import (
    NotAuthenticatedError,
    SessionCreationError,
    SessionEngine,
    SessionError,
    SessionNotFoundError,
    SessionStateError,
)
from env_validation import AppSettings, load_settings, validate_environment
from schemas import (
    ActiveSessionView,
    AnswerRequest,
    AnswerResponse,
    CompletionResponse,
    DifficultyAnalysisResponse,
    GridCellView,
    GuardrailRequest,
    GuardrailResponse,
    JourneyResponse,
    ProblemView,
    ProgressResponse,
    SessionStartRequest,
    SessionView,
    StudentRequest,
    StudentResponse,
    TimeThresholdsModel,
)
from storage import HttpStorage, SQLiteStorage, StorageBackend, StorageError, StudentRef

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the routes need, built once at startup and injected via ``app.state``."""

    storage: StorageBackend
    settings: AppSettings = field(default_factory=AppSettings)
    engine_factory: Optional[Callable[[StorageBackend], SessionEngine]] = None
    engines: Dict[str, SessionEngine] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def new_engine(self) -> SessionEngine:
        if self.engine_factory is not None:
            return self.engine_factory(self.storage)
        return SessionEngine(
            self.storage,
            practice_session_size=self.settings.practice_session_size,
            autosave_interval=self.settings.autosave_interval,
        )

    def register(self, engine: SessionEngine) -> None:
        if engine.session_id:
            with self.lock:
                self.engines[engine.session_id] = engine

    def lookup(self, session_id: str) -> Optional[SessionEngine]:
        with self.lock:
            return self.engines.get(session_id)

    def release(self, session_id: str) -> None:
        with self.lock:
            self.engines.pop(session_id, None)

    def abandon_all(self) -> None:
        with self.lock:
            engines = list(self.engines.values())
            self.engines.clear()
        for engine in engines:
            try:
                engine.abandon()
            except Exception:
                logger.exception("Failed to abandon session %s on shutdown", engine.session_id)


def build_services(settings: Optional[AppSettings] = None) -> Services:
    settings = settings or load_settings()
    thresholds = TimeThresholds(fast=settings.fast_threshold, medium=settings.medium_threshold)
    if settings.storage_url:
        logger.info("Using REST storage at %s", settings.storage_url)
        storage: StorageBackend = HttpStorage(
            settings.storage_url,
            token=settings.storage_token,
            timeout=settings.storage_timeout,
        )
    else:
        logger.info("Using SQLite storage at %s", db.DB_PATH)
        db.init()
        storage = SQLiteStorage(default_thresholds=thresholds)
    return Services(storage=storage, settings=settings)


@asynccontextmanager
async def _lifespan(application: FastAPI):
    try:
        # Validate environment variables first
        validate_environment()
        if getattr(application.state, "services", None) is None:
            application.state.services = build_services()
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    yield
    services = getattr(application.state, "services", None)
    if services is not None:
        services.abandon_all()


app = FastAPI(title="Math Facts Trainer", version="1.0.0", lifespan=_lifespan)


def _services() -> Services:
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services()
        app.state.services = services
    return services


_ERROR_STATUS = (
    (SessionNotFoundError, 404),
    (NotAuthenticatedError, 401),
    (SessionStateError, 409),
    (SessionCreationError, 502),
    (StorageError, 502),
)


@contextmanager
def _translate_errors():
    try:
        yield
    except (SessionError, StorageError) as exc:
        for kind, status in _ERROR_STATUS:
            if isinstance(exc, kind):
                raise HTTPException(status_code=status, detail=str(exc)) from exc
        logger.exception("Unhandled session error")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _student_record(storage: StorageBackend, student_id: str) -> Dict[str, Any]:
    with _translate_errors():
        record = storage.get_student(student_id)
    if not record:
        raise HTTPException(status_code=404, detail="student not found")
    return record


def _student_ref(record: Dict[str, Any]) -> StudentRef:
    return StudentRef(
        student_id=record["student_id"],
        email=record.get("email") or "",
        grade_level=record.get("grade_level") or "default",
    )


def _session_engine(session_id: str, student_id: Optional[str]) -> SessionEngine:
    engine = _services().lookup(session_id)
    if engine is None or engine.state is None:
        raise HTTPException(status_code=404, detail="session not found")
    if not student_id:
        raise HTTPException(status_code=401, detail="student_id is required")
    if engine.state.student.student_id != student_id:
        raise HTTPException(status_code=403, detail="session does not belong to student")
    return engine


def _session_view(engine: SessionEngine, state=None) -> SessionView:
    state = state or engine.state
    problem = engine.current_problem()
    return SessionView(
        session_id=state.session_id if state else None,
        session_type=state.session_type if state else None,
        student_id=state.student.student_id if state else None,
        status=engine.status,
        current_problem_index=state.current_problem_index if state else 0,
        total_problems=len(state.problem_queue) if state else 0,
        current_problem=ProblemView(**problem.to_dict()) if problem else None,
    )


class SessionActionBody(BaseModel):
    student_id: Optional[str] = None


class AnswerBody(AnswerRequest):
    student_id: Optional[str] = None


# -------------- students & journey --------------
@app.post("/students", response_model=StudentResponse)
def register_student(body: StudentRequest):
    with _translate_errors():
        record = _services().storage.register_student(body.student_id, body.email, body.grade_level)
    return StudentResponse(**record)


@app.get("/journey/{student_id}", response_model=JourneyResponse)
def journey_state(student_id: str):
    resolver = journey.JourneyStateResolver(_services().storage, lambda: student_id)
    resolver.refresh()
    return JourneyResponse(**resolver.as_dict())


@app.get("/sessions/active/{student_id}", response_model=list[ActiveSessionView])
def active_sessions(student_id: str):
    recovery = journey.SessionRecovery(_services().storage)
    return [ActiveSessionView(**item) for item in recovery.find_active_sessions(student_id)]


# -------------- session lifecycle --------------
@app.post("/sessions/start", response_model=SessionView)
def start_session(body: SessionStartRequest):
    services = _services()
    student = _student_ref(_student_record(services.storage, body.student_id))
    if body.session_type == "practice":
        resolver = journey.JourneyStateResolver(services.storage, lambda: body.student_id)
        resolver.refresh()
        if not resolver.can_start_practice:
            raise HTTPException(status_code=403, detail="placement test must be completed before practice")

    engine = services.new_engine()
    with _translate_errors():
        state = engine.start(body.session_type, student)
    services.register(engine)
    return _session_view(engine, state)


@app.post("/sessions/{session_id}/resume", response_model=SessionView)
def resume_session(session_id: str, body: SessionActionBody):
    services = _services()
    if not body.student_id:
        raise HTTPException(status_code=401, detail="student_id is required")
    if services.lookup(session_id) is not None:
        raise HTTPException(status_code=409, detail="session is already active")
    with _translate_errors():
        record = services.storage.get_session(session_id)
    if not record:
        raise HTTPException(status_code=404, detail="session not found")
    if record.get("student_id") and record["student_id"] != body.student_id:
        raise HTTPException(status_code=403, detail="session does not belong to student")

    student = _student_ref(_student_record(services.storage, body.student_id))
    engine = services.new_engine()
    with _translate_errors():
        state = engine.resume(session_id, student)
    services.register(engine)
    return _session_view(engine, state)


@app.get("/sessions/{session_id}", response_model=SessionView)
def get_session(session_id: str, student_id: Optional[str] = Query(default=None)):
    engine = _session_engine(session_id, student_id)
    return _session_view(engine)


@app.post("/sessions/{session_id}/answer", response_model=AnswerResponse)
def submit_answer(session_id: str, body: AnswerBody):
    engine = _session_engine(session_id, body.student_id)
    problem = engine.current_problem()
    with _translate_errors():
        result = engine.submit_answer(body.answer, body.elapsed_seconds)
    return AnswerResponse(correct=result["correct"], correct_answer=problem.answer, status=engine.status)


@app.post("/sessions/{session_id}/advance", response_model=SessionView)
def advance_session(session_id: str, body: SessionActionBody):
    engine = _session_engine(session_id, body.student_id)
    with _translate_errors():
        engine.advance()
    return _session_view(engine)


@app.post("/sessions/{session_id}/complete", response_model=CompletionResponse)
def complete_session(session_id: str, body: SessionActionBody):
    engine = _session_engine(session_id, body.student_id)
    try:
        summary = engine.complete()
    finally:
        _services().release(session_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="session not found")
    return CompletionResponse(**summary)


@app.post("/sessions/{session_id}/abandon")
def abandon_session(session_id: str, body: SessionActionBody):
    engine = _session_engine(session_id, body.student_id)
    try:
        saved = engine.abandon()
    finally:
        _services().release(session_id)
    return {"session_id": session_id, "saved": saved}


# -------------- progress & coach tools --------------
def _load_progress(storage: StorageBackend, record: Dict[str, Any]):
    with _translate_errors():
        return storage.get_math_progress(record.get("email") or "", record.get("grade_level") or "default")


@app.get("/progress/{student_id}", response_model=ProgressResponse)
def student_progress(student_id: str):
    storage = _services().storage
    progress = _load_progress(storage, _student_record(storage, student_id))
    grid = progress.grid
    rows = [
        [GridCellView(state=derive_state(cell), **cell.to_dict()) for cell in row]
        for row in grid.rows
    ]
    return ProgressResponse(
        student_id=student_id,
        guardrail=progress.current_guardrail,
        mastery_percentage=grid.mastery_percentage(),
        guardrail_mastery_percentage=grid.guardrail_mastery_percentage(progress.current_guardrail),
        total_correct_answers=progress.total_correct_answers,
        total_attempts=progress.total_attempts,
        grid=rows,
    )


def _analyze(storage: StorageBackend, student_id: str):
    progress = _load_progress(storage, _student_record(storage, student_id))
    with _translate_errors():
        recent = storage.list_recent_session_summaries(student_id, limit=5)
    analysis = analyze_student_performance(progress.grid, progress.current_guardrail, recent)
    return progress, analysis


@app.get("/coach/{student_id}/analysis", response_model=DifficultyAnalysisResponse)
def coach_analysis(student_id: str):
    progress, analysis = _analyze(_services().storage, student_id)
    problems = generate_personalized_problems(analysis.struggling_areas, progress.current_guardrail)
    return DifficultyAnalysisResponse(
        student_id=student_id,
        current_guardrail=progress.current_guardrail,
        personalized_problems=problems_to_payload(problems),
        **analysis.to_dict(),
    )


@app.post("/coach/{student_id}/guardrail", response_model=GuardrailResponse)
def coach_set_guardrail(student_id: str, body: GuardrailRequest):
    storage = _services().storage
    if body.apply_suggestion:
        _, analysis = _analyze(storage, student_id)
        with _translate_errors():
            applied = apply_guardrail_suggestion(storage, student_id, analysis)
        return GuardrailResponse(student_id=student_id, guardrail=applied, changed=applied is not None)

    _student_record(storage, student_id)
    with _translate_errors():
        storage.set_math_guardrail(student_id, body.guardrail)
    logger.info("Guardrail for %s set to %s", student_id, body.guardrail)
    return GuardrailResponse(student_id=student_id, guardrail=body.guardrail, changed=True)


# -------------- admin --------------
@app.get("/admin/time-thresholds", response_model=TimeThresholdsModel)
def get_time_thresholds():
    with _translate_errors():
        thresholds = _services().storage.get_time_thresholds()
    return TimeThresholdsModel(**thresholds.as_dict())


@app.put("/admin/time-thresholds", response_model=TimeThresholdsModel)
def put_time_thresholds(body: TimeThresholdsModel):
    thresholds = TimeThresholds(fast=body.fast_threshold, medium=body.medium_threshold)
    with _translate_errors():
        _services().storage.set_time_thresholds(thresholds)
    logger.info("Time thresholds updated to %s", thresholds.as_dict())
    return body


@app.get("/admin/cohort")
def cohort_metrics(window_days: int = Query(default=7, ge=1, le=365)):
    with _translate_errors():
        return _services().storage.get_cohort_metrics(window_days=window_days)


@app.get("/admin/students")
def student_summaries(page: int = Query(default=1, ge=1), page_size: int = Query(default=20, ge=1, le=100)):
    with _translate_errors():
        return _services().storage.list_student_summaries(page=page, page_size=page_size)
