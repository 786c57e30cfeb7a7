"""Pydantic request and response models for the HTTP surface."""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field, model_validator

__all__ = [
    "StudentRequest",
    "StudentResponse",
    "SessionStartRequest",
    "ProblemView",
    "SessionView",
    "AnswerRequest",
    "AnswerResponse",
    "CompletionResponse",
    "ActiveSessionView",
    "JourneyResponse",
    "GridCellView",
    "ProgressResponse",
    "DifficultyAnalysisResponse",
    "GuardrailRequest",
    "GuardrailResponse",
    "TimeThresholdsModel",
]

SessionType = Literal["placement", "practice"]
GuardrailLevel = Literal["1-5", "1-9", "1-12"]


class StudentRequest(BaseModel):
    student_id: str = Field(min_length=1)
    email: str = Field(min_length=3, description="Login e-mail; used by storage to resolve the student.")
    grade_level: str | None = Field(default=None, description="Grade label such as '3'; unknown grades use the default placement length.")


class StudentResponse(BaseModel):
    student_id: str
    email: str | None = None
    grade_level: str | None = None
    guardrail: str | None = None
    total_correct_answers: int = 0
    total_attempts: int = 0

    model_config = {
        "extra": "ignore",
    }


class SessionStartRequest(BaseModel):
    student_id: str = Field(min_length=1)
    session_type: SessionType


class ProblemView(BaseModel):
    """A problem as shown to the student; the answer is withheld."""
    id: str
    multiplicand: int
    multiplier: int
    difficulty: str


class SessionView(BaseModel):
    session_id: str | None
    session_type: SessionType | None = None
    student_id: str | None = None
    status: str
    current_problem_index: int = 0
    total_problems: int = 0
    current_problem: ProblemView | None = None


class AnswerRequest(BaseModel):
    answer: int
    elapsed_seconds: float = Field(ge=0.0, description="Seconds between showing the problem and the submission.")


class AnswerResponse(BaseModel):
    correct: bool
    correct_answer: int
    status: str


class CompletionResponse(BaseModel):
    session_id: str
    session_type: SessionType
    items_attempted: int
    items_correct: int
    accuracy: int
    duration: float = 0.0
    average_time_per_question: float | None = None
    fast_answers_count: int | None = None
    medium_answers_count: int | None = None
    slow_answers_count: int | None = None
    persisted: bool = True
    grid_merged: bool = False


class ActiveSessionView(BaseModel):
    id: str
    session_type: SessionType
    completed_items: int = 0
    total_items: int = 0
    started_at: str | None = None
    last_activity_at: str | None = None


class JourneyResponse(BaseModel):
    journey_state: str
    needs_placement: bool
    placement_in_progress: bool
    placement_completed: bool
    practice_ready: bool
    can_start_practice: bool
    should_show_placement: bool
    error: str | None = None


class GridCellView(BaseModel):
    multiplicand: int
    multiplier: int
    state: str
    consecutive_correct: int = 0
    last_attempt_correct: bool | None = None
    attempts: int = 0
    is_locked: bool = False
    average_time_seconds: float = 0.0
    total_time_spent: float = 0.0
    last_attempt_time_classification: str | None = None
    mastery_achieved_at: str | None = None


class ProgressResponse(BaseModel):
    student_id: str
    guardrail: str
    mastery_percentage: int
    guardrail_mastery_percentage: int
    total_correct_answers: int = 0
    total_attempts: int = 0
    grid: List[List[GridCellView]]


class DifficultyAnalysisResponse(BaseModel):
    student_id: str
    current_guardrail: str
    struggling_areas: List[str] = Field(default_factory=list)
    recommended_adjustments: List[str] = Field(default_factory=list)
    confidence_level: Literal["low", "medium", "high"] = "medium"
    suggested_guardrail: GuardrailLevel | None = None
    personalized_problems: List[Dict[str, Any]] = Field(default_factory=list)


class GuardrailRequest(BaseModel):
    guardrail: GuardrailLevel | None = None
    apply_suggestion: bool = Field(
        default=False,
        description="Apply the advisor's current suggestion instead of an explicit level.",
    )

    @model_validator(mode="after")
    def _one_source(self) -> "GuardrailRequest":
        if self.guardrail is None and not self.apply_suggestion:
            raise ValueError("provide a guardrail or set apply_suggestion")
        if self.guardrail is not None and self.apply_suggestion:
            raise ValueError("guardrail and apply_suggestion are mutually exclusive")
        return self


class GuardrailResponse(BaseModel):
    student_id: str
    guardrail: GuardrailLevel | None
    changed: bool


class TimeThresholdsModel(BaseModel):
    fast_threshold: float = Field(gt=0)
    medium_threshold: float = Field(gt=0)

    @model_validator(mode="after")
    def _ordered(self) -> "TimeThresholdsModel":
        if self.fast_threshold > self.medium_threshold:
            raise ValueError("fast_threshold must not exceed medium_threshold")
        return self
