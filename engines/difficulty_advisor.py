"""Rule-based difficulty advice for coaches.

The advisor reads a student's grid and recent practice summaries and reports
struggling areas plus recommended adjustments. It never writes; applying a
suggested guardrail is an explicit coach action (:func:`apply_guardrail_suggestion`).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Mapping, Optional, Sequence, Tuple

from engines.mastery_grid import MASTERY_THRESHOLD, MasteryGrid, guardrail_range, lower_guardrail

if TYPE_CHECKING:
    from storage import StorageBackend

Confidence = Literal["low", "medium", "high"]

RECENT_SESSION_WINDOW = 5
LOW_MASTERY_RATE = 0.3
SLOW_CELL_SECONDS = 15
SLOW_CELL_SHARE = 0.5
STRUGGLE_MIN_ATTEMPTS = 5
STRUGGLE_MAX_STREAK = 2
SLOW_SESSION_AVERAGE = 20
LOW_ACCURACY = 70
ACCURACY_DROP = 10

LOW_MASTERY_LABEL = "Low overall mastery rate"
SLOW_CELLS_LABEL = "Many problems taking too long"
SLOW_SESSIONS_LABEL = "Average response time is too high"
SLOW_MIX_LABEL = "Too many slow responses compared to fast ones"
LOW_ACCURACY_LABEL = "Low accuracy rate"
DECLINING_LABEL = "Declining accuracy trend"

LOWER_GUARDRAIL_ADVICE = "Consider lowering guardrail level to focus on basics"
MORE_TIME_ADVICE = "Student needs more time to process problems - consider extending time limits"
REVIEW_ADVICE = "Review fundamental concepts before proceeding"


@dataclass(frozen=True)
class SessionSummary:
    average_time: float = 0.0
    accuracy: float = 0.0
    fast_answers: int = 0
    slow_answers: int = 0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SessionSummary":
        return cls(
            average_time=float(data.get("average_time") or 0.0),
            accuracy=float(data.get("accuracy") or 0.0),
            fast_answers=int(data.get("fast_answers") or 0),
            slow_answers=int(data.get("slow_answers") or 0),
        )


@dataclass
class DifficultyAnalysis:
    struggling_areas: List[str] = field(default_factory=list)
    recommended_adjustments: List[str] = field(default_factory=list)
    confidence_level: Confidence = "medium"
    suggested_guardrail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def fact_label(multiplicand: int, multiplier: int) -> str:
    return f"{multiplicand} × {multiplier} multiplication"


def _analyze_grid(grid: MasteryGrid, guardrail: str) -> Tuple[List[str], bool]:
    size = guardrail_range(guardrail)
    areas: List[str] = []
    total = mastered = slow = 0
    for cell in grid.region(size):
        total += 1
        if cell.consecutive_correct >= MASTERY_THRESHOLD:
            mastered += 1
        if cell.average_time_seconds > SLOW_CELL_SECONDS:
            slow += 1
        if cell.attempts > STRUGGLE_MIN_ATTEMPTS and cell.consecutive_correct < STRUGGLE_MAX_STREAK:
            areas.append(fact_label(cell.multiplicand, cell.multiplier))

    lower = False
    if total:
        if mastered / total < LOW_MASTERY_RATE:
            areas.append(LOW_MASTERY_LABEL)
            lower = True
        if slow / total > SLOW_CELL_SHARE:
            areas.append(SLOW_CELLS_LABEL)
    return areas, lower


def _analyze_time(sessions: Sequence[SessionSummary]) -> Tuple[List[str], bool]:
    if not sessions:
        return [], False
    count = len(sessions)
    avg_time = sum(s.average_time for s in sessions) / count
    avg_slow = sum(s.slow_answers for s in sessions) / count
    avg_fast = sum(s.fast_answers for s in sessions) / count

    areas: List[str] = []
    needs_time = False
    if avg_time > SLOW_SESSION_AVERAGE:
        areas.append(SLOW_SESSIONS_LABEL)
        needs_time = True
    if avg_slow > avg_fast * 2:
        areas.append(SLOW_MIX_LABEL)
    return areas, needs_time


def _analyze_accuracy(sessions: Sequence[SessionSummary]) -> Tuple[List[str], bool]:
    if len(sessions) < 2:
        return [], False
    latest, previous = sessions[-1].accuracy, sessions[-2].accuracy
    areas: List[str] = []
    needs_review = False
    if latest < LOW_ACCURACY:
        areas.append(LOW_ACCURACY_LABEL)
        needs_review = True
    if latest < previous - ACCURACY_DROP:
        areas.append(DECLINING_LABEL)
        needs_review = True
    return areas, needs_review


def analyze_student_performance(
    grid: MasteryGrid,
    guardrail: str,
    recent_sessions: Sequence[Any] = (),
) -> DifficultyAnalysis:
    """Analyse a student's grid and their last five session summaries (oldest first).

    Summaries may be :class:`SessionSummary` instances or mappings with
    ``average_time``, ``accuracy``, ``fast_answers`` and ``slow_answers``.
    """

    sessions = [
        s if isinstance(s, SessionSummary) else SessionSummary.from_mapping(s)
        for s in list(recent_sessions)[-RECENT_SESSION_WINDOW:]
    ]
    grid_areas, lower = _analyze_grid(grid, guardrail)
    time_areas, needs_time = _analyze_time(sessions)
    accuracy_areas, needs_review = _analyze_accuracy(sessions)

    analysis = DifficultyAnalysis(struggling_areas=grid_areas + time_areas + accuracy_areas)
    if lower:
        analysis.recommended_adjustments.append(LOWER_GUARDRAIL_ADVICE)
        analysis.confidence_level = "high"
        analysis.suggested_guardrail = lower_guardrail(guardrail)
    if needs_time:
        analysis.recommended_adjustments.append(MORE_TIME_ADVICE)
    if needs_review:
        analysis.recommended_adjustments.append(REVIEW_ADVICE)
    return analysis


def apply_guardrail_suggestion(storage: "StorageBackend", student_id: str, analysis: DifficultyAnalysis) -> Optional[str]:
    """Write the suggested guardrail for ``student_id``; returns it, or ``None`` if there was nothing to apply."""
    if not analysis.suggested_guardrail:
        return None
    storage.set_math_guardrail(student_id, analysis.suggested_guardrail)
    return analysis.suggested_guardrail
