"""Student journey gating: placement first, then practice."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional

if TYPE_CHECKING:
    from storage import StorageBackend

logger = logging.getLogger(__name__)

NEEDS_PLACEMENT = "needs_placement"
PLACEMENT_IN_PROGRESS = "placement_in_progress"
PLACEMENT_COMPLETED = "placement_completed"
PRACTICE_READY = "practice_ready"

JOURNEY_STATES = (NEEDS_PLACEMENT, PLACEMENT_IN_PROGRESS, PLACEMENT_COMPLETED, PRACTICE_READY)


def derive_journey_state(sessions: Iterable[Mapping[str, Any]]) -> str:
    """Derive the journey state from a student's persisted sessions.

    A completed practice session wins over everything; otherwise a completed
    placement, then any unfinished placement. Order of ``sessions`` is irrelevant.
    """

    placement_started = False
    placement_completed = False
    for session in sessions:
        kind = session.get("session_type")
        done = bool(session.get("completed_at"))
        if kind == "practice" and done:
            return PRACTICE_READY
        if kind == "placement":
            placement_started = True
            placement_completed = placement_completed or done
    if placement_completed:
        return PLACEMENT_COMPLETED
    if placement_started:
        return PLACEMENT_IN_PROGRESS
    return NEEDS_PLACEMENT


class JourneyStateResolver:
    """Fetch and cache the journey state for the current student.

    ``identity`` returns the identified student's id, or ``None`` when nobody is
    signed in. Every failure collapses to ``needs_placement``; the error text is
    kept on ``error`` for display.
    """

    def __init__(self, storage: "StorageBackend", identity: Callable[[], Optional[str]]):
        self.storage = storage
        self._identity = identity
        self.state: str = NEEDS_PLACEMENT
        self.error: Optional[str] = None
        self.loaded = False

    def refresh(self) -> str:
        self.error = None
        student_id = self._identity()
        if not student_id:
            self.state = NEEDS_PLACEMENT
            self.loaded = True
            return self.state
        try:
            state = self.storage.get_current_journey_state(student_id)
        except Exception as exc:
            logger.exception("Failed to fetch journey state for %s", student_id)
            self.error = str(exc) or "Failed to fetch journey state"
            state = NEEDS_PLACEMENT
        if state not in JOURNEY_STATES:
            logger.warning("Unknown journey state %r for %s", state, student_id)
            state = NEEDS_PLACEMENT
        self.state = state
        self.loaded = True
        return state

    @property
    def needs_placement(self) -> bool:
        return self.state == NEEDS_PLACEMENT

    @property
    def placement_in_progress(self) -> bool:
        return self.state == PLACEMENT_IN_PROGRESS

    @property
    def placement_completed(self) -> bool:
        return self.state == PLACEMENT_COMPLETED

    @property
    def practice_ready(self) -> bool:
        return self.state in (PLACEMENT_COMPLETED, PRACTICE_READY)

    @property
    def can_start_practice(self) -> bool:
        return self.state in (PLACEMENT_COMPLETED, PRACTICE_READY)

    @property
    def should_show_placement(self) -> bool:
        return self.state in (NEEDS_PLACEMENT, PLACEMENT_IN_PROGRESS)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "journey_state": self.state,
            "needs_placement": self.needs_placement,
            "placement_in_progress": self.placement_in_progress,
            "placement_completed": self.placement_completed,
            "practice_ready": self.practice_ready,
            "can_start_practice": self.can_start_practice,
            "should_show_placement": self.should_show_placement,
            "error": self.error,
        }


class SessionRecovery:
    """Look up unfinished sessions a student could resume."""

    def __init__(self, storage: "StorageBackend"):
        self.storage = storage

    def find_active_sessions(self, student_id: Optional[str]) -> List[Dict[str, Any]]:
        if not student_id:
            return []
        try:
            return list(self.storage.get_active_sessions_for_student(student_id))
        except Exception:
            logger.exception("Failed to list active sessions for %s", student_id)
            return []
