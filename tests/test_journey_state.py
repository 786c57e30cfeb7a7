import pytest

import journey
from conftest import InMemoryStorage


@pytest.mark.parametrize(
    "sessions, expected",
    [
        ([], "needs_placement"),
        ([{"session_type": "practice", "completed_at": None}], "needs_placement"),
        ([{"session_type": "placement", "completed_at": None}], "placement_in_progress"),
        (
            [
                {"session_type": "placement", "completed_at": None},
                {"session_type": "placement", "completed_at": "2026-01-02 10:00:00"},
            ],
            "placement_completed",
        ),
        (
            [
                {"session_type": "placement", "completed_at": "2026-01-02 10:00:00"},
                {"session_type": "practice", "completed_at": None},
            ],
            "placement_completed",
        ),
        (
            [
                {"session_type": "placement", "completed_at": "2026-01-02 10:00:00"},
                {"session_type": "practice", "completed_at": "2026-01-03 10:00:00"},
            ],
            "practice_ready",
        ),
    ],
)
def test_derive_journey_state(sessions, expected):
    assert journey.derive_journey_state(sessions) == expected


@pytest.mark.parametrize(
    "state, can_practice, show_placement",
    [
        ("needs_placement", False, True),
        ("placement_in_progress", False, True),
        ("placement_completed", True, False),
        ("practice_ready", True, False),
    ],
)
def test_resolver_gating_flags(state, can_practice, show_placement):
    storage = InMemoryStorage()
    storage.journey_state = state
    resolver = journey.JourneyStateResolver(storage, lambda: "student-1")
    assert resolver.refresh() == state
    assert resolver.can_start_practice is can_practice
    assert resolver.should_show_placement is show_placement
    assert resolver.practice_ready is can_practice


def test_resolver_defaults_to_needs_placement_without_user():
    storage = InMemoryStorage()
    storage.journey_state = "practice_ready"
    resolver = journey.JourneyStateResolver(storage, lambda: None)
    assert resolver.refresh() == "needs_placement"
    assert resolver.loaded


def test_resolver_falls_back_on_storage_error():
    storage = InMemoryStorage()
    storage.fail.add("get_current_journey_state")
    resolver = journey.JourneyStateResolver(storage, lambda: "student-1")
    assert resolver.refresh() == "needs_placement"
    assert "unavailable" in resolver.error
    assert resolver.as_dict()["should_show_placement"] is True


def test_resolver_rejects_unknown_state():
    storage = InMemoryStorage()
    storage.journey_state = "graduated"
    resolver = journey.JourneyStateResolver(storage, lambda: "student-1")
    assert resolver.refresh() == "needs_placement"


def test_resolver_caches_until_refresh():
    storage = InMemoryStorage()
    storage.journey_state = "placement_completed"
    resolver = journey.JourneyStateResolver(storage, lambda: "student-1")
    resolver.refresh()
    storage.journey_state = "practice_ready"
    assert resolver.state == "placement_completed"
    resolver.refresh()
    assert resolver.state == "practice_ready"


def test_session_recovery_lists_unfinished_sessions():
    storage = InMemoryStorage()
    storage.create_session("math", "kid@example.com", "3", session_type="placement", problems=[])
    done = storage.create_session("math", "kid@example.com", "3", session_type="practice", problems=[])
    storage.complete_session(done)
    active = journey.SessionRecovery(storage).find_active_sessions("student-1")
    assert [item["id"] for item in active] == ["session-1"]


def test_session_recovery_swallows_errors():
    storage = InMemoryStorage()
    storage.fail.add("get_active_sessions_for_student")
    assert journey.SessionRecovery(storage).find_active_sessions("student-1") == []
    assert journey.SessionRecovery(storage).find_active_sessions(None) == []
