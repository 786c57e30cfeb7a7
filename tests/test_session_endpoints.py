import asyncio
import json
import random
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
from conftest import InMemoryStorage, run_now
from engines.session_engine import SessionEngine


def _call(method: str, path: str, payload: Optional[dict] = None, query: Optional[dict] = None) -> tuple[int, dict]:
    async def _run():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": urlencode(query or {}).encode(),
            "headers": [
                (b"host", b"testserver"),
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ],
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_run())
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


@pytest.fixture
def storage():
    store = InMemoryStorage()
    services = app.Services(
        storage=store,
        engine_factory=lambda s: SessionEngine(s, dispatcher=run_now, rng=random.Random(3)),
    )
    app.app.state.services = services
    yield store
    app.app.state.services = None


def _start(session_type="placement", student_id="student-1"):
    return _call("POST", "/sessions/start", {"student_id": student_id, "session_type": session_type})


def test_register_student(storage):
    status, payload = _call("POST", "/students", {"student_id": "student-2", "email": "two@example.com", "grade_level": "4"})
    assert status == 200
    assert payload["student_id"] == "student-2"
    assert storage.students["student-2"]["grade_level"] == "4"


def test_journey_defaults_to_placement(storage):
    status, payload = _call("GET", "/journey/student-1")
    assert status == 200
    assert payload["journey_state"] == "needs_placement"
    assert payload["should_show_placement"] is True
    assert payload["can_start_practice"] is False


def test_practice_is_gated_until_placement_completes(storage):
    status, payload = _start("practice")
    assert status == 403
    assert "placement" in payload["detail"]

    storage.journey_state = "placement_completed"
    status, payload = _start("practice")
    assert status == 200
    assert payload["session_type"] == "practice"


def test_unknown_student_cannot_start(storage):
    status, _ = _start("placement", student_id="ghost")
    assert status == 404


def test_placement_flow_hides_answers(storage):
    status, view = _start("placement")
    assert status == 200
    assert view["total_problems"] == 20
    assert view["status"] == "awaiting_answer"
    assert "answer" not in view["current_problem"]

    session_id = view["session_id"]
    problem = storage.sessions[session_id]["problems"][0]
    status, result = _call("POST", f"/sessions/{session_id}/answer",
                           {"student_id": "student-1", "answer": problem["answer"], "elapsed_seconds": 2.5})
    assert status == 200
    assert result == {"correct": True, "correct_answer": problem["answer"], "status": "showing_result"}

    status, _ = _call("POST", f"/sessions/{session_id}/answer",
                      {"student_id": "student-1", "answer": 0, "elapsed_seconds": 1})
    assert status == 409

    status, view = _call("POST", f"/sessions/{session_id}/advance", {"student_id": "student-1"})
    assert status == 200
    assert view["current_problem_index"] == 1

    status, summary = _call("POST", f"/sessions/{session_id}/complete", {"student_id": "student-1"})
    assert status == 200
    assert summary["items_attempted"] == 1
    assert summary["items_correct"] == 1
    assert summary["grid_merged"] is False
    assert storage.completed == [session_id]

    status, _ = _call("GET", f"/sessions/{session_id}", query={"student_id": "student-1"})
    assert status == 404


def test_session_ownership_and_identity(storage):
    _, view = _start("placement")
    session_id = view["session_id"]
    status, _ = _call("POST", f"/sessions/{session_id}/answer", {"answer": 1, "elapsed_seconds": 1})
    assert status == 401
    status, payload = _call("POST", f"/sessions/{session_id}/answer",
                            {"student_id": "intruder", "answer": 1, "elapsed_seconds": 1})
    assert status == 403
    assert payload["detail"] == "session does not belong to student"
    status, _ = _call("POST", "/sessions/nope/advance", {"student_id": "student-1"})
    assert status == 404


def test_answer_validation(storage):
    _, view = _start("placement")
    status, _ = _call("POST", f"/sessions/{view['session_id']}/answer",
                      {"student_id": "student-1", "answer": 4, "elapsed_seconds": -1})
    assert status == 422


def test_storage_failure_on_start_maps_to_bad_gateway(storage):
    storage.fail.add("create_session")
    status, payload = _start("placement")
    assert status == 502
    assert "create" in payload["detail"]


def test_abandon_and_resume(storage):
    _, view = _start("placement")
    session_id = view["session_id"]
    problem = storage.sessions[session_id]["problems"][0]
    _call("POST", f"/sessions/{session_id}/answer", {"student_id": "student-1", "answer": problem["answer"], "elapsed_seconds": 3})
    _call("POST", f"/sessions/{session_id}/advance", {"student_id": "student-1"})

    status, payload = _call("POST", f"/sessions/{session_id}/abandon", {"student_id": "student-1"})
    assert status == 200
    assert payload == {"session_id": session_id, "saved": True}

    status, active = _call("GET", "/sessions/active/student-1")
    assert status == 200
    assert active[0]["id"] == session_id
    assert active[0]["completed_items"] == 1

    status, payload = _call("POST", f"/sessions/{session_id}/resume", {"student_id": "intruder"})
    assert status == 403
    status, resumed = _call("POST", f"/sessions/{session_id}/resume", {"student_id": "student-1"})
    assert status == 200
    assert resumed["current_problem_index"] == 1
    status, _ = _call("POST", f"/sessions/{session_id}/resume", {"student_id": "student-1"})
    assert status == 409


def test_practice_completion_merges_grid(storage):
    storage.journey_state = "practice_ready"
    _, view = _start("practice")
    session_id = view["session_id"]
    problem = storage.sessions[session_id]["problems"][0]
    _call("POST", f"/sessions/{session_id}/answer", {"student_id": "student-1", "answer": problem["answer"], "elapsed_seconds": 3})
    _call("POST", f"/sessions/{session_id}/advance", {"student_id": "student-1"})
    status, summary = _call("POST", f"/sessions/{session_id}/complete", {"student_id": "student-1"})
    assert status == 200
    assert summary["grid_merged"] is True
    assert storage.grid.cell(problem["multiplicand"], problem["multiplier"]).attempts == 1


def test_progress_reports_cell_states(storage):
    status, payload = _call("GET", "/progress/student-1")
    assert status == 200
    assert len(payload["grid"]) == 12
    assert payload["grid"][0][0]["state"] == "not-mastered"
    assert payload["mastery_percentage"] == 0
    assert payload["guardrail"] == "1-12"


def test_progress_storage_failure(storage):
    storage.fail.add("get_math_progress")
    status, _ = _call("GET", "/progress/student-1")
    assert status == 502


def test_coach_analysis_and_guardrail_suggestion(storage):
    status, analysis = _call("GET", "/coach/student-1/analysis")
    assert status == 200
    assert analysis["suggested_guardrail"] == "1-9"
    assert analysis["confidence_level"] == "high"
    assert len(analysis["personalized_problems"]) == 10

    status, payload = _call("POST", "/coach/student-1/guardrail", {"apply_suggestion": True})
    assert status == 200
    assert payload == {"student_id": "student-1", "guardrail": "1-9", "changed": True}
    assert storage.guardrail_writes == [("student-1", "1-9")]


def test_coach_explicit_guardrail(storage):
    status, payload = _call("POST", "/coach/student-1/guardrail", {"guardrail": "1-5"})
    assert status == 200
    assert payload["changed"] is True
    assert storage.guardrail == "1-5"

    status, _ = _call("POST", "/coach/student-1/guardrail", {})
    assert status == 422
    status, _ = _call("POST", "/coach/student-1/guardrail", {"guardrail": "1-7"})
    assert status == 422


def test_time_threshold_admin(storage):
    status, payload = _call("GET", "/admin/time-thresholds")
    assert status == 200
    assert payload == {"fast_threshold": 5.0, "medium_threshold": 15.0}

    status, payload = _call("PUT", "/admin/time-thresholds", {"fast_threshold": 4, "medium_threshold": 10})
    assert status == 200
    assert storage.thresholds.fast == 4

    status, _ = _call("PUT", "/admin/time-thresholds", {"fast_threshold": 12, "medium_threshold": 10})
    assert status == 422


def test_admin_reads_pass_through(storage):
    status, payload = _call("GET", "/admin/cohort", query={"window_days": 14})
    assert status == 200
    assert payload == {"window_days": 14}

    status, payload = _call("GET", "/admin/students", query={"page": 2, "page_size": 5})
    assert status == 200
    assert (payload["page"], payload["page_size"]) == (2, 5)
