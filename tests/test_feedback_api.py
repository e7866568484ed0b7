# tests/test_feedback_api.py
import pytest

from app.services.feedback_service import RECALL_COMPLETE_MESSAGE, calculate_overall_performance, round_half_up

CRITERIA_SCORES = [
    {"criterionId": "history", "criterionName": "History taking", "score": 3,
     "subScores": [{"subCriterionId": "focus", "score": 3}]},
    {"criterionId": "management", "criterionName": "Management",
     "subScores": [{"subCriterionId": "plan", "score": 2}, {"subCriterionId": "safety", "score": "3"}]},
]


@pytest.fixture
def h(users, auth_headers):
    return {key: auth_headers(user) for key, user in users.items()}


def _start(client, h, **config) -> str:
    r = client.post("/api/sessions", json={"selectedTopics": ["Cardiology"], **config}, headers=h["host"])
    code = r.json()["sessionCode"]
    for key, role in (("patient", "PATIENT"), ("observer", "OBSERVER")):
        r = client.post(f"/api/sessions/{code}/join-with-role", json={"role": role}, headers=h[key])
        assert r.status_code == 200, r.text
    r = client.post(f"/api/sessions/{code}/start", headers=h["host"])
    assert r.status_code == 200, r.text
    return code


def _submit(client, headers, code, **extra):
    body = {"sessionCode": code, "comment": "Good rapport", "criteriaScores": CRITERIA_SCORES}
    body.update(extra)
    return client.post("/api/feedback/submit", json=body, headers=headers)


@pytest.fixture
def code(client, h, cases):
    return _start(client, h)


def test_overall_performance():
    assert calculate_overall_performance(CRITERIA_SCORES) == 5.5
    assert calculate_overall_performance([{"criterionId": "x", "subScores": []}]) is None
    assert calculate_overall_performance([]) is None
    assert round_half_up(5.5) == 6
    assert round_half_up(4.49) == 4


def test_submit_requires_participant(client, h, code):
    r = _submit(client, h["other"], code)
    assert r.status_code == 400
    assert r.json()["error"] == "User is not a participant in this session"


def test_feedback_goes_to_doctor(client, h, code, users):
    r = _submit(client, h["patient"], code)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["message"] == "Feedback submitted successfully"
    assert "newCaseStarted" not in body

    (item,) = client.get("/api/feedback/received", headers=h["host"]).json()
    assert item["id"] == body["feedbackId"]
    assert item["fromUser"] == users["patient"].name
    assert item["fromUserRole"] == "patient"
    assert item["overallPerformance"] == 5.5
    assert item["score"] == 6
    assert item["roundNumber"] == 1
    assert item["sessionCode"] == code
    assert item["category"] == "Cardiology"
    assert client.get("/api/feedback/received", headers=h["patient"]).json() == []


def test_next_case_after_patient_and_observer(client, h, code, events):
    first = client.get(f"/api/sessions/{code}", headers=h["patient"]).json()["selectedCaseId"]

    assert "newCaseStarted" not in _submit(client, h["patient"], code).json()
    assert _submit(client, h["observer"], code).json()["newCaseStarted"] is True

    view = client.get(f"/api/sessions/{code}", headers=h["patient"]).json()
    assert view["currentRound"] == 2
    assert view["phase"] == "READING"
    assert view["selectedCaseId"] != first
    assert all(not p["hasCompleted"] for p in view["participants"])


def test_request_new_case_with_role_swap(client, h, code, events):
    r = _submit(client, h["observer"], code, requestNewCase=True, requestRoleChange=True)
    assert r.json()["newCaseStarted"] is True

    (change,) = events.of_type("ROLE_CHANGE")
    assert change["message"] == "Roles have been swapped: Alice is now Patient, Bob is now Doctor"
    assert client.get(f"/api/sessions/{code}", headers=h["patient"]).json()["userRole"] == "DOCTOR"
    assert client.get(f"/api/sessions/{code}", headers=h["host"]).json()["userRole"] == "PATIENT"


def test_observer_feedback_status(client, h, code):
    status = client.get(f"/api/sessions/{code}/observer-feedback-status", headers=h["host"]).json()
    assert status == {"hasObserver": True, "observerHasGivenFeedback": False, "observerCount": 1}

    _submit(client, h["observer"], code)
    status = client.get(f"/api/sessions/{code}/observer-feedback-status", headers=h["host"]).json()
    assert status["observerHasGivenFeedback"] is True

    r = client.get(f"/api/sessions/{code}/observer-feedback-status", headers=h["other"])
    assert r.status_code == 400


def test_session_feedback_for_participants_only(client, h, code):
    _submit(client, h["patient"], code)

    r = client.get(f"/api/feedback/session/{code}", headers=h["other"])
    assert r.status_code == 400
    assert r.json()["error"] == "You were not a participant in this session"

    items = client.get(f"/api/feedback/session/{code}", headers=h["observer"]).json()
    assert [i["fromUserRole"] for i in items] == ["patient"]


def test_recall_session_ends_when_cases_run_out(client, h, cases, events):
    code = _start(client, h, sessionType="RECALL", recallDate="2024-03-12")

    _submit(client, h["patient"], code)
    r = _submit(client, h["observer"], code)
    assert "newCaseStarted" not in r.json()

    assert client.get(f"/api/sessions/{code}", headers=h["host"]).json()["status"] == "COMPLETED"
    assert [e["reason"] for e in events.of_type("SESSION_ENDED")] == [RECALL_COMPLETE_MESSAGE]


def test_recall_new_case_request_ends_when_cases_run_out(client, h, cases, events):
    code = _start(client, h, sessionType="RECALL", recallDate="2024-03-12")
    client.post(f"/api/sessions/{code}/skip-phase", headers=h["host"])
    client.post(f"/api/sessions/{code}/skip-phase", headers=h["host"])

    r = _submit(client, h["patient"], code, requestNewCase=True)
    assert r.status_code == 200, r.text
    assert "newCaseStarted" not in r.json()

    view = client.get(f"/api/sessions/{code}", headers=h["host"]).json()
    assert (view["status"], view["phase"]) == ("COMPLETED", "COMPLETED")
    assert [e["reason"] for e in events.of_type("SESSION_ENDED")] == [RECALL_COMPLETE_MESSAGE]


def test_feedback_rejected_after_session_end(client, h, code, events):
    client.post(f"/api/sessions/{code}/end", headers=h["host"])
    events.clear()

    for key in ("patient", "observer"):
        r = _submit(client, h[key], code)
        assert r.status_code == 400
        assert r.json()["error"] == "Session has already ended"

    view = client.get(f"/api/sessions/{code}", headers=h["host"]).json()
    assert (view["status"], view["phase"], view["currentRound"]) == ("COMPLETED", "COMPLETED", 1)
    assert client.get("/api/feedback/received", headers=h["host"]).json() == []
    assert events.types() == []


def test_late_feedback_after_timeout_does_not_restart(client, h, code, scheduler):
    client.post(f"/api/sessions/{code}/skip-phase", headers=h["host"])
    client.post(f"/api/sessions/{code}/skip-phase", headers=h["host"])
    (timeout,) = scheduler.pending("_on_feedback_timeout")
    scheduler.fire(timeout)

    for key in ("patient", "observer"):
        assert _submit(client, h[key], code).status_code == 400

    view = client.get(f"/api/sessions/{code}", headers=h["host"]).json()
    assert (view["status"], view["phase"]) == ("COMPLETED", "COMPLETED")
    assert scheduler.pending("_on_phase_timer_expired") == []
