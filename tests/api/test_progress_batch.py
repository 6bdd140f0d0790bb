"""POST /progress/batch: classification, idempotency, tenant scoping."""

from __future__ import annotations

import dataclasses

import pytest
from fastapi.testclient import TestClient

from progress_sync.api import progress as progress_api
from progress_sync.repos.progress_repo import InMemoryProgressStore
from tests.conftest import auth, lesson_event, mint_token


def _post(client: TestClient, token: str, events: list) -> object:
    return client.post("/progress/batch", json={"events": events}, headers=auth(token))


def _rows(client: TestClient, token: str, lesson_ids: str = "lesson-1") -> list[dict]:
    resp = client.get(
        "/progress/lessons",
        params={"course_id": "course-1", "lesson_ids": lesson_ids},
        headers=auth(token),
    )
    assert resp.status_code == 200
    return resp.json()


@pytest.fixture
def lenient_org(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        progress_api,
        "SETTINGS",
        dataclasses.replace(progress_api.SETTINGS, strict_org_context=False),
    )


def test_requires_auth(client: TestClient) -> None:
    resp = client.post("/progress/batch", json={"events": [lesson_event("e1")]})
    assert resp.status_code == 401


def test_rejects_garbage_token(client: TestClient) -> None:
    resp = _post(client, "not-a-jwt", [lesson_event("e1")])
    assert resp.status_code == 401


def test_accepts_new_events(client: TestClient, token: str) -> None:
    resp = _post(client, token, [lesson_event("e1"), lesson_event("e2", "lesson-2")])
    assert resp.status_code == 200
    assert resp.json() == {"accepted": ["e1", "e2"], "duplicates": [], "failed": []}


def test_replayed_batch_is_all_duplicates(client: TestClient, token: str) -> None:
    events = [lesson_event("e1", percent=30), lesson_event("e2", "lesson-2")]
    _post(client, token, events)

    resp = _post(client, token, events)
    assert resp.json() == {"accepted": [], "duplicates": ["e1", "e2"], "failed": []}


def test_duplicate_is_not_reapplied(client: TestClient, token: str) -> None:
    _post(client, token, [lesson_event("e1", percent=30)])
    _post(client, token, [lesson_event("e2", percent=60)])
    # Replay of e1 must not roll the lesson back to 30.
    _post(client, token, [lesson_event("e1", percent=30)])

    assert _rows(client, token)[0]["progress_percentage"] == 60


def test_same_id_twice_in_one_batch(client: TestClient, token: str) -> None:
    resp = _post(client, token, [lesson_event("e1"), lesson_event("e1", percent=90)])
    body = resp.json()
    assert body["accepted"] == ["e1"]
    assert body["duplicates"] == ["e1"]
    assert _rows(client, token)[0]["progress_percentage"] == 50


def test_empty_batch_is_400(client: TestClient, token: str) -> None:
    resp = _post(client, token, [])
    assert resp.status_code == 400
    assert resp.json()["detail"] == "events array is required"


def test_missing_events_key_is_400(client: TestClient, token: str) -> None:
    resp = client.post("/progress/batch", json={}, headers=auth(token))
    assert resp.status_code == 400


def test_more_than_25_events_is_400(client: TestClient, token: str) -> None:
    events = [lesson_event(f"e{i}", f"lesson-{i}") for i in range(26)]
    resp = _post(client, token, events)
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "too_many_events"


def test_exactly_25_events_is_fine(client: TestClient, token: str) -> None:
    events = [lesson_event(f"e{i}", f"lesson-{i}") for i in range(25)]
    resp = _post(client, token, events)
    assert resp.status_code == 200
    assert len(resp.json()["accepted"]) == 25


def test_invalid_entry_fails_alone(client: TestClient, token: str) -> None:
    bad = lesson_event("bad", percent="lots")
    resp = _post(client, token, [lesson_event("good"), bad])
    body = resp.json()
    assert body["accepted"] == ["good"]
    assert body["failed"] == [{"id": "bad", "reason": "invalid"}]


def test_entry_without_id_is_skipped(client: TestClient, token: str) -> None:
    anonymous = lesson_event("x")
    del anonymous["clientEventId"]
    resp = _post(client, token, [anonymous, lesson_event("e1")])
    assert resp.json() == {"accepted": ["e1"], "duplicates": [], "failed": []}


def test_unknown_type_is_invalid(client: TestClient, token: str) -> None:
    resp = _post(client, token, [lesson_event("e1", event_type="lesson_paused")])
    assert resp.json()["failed"] == [{"id": "e1", "reason": "invalid"}]


def test_lesson_event_without_lesson_id_is_missing_target(
    client: TestClient, token: str
) -> None:
    event = lesson_event("e1")
    del event["lessonId"]
    resp = _post(client, token, [event])
    assert resp.json()["failed"] == [{"id": "e1", "reason": "missing_target"}]


def test_course_event_without_course_is_missing_target(
    client: TestClient, token: str
) -> None:
    event = {"clientEventId": "c1", "type": "course_progress", "percent": 10}
    resp = _post(client, token, [event])
    assert resp.json()["failed"] == [{"id": "c1", "reason": "missing_target"}]


def test_other_users_event_is_user_mismatch(client: TestClient, token: str) -> None:
    resp = _post(client, token, [lesson_event("e1", userId="someone-else")])
    assert resp.json()["failed"] == [{"id": "e1", "reason": "user_mismatch"}]


def test_admin_may_write_for_another_user(
    client: TestClient, admin_token: str, store: InMemoryProgressStore
) -> None:
    resp = _post(client, admin_token, [lesson_event("e1", userId="learner-9")])
    assert resp.json()["accepted"] == ["e1"]


def test_missing_user_id_is_filled_from_session(
    client: TestClient, store: InMemoryProgressStore
) -> None:
    token = mint_token(username="alice")
    _post(client, token, [lesson_event("e1", percent=42)])
    rows = _rows(client, token)
    assert rows[0]["progress_percentage"] == 42


def test_percent_is_clamped(client: TestClient, token: str) -> None:
    _post(client, token, [lesson_event("e1", percent=140)])
    assert _rows(client, token)[0]["progress_percentage"] == 100


def test_snake_case_fields_are_accepted(client: TestClient, token: str) -> None:
    event = {
        "client_event_id": "legacy-1",
        "type": "lesson_progress",
        "course_id": "course-1",
        "lesson_id": "lesson-1",
        "progress_percent": 35,
        "time_spent_s": 120,
    }
    resp = _post(client, token, [event])
    assert resp.json()["accepted"] == ["legacy-1"]
    row = _rows(client, token)[0]
    assert row["progress_percentage"] == 35
    assert row["time_spent"] == 120


def test_missing_type_is_inferred(client: TestClient, token: str) -> None:
    event = lesson_event("e1", percent=100)
    del event["type"]
    _post(client, token, [event])
    assert _rows(client, token)[0]["completed"] is True


# ---- tenant context ----


def test_token_without_org_rejects_whole_batch(client: TestClient) -> None:
    token = mint_token(username="orgless", org_id=None)
    resp = _post(client, token, [lesson_event("e1")])
    assert resp.status_code == 422
    assert resp.json()["detail"] == "organization context required"


def test_strict_rejection_writes_nothing(client: TestClient) -> None:
    token = mint_token(username="orgless", org_id=None)
    events = [lesson_event("e1", orgId="org-1"), lesson_event("e2", "lesson-2")]
    assert _post(client, token, events).status_code == 422

    # Nothing was recorded, so the ids are still fresh.
    resp = _post(client, token, [lesson_event("e1", orgId="org-1")])
    assert resp.json()["accepted"] == ["e1"]


def test_event_org_satisfies_strict_mode(client: TestClient) -> None:
    token = mint_token(username="orgless", org_id=None)
    resp = _post(client, token, [lesson_event("e1", orgId="org-7")])
    assert resp.status_code == 200
    assert resp.json()["accepted"] == ["e1"]


def test_lenient_mode_fails_only_orgless_events(
    client: TestClient, lenient_org: None
) -> None:
    token = mint_token(username="orgless", org_id=None)
    events = [lesson_event("e1"), lesson_event("e2", "lesson-2", orgId="org-1")]
    body = _post(client, token, events).json()
    assert body["accepted"] == ["e2"]
    assert body["failed"] == [{"id": "e1", "reason": "missing_org"}]


def test_event_for_another_org_is_org_mismatch(client: TestClient, token: str) -> None:
    resp = _post(client, token, [lesson_event("e1", orgId="org-2")])
    assert resp.json()["failed"] == [{"id": "e1", "reason": "org_mismatch"}]


def test_records_carry_the_resolved_org(
    client: TestClient, token: str, store: InMemoryProgressStore
) -> None:
    _post(client, token, [lesson_event("e1")])
    record = store._lessons[("test-user", "lesson-1")]
    assert record.org_id == "org-1"
