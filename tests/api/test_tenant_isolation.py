"""Tenant isolation: learners only ever see and write their own progress."""

from __future__ import annotations

from fastapi.testclient import TestClient

from tests.conftest import auth, lesson_event, mint_token


def _rows(client: TestClient, token: str, **params) -> list[dict]:
    params = {"course_id": "course-1", "lesson_ids": "lesson-1", **params}
    resp = client.get("/progress/lessons", params=params, headers=auth(token))
    assert resp.status_code == 200
    return resp.json()


def test_users_do_not_see_each_others_progress(client: TestClient) -> None:
    alice = mint_token(username="alice")
    bob = mint_token(username="bob")
    client.post(
        "/progress/batch", json={"events": [lesson_event("a1", percent=80)]}, headers=auth(alice)
    )

    assert _rows(client, alice)[0]["progress_percentage"] == 80
    assert _rows(client, bob)[0]["progress_percentage"] == 0


def test_same_event_id_from_another_user_is_still_duplicate(client: TestClient) -> None:
    alice = mint_token(username="alice")
    bob = mint_token(username="bob")
    client.post("/progress/batch", json={"events": [lesson_event("same")]}, headers=auth(alice))

    resp = client.post(
        "/progress/batch", json={"events": [lesson_event("same", percent=90)]}, headers=auth(bob)
    )
    assert resp.json()["duplicates"] == ["same"]
    assert _rows(client, bob)[0]["progress_percentage"] == 0


def test_learner_cannot_write_into_another_org(client: TestClient) -> None:
    token = mint_token(username="alice", org_id="org-a")
    resp = client.post(
        "/progress/batch",
        json={"events": [lesson_event("e1", orgId="org-b")]},
        headers=auth(token),
    )
    assert resp.json()["failed"] == [{"id": "e1", "reason": "org_mismatch"}]


def test_admin_may_write_into_another_org(client: TestClient, store) -> None:
    token = mint_token(username="ops", roles=["admin"], org_id="org-a")
    resp = client.post(
        "/progress/batch",
        json={"events": [lesson_event("e1", orgId="org-b", userId="alice")]},
        headers=auth(token),
    )
    assert resp.json()["accepted"] == ["e1"]
    assert store._lessons[("alice", "lesson-1")].org_id == "org-b"


def test_learner_cannot_read_another_learner(client: TestClient) -> None:
    alice = mint_token(username="alice")
    resp = client.get(
        "/progress/lessons",
        params={"course_id": "course-1", "lesson_ids": "lesson-1", "user_id": "bob"},
        headers=auth(alice),
    )
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Cannot read another user's progress"
