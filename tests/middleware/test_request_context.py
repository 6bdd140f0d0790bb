"""Request context middleware.

Every response carries an X-Request-ID header (generated or echoed), and
log records emitted while handling the request carry the same id.
"""

from __future__ import annotations

import logging
import uuid

import pytest
from fastapi.testclient import TestClient

from progress_sync.middleware.request_context import (
    RequestContextFilter,
    install_request_context_filter,
    request_id_var,
)


def test_request_id_generated_when_not_provided(client: TestClient) -> None:
    resp = client.get("/health")
    req_id = resp.headers.get("x-request-id")
    assert req_id is not None
    uuid.UUID(req_id)


def test_request_id_echoed_when_provided(client: TestClient) -> None:
    custom_id = "outbox-retry-7"
    resp = client.get("/health", headers={"X-Request-ID": custom_id})
    assert resp.headers.get("x-request-id") == custom_id


def test_request_id_present_on_error_responses(client: TestClient) -> None:
    resp = client.get(
        "/progress/lessons", params={"course_id": "c", "lesson_ids": "l"}
    )  # no token -> 401
    assert resp.status_code == 401
    assert resp.headers.get("x-request-id") is not None


def test_request_is_logged_with_its_id(
    client: TestClient, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.INFO, logger="progress_sync.middleware.request_context"):
        client.get("/health", headers={"X-Request-ID": "req-42"})
    records = [r for r in caplog.records if "GET /health -> 200" in r.getMessage()]
    assert records
    assert records[0].request_id == "req-42"  # type: ignore[attr-defined]


def test_filter_stamps_current_request_id() -> None:
    record = logging.LogRecord("t", logging.INFO, "t.py", 1, "m", (), None)
    token = request_id_var.set("abc")
    try:
        RequestContextFilter().filter(record)
    finally:
        request_id_var.reset(token)
    assert record.request_id == "abc"  # type: ignore[attr-defined]


def test_filter_defaults_outside_requests() -> None:
    record = logging.LogRecord("t", logging.INFO, "t.py", 1, "m", (), None)
    RequestContextFilter().filter(record)
    assert record.request_id == "-"  # type: ignore[attr-defined]


def test_install_is_idempotent() -> None:
    root = logging.getLogger()
    handler = logging.NullHandler()
    root.addHandler(handler)
    try:
        install_request_context_filter()
        install_request_context_filter()
        assert sum(isinstance(f, RequestContextFilter) for f in handler.filters) == 1
    finally:
        root.removeHandler(handler)
