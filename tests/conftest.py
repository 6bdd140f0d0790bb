from __future__ import annotations

import sys
from pathlib import Path

# Ensure repo root is on sys.path so `import progress_sync` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from progress_sync.api import dependencies  # noqa: E402
from progress_sync.api.ratelimit import rate_limiter  # noqa: E402
from progress_sync.main import app  # noqa: E402
from progress_sync.repos.progress_repo import InMemoryProgressStore  # noqa: E402
from progress_sync.services import token_service  # noqa: E402
from progress_sync.services.cache import cache_service  # noqa: E402

DEFAULT_ORG = "org-1"


@pytest.fixture(autouse=True)
def reset_progress_store() -> InMemoryProgressStore:
    """Fresh in-memory store (and idempotency set) for every test."""
    return dependencies.reset_memory_store()


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Clear rate limit buckets between tests so limits don't bleed."""
    if hasattr(rate_limiter, "clear"):
        rate_limiter.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    if hasattr(cache_service, "clear"):
        cache_service.clear()  # type: ignore[union-attr]


@pytest.fixture
def store(reset_progress_store: InMemoryProgressStore) -> InMemoryProgressStore:
    return reset_progress_store


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
    org_id: str | None = DEFAULT_ORG,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles, org_id=org_id)


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def token() -> str:
    return mint_token()


@pytest.fixture
def admin_token() -> str:
    return mint_token(username="test-admin", roles=["admin"])


def lesson_event(
    event_id: str,
    lesson_id: str = "lesson-1",
    *,
    course_id: str = "course-1",
    percent: float | None = 50,
    event_type: str = "lesson_progress",
    **extra,
) -> dict:
    """Wire-format lesson event, the way the outbox posts it."""
    body = {
        "clientEventId": event_id,
        "type": event_type,
        "courseId": course_id,
        "lessonId": lesson_id,
        "timestamp": 1_700_000_000_000,
    }
    if percent is not None:
        body["percent"] = percent
    body.update(extra)
    return body
