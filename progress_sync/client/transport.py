"""HTTP transport from a device to the progress service.

Every failure surfaces as a ``TransportError``.  The outbox treats them
all alike (requeue and back off); the snapshot cache tells the
auth-shaped ones apart, because a logged-out or throttled learner should
keep their local progress rather than see an error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import httpx
from pydantic import TypeAdapter

from progress_sync.models.events import AnalyticsEvent, ProgressEvent, to_wire
from progress_sync.models.progress import FailedEvent, LessonProgressEntry

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], str | None]

_entries = TypeAdapter(list[LessonProgressEntry])


class TransportError(Exception):
    """Network failure, 5xx, or any other unexpected status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NoSessionError(TransportError):
    """401: no valid session."""


class NotAuthorizedError(TransportError):
    """403: session valid, access denied."""


class RateLimitedError(TransportError):
    """429, with the server's Retry-After in seconds when it sent one."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


@dataclass(frozen=True, slots=True)
class BatchResponse:
    accepted: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    failed: list[FailedEvent] = field(default_factory=list)

    @property
    def failed_ids(self) -> set[str]:
        return {f.id for f in self.failed}


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class HttpSyncTransport:
    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def post_batch(
        self, path: str, events: Sequence[ProgressEvent | AnalyticsEvent]
    ) -> BatchResponse:
        response = await self._request(
            "POST", path, json={"events": [to_wire(e) for e in events]}
        )
        body = response.json()
        return BatchResponse(
            accepted=list(body.get("accepted") or []),
            duplicates=list(body.get("duplicates") or []),
            failed=[
                FailedEvent(id=f["id"], reason=f.get("reason", ""))
                for f in body.get("failed") or []
            ],
        )

    async def fetch_lesson_progress(
        self, course_id: str, lesson_ids: Sequence[str]
    ) -> list[LessonProgressEntry]:
        response = await self._request(
            "GET",
            "/progress/lessons",
            params={"course_id": course_id, "lesson_ids": ",".join(lesson_ids)},
        )
        return _entries.validate_python(response.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers: dict[str, str] = {}
        token = self._token_provider() if self._token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        code = response.status_code
        if code == 401:
            raise NoSessionError(f"{method} {path}: not authenticated", status_code=code)
        if code == 403:
            raise NotAuthorizedError(f"{method} {path}: forbidden", status_code=code)
        if code == 429:
            raise RateLimitedError(
                f"{method} {path}: rate limited",
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )
        if not response.is_success:
            logger.debug("%s %s returned %d: %s", method, path, code, response.text[:200])
            raise TransportError(f"{method} {path} returned {code}", status_code=code)
        return response
