"""Demo: one learner, two devices, an outage in between.

Runs the API in-process (no server, no database) and walks through:
the laptop goes offline, keeps writing progress locally, reconnects,
flushes its outbox; the phone then reconciles and sees the same numbers.

Run with:
    python scripts/demo_offline_sync.py
"""

from __future__ import annotations

import asyncio

import httpx

from progress_sync.client.outbox import Outbox
from progress_sync.client.snapshot_cache import LocalSnapshot, LocalSnapshotCache, SyncContext
from progress_sync.client.storage import MemoryStorage
from progress_sync.client.transport import HttpSyncTransport, TransportError
from progress_sync.main import app
from progress_sync.services import token_service

USER_ID = "demo-learner"
ORG_ID = "demo-org"
COURSE = SyncContext(
    user_id=USER_ID,
    course_id="python-101",
    lesson_ids=("intro", "variables", "loops"),
    org_id=ORG_ID,
)


class FlakyTransport(HttpSyncTransport):
    """Fails every request while ``online`` is False."""

    online = True

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self.online:
            raise TransportError(f"{method} {path} failed: network unreachable")
        return await super()._request(method, path, **kwargs)


def _transport(token: str, cls: type[HttpSyncTransport] = HttpSyncTransport):
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://demo")
    return cls("http://demo", lambda: token, client=client)


async def main() -> None:
    token = token_service.create_access_token(sub=USER_ID, org_id=ORG_ID)

    # ── Laptop: offline ─────────────────────────────────────────────
    laptop = _transport(token, FlakyTransport)
    laptop.online = False  # type: ignore[attr-defined]
    outbox = Outbox(laptop)
    laptop_cache = LocalSnapshotCache(MemoryStorage(), outbox=outbox, reader=laptop)

    snapshot = LocalSnapshot(
        completed_lesson_ids=["intro"],
        lesson_progress={"intro": 100, "variables": 60},
        lesson_positions={"intro": 240, "variables": 95},
        last_lesson_id="variables",
    )
    laptop_cache.write(COURSE.course_id, snapshot, COURSE)
    print(f"1. laptop offline, {len(outbox.progress)} events queued")

    await outbox.progress.flush()
    print(
        f"2. flush failed, {len(outbox.progress)} events requeued, "
        f"retry in {outbox.progress.backoff_ms} ms"
    )

    # ── Laptop: back online ─────────────────────────────────────────
    laptop.online = True  # type: ignore[attr-defined]
    await outbox.progress.flush()
    print(f"3. laptop online, flushed; {len(outbox.progress)} events left")
    outbox.close()

    # ── Phone ───────────────────────────────────────────────────────
    phone_cache = LocalSnapshotCache(MemoryStorage(), reader=_transport(token))
    seen = await phone_cache.reconcile(COURSE)
    print("4. phone reconciled:")
    for lesson_id in COURSE.lesson_ids:
        done = "done" if seen.is_completed(lesson_id) else "    "
        print(
            f"     {lesson_id:<10} {seen.lesson_progress.get(lesson_id, 0):>3}%  "
            f"{done}  resume at {seen.lesson_positions.get(lesson_id, 0):.0f}s"
        )
    print(f"   last lesson: {seen.last_lesson_id}")


if __name__ == "__main__":
    asyncio.run(main())
