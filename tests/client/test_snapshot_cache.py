from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from progress_sync.client import snapshot_cache
from progress_sync.client.outbox import Outbox
from progress_sync.client.snapshot_cache import (
    PROGRESS_STORAGE_KEY,
    LocalSnapshot,
    LocalSnapshotCache,
    SyncContext,
    build_snapshot_input,
    derive_snapshot,
)
from progress_sync.client.storage import FileStorage, MemoryStorage
from progress_sync.client.transport import (
    NoSessionError,
    NotAuthorizedError,
    RateLimitedError,
    TransportError,
)
from progress_sync.models.events import CourseProgress, LessonCompleted, LessonProgress
from progress_sync.models.progress import LessonProgressEntry

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

CONTEXT = SyncContext(
    user_id="u1", course_id="course-1", lesson_ids=("a", "b", "c"), org_id="org-1"
)


class FakeReader:
    def __init__(self, rows=None, error: Exception | None = None) -> None:
        self.rows = {r.lesson_id: r for r in rows or []}
        self.error = error
        self.calls: list[list[str]] = []

    async def fetch_lesson_progress(self, course_id, lesson_ids):
        self.calls.append(list(lesson_ids))
        if self.error is not None:
            raise self.error
        return [self.rows.get(i, LessonProgressEntry.empty(i)) for i in lesson_ids]


class FakeSender:
    async def post_batch(self, path, events):
        raise AssertionError("nothing should be sent")


class Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture(autouse=True)
def no_chunk_pause(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(snapshot_cache, "CHUNK_PAUSE_S", 0)


def _server_rows() -> list[LessonProgressEntry]:
    return [
        LessonProgressEntry(
            lesson_id="a", progress_percentage=90, time_spent=120, last_accessed_at=T0
        ),
        LessonProgressEntry(
            lesson_id="b",
            progress_percentage=100,
            completed=True,
            time_spent=300,
            last_accessed_at=T0 + timedelta(minutes=5),
        ),
    ]


# ---- snapshot derivation ----


def test_build_snapshot_input() -> None:
    snapshot = LocalSnapshot(
        completed_lesson_ids=["a"],
        lesson_progress={"a": 100, "b": 40},
        lesson_positions={"b": 30.4},
        last_lesson_id="b",
    )
    data = build_snapshot_input(snapshot, CONTEXT, now=T0)

    assert [lesson.lesson_id for lesson in data.lessons] == ["a", "b"]
    assert data.lessons[0].completed is True
    assert data.lessons[1].progress_percent == 40
    assert data.lessons[1].position_seconds == 30.4
    assert data.overall_percent == pytest.approx(100 / 3)
    assert data.completed_at is None
    assert data.total_time_seconds == 30
    assert data.last_lesson_id == "b"


def test_build_snapshot_input_course_complete() -> None:
    snapshot = LocalSnapshot(completed_lesson_ids=["a", "b", "c"])
    data = build_snapshot_input(snapshot, CONTEXT, now=T0)
    assert data.overall_percent == 100
    assert data.completed_at == T0
    assert all(lesson.progress_percent == 100 for lesson in data.lessons)


def test_derive_snapshot_from_rows() -> None:
    snapshot = derive_snapshot(_server_rows(), ["b", "a"])
    assert snapshot.completed_lesson_ids == ["b"]
    assert snapshot.lesson_progress == {"a": 90, "b": 100}
    assert snapshot.lesson_positions == {"a": 120, "b": 300}
    assert snapshot.last_lesson_id == "b"


def test_derive_snapshot_ignores_percent_for_completion() -> None:
    rows = [LessonProgressEntry(lesson_id="a", progress_percentage=100)]
    assert derive_snapshot(rows, ["a"]).completed_lesson_ids == []


def test_derive_snapshot_of_nothing() -> None:
    assert derive_snapshot([], ["a"]) == LocalSnapshot()


def test_snapshot_json_round_trip_uses_camel_case() -> None:
    snapshot = LocalSnapshot(
        completed_lesson_ids=["a", "a"], lesson_progress={"a": 100}, last_lesson_id="a"
    )
    data = snapshot.to_json()
    assert data["completedLessonIds"] == ["a"]
    assert data["lastLessonId"] == "a"
    assert LocalSnapshot.from_json(data).lesson_progress == {"a": 100}
    assert LocalSnapshot.from_json("junk") == LocalSnapshot()


# ---- local writes ----


def test_write_then_read() -> None:
    cache = LocalSnapshotCache(MemoryStorage())
    assert cache.read("course-1") is None

    cache.write("course-1", LocalSnapshot(lesson_progress={"a": 25}))
    snapshot = cache.read("course-1")
    assert snapshot is not None
    assert snapshot.lesson_progress == {"a": 25}


def test_write_survives_restart(tmp_path) -> None:
    path = tmp_path / "progress.json"
    LocalSnapshotCache(FileStorage(path)).write(
        "course-1", LocalSnapshot(completed_lesson_ids=["a"])
    )

    reopened = LocalSnapshotCache(FileStorage(path))
    snapshot = reopened.read("course-1")
    assert snapshot is not None
    assert snapshot.is_completed("a")


def test_courses_share_one_storage_key() -> None:
    storage = MemoryStorage()
    cache = LocalSnapshotCache(storage)
    cache.write("course-1", LocalSnapshot(lesson_progress={"a": 1}))
    cache.write("course-2", LocalSnapshot(lesson_progress={"x": 2}))

    stored = json.loads(storage.get_item(PROGRESS_STORAGE_KEY))
    assert set(stored) == {"course-1", "course-2"}


def test_write_enqueues_touched_lessons_and_course() -> None:
    outbox = Outbox(FakeSender())
    cache = LocalSnapshotCache(MemoryStorage(), outbox=outbox)
    snapshot = LocalSnapshot(
        completed_lesson_ids=["a"],
        lesson_progress={"a": 100, "b": 40},
        lesson_positions={"b": 30},
        last_lesson_id="b",
    )

    cache.write("course-1", snapshot, CONTEXT)

    events = outbox.progress.pending
    assert [type(e) for e in events] == [LessonCompleted, LessonProgress, CourseProgress]
    assert [e.lesson_id for e in events] == ["a", "b", "b"]
    lesson_b = events[1]
    assert lesson_b.percent == 40
    assert lesson_b.position == 30
    assert lesson_b.time_spent_seconds == 30
    course = events[2]
    assert course.percent == 33
    assert course.status == "in_progress"
    assert {e.org_id for e in events} == {"org-1"}
    assert len({e.timestamp for e in events}) == 1


def test_write_without_context_only_persists() -> None:
    outbox = Outbox(FakeSender())
    cache = LocalSnapshotCache(MemoryStorage(), outbox=outbox)
    cache.write("course-1", LocalSnapshot(lesson_progress={"a": 10}))
    assert len(outbox.progress) == 0


def test_write_never_raises_on_storage_failure() -> None:
    class BrokenStorage(MemoryStorage):
        def set_item(self, key: str, value: str) -> None:
            raise OSError("read-only filesystem")

    cache = LocalSnapshotCache(BrokenStorage())
    cache.write("course-1", LocalSnapshot(lesson_progress={"a": 10}))
    assert cache.read("course-1") is None


def test_corrupt_storage_reads_as_empty() -> None:
    storage = MemoryStorage()
    storage.set_item(PROGRESS_STORAGE_KEY, "{not json")
    cache = LocalSnapshotCache(storage)
    assert cache.read("course-1") is None
    cache.write("course-1", LocalSnapshot())
    assert cache.read("course-1") == LocalSnapshot()


# ---- reconciliation ----


def test_reconcile_overwrites_local() -> None:
    reader = FakeReader(_server_rows())
    cache = LocalSnapshotCache(MemoryStorage(), reader=reader)
    cache.write("course-1", LocalSnapshot(lesson_progress={"a": 40, "c": 70}))

    snapshot = asyncio.run(cache.reconcile(CONTEXT))

    assert snapshot.lesson_progress == {"a": 90, "b": 100, "c": 0}
    assert snapshot.completed_lesson_ids == ["b"]
    assert cache.read("course-1") == snapshot


@pytest.mark.parametrize(
    "error",
    [
        NoSessionError("401", status_code=401),
        NotAuthorizedError("403", status_code=403),
        RateLimitedError("429", retry_after=3),
    ],
)
def test_reconcile_auth_errors_keep_local(error: Exception) -> None:
    cache = LocalSnapshotCache(MemoryStorage(), reader=FakeReader(error=error))
    local = LocalSnapshot(lesson_progress={"a": 40})
    cache.write("course-1", local)

    snapshot = asyncio.run(cache.reconcile(CONTEXT))

    assert snapshot == LocalSnapshot()
    assert cache.read("course-1") == local


def test_reconcile_other_errors_propagate() -> None:
    cache = LocalSnapshotCache(
        MemoryStorage(), reader=FakeReader(error=TransportError("500", status_code=500))
    )
    with pytest.raises(TransportError):
        asyncio.run(cache.reconcile(CONTEXT))


def test_reconcile_without_reader_or_lessons() -> None:
    assert asyncio.run(LocalSnapshotCache(MemoryStorage()).reconcile(CONTEXT)) == LocalSnapshot()

    reader = FakeReader()
    cache = LocalSnapshotCache(MemoryStorage(), reader=reader)
    empty = SyncContext(user_id="u1", course_id="course-1", lesson_ids=())
    assert asyncio.run(cache.reconcile(empty)) == LocalSnapshot()
    assert reader.calls == []


def test_reconcile_is_cached_for_ttl() -> None:
    clock = Clock()
    reader = FakeReader(_server_rows())
    cache = LocalSnapshotCache(MemoryStorage(), reader=reader, ttl_s=45, clock=clock)

    asyncio.run(cache.reconcile(CONTEXT))
    clock.now += 44
    asyncio.run(cache.reconcile(CONTEXT))
    assert len(reader.calls) == 1

    clock.now += 2
    asyncio.run(cache.reconcile(CONTEXT))
    assert len(reader.calls) == 2


def test_local_write_is_seen_by_next_reconcile() -> None:
    reader = FakeReader([LessonProgressEntry.empty("a")])
    cache = LocalSnapshotCache(MemoryStorage(), reader=reader, clock=Clock())
    first = asyncio.run(cache.reconcile(CONTEXT))
    assert first.lesson_progress["a"] == 0

    cache.write("course-1", LocalSnapshot(lesson_progress={"a": 75}))
    # The outbox delivered it; the server now agrees.
    reader.rows["a"] = LessonProgressEntry(lesson_id="a", progress_percentage=75)

    snapshot = asyncio.run(cache.reconcile(CONTEXT))
    assert snapshot.lesson_progress["a"] == 75
    assert cache.read("course-1").lesson_progress["a"] == 75
    assert len(reader.calls) == 2


def test_cached_reconcile_leaves_local_alone() -> None:
    storage = MemoryStorage()
    cache = LocalSnapshotCache(storage, reader=FakeReader(_server_rows()), clock=Clock())
    asyncio.run(cache.reconcile(CONTEXT))

    # Another tab wrote through its own cache instance.
    other = LocalSnapshotCache(storage)
    other.write("course-1", LocalSnapshot(lesson_progress={"a": 95}))

    snapshot = asyncio.run(cache.reconcile(CONTEXT))
    assert snapshot.lesson_progress["a"] == 90
    assert cache.read("course-1").lesson_progress["a"] == 95


def test_expired_results_are_pruned() -> None:
    clock = Clock()
    cache = LocalSnapshotCache(MemoryStorage(), reader=FakeReader(), ttl_s=45, clock=clock)
    for course in ("c1", "c2", "c3"):
        asyncio.run(
            cache.reconcile(SyncContext(user_id="u1", course_id=course, lesson_ids=("a",)))
        )
    assert len(cache._recent) == 3

    clock.now += 46
    asyncio.run(cache.reconcile(CONTEXT))
    assert list(cache._recent) == [("u1", "course-1")]


def test_reconcile_chunks_lesson_ids() -> None:
    reader = FakeReader()
    cache = LocalSnapshotCache(MemoryStorage(), reader=reader)
    ids = tuple(f"l{i}" for i in range(30))

    snapshot = asyncio.run(
        cache.reconcile(SyncContext(user_id="u1", course_id="course-1", lesson_ids=ids))
    )

    assert [len(call) for call in reader.calls] == [25, 5]
    assert len(snapshot.lesson_progress) == 30


def test_concurrent_reconciles_are_bounded() -> None:
    active = 0
    peak = 0

    class SlowReader:
        async def fetch_lesson_progress(self, course_id, lesson_ids):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return [LessonProgressEntry.empty(i) for i in lesson_ids]

    async def scenario() -> None:
        cache = LocalSnapshotCache(MemoryStorage(), reader=SlowReader(), max_concurrent=2)
        await asyncio.gather(
            *(
                cache.reconcile(SyncContext(user_id="u1", course_id=f"c{i}", lesson_ids=("a",)))
                for i in range(5)
            )
        )

    asyncio.run(scenario())
    assert peak == 2
