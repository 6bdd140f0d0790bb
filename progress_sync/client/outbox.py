"""Client outbox: buffer events, ship them in batches, retry with backoff.

Two queues, each with its own timer and backoff:

  progress   flush at 10 events or after 5 s idle, <= 25 per batch
  analytics  flush at 8 events or after 3 s idle,  <= 50 per batch

Every enqueue re-arms the idle timer, so a steady trickle of events is
held until the learner pauses or the size threshold is reached.  A
failed batch goes back to the *front* of its queue and the queue waits
``next_backoff()`` before the next attempt; a batch whose response lists
failed ids requeues only those.  Success resets the backoff.  While
backing off, new events leave the retry timer alone, and reaching the
threshold still flushes at once.

Nothing here is durable.  Queued events live in memory and are lost
with the process; ``on_unload()`` only schedules a last flush.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from progress_sync.client.transport import BatchResponse
from progress_sync.models.events import (
    AnalyticsEvent,
    ProgressEvent,
    build_progress_event,
    clamp_percent,
    new_event_id,
    now_ms,
)

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 30_000
BACKOFF_JITTER_MS = 500


@dataclass(frozen=True, slots=True)
class QueuePolicy:
    name: str
    path: str
    flush_threshold: int
    flush_interval_ms: int
    max_batch: int
    initial_backoff_ms: int


PROGRESS_POLICY = QueuePolicy(
    name="progress",
    path="/progress/batch",
    flush_threshold=10,
    flush_interval_ms=5_000,
    max_batch=25,
    initial_backoff_ms=2_000,
)

ANALYTICS_POLICY = QueuePolicy(
    name="analytics",
    path="/analytics/batch",
    flush_threshold=8,
    flush_interval_ms=3_000,
    max_batch=50,
    initial_backoff_ms=3_000,
)


def next_backoff(
    current_ms: int, initial_ms: int, rng: random.Random | None = None
) -> int:
    """Doubling delay capped at 30 s, plus up to 500 ms of jitter."""
    base = initial_ms if current_ms <= 0 else min(current_ms * 2, MAX_BACKOFF_MS)
    return base + (rng or random).randint(0, BACKOFF_JITTER_MS)


class BatchSender(Protocol):
    async def post_batch(
        self, path: str, events: Sequence[Any]
    ) -> BatchResponse: ...


E = TypeVar("E", bound="ProgressEvent | AnalyticsEvent")


class EventQueue(Generic[E]):
    """One FIFO queue with its own timer, backoff and in-flight guard.

    Scheduling needs a running event loop.  Events added without one are
    kept and go out with the next flush.
    """

    def __init__(
        self,
        policy: QueuePolicy,
        sender: BatchSender,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy
        self.backoff_ms = 0
        self._sender = sender
        self._rng = rng
        self._pending: deque[E] = deque()
        self._timer: asyncio.TimerHandle | None = None
        self._in_flight = False
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> list[E]:
        return list(self._pending)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def add(self, event: E) -> None:
        self._pending.append(event)
        self._schedule()

    def dispatch(self) -> asyncio.Task[None] | None:
        """Start a flush without awaiting it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(self.flush())
        # The loop only keeps weak references to tasks.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def flush(self) -> None:
        if self._in_flight or not self._pending:
            return
        self._cancel_timer()
        self._in_flight = True
        size = min(len(self._pending), self.policy.max_batch)
        batch = [self._pending.popleft() for _ in range(size)]
        try:
            try:
                response = await self._sender.post_batch(self.policy.path, batch)
            except asyncio.CancelledError:
                self._requeue(batch)
                raise
            except Exception as exc:
                logger.warning(
                    "%s batch of %d failed, requeued: %s", self.policy.name, size, exc
                )
                self._requeue(batch)
                self._back_off()
                return

            failed_ids = response.failed_ids
            retry = [e for e in batch if e.client_event_id in failed_ids]
            if retry:
                logger.info(
                    "%s batch: %d of %d events failed, requeued",
                    self.policy.name,
                    len(retry),
                    size,
                )
                self._requeue(retry)
                self._back_off()
            else:
                self.backoff_ms = 0
                if self._pending:
                    self._schedule()
        finally:
            self._in_flight = False

    def close(self) -> None:
        self._cancel_timer()

    # ------------------------------------------------------------------

    def _requeue(self, events: list[E]) -> None:
        # Front of the queue, original order.
        self._pending.extendleft(reversed(events))

    def _back_off(self) -> None:
        self.backoff_ms = next_backoff(
            self.backoff_ms, self.policy.initial_backoff_ms, self._rng
        )
        # Retry on the backoff timer even if the requeued batch is over
        # the threshold; otherwise a dead network is hit in a loop.
        self._arm(self.backoff_ms)

    def _schedule(self) -> None:
        if len(self._pending) >= self.policy.flush_threshold:
            self._cancel_timer()
            self.dispatch()
        elif self.backoff_ms > 0:
            # Keep the retry deadline; new events must not push it back.
            if self._timer is None:
                self._arm(self.backoff_ms)
        else:
            self._arm(self.policy.flush_interval_ms)

    def _arm(self, delay_ms: int) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cancel_timer()
        self._timer = loop.call_later(delay_ms / 1000, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.dispatch()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class Outbox:
    """The two queues plus event construction and lifecycle hooks."""

    def __init__(
        self,
        sender: BatchSender,
        *,
        progress_policy: QueuePolicy = PROGRESS_POLICY,
        analytics_policy: QueuePolicy = ANALYTICS_POLICY,
        rng: random.Random | None = None,
    ) -> None:
        self.progress: EventQueue[ProgressEvent] = EventQueue(
            progress_policy, sender, rng=rng
        )
        self.analytics: EventQueue[AnalyticsEvent] = EventQueue(
            analytics_policy, sender, rng=rng
        )

    def enqueue_progress(
        self,
        event_type: str,
        *,
        user_id: str,
        course_id: str | None = None,
        lesson_id: str | None = None,
        percent: float | None = None,
        position: float | None = None,
        status: str | None = None,
        time_spent_seconds: float | None = None,
        org_id: str | None = None,
        client_event_id: str | None = None,
        timestamp: int | None = None,
    ) -> str:
        """Queue a progress event and return its client_event_id.

        Raises ValueError for an unknown type or a missing lesson/course.
        """
        event = build_progress_event(
            event_type,
            client_event_id=client_event_id or new_event_id(),
            user_id=user_id,
            timestamp=timestamp or now_ms(),
            course_id=course_id,
            lesson_id=lesson_id,
            percent=clamp_percent(percent) if percent is not None else None,
            position=max(0.0, position) if position is not None else None,
            status=status,
            time_spent_seconds=time_spent_seconds,
            org_id=org_id,
        )
        self.progress.add(event)
        return event.client_event_id

    def enqueue_analytics(
        self,
        event_type: str,
        *,
        user_id: str | None = None,
        course_id: str | None = None,
        data: dict[str, Any] | None = None,
        org_id: str | None = None,
        client_event_id: str | None = None,
        timestamp: int | None = None,
    ) -> str:
        event = AnalyticsEvent(
            client_event_id=client_event_id or new_event_id(),
            type=event_type,
            timestamp=timestamp or now_ms(),
            user_id=user_id,
            course_id=course_id,
            data=data or {},
            org_id=org_id,
        )
        self.analytics.add(event)
        return event.client_event_id

    async def flush_all(self) -> None:
        await asyncio.gather(self.progress.flush(), self.analytics.flush())

    def on_visibility_hidden(self) -> None:
        """Tab hidden: flush both queues, best effort, without waiting."""
        self.progress.dispatch()
        self.analytics.dispatch()

    def on_unload(self) -> None:
        """Page unloading: same as hidden.  The flush may never finish."""
        self.progress.dispatch()
        self.analytics.dispatch()

    def close(self) -> None:
        self.progress.close()
        self.analytics.close()
