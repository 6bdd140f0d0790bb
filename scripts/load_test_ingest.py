#!/usr/bin/env python3
"""Load test: hammer POST /progress/batch and watch the rate limiter.

RUN:  python scripts/load_test_ingest.py

Sends TOTAL_BATCHES full batches in rapid succession and prints how many
were accepted (200) vs. throttled (429), plus the duplicate count when
the same batches are replayed.

Prerequisites:
  - The API must be running: uvicorn progress_sync.main:app --port 8000
  - TOKEN must hold an access token from the identity provider whose
    public key the server was started with (JWT_PUBLIC_KEY).

Not a production load testing tool; use locust, k6 or wrk for that.
"""

from __future__ import annotations

import os
import sys
import time
import uuid

import httpx

BASE_URL = os.environ.get("PROGRESS_API_BASE_URL", "http://localhost:8000")
TOTAL_BATCHES = 80
BATCH_SIZE = 25


def _batch(run_id: str, n: int) -> list[dict]:
    return [
        {
            "clientEventId": f"{run_id}-{n}-{i}",
            "type": "lesson_progress",
            "courseId": "load-course",
            "lessonId": f"lesson-{i}",
            "percent": (n + i) % 100,
            "timestamp": int(time.time() * 1000),
        }
        for i in range(BATCH_SIZE)
    ]


def _token() -> str:
    token = os.environ.get("TOKEN")
    if not token:
        sys.exit("TOKEN is required (an access token for /progress/batch)")
    return token


def main() -> None:
    run_id = uuid.uuid4().hex[:8]
    headers = {"Authorization": f"Bearer {_token()}"}
    print("Ingestion Load Test")
    print("=" * 50)
    print(f"Target: {BASE_URL}/progress/batch")
    print(f"Batches: {TOTAL_BATCHES} x {BATCH_SIZE} events")
    print()

    results: dict[int, int] = {}
    accepted = duplicates = 0
    start = time.monotonic()

    with httpx.Client(base_url=BASE_URL, timeout=10) as client:
        for n in range(TOTAL_BATCHES):
            resp = client.post("/progress/batch", json={"events": _batch(run_id, n)}, headers=headers)
            results[resp.status_code] = results.get(resp.status_code, 0) + 1
            if resp.status_code == 200:
                accepted += len(resp.json()["accepted"])
            if (n + 1) % 20 == 0:
                print(f"  Sent {n + 1}/{TOTAL_BATCHES} batches...")

        # Replay the first batch: every event must come back as a duplicate.
        resp = client.post("/progress/batch", json={"events": _batch(run_id, 0)}, headers=headers)
        if resp.status_code == 200:
            duplicates = len(resp.json()["duplicates"])

    elapsed = time.monotonic() - start

    print()
    print(f"Results after {TOTAL_BATCHES} batches ({elapsed:.2f}s):")
    print("─" * 40)
    print(f"  Allowed  (200): {results.get(200, 0):>4}")
    print(f"  Throttled(429): {results.get(429, 0):>4}")
    other = sum(v for k, v in results.items() if k not in (200, 429))
    if other:
        print(f"  Other:          {other:>4}")
    print(f"  Events accepted: {accepted}")
    print(f"  Replay duplicates: {duplicates}/{BATCH_SIZE}")
    print()
    print("Ingest bucket: capacity 60, refill 1 batch/second")


if __name__ == "__main__":
    main()
