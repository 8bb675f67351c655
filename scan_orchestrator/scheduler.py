"""
Poll scheduling for in-flight scan jobs.

Every active job has exactly one next-due timestamp. ``PollScheduler`` hands
due jobs out in due-time order, never hands out a job that is already being
processed, and charges each provider call against a shared ``TokenBucket``.
Jobs whose maximum duration has elapsed are handed out without a token, since
timing them out does not touch the provider.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from scan_orchestrator.models import utc_now

LOGGER = logging.getLogger(__name__)

# exponent cap for the backoff curve; the delay is clamped to max_interval long before
MAX_BACKOFF_EXPONENT = 32


class TokenBucket:
    """Thread-safe token bucket limiting provider calls per second across all workers."""

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float] = time.monotonic) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = float(rate)
        self.capacity = float(capacity)
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def seconds_until_available(self) -> float:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self.rate


@dataclass(order=True)
class _Entry:
    due_at: datetime
    seq: int
    job_id: str = field(compare=False)
    deadline: datetime | None = field(default=None, compare=False)


class PollScheduler:
    def __init__(
        self,
        bucket: TokenBucket,
        initial_interval: float = 5.0,
        multiplier: float = 2.0,
        max_interval: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if initial_interval <= 0 or max_interval < initial_interval:
            raise ValueError("poll intervals must be positive and max_interval >= initial_interval")
        if multiplier < 1.0:
            raise ValueError("backoff multiplier must be >= 1")
        self.bucket = bucket
        self.initial_interval = initial_interval
        self.multiplier = multiplier
        self.max_interval = max_interval
        self._clock = clock
        self._heap: list[_Entry] = []
        self._entries: dict[str, _Entry] = {}
        self._in_flight: set[str] = set()
        self._seq = itertools.count()
        self._cond = threading.Condition()

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], datetime] = utc_now) -> "PollScheduler":
        bucket = TokenBucket(
            rate=settings.rate_limit_per_second,
            capacity=settings.rate_limit_burst,
            clock=lambda: clock().timestamp(),
        )
        return cls(
            bucket,
            initial_interval=settings.initial_poll_interval_seconds,
            multiplier=settings.backoff_multiplier,
            max_interval=settings.max_poll_interval_seconds,
            clock=clock,
        )

    def backoff(self, attempts: int) -> float:
        exponent = min(max(attempts, 0), MAX_BACKOFF_EXPONENT)
        return min(self.initial_interval * self.multiplier**exponent, self.max_interval)

    def next_poll_at(self, attempts: int, deadline: datetime | None = None) -> datetime:
        due_at = self._clock() + timedelta(seconds=self.backoff(attempts))
        if deadline is not None and deadline < due_at:
            return deadline
        return due_at

    def _push(self, job_id: str, due_at: datetime, deadline: datetime | None) -> None:
        entry = _Entry(due_at=due_at, seq=next(self._seq), job_id=job_id, deadline=deadline)
        self._entries[job_id] = entry
        heapq.heappush(self._heap, entry)
        self._cond.notify_all()

    def schedule(self, job_id: str, due_at: datetime | None = None, deadline: datetime | None = None) -> bool:
        """Queue ``job_id``; replaces any earlier due time. Ignored while the job is in flight."""
        if due_at is None:
            due_at = self._clock() + timedelta(seconds=self.initial_interval)
        with self._cond:
            if job_id in self._in_flight:
                return False
            self._push(job_id, due_at, deadline)
            return True

    def remove(self, job_id: str) -> None:
        with self._cond:
            self._entries.pop(job_id, None)

    def _live_head(self) -> _Entry | None:
        while self._heap:
            entry = self._heap[0]
            if self._entries.get(entry.job_id) is entry:
                return entry
            heapq.heappop(self._heap)
        return None

    def _take(self, entry: _Entry) -> str:
        del self._entries[entry.job_id]
        self._in_flight.add(entry.job_id)
        return entry.job_id

    def _expired(self, now: datetime) -> _Entry | None:
        expired = [
            entry
            for entry in self._heap
            if entry.deadline is not None and entry.deadline <= now and self._entries.get(entry.job_id) is entry
        ]
        return min(expired) if expired else None

    def acquire_due(self) -> str | None:
        """Return the most overdue job and mark it in flight, or None if nothing can run now."""
        with self._cond:
            head = self._live_head()
            now = self._clock()
            if head is None or head.due_at > now:
                return None
            if head.deadline is not None and head.deadline <= now:
                return self._take(head)
            if self.bucket.try_acquire():
                heapq.heappop(self._heap)
                return self._take(head)
            # out of budget; jobs past their deadline only need a local check
            expired = self._expired(now)
            if expired is not None:
                return self._take(expired)
            return None

    def release(self, job_id: str, next_due: datetime | None, deadline: datetime | None = None) -> None:
        """Finish a poll; requeue at ``next_due`` or drop the job when it is None."""
        with self._cond:
            self._in_flight.discard(job_id)
            if next_due is not None:
                self._push(job_id, next_due, deadline)
            else:
                self._cond.notify_all()

    def seconds_until_next(self) -> float | None:
        with self._cond:
            head = self._live_head()
            if head is None:
                return None
            delay = max(0.0, (head.due_at - self._clock()).total_seconds())
        if delay == 0.0:
            return self.bucket.seconds_until_available()
        return delay

    def wait(self, timeout: float) -> None:
        with self._cond:
            self._cond.wait(timeout)

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def is_in_flight(self, job_id: str) -> bool:
        with self._cond:
            return job_id in self._in_flight

    def __contains__(self, job_id: str) -> bool:
        with self._cond:
            return job_id in self._entries or job_id in self._in_flight

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries) + len(self._in_flight)
