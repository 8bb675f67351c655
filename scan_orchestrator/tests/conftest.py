"""
Shared fixtures: a controllable clock, a scripted provider and both job stores.
"""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from scan_orchestrator.models import ProviderPhase, ProviderStatus
from scan_orchestrator.orchestrator import Orchestrator
from scan_orchestrator.providers import ProviderClient
from scan_orchestrator.settings import OrchestratorSettings
from scan_orchestrator.storage import InMemoryJobStore, SqliteJobStore


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedProvider(ProviderClient):
    """Provider double whose answers are queued per call type and reference.

    Scripted items are popped in order; the last item of a status or result
    script repeats. Exceptions in a script are raised instead of returned.
    """

    name = "scripted"

    def __init__(self) -> None:
        self.create_script: list[Any] = []
        self.status_script: dict[str, list[Any]] = {}
        self.result_script: dict[str, list[Any]] = {}
        self.calls: list[tuple[str, ...]] = []
        self.stopped: list[str] = []
        self.on_create: Callable[[str], None] | None = None
        self.on_status: Callable[[str], None] | None = None
        self.on_fetch: Callable[[str], None] | None = None
        self._counter = 0
        self._lock = threading.Lock()

    @staticmethod
    def _next(script: list[Any]) -> Any:
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    def create(self, target: str, scan_type: str, parameters: dict[str, Any] | None = None) -> str:
        with self._lock:
            self.calls.append(("create", target, scan_type, dict(parameters or {})))
            if self.create_script:
                item = self.create_script.pop(0)
                if isinstance(item, Exception):
                    raise item
            else:
                self._counter += 1
                item = f"R{self._counter}"
        if self.on_create:
            self.on_create(item)
        return item

    def status(self, provider_ref: str) -> ProviderStatus:
        with self._lock:
            self.calls.append(("status", provider_ref))
            script = self.status_script.get(provider_ref) or [ProviderStatus(ProviderPhase.RUNNING)]
        if self.on_status:
            self.on_status(provider_ref)
        return self._next(script)

    def fetch_results(self, provider_ref: str) -> Any:
        with self._lock:
            self.calls.append(("fetch_results", provider_ref))
            script = self.result_script.get(provider_ref) or [{"findings": []}]
        if self.on_fetch:
            self.on_fetch(provider_ref)
        return self._next(script)

    def stop(self, provider_ref: str) -> None:
        self.stopped.append(provider_ref)

    def count(self, call: str) -> int:
        return sum(1 for item in self.calls if item[0] == call)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def settings() -> OrchestratorSettings:
    return OrchestratorSettings(
        scan_types=frozenset({"web", "ssl", "cms", "unsupported"}),
        initial_poll_interval_seconds=10,
        backoff_multiplier=2.0,
        max_poll_interval_seconds=60,
        max_job_duration_seconds=3600,
        max_transient_errors=3,
        rate_limit_per_second=100,
        rate_limit_burst=100,
        max_workers=4,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryJobStore()
    return SqliteJobStore(str(tmp_path / "jobs.db"))


@pytest.fixture
def orchestrator(store, provider, settings, clock) -> Orchestrator:
    return Orchestrator(store=store, provider=provider, settings=settings, clock=clock)


@pytest.fixture
def drive(clock):
    """Run an orchestrator step by step, jumping the clock to each due time."""

    def _drive(orchestrator: Orchestrator, job_id: str, max_steps: int = 500):
        for _ in range(max_steps):
            job = orchestrator.get_status(job_id)
            if job.is_terminal:
                return job
            orchestrator.run_once()
            wait = orchestrator.scheduler.seconds_until_next()
            if wait:
                clock.advance(wait)
        raise AssertionError(f"job {job_id} did not reach a terminal state")

    return _drive
