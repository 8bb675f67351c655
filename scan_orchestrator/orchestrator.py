"""
Scan job orchestrator: owns the job lifecycle.

Jobs move ``pending -> submitted -> running -> {completed|failed|timed_out|cancelled}``.
Every change is committed through the job store's compare-and-set keyed by
the state the change was computed from, so a racing poll or a duplicate
provider response can never apply a second conflicting transition.
"""
from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from scan_orchestrator.errors import (
    InvalidRequest,
    JobNotFound,
    ProviderError,
    ProviderMalformed,
    ProviderNotFound,
    ProviderRejected,
    ProviderUnavailable,
)
from scan_orchestrator.models import Finding, JobState, ProviderPhase, ScanJob, utc_now
from scan_orchestrator.normalizer import normalize_results
from scan_orchestrator.providers import ProviderClient
from scan_orchestrator.scheduler import PollScheduler
from scan_orchestrator.settings import OrchestratorSettings
from scan_orchestrator.storage import JobStore

LOGGER = logging.getLogger(__name__)

Listener = Callable[[ScanJob], Any]


class Orchestrator:
    def __init__(
        self,
        store: JobStore,
        provider: ProviderClient,
        settings: OrchestratorSettings | None = None,
        scheduler: PollScheduler | None = None,
        normalizer: Callable[[str, Any], list[Finding] | None] = normalize_results,
        clock: Callable[[], datetime] = utc_now,
        listeners: Iterable[Listener] = (),
    ) -> None:
        self.store = store
        self.provider = provider
        self.settings = settings or OrchestratorSettings()
        self.scheduler = scheduler or PollScheduler.from_settings(self.settings, clock=clock)
        self.normalizer = normalizer
        self.listeners = list(listeners)
        self._clock = clock
        self._stop_event = threading.Event()
        self._dispatcher: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._slots = threading.BoundedSemaphore(self.settings.max_workers)

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------

    def submit(
        self,
        target: str,
        scan_type: str,
        parameters: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Create a pending job and queue it for submission. Returns the job id immediately.

        ``parameters`` are scan options forwarded to the provider (ports,
        crawl depth, ...); ``context`` is stored for the caller and never sent.
        """
        target = (target or "").strip()
        if not target:
            raise InvalidRequest("target must not be empty")
        if scan_type not in self.settings.scan_types:
            raise InvalidRequest(f"unknown scan type: {scan_type!r}")
        if parameters is not None and not isinstance(parameters, dict):
            raise InvalidRequest("parameters must be a mapping")

        now = self._clock()
        job = ScanJob(
            id=uuid.uuid4().hex,
            target=target,
            scan_type=scan_type,
            state=JobState.PENDING,
            created_at=now,
            parameters=dict(parameters or {}),
            context=dict(context or {}),
        )
        self.store.create(job)
        self.scheduler.schedule(job.id, due_at=now)
        LOGGER.info("Created scan job %s type=%s target=%s", job.id, scan_type, target)
        return job.id

    def get_status(self, job_id: str) -> ScanJob:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def get_findings(self, job_id: str) -> list[Finding]:
        job = self.get_status(job_id)
        if job.state is not JobState.COMPLETED:
            return []
        return self.store.get_findings(job_id)

    def cancel(self, job_id: str) -> None:
        """Cancel a job that has not finished yet; a no-op for terminal jobs."""
        while True:
            job = self.get_status(job_id)
            if job.is_terminal:
                LOGGER.debug("Cancel ignored for job %s in state %s", job_id, job.state.value)
                return
            cancelled = replace(job, state=JobState.CANCELLED, completed_at=self._clock())
            if self.store.compare_and_set(job_id, job.state, cancelled):
                break
        self.scheduler.remove(job_id)
        LOGGER.info("Job %s: %s -> cancelled", job_id, job.state.value)
        self._notify(cancelled)
        if job.provider_ref:
            self._stop_remote(job_id, job.provider_ref)

    def _stop_remote(self, job_id: str, provider_ref: str) -> None:
        if not self.settings.stop_remote_on_cancel:
            return
        try:
            self.provider.stop(provider_ref)
        except ProviderError as exc:
            LOGGER.warning("Could not stop provider scan %s for job %s: %s", provider_ref, job_id, exc)

    # ------------------------------------------------------------------
    # Recovery and dispatch
    # ------------------------------------------------------------------

    def deadline_for(self, job: ScanJob) -> datetime | None:
        if job.submitted_at is None:
            return None
        return job.submitted_at + timedelta(seconds=self.settings.max_job_duration_seconds)

    def recover(self) -> int:
        """Re-enqueue every non-terminal job, due immediately. Returns the number of jobs queued."""
        now = self._clock()
        jobs = self.store.list_active()
        for job in jobs:
            self.scheduler.schedule(job.id, due_at=now, deadline=self.deadline_for(job))
        LOGGER.info("Recovered %s active scan jobs", len(jobs))
        return len(jobs)

    def run_job(self, job_id: str) -> None:
        """Process one scheduler hand-out of ``job_id`` and release it back."""
        next_due: datetime | None = None
        deadline: datetime | None = None
        try:
            next_due, deadline = self.process(job_id)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Unexpected error while processing job %s", job_id)
            try:
                next_due, deadline = self._after_unexpected_error(job_id)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Could not record error for job %s; retrying later", job_id)
                next_due = self._clock() + timedelta(seconds=self.scheduler.max_interval)
        finally:
            self.scheduler.release(job_id, next_due, deadline)

    def run_once(self) -> int:
        """Process every job that is due now, one at a time. Returns how many were processed."""
        processed = 0
        while True:
            job_id = self.scheduler.acquire_due()
            if job_id is None:
                return processed
            self.run_job(job_id)
            processed += 1

    def start(self) -> None:
        if self._dispatcher and self._dispatcher.is_alive():
            LOGGER.warning("Orchestrator already running")
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="scan-poll")
        self._dispatcher = threading.Thread(target=self._dispatch_loop, daemon=True, name="scan-dispatcher")
        self._dispatcher.start()
        LOGGER.info("Orchestrator started with %s workers", self.settings.max_workers)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        self.scheduler.wake()
        if self._dispatcher:
            self._dispatcher.join(timeout=timeout)
            self._dispatcher = None
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None
        LOGGER.info("Orchestrator stopped")

    def is_running(self) -> bool:
        return self._dispatcher is not None and self._dispatcher.is_alive()

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._slots.acquire(timeout=self.settings.idle_wait_seconds):
                continue
            job_id = self.scheduler.acquire_due()
            if job_id is None:
                self._slots.release()
                wait = self.scheduler.seconds_until_next()
                idle = self.settings.idle_wait_seconds
                self.scheduler.wait(idle if wait is None else min(max(wait, 0.01), idle))
                continue
            self._executor.submit(self._run_in_slot, job_id)

    def _run_in_slot(self, job_id: str) -> None:
        try:
            self.run_job(job_id)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Poll worker failed for job %s", job_id)
        finally:
            self._slots.release()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def process(self, job_id: str) -> tuple[datetime | None, datetime | None]:
        """Advance one job by a single step.

        Returns ``(next_due, deadline)`` for rescheduling, with ``next_due``
        None once the job needs no further polling.
        """
        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return None, None
        now = self._clock()
        if job.state is JobState.PENDING:
            return self._submit_to_provider(job, now)

        if self._is_expired(job, now):
            return self._time_out(job, now)

        error: ProviderError | None = None
        try:
            status = self.provider.status(job.provider_ref)
        except (ProviderNotFound, ProviderUnavailable) as exc:
            error = exc

        # a response arriving after the deadline never beats the timeout
        now = self._clock()
        if self._is_expired(job, now):
            return self._time_out(job, now)
        if isinstance(error, ProviderNotFound):
            return self._fail(job, now, f"provider lost track of the scan: {error}")
        if error is not None:
            return self._transient_error(job, now, error)

        if status.phase is ProviderPhase.SUCCEEDED:
            return self._complete(job)
        if status.phase is ProviderPhase.FAILED:
            return self._fail(job, now, status.message or "provider reported failure")
        return self._record_progress(job, now, status.progress)

    def _commit(self, job: ScanJob, updated: ScanJob, findings: list[Finding] | None = None) -> bool:
        if findings is None:
            committed = self.store.compare_and_set(job.id, job.state, updated)
        else:
            committed = self.store.write_findings(job.id, job.state, updated, findings)
        if not committed:
            LOGGER.info("Job %s changed concurrently; dropping %s update", job.id, updated.state.value)
            return False
        if updated.state is not job.state:
            LOGGER.info("Job %s: %s -> %s", job.id, job.state.value, updated.state.value)
        if updated.is_terminal:
            self._notify(updated)
        return True

    def _after_lost_race(self, job_id: str) -> tuple[datetime | None, datetime | None]:
        current = self.store.get(job_id)
        if current is None or current.is_terminal:
            return None, None
        deadline = self.deadline_for(current)
        return self.scheduler.next_poll_at(current.attempts, deadline), deadline

    def _next(self, job: ScanJob) -> tuple[datetime | None, datetime | None]:
        deadline = self.deadline_for(job)
        return self.scheduler.next_poll_at(job.attempts, deadline), deadline

    def _submit_to_provider(self, job: ScanJob, now: datetime) -> tuple[datetime | None, datetime | None]:
        try:
            provider_ref = self.provider.create(job.target, job.scan_type, job.parameters)
        except ProviderRejected as exc:
            return self._fail(job, now, f"rejected by provider: {exc}")
        except ProviderUnavailable as exc:
            return self._transient_error(job, now, exc)

        submitted = replace(
            job,
            state=JobState.SUBMITTED,
            provider_ref=str(provider_ref),
            submitted_at=now,
            attempts=0,
            error_count=0,
        )
        if not self._commit(job, submitted):
            current = self.store.get(job.id)
            if current is not None and current.state is JobState.CANCELLED:
                # cancelled while create() was in flight; the cancel saw no ref to stop
                self._stop_remote(job.id, submitted.provider_ref)
            return self._after_lost_race(job.id)
        deadline = self.deadline_for(submitted)
        return self.scheduler.next_poll_at(0, deadline), deadline

    def _record_progress(self, job: ScanJob, now: datetime, progress: int | None) -> tuple[datetime | None, datetime | None]:
        new_progress = job.progress
        if progress is not None:
            new_progress = max(job.progress, min(100, max(0, int(progress))))
        moved = job.state is not JobState.RUNNING or new_progress > job.progress
        running = replace(
            job,
            state=JobState.RUNNING,
            progress=new_progress,
            last_polled_at=now,
            attempts=0 if moved else job.attempts + 1,
            error_count=0,
        )
        if not self._commit(job, running):
            return self._after_lost_race(job.id)
        return self._next(running)

    def _complete(self, job: ScanJob) -> tuple[datetime | None, datetime | None]:
        error: ProviderError | None = None
        payload: Any = None
        try:
            payload = self.provider.fetch_results(job.provider_ref)
        except (ProviderUnavailable, ProviderMalformed, ProviderNotFound) as exc:
            error = exc

        now = self._clock()
        if self._is_expired(job, now):
            return self._time_out(job, now)
        if isinstance(error, ProviderUnavailable):
            return self._transient_error(job, now, error)
        if error is not None:
            return self._fail(job, now, f"malformed results: {error}")

        findings = self.normalizer(job.id, payload)
        if findings is None:
            return self._fail(job, now, "unparsable results")

        completed = replace(
            job,
            state=JobState.COMPLETED,
            progress=100,
            last_polled_at=now,
            completed_at=now,
            attempts=0,
            error_count=0,
        )
        if not self._commit(job, completed, findings=findings):
            return self._after_lost_race(job.id)
        return None, None

    def _fail(self, job: ScanJob, now: datetime, reason: str) -> tuple[datetime | None, datetime | None]:
        failed = replace(
            job,
            state=JobState.FAILED,
            error_reason=reason,
            completed_at=now,
            last_polled_at=now if job.state is not JobState.PENDING else job.last_polled_at,
        )
        if not self._commit(job, failed):
            return self._after_lost_race(job.id)
        LOGGER.warning("Job %s failed: %s", job.id, reason)
        return None, None

    def _is_expired(self, job: ScanJob, now: datetime) -> bool:
        deadline = self.deadline_for(job)
        return deadline is not None and now >= deadline

    def _time_out(self, job: ScanJob, now: datetime) -> tuple[datetime | None, datetime | None]:
        timed_out = replace(
            job,
            state=JobState.TIMED_OUT,
            error_reason=f"exceeded maximum job duration of {self.settings.max_job_duration_seconds:g}s",
            completed_at=now,
        )
        if not self._commit(job, timed_out):
            return self._after_lost_race(job.id)
        return None, None

    def _transient_error(self, job: ScanJob, now: datetime, exc: Exception) -> tuple[datetime | None, datetime | None]:
        error_count = job.error_count + 1
        if error_count > self.settings.max_transient_errors:
            return self._fail(job, now, f"provider unavailable after {error_count} attempts: {exc}")
        LOGGER.warning(
            "Transient provider error for job %s (%s/%s): %s",
            job.id,
            error_count,
            self.settings.max_transient_errors,
            exc,
        )
        retry = replace(
            job,
            attempts=job.attempts + 1,
            error_count=error_count,
            last_polled_at=now if job.state is not JobState.PENDING else job.last_polled_at,
        )
        if not self._commit(job, retry):
            return self._after_lost_race(job.id)
        return self._next(retry)

    def _after_unexpected_error(self, job_id: str) -> tuple[datetime | None, datetime | None]:
        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return None, None
        return self._transient_error(job, self._clock(), RuntimeError("unexpected orchestrator error"))

    def _notify(self, job: ScanJob) -> None:
        for listener in self.listeners:
            try:
                listener(job)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Listener %r failed for job %s", listener, job.id)
