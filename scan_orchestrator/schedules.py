"""
Recurring scans.

A ``ScheduleRunner`` wakes up every ``check_interval_seconds``, submits a scan
through the orchestrator for each schedule whose ``next_run_at`` has passed
and moves that schedule to its next run. Schedules come from the
``schedules`` section of the settings file:

    schedules:
      - name: nightly-tls
        target: https://example.com
        scan_type: ssl
        frequency: daily        # once | daily | weekly | monthly
        start_at: 2026-01-01T02:00:00+00:00
        max_runs: 30
        parameters: {}

Missed runs are not replayed; a schedule that fell behind fires once and
moves to its next future slot.
"""
from __future__ import annotations

import calendar
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable

from scan_orchestrator.errors import InvalidRequest
from scan_orchestrator.models import from_iso, utc_now

LOGGER = logging.getLogger(__name__)

CHECK_INTERVAL_SECONDS = 60.0


class ScheduleFrequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def _add_month(value: datetime) -> datetime:
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_run_after(frequency: ScheduleFrequency, previous: datetime) -> datetime | None:
    if frequency is ScheduleFrequency.DAILY:
        return previous + timedelta(days=1)
    if frequency is ScheduleFrequency.WEEKLY:
        return previous + timedelta(days=7)
    if frequency is ScheduleFrequency.MONTHLY:
        return _add_month(previous)
    return None


def first_run_at(frequency: ScheduleFrequency, start_at: datetime | None, now: datetime) -> datetime | None:
    """First slot of a new schedule: ``start_at`` if still ahead, else one period from now."""
    if start_at is not None and start_at > now:
        return start_at
    if frequency is ScheduleFrequency.ONCE:
        return start_at or now
    return next_run_after(frequency, now)


@dataclass
class ScheduledScan:
    name: str
    target: str
    scan_type: str
    frequency: ScheduleFrequency = ScheduleFrequency.DAILY
    parameters: dict[str, Any] = field(default_factory=dict)
    next_run_at: datetime | None = None
    max_runs: int | None = None
    run_count: int = 0
    last_run_at: datetime | None = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any], now: datetime) -> "ScheduledScan":
        frequency = ScheduleFrequency(str(data.get("frequency", "daily")).lower())
        start_at = data.get("start_at")
        if isinstance(start_at, str):
            start_at = from_iso(start_at)
        elif isinstance(start_at, datetime) and start_at.tzinfo is None:
            # YAML timestamps without an offset
            start_at = start_at.replace(tzinfo=timezone.utc)
        max_runs = data.get("max_runs")
        return cls(
            name=str(data.get("name") or f"{data['scan_type']}:{data['target']}"),
            target=str(data["target"]),
            scan_type=str(data["scan_type"]),
            frequency=frequency,
            parameters=dict(data.get("parameters") or {}),
            next_run_at=first_run_at(frequency, start_at, now),
            max_runs=int(max_runs) if max_runs else None,
        )

    def is_due(self, now: datetime) -> bool:
        return self.is_active and self.next_run_at is not None and self.next_run_at <= now


class ScheduleRunner:
    def __init__(
        self,
        orchestrator,
        schedules: Iterable[ScheduledScan],
        clock: Callable[[], datetime] = utc_now,
        check_interval_seconds: float = CHECK_INTERVAL_SECONDS,
    ) -> None:
        self.orchestrator = orchestrator
        self.schedules = list(schedules)
        self.check_interval_seconds = check_interval_seconds
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        orchestrator,
        entries: list[dict[str, Any]],
        clock: Callable[[], datetime] = utc_now,
        check_interval_seconds: float = CHECK_INTERVAL_SECONDS,
    ) -> "ScheduleRunner":
        now = clock()
        schedules = []
        for entry in entries:
            try:
                schedules.append(ScheduledScan.from_dict(entry, now))
            except (KeyError, ValueError) as exc:
                raise ValueError(f"Invalid schedule {entry!r}: {exc}") from exc
        return cls(orchestrator, schedules, clock=clock, check_interval_seconds=check_interval_seconds)

    def run_due(self) -> list[str]:
        """Submit a scan for every due schedule. Returns the new job ids."""
        now = self._clock()
        job_ids = []
        for schedule in self.schedules:
            if not schedule.is_due(now):
                continue
            try:
                job_id = self.orchestrator.submit(
                    schedule.target,
                    schedule.scan_type,
                    parameters=schedule.parameters,
                    context={"schedule": schedule.name},
                )
            except InvalidRequest as exc:
                LOGGER.error("Disabling scheduled scan %s: %s", schedule.name, exc)
                schedule.is_active = False
                continue
            job_ids.append(job_id)
            self._advance(schedule, now)
            LOGGER.info("Scheduled scan %s submitted job %s (run %s)", schedule.name, job_id, schedule.run_count)
        return job_ids

    @staticmethod
    def _advance(schedule: ScheduledScan, now: datetime) -> None:
        schedule.run_count += 1
        schedule.last_run_at = now
        next_run = next_run_after(schedule.frequency, schedule.next_run_at)
        while next_run is not None and next_run <= now:
            next_run = next_run_after(schedule.frequency, next_run)
        schedule.next_run_at = next_run
        if next_run is None or (schedule.max_runs and schedule.run_count >= schedule.max_runs):
            schedule.is_active = False
            LOGGER.info("Scheduled scan %s finished after %s runs", schedule.name, schedule.run_count)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_due()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Schedule cycle failed")
            self._stop_event.wait(self.check_interval_seconds)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            LOGGER.warning("Schedule runner already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="scan-schedules")
        self._thread.start()
        LOGGER.info("Schedule runner started with %s schedules", len(self.schedules))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
