from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from scan_orchestrator.errors import InvalidTransition
from scan_orchestrator.models import (
    ACTIVE_STATES,
    Finding,
    JobState,
    ScanJob,
    Severity,
    can_transition,
    from_iso,
    to_iso,
)

LOGGER = logging.getLogger(__name__)


def _check_transition(expected_state: JobState, job: ScanJob, with_findings: bool) -> None:
    if not can_transition(expected_state, job.state):
        raise InvalidTransition(f"Job {job.id}: {expected_state.value} -> {job.state.value} is not allowed")
    if with_findings and job.state is not JobState.COMPLETED:
        raise InvalidTransition(f"Job {job.id}: findings can only be written with the completed transition")
    if not with_findings and job.state is JobState.COMPLETED:
        raise InvalidTransition(f"Job {job.id}: the completed transition must carry its findings")


class JobStore(ABC):
    """Durable storage of scan jobs and their findings.

    Every mutation of an existing job goes through ``compare_and_set`` or
    ``write_findings``; both apply the new snapshot only if the stored state
    still equals ``expected_state`` and return whether they did.
    """

    @abstractmethod
    def create(self, job: ScanJob) -> None: ...

    @abstractmethod
    def get(self, job_id: str) -> ScanJob | None: ...

    @abstractmethod
    def compare_and_set(self, job_id: str, expected_state: JobState, job: ScanJob) -> bool: ...

    @abstractmethod
    def write_findings(self, job_id: str, expected_state: JobState, job: ScanJob, findings: list[Finding]) -> bool: ...

    @abstractmethod
    def get_findings(self, job_id: str) -> list[Finding]: ...

    @abstractmethod
    def list_active(self) -> list[ScanJob]: ...

    def close(self) -> None:
        pass


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: dict[str, ScanJob] = {}
        self._findings: dict[str, list[Finding]] = {}
        self._lock = threading.Lock()

    def create(self, job: ScanJob) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Scan job already exists: {job.id}")
            self._jobs[job.id] = copy.deepcopy(job)

    def get(self, job_id: str) -> ScanJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def _swap(self, job_id: str, expected_state: JobState, job: ScanJob) -> bool:
        current = self._jobs.get(job_id)
        if current is None or current.state is not expected_state:
            return False
        self._jobs[job_id] = copy.deepcopy(job)
        return True

    def compare_and_set(self, job_id: str, expected_state: JobState, job: ScanJob) -> bool:
        _check_transition(expected_state, job, with_findings=False)
        with self._lock:
            return self._swap(job_id, expected_state, job)

    def write_findings(self, job_id: str, expected_state: JobState, job: ScanJob, findings: list[Finding]) -> bool:
        _check_transition(expected_state, job, with_findings=True)
        with self._lock:
            if not self._swap(job_id, expected_state, job):
                return False
            self._findings[job_id] = list(findings)
            return True

    def get_findings(self, job_id: str) -> list[Finding]:
        with self._lock:
            return list(self._findings.get(job_id, []))

    def list_active(self) -> list[ScanJob]:
        with self._lock:
            active = [copy.deepcopy(job) for job in self._jobs.values() if job.state in ACTIVE_STATES]
        return sorted(active, key=lambda job: job.created_at)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS scan_jobs (
    id TEXT PRIMARY KEY,
    target TEXT NOT NULL,
    scan_type TEXT NOT NULL,
    state TEXT NOT NULL,
    provider_ref TEXT,
    progress INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    submitted_at TEXT,
    last_polled_at TEXT,
    completed_at TEXT,
    error_reason TEXT,
    parameters_json TEXT NOT NULL DEFAULT '{}',
    context_json TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS scan_findings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    severity TEXT NOT NULL,
    recommendation TEXT,
    category TEXT,
    fingerprint TEXT,
    FOREIGN KEY (job_id) REFERENCES scan_jobs(id),
    UNIQUE (job_id, position)
);

CREATE INDEX IF NOT EXISTS idx_scan_jobs_state ON scan_jobs(state);
CREATE INDEX IF NOT EXISTS idx_scan_findings_job_id ON scan_findings(job_id);
CREATE INDEX IF NOT EXISTS idx_scan_findings_severity ON scan_findings(severity);
"""

_JOB_COLUMNS = (
    "id, target, scan_type, state, provider_ref, progress, attempts, error_count, "
    "created_at, submitted_at, last_polled_at, completed_at, error_reason, parameters_json, context_json"
)


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: str) -> None:
    conn = connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA_SQL)
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(scan_jobs)")}
        if "parameters_json" not in columns:
            # databases created before per-scan parameters existed
            conn.execute("ALTER TABLE scan_jobs ADD COLUMN parameters_json TEXT NOT NULL DEFAULT '{}'")
        conn.commit()
    finally:
        conn.close()
    LOGGER.info("SQLite job store initialized at %s", db_path)


def _job_row(job: ScanJob) -> tuple:
    return (
        job.target,
        job.scan_type,
        job.state.value,
        job.provider_ref,
        job.progress,
        job.attempts,
        job.error_count,
        to_iso(job.created_at),
        to_iso(job.submitted_at),
        to_iso(job.last_polled_at),
        to_iso(job.completed_at),
        job.error_reason,
        json.dumps(job.parameters, ensure_ascii=False, default=str),
        json.dumps(job.context, ensure_ascii=False, default=str),
    )


def _job_from_row(row: sqlite3.Row) -> ScanJob:
    return ScanJob(
        id=row["id"],
        target=row["target"],
        scan_type=row["scan_type"],
        state=JobState(row["state"]),
        provider_ref=row["provider_ref"],
        progress=row["progress"],
        attempts=row["attempts"],
        error_count=row["error_count"],
        created_at=from_iso(row["created_at"]),
        submitted_at=from_iso(row["submitted_at"]),
        last_polled_at=from_iso(row["last_polled_at"]),
        completed_at=from_iso(row["completed_at"]),
        error_reason=row["error_reason"],
        parameters=json.loads(row["parameters_json"] or "{}"),
        context=json.loads(row["context_json"] or "{}"),
    )


class SqliteJobStore(JobStore):
    """SQLite-backed store; safe across threads and processes sharing one file.

    Each operation opens its own connection, so ``db_path`` must name a file
    rather than ``:memory:``.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        init_db(db_path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = connect(self.db_path)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def create(self, job: ScanJob) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    f"INSERT INTO scan_jobs ({_JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (job.id, *_job_row(job)),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Scan job already exists: {job.id}") from exc

    def get(self, job_id: str) -> ScanJob | None:
        with self._transaction() as conn:
            row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM scan_jobs WHERE id = ?", (job_id,)).fetchone()
        return _job_from_row(row) if row else None

    @staticmethod
    def _update(conn: sqlite3.Connection, job_id: str, expected_state: JobState, job: ScanJob) -> bool:
        cursor = conn.execute(
            """
            UPDATE scan_jobs SET
                target = ?, scan_type = ?, state = ?, provider_ref = ?, progress = ?,
                attempts = ?, error_count = ?, created_at = ?, submitted_at = ?,
                last_polled_at = ?, completed_at = ?, error_reason = ?, parameters_json = ?, context_json = ?
            WHERE id = ? AND state = ?
            """,
            (*_job_row(job), job_id, expected_state.value),
        )
        return cursor.rowcount == 1

    def compare_and_set(self, job_id: str, expected_state: JobState, job: ScanJob) -> bool:
        _check_transition(expected_state, job, with_findings=False)
        with self._transaction() as conn:
            return self._update(conn, job_id, expected_state, job)

    def write_findings(self, job_id: str, expected_state: JobState, job: ScanJob, findings: list[Finding]) -> bool:
        _check_transition(expected_state, job, with_findings=True)
        with self._transaction() as conn:
            if not self._update(conn, job_id, expected_state, job):
                return False
            conn.executemany(
                """
                INSERT INTO scan_findings (
                    job_id, position, title, description, severity, recommendation, category, fingerprint
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        job_id,
                        position,
                        finding.title,
                        finding.description,
                        finding.severity.value,
                        finding.recommendation,
                        finding.category,
                        finding.fingerprint,
                    )
                    for position, finding in enumerate(findings)
                ],
            )
        LOGGER.info("Persisted %s findings for job %s", len(findings), job_id)
        return True

    def get_findings(self, job_id: str) -> list[Finding]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM scan_findings WHERE job_id = ? ORDER BY position", (job_id,)
            ).fetchall()
        return [
            Finding(
                job_id=row["job_id"],
                title=row["title"],
                description=row["description"],
                severity=Severity(row["severity"]),
                recommendation=row["recommendation"],
                category=row["category"],
                fingerprint=row["fingerprint"],
            )
            for row in rows
        ]

    def list_active(self) -> list[ScanJob]:
        placeholders = ", ".join("?" for _ in ACTIVE_STATES)
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM scan_jobs WHERE state IN ({placeholders}) ORDER BY created_at",
                [state.value for state in ACTIVE_STATES],
            ).fetchall()
        return [_job_from_row(row) for row in rows]
