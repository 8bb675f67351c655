import sqlite3
from dataclasses import replace
from datetime import timedelta

import pytest

from scan_orchestrator.errors import InvalidTransition
from scan_orchestrator.models import Finding, JobState, ScanJob, Severity
from scan_orchestrator.storage import SqliteJobStore


def make_job(clock, job_id="job-1", **kwargs):
    kwargs.setdefault("created_at", clock())
    return ScanJob(id=job_id, target="example.com", scan_type="web", **kwargs)


def test_create_and_get_round_trip(store, clock):
    job = make_job(clock, parameters={"ports": "22,443", "depth": 2}, context={"requested_by": "ci"})
    store.create(job)

    loaded = store.get("job-1")
    assert loaded == job
    assert loaded is not job
    assert store.get("missing") is None


def test_create_rejects_duplicate_ids(store, clock):
    store.create(make_job(clock))
    with pytest.raises(ValueError):
        store.create(make_job(clock))


def test_compare_and_set_applies_only_from_expected_state(store, clock):
    job = make_job(clock)
    store.create(job)
    submitted = replace(job, state=JobState.SUBMITTED, provider_ref="R1", submitted_at=clock())

    assert store.compare_and_set(job.id, JobState.PENDING, submitted) is True
    assert store.compare_and_set(job.id, JobState.PENDING, submitted) is False
    assert store.get(job.id).provider_ref == "R1"


def test_compare_and_set_on_unknown_job_returns_false(store, clock):
    job = replace(make_job(clock, "ghost"), state=JobState.SUBMITTED)
    assert store.compare_and_set("ghost", JobState.PENDING, job) is False


@pytest.mark.parametrize(
    "current,new",
    [
        (JobState.RUNNING, JobState.PENDING),
        (JobState.RUNNING, JobState.SUBMITTED),
        (JobState.PENDING, JobState.RUNNING),
        (JobState.FAILED, JobState.RUNNING),
        (JobState.CANCELLED, JobState.CANCELLED),
    ],
)
def test_illegal_transitions_raise(store, clock, current, new):
    job = make_job(clock, state=current)
    store.create(job)
    with pytest.raises(InvalidTransition):
        store.compare_and_set(job.id, current, replace(job, state=new))
    assert store.get(job.id).state is current


def test_completed_transition_requires_findings_write(store, clock):
    job = make_job(clock, state=JobState.RUNNING)
    store.create(job)
    with pytest.raises(InvalidTransition):
        store.compare_and_set(job.id, JobState.RUNNING, replace(job, state=JobState.COMPLETED))
    with pytest.raises(InvalidTransition):
        store.write_findings(job.id, JobState.RUNNING, replace(job, state=JobState.FAILED), [])


def test_write_findings_is_atomic_with_completion(store, clock):
    job = make_job(clock, state=JobState.RUNNING, provider_ref="R1")
    store.create(job)
    findings = [
        Finding(job_id=job.id, title="Weak Cipher Suite", description="RC4", severity=Severity.MEDIUM),
        Finding(job_id=job.id, title="Weak Cipher Suite", description="RC4", severity=Severity.MEDIUM),
        Finding(job_id=job.id, title="HSTS missing", description="No HSTS header", recommendation="Add HSTS"),
    ]
    completed = replace(job, state=JobState.COMPLETED, progress=100, completed_at=clock())

    assert store.write_findings(job.id, JobState.RUNNING, completed, findings) is True
    assert store.write_findings(job.id, JobState.RUNNING, completed, findings) is False

    assert store.get(job.id).state is JobState.COMPLETED
    assert store.get_findings(job.id) == findings


def test_write_findings_loses_to_concurrent_cancel(store, clock):
    job = make_job(clock, state=JobState.RUNNING)
    store.create(job)
    assert store.compare_and_set(job.id, JobState.RUNNING, replace(job, state=JobState.CANCELLED))

    completed = replace(job, state=JobState.COMPLETED)
    finding = Finding(job_id=job.id, title="late", description="late")
    assert store.write_findings(job.id, JobState.RUNNING, completed, [finding]) is False
    assert store.get_findings(job.id) == []
    assert store.get(job.id).state is JobState.CANCELLED


def test_list_active_returns_non_terminal_jobs_oldest_first(store, clock):
    store.create(make_job(clock, "newer", state=JobState.RUNNING, created_at=clock() + timedelta(seconds=5)))
    store.create(make_job(clock, "older"))
    store.create(make_job(clock, "done", state=JobState.FAILED))
    store.create(make_job(clock, "submitted", state=JobState.SUBMITTED, created_at=clock() + timedelta(seconds=1)))

    assert [job.id for job in store.list_active()] == ["older", "submitted", "newer"]


def test_sqlite_store_survives_reopen(tmp_path, clock):
    db_path = str(tmp_path / "nested" / "jobs.db")
    store = SqliteJobStore(db_path)
    job = make_job(clock, state=JobState.RUNNING, progress=30, attempts=2, error_count=1)
    store.create(job)
    store.close()

    reopened = SqliteJobStore(db_path)
    assert reopened.get(job.id) == job
    assert [active.id for active in reopened.list_active()] == [job.id]


def test_parameters_survive_state_changes(store, clock):
    job = make_job(clock, parameters={"ports": "22,443"})
    store.create(job)

    store.compare_and_set(job.id, JobState.PENDING, replace(job, state=JobState.SUBMITTED, provider_ref="R1"))

    assert store.get(job.id).parameters == {"ports": "22,443"}


def test_sqlite_store_upgrades_database_without_parameters_column(tmp_path, clock):
    db_path = tmp_path / "old.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE scan_jobs (
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
            context_json TEXT NOT NULL DEFAULT '{}'
        );
        INSERT INTO scan_jobs (id, target, scan_type, state, created_at)
        VALUES ('legacy', 'example.com', 'web', 'pending', '2026-01-01T12:00:00+00:00');
        """
    )
    conn.commit()
    conn.close()

    store = SqliteJobStore(str(db_path))

    legacy = store.get("legacy")
    assert legacy.state is JobState.PENDING
    assert legacy.parameters == {}
    store.create(make_job(clock, "fresh", parameters={"depth": 1}))
    assert store.get("fresh").parameters == {"depth": 1}
