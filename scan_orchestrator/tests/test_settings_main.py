import json
from dataclasses import replace
from pathlib import Path

import pytest
import yaml

from scan_orchestrator.main import build_orchestrator, build_provider, build_store, main
from scan_orchestrator.models import Finding, JobState, Severity
from scan_orchestrator.providers import HttpProviderClient, MockProviderClient
from scan_orchestrator.settings import DEFAULT_SCAN_TYPES, OrchestratorSettings, resolve_settings
from scan_orchestrator.storage import InMemoryJobStore, SqliteJobStore
from scan_orchestrator.webhooks import WebhookNotifier


@pytest.fixture
def settings_file(tmp_path):
    def _write(overrides=None):
        data = {
            "paths": {"db_path": str(tmp_path / "data" / "jobs.db")},
            "store": {"backend": "sqlite"},
            "provider": {"kind": "mock"},
            "orchestrator": {"scan_types": ["web", "ssl"], "initial_poll_interval_seconds": 1},
        }
        for section, values in (overrides or {}).items():
            data.setdefault(section, {}).update(values)
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return str(path)

    return _write


def test_resolve_settings_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.delenv("ORCH_DB_PATH", raising=False)
    monkeypatch.delenv("ORCH_WEBHOOK_URLS", raising=False)
    settings = resolve_settings(str(tmp_path / "missing.yaml"))
    assert settings["paths"]["db_path"] == "/data/scan_jobs.db"
    assert settings["store"]["backend"] == "sqlite"
    assert settings["orchestrator"]["scan_types"] == DEFAULT_SCAN_TYPES
    assert settings["webhooks"]["urls"] == []
    assert settings["provider"]["tools"]["ssl"] == 110
    assert settings["schedules"] == []
    assert settings["orchestrator"]["schedule_check_interval_seconds"] == 60


def test_resolve_settings_env_fills_missing_values(tmp_path, monkeypatch, settings_file):
    monkeypatch.setenv("ORCH_MAX_WORKERS", "9")
    monkeypatch.setenv("ORCH_WEBHOOK_URLS", "https://a.example.com,https://b.example.com")
    monkeypatch.setenv("ORCH_DB_PATH", "/elsewhere.db")
    settings = resolve_settings(settings_file())
    assert settings["orchestrator"]["max_workers"] == 9
    assert settings["webhooks"]["urls"] == ["https://a.example.com", "https://b.example.com"]
    # the settings file wins over the environment
    assert settings["paths"]["db_path"] == str(tmp_path / "data" / "jobs.db")


def test_orchestrator_settings_from_dict():
    settings = OrchestratorSettings.from_dict({"scan_types": ["web"], "max_workers": "2", "backoff_multiplier": 1.5})
    assert settings.scan_types == frozenset({"web"})
    assert settings.max_workers == 2
    assert settings.backoff_multiplier == 1.5
    assert settings.max_job_duration_seconds == 14400


@pytest.mark.parametrize(
    "values",
    [
        {"max_workers": 0},
        {"rate_limit_per_second": 0},
        {"max_poll_interval_seconds": 1, "initial_poll_interval_seconds": 5},
        {"max_transient_errors": -1},
        {"max_job_duration_seconds": 0},
    ],
)
def test_orchestrator_settings_reject_invalid_values(values):
    with pytest.raises(ValueError):
        OrchestratorSettings.from_dict(values)


def test_build_store_and_provider():
    assert isinstance(build_store({"store": {"backend": "memory"}, "paths": {}}), InMemoryJobStore)
    with pytest.raises(ValueError):
        build_store({"store": {"backend": "redis"}, "paths": {}})
    assert isinstance(build_provider({"provider": {"kind": "mock"}}), MockProviderClient)
    http = build_provider({"provider": {"kind": "http", "base_url": "https://provider.example.com"}})
    assert isinstance(http, HttpProviderClient)
    http.close()
    with pytest.raises(ValueError):
        build_provider({"provider": {"kind": "carrier-pigeon"}})


def test_build_orchestrator_adds_webhook_listener(settings_file):
    settings = resolve_settings(settings_file({"webhooks": {"urls": ["https://hooks.example.com"]}}))
    orchestrator = build_orchestrator(settings)
    try:
        assert isinstance(orchestrator.store, SqliteJobStore)
        assert isinstance(orchestrator.provider, MockProviderClient)
        assert orchestrator.settings.scan_types == frozenset({"web", "ssl"})
        assert any(isinstance(listener, WebhookNotifier) for listener in orchestrator.listeners)
    finally:
        for listener in orchestrator.listeners:
            listener.close()


def test_main_once_submits_recovered_jobs(settings_file):
    path = settings_file()
    orchestrator = build_orchestrator(resolve_settings(path))
    job_id = orchestrator.submit("example.com", "ssl")

    assert main(["--settings", path, "--once"]) == 0

    job = orchestrator.get_status(job_id)
    assert job.state is JobState.SUBMITTED
    assert job.provider_ref == "mock-1"


def test_main_rejects_invalid_configuration(settings_file):
    assert main(["--settings", settings_file({"orchestrator": {"backoff_multiplier": 0.5}}), "--once"]) == 2
    assert main(["--settings", settings_file({"store": {"backend": "redis"}}), "--once"]) == 2


def test_main_once_submits_due_schedules(settings_file, tmp_path):
    path = settings_file()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    data["schedules"] = [{"name": "one-off-tls", "target": "example.com", "scan_type": "ssl", "frequency": "once"}]
    Path(path).write_text(yaml.safe_dump(data), encoding="utf-8")

    assert main(["--settings", path, "--once"]) == 0

    jobs = SqliteJobStore(str(tmp_path / "data" / "jobs.db")).list_active()
    assert len(jobs) == 1
    assert jobs[0].state is JobState.SUBMITTED
    assert jobs[0].context == {"schedule": "one-off-tls"}


def test_main_rejects_invalid_schedule(settings_file):
    path = settings_file()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    data["schedules"] = [{"target": "example.com", "scan_type": "ssl", "frequency": "hourly"}]
    Path(path).write_text(yaml.safe_dump(data), encoding="utf-8")

    assert main(["--settings", path, "--once"]) == 2


def test_main_exports_completed_job(settings_file, tmp_path, clock):
    path = settings_file()
    orchestrator = build_orchestrator(resolve_settings(path))
    job_id = orchestrator.submit("example.com", "web")
    job = orchestrator.get_status(job_id)
    running = replace(job, state=JobState.SUBMITTED, provider_ref="R1", submitted_at=clock())
    assert orchestrator.store.compare_and_set(job_id, JobState.PENDING, running)
    completed = replace(running, state=JobState.COMPLETED, progress=100, completed_at=clock())
    finding = Finding(job_id=job_id, title="Missing CSP", description="No Content-Security-Policy", severity=Severity.LOW)
    assert orchestrator.store.write_findings(job_id, JobState.SUBMITTED, completed, [finding])

    output = tmp_path / "reports" / "report.json"
    assert main(["--settings", path, "--export", job_id, "--output", str(output)]) == 0

    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["job"]["state"] == "completed"
    assert [f["title"] for f in report["findings"]] == ["Missing CSP"]


def test_main_export_unknown_job(settings_file):
    assert main(["--settings", settings_file(), "--export", "nope"]) == 1
