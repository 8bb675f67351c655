from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

import yaml

DEFAULT_SCAN_TYPES = [
    "web",
    "ssl",
    "cms",
    "wordpress",
    "drupal",
    "joomla",
    "sharepoint",
    "subdomain",
    "port_scan",
    "network",
    "dns_lookup",
    "dns_zone_transfer",
    "whois",
    "http_headers",
    "waf",
    "website_recon",
    "url_fuzzer",
    "api",
]

# Provider tool ids per scan type, as used by the pentest-tools style REST API.
DEFAULT_PROVIDER_TOOLS = {
    "subdomain": 20,
    "whois": 40,
    "dns_lookup": 50,
    "dns_zone_transfer": 60,
    "port_scan": 70,
    "url_fuzzer": 90,
    "ssl": 110,
    "http_headers": 120,
    "web": 170,
    "waf": 180,
    "sharepoint": 260,
    "wordpress": 270,
    "cms": 270,
    "drupal": 280,
    "joomla": 290,
    "website_recon": 310,
    "network": 350,
    "api": 510,
}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def load_yaml(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def resolve_settings(path: str | None = None) -> dict[str, Any]:
    settings = load_yaml(path) if path and os.path.exists(path) else {}
    settings.setdefault("paths", {})
    settings.setdefault("store", {})
    settings.setdefault("provider", {})
    settings.setdefault("orchestrator", {})
    settings.setdefault("webhooks", {})
    settings.setdefault("schedules", [])
    settings["paths"].setdefault("db_path", os.getenv("ORCH_DB_PATH", "/data/scan_jobs.db"))
    settings["store"].setdefault("backend", os.getenv("ORCH_STORE_BACKEND", "sqlite"))
    settings["provider"].setdefault("kind", os.getenv("SCAN_PROVIDER_KIND", "http"))
    settings["provider"].setdefault("base_url", os.getenv("SCAN_PROVIDER_URL", "https://app.pentest-tools.com/api/v2"))
    settings["provider"].setdefault("api_key", os.getenv("SCAN_PROVIDER_API_KEY", ""))
    settings["provider"].setdefault("timeout_seconds", float(os.getenv("SCAN_PROVIDER_TIMEOUT_SECONDS", "30")))
    settings["provider"].setdefault("tools", dict(DEFAULT_PROVIDER_TOOLS))
    settings["provider"].setdefault("status_map", {})
    orchestrator = settings["orchestrator"]
    orchestrator.setdefault("scan_types", list(DEFAULT_SCAN_TYPES))
    orchestrator.setdefault("initial_poll_interval_seconds", float(os.getenv("ORCH_INITIAL_POLL_INTERVAL_SECONDS", "5")))
    orchestrator.setdefault("backoff_multiplier", float(os.getenv("ORCH_BACKOFF_MULTIPLIER", "2.0")))
    orchestrator.setdefault("max_poll_interval_seconds", float(os.getenv("ORCH_MAX_POLL_INTERVAL_SECONDS", "300")))
    orchestrator.setdefault("max_job_duration_seconds", float(os.getenv("ORCH_MAX_JOB_DURATION_SECONDS", "14400")))
    orchestrator.setdefault("max_transient_errors", int(os.getenv("ORCH_MAX_TRANSIENT_ERRORS", "10")))
    orchestrator.setdefault("rate_limit_per_second", float(os.getenv("ORCH_RATE_LIMIT_PER_SECOND", "2.0")))
    orchestrator.setdefault("rate_limit_burst", int(os.getenv("ORCH_RATE_LIMIT_BURST", "5")))
    orchestrator.setdefault("max_workers", int(os.getenv("ORCH_MAX_WORKERS", "4")))
    orchestrator.setdefault("idle_wait_seconds", float(os.getenv("ORCH_IDLE_WAIT_SECONDS", "1.0")))
    orchestrator.setdefault("stop_remote_on_cancel", _env_bool("ORCH_STOP_REMOTE_ON_CANCEL", "true"))
    orchestrator.setdefault(
        "schedule_check_interval_seconds", float(os.getenv("ORCH_SCHEDULE_CHECK_INTERVAL_SECONDS", "60"))
    )
    settings["webhooks"].setdefault("urls", [url for url in os.getenv("ORCH_WEBHOOK_URLS", "").split(",") if url])
    settings["webhooks"].setdefault("secret", os.getenv("ORCH_WEBHOOK_SECRET") or None)
    settings["webhooks"].setdefault("timeout_seconds", float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10")))
    settings["webhooks"].setdefault("retry_count", int(os.getenv("WEBHOOK_RETRY_COUNT", "3")))
    return settings


@dataclass(frozen=True)
class OrchestratorSettings:
    scan_types: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_SCAN_TYPES))
    initial_poll_interval_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_poll_interval_seconds: float = 300.0
    max_job_duration_seconds: float = 4 * 3600.0
    max_transient_errors: int = 10
    rate_limit_per_second: float = 2.0
    rate_limit_burst: int = 5
    max_workers: int = 4
    idle_wait_seconds: float = 1.0
    stop_remote_on_cancel: bool = True

    def __post_init__(self) -> None:
        if not self.scan_types:
            raise ValueError("at least one scan type must be configured")
        if self.initial_poll_interval_seconds <= 0:
            raise ValueError("initial_poll_interval_seconds must be positive")
        if self.max_poll_interval_seconds < self.initial_poll_interval_seconds:
            raise ValueError("max_poll_interval_seconds must be >= initial_poll_interval_seconds")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.max_job_duration_seconds <= 0:
            raise ValueError("max_job_duration_seconds must be positive")
        if self.max_transient_errors < 0:
            raise ValueError("max_transient_errors must not be negative")
        if self.rate_limit_per_second <= 0 or self.rate_limit_burst < 1:
            raise ValueError("rate limit must allow at least one call")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorSettings":
        defaults = cls()
        return cls(
            scan_types=frozenset(str(item) for item in data.get("scan_types", defaults.scan_types)),
            initial_poll_interval_seconds=float(
                data.get("initial_poll_interval_seconds", defaults.initial_poll_interval_seconds)
            ),
            backoff_multiplier=float(data.get("backoff_multiplier", defaults.backoff_multiplier)),
            max_poll_interval_seconds=float(data.get("max_poll_interval_seconds", defaults.max_poll_interval_seconds)),
            max_job_duration_seconds=float(data.get("max_job_duration_seconds", defaults.max_job_duration_seconds)),
            max_transient_errors=int(data.get("max_transient_errors", defaults.max_transient_errors)),
            rate_limit_per_second=float(data.get("rate_limit_per_second", defaults.rate_limit_per_second)),
            rate_limit_burst=int(data.get("rate_limit_burst", defaults.rate_limit_burst)),
            max_workers=int(data.get("max_workers", defaults.max_workers)),
            idle_wait_seconds=float(data.get("idle_wait_seconds", defaults.idle_wait_seconds)),
            stop_remote_on_cancel=bool(data.get("stop_remote_on_cancel", defaults.stop_remote_on_cancel)),
        )
