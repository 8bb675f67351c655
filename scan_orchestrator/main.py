from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from scan_orchestrator.errors import JobNotFound
from scan_orchestrator.export import export_to_csv, export_to_json, export_to_sarif
from scan_orchestrator.orchestrator import Orchestrator
from scan_orchestrator.providers import HttpProviderClient, MockProviderClient, ProviderClient
from scan_orchestrator.schedules import ScheduleRunner
from scan_orchestrator.settings import OrchestratorSettings, resolve_settings
from scan_orchestrator.storage import InMemoryJobStore, JobStore, SqliteJobStore
from scan_orchestrator.webhooks import WebhookNotifier

LOGGER = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_store(settings: dict[str, Any]) -> JobStore:
    backend = str(settings["store"].get("backend", "sqlite")).lower()
    if backend == "memory":
        LOGGER.warning("Using in-memory job store; jobs will not survive a restart")
        return InMemoryJobStore()
    if backend == "sqlite":
        return SqliteJobStore(settings["paths"]["db_path"])
    raise ValueError(f"Unsupported store backend: {backend}")


def build_provider(settings: dict[str, Any]) -> ProviderClient:
    kind = str(settings["provider"].get("kind", "http")).lower()
    if kind == "mock":
        return MockProviderClient()
    if kind == "http":
        return HttpProviderClient.from_settings(settings["provider"])
    raise ValueError(f"Unsupported provider kind: {kind}")


def build_orchestrator(settings: dict[str, Any]) -> Orchestrator:
    listeners = []
    if settings["webhooks"].get("urls"):
        listeners.append(WebhookNotifier.from_settings(settings["webhooks"]))
    return Orchestrator(
        store=build_store(settings),
        provider=build_provider(settings),
        settings=OrchestratorSettings.from_dict(settings["orchestrator"]),
        listeners=listeners,
    )


def build_schedule_runner(orchestrator: Orchestrator, settings: dict[str, Any]) -> ScheduleRunner:
    return ScheduleRunner.from_settings(
        orchestrator,
        settings.get("schedules") or [],
        check_interval_seconds=float(settings["orchestrator"].get("schedule_check_interval_seconds", 60)),
    )


def export_job(orchestrator: Orchestrator, job_id: str, fmt: str) -> str:
    job = orchestrator.get_status(job_id)
    findings = orchestrator.get_findings(job_id)
    if fmt == "csv":
        return export_to_csv(findings)
    if fmt == "sarif":
        return export_to_sarif(job, findings)
    return export_to_json(job, findings)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scan job orchestrator service")
    parser.add_argument("--settings", default=os.getenv("ORCH_SETTINGS", "/app/config/settings.yaml"), help="Path to settings YAML")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    parser.add_argument("--once", action="store_true", help="Process all currently due jobs, then exit")
    parser.add_argument("--export", metavar="JOB_ID", help="Write the findings report of a job and exit")
    parser.add_argument("--format", choices=["json", "csv", "sarif"], default="json", help="Report format for --export")
    parser.add_argument("--output", help="Report path for --export (default: stdout)")
    return parser


def run_service(orchestrator: Orchestrator, schedule_runner: ScheduleRunner | None = None) -> None:
    stop_requested = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        stop_requested.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    orchestrator.start()
    if schedule_runner and schedule_runner.schedules:
        schedule_runner.start()
    try:
        stop_requested.wait()
    finally:
        if schedule_runner:
            schedule_runner.stop()
        orchestrator.stop()


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        settings = resolve_settings(args.settings)
        orchestrator = build_orchestrator(settings)
        schedule_runner = build_schedule_runner(orchestrator, settings)
    except (OSError, ValueError) as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    try:
        if args.export:
            try:
                report = export_job(orchestrator, args.export, args.format)
            except JobNotFound as exc:
                LOGGER.error("%s", exc)
                return 1
            if args.output:
                Path(args.output).parent.mkdir(parents=True, exist_ok=True)
                Path(args.output).write_text(report, encoding="utf-8")
            else:
                print(report)
            return 0

        orchestrator.recover()
        if args.once:
            submitted = schedule_runner.run_due()
            if submitted:
                LOGGER.info("Submitted %s scheduled scans", len(submitted))
            processed = orchestrator.run_once()
            LOGGER.info("Processed %s due jobs", processed)
            return 0
        run_service(orchestrator, schedule_runner)
        return 0
    finally:
        for listener in orchestrator.listeners:
            if isinstance(listener, WebhookNotifier):
                listener.close()
        orchestrator.provider.close()
        orchestrator.store.close()


if __name__ == "__main__":
    sys.exit(main())
