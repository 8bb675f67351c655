"""
Provider clients: the only code that talks to an external scanning engine.

The orchestrator depends on ``ProviderClient`` alone. ``HttpProviderClient``
speaks a pentest-tools style REST API (``POST /scans``, ``GET /scans/{id}``,
``GET /scans/{id}/output``); its status vocabulary and scan type mapping are
configuration, so other vendors with the same shape plug in without code
changes. ``MockProviderClient`` simulates a provider for demos and local runs.
"""
from __future__ import annotations

import itertools
import math
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from scan_orchestrator.errors import (
    ProviderMalformed,
    ProviderNotFound,
    ProviderRejected,
    ProviderUnavailable,
)
from scan_orchestrator.models import ProviderPhase, ProviderStatus

LOGGER = logging.getLogger(__name__)


class ProviderClient(ABC):
    name = "provider"

    @abstractmethod
    def create(self, target: str, scan_type: str, parameters: dict[str, Any] | None = None) -> str:
        """Start a scan and return the provider's reference for it."""

    @abstractmethod
    def status(self, provider_ref: str) -> ProviderStatus: ...

    @abstractmethod
    def fetch_results(self, provider_ref: str) -> Any:
        """Return the raw result payload of a succeeded scan."""

    def stop(self, provider_ref: str) -> None:
        """Ask the provider to stop a scan. Best effort; the default does nothing."""
        return None

    def close(self) -> None:
        return None


DEFAULT_STATUS_MAP = {
    "waiting": ProviderPhase.QUEUED,
    "queued": ProviderPhase.QUEUED,
    "pending": ProviderPhase.QUEUED,
    "starting": ProviderPhase.QUEUED,
    "running": ProviderPhase.RUNNING,
    "in_progress": ProviderPhase.RUNNING,
    "finished": ProviderPhase.SUCCEEDED,
    "completed": ProviderPhase.SUCCEEDED,
    "succeeded": ProviderPhase.SUCCEEDED,
    "done": ProviderPhase.SUCCEEDED,
    "failed": ProviderPhase.FAILED,
    "aborted": ProviderPhase.FAILED,
    "stopped": ProviderPhase.FAILED,
    "timed out": ProviderPhase.FAILED,
    "error": ProviderPhase.FAILED,
}


class _CreatedData(BaseModel):
    created_id: int | str
    target_id: int | str | None = None


class _CreatedEnvelope(BaseModel):
    data: _CreatedData


class _StatusData(BaseModel):
    status_name: str
    progress: float | None = None
    error: str | None = None


class _StatusEnvelope(BaseModel):
    data: _StatusData


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body.get("detail")
        if message:
            return str(message)
    return response.text[:500]


class HttpProviderClient(ProviderClient):
    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        tools: dict[str, int] | None = None,
        status_map: dict[str, str] | None = None,
        tool_params: dict[str, dict[str, Any]] | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not api_key:
            LOGGER.warning("Scan provider API key not configured")
        self.tools = dict(tools or {})
        self.tool_params = dict(tool_params or {})
        self.status_map = dict(DEFAULT_STATUS_MAP)
        for name, phase in (status_map or {}).items():
            self.status_map[str(name).lower()] = ProviderPhase(phase)
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "User-Agent": "scan-orchestrator/1.0",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, provider: dict[str, Any]) -> "HttpProviderClient":
        return cls(
            base_url=str(provider["base_url"]),
            api_key=str(provider.get("api_key") or ""),
            tools={str(key): int(value) for key, value in (provider.get("tools") or {}).items()},
            status_map=provider.get("status_map") or {},
            tool_params=provider.get("tool_params") or {},
            timeout=float(provider.get("timeout_seconds", 30)),
        )

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            # covers timeouts, connection errors and protocol errors
            raise ProviderUnavailable(f"{method} {url} failed: {exc}") from exc
        LOGGER.debug("Provider %s %s -> %s", method, url, response.status_code)
        if response.status_code in (408, 429) or response.status_code >= 500:
            raise ProviderUnavailable(f"{method} {url} returned HTTP {response.status_code}")
        return response

    def create(self, target: str, scan_type: str, parameters: dict[str, Any] | None = None) -> str:
        tool_id = self.tools.get(scan_type)
        if tool_id is None:
            raise ProviderRejected(f"scan type '{scan_type}' is not supported by the provider")
        response = self._request(
            "POST",
            "/scans",
            json={
                "tool_id": tool_id,
                "target_name": target,
                "tool_params": {**self.tool_params.get(scan_type, {}), **(parameters or {})},
            },
        )
        if response.is_client_error:
            raise ProviderRejected(f"HTTP {response.status_code}: {_error_message(response)}")
        try:
            envelope = _CreatedEnvelope.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ProviderUnavailable(f"unexpected create response: {exc}") from exc
        return str(envelope.data.created_id)

    def status(self, provider_ref: str) -> ProviderStatus:
        response = self._request("GET", f"/scans/{provider_ref}")
        if response.status_code == 404:
            raise ProviderNotFound(f"provider does not know scan {provider_ref}")
        if response.is_client_error:
            raise ProviderUnavailable(f"HTTP {response.status_code}: {_error_message(response)}")
        try:
            envelope = _StatusEnvelope.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ProviderUnavailable(f"unexpected status response: {exc}") from exc

        status_name = envelope.data.status_name.strip().lower()
        phase = self.status_map.get(status_name)
        if phase is None:
            # unknown vocabulary is treated as a provider-side failure
            return ProviderStatus(ProviderPhase.FAILED, message=f"provider status '{status_name}'")
        progress = envelope.data.progress
        if progress is not None and not math.isfinite(progress):
            LOGGER.debug("Ignoring non-finite progress %r for scan %s", progress, provider_ref)
            progress = None
        progress = None if progress is None else int(progress)
        message = envelope.data.error or (f"provider status '{status_name}'" if phase is ProviderPhase.FAILED else None)
        return ProviderStatus(phase, progress=progress, message=message)

    def fetch_results(self, provider_ref: str) -> Any:
        response = self._request("GET", f"/scans/{provider_ref}/output")
        if response.status_code == 404:
            raise ProviderNotFound(f"provider has no output for scan {provider_ref}")
        if response.is_client_error:
            raise ProviderUnavailable(f"HTTP {response.status_code}: {_error_message(response)}")
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderMalformed(f"scan output is not JSON: {exc}") from exc

    def stop(self, provider_ref: str) -> None:
        response = self._request("POST", f"/scans/{provider_ref}/stop")
        if response.status_code == 404:
            raise ProviderNotFound(f"provider does not know scan {provider_ref}")
        if response.is_client_error:
            raise ProviderRejected(f"HTTP {response.status_code}: {_error_message(response)}")

    def close(self) -> None:
        self._client.close()


MOCK_PROGRESS_STEPS = (10, 25, 50, 75, 90, 100)

MOCK_RESULTS: dict[str, dict[str, Any]] = {
    "wordpress": {
        "title": "WordPress Security Scan",
        "findings": [
            {
                "type": "vulnerability",
                "title": "WordPress Version Disclosure",
                "description": "WordPress version 6.3.1 detected",
                "severity": "low",
                "recommendation": "Consider hiding version information",
            },
            {
                "type": "vulnerability",
                "title": "Admin Login Page Accessible",
                "description": "WordPress admin login page is publicly accessible",
                "severity": "medium",
                "recommendation": "Implement IP whitelisting or additional authentication",
            },
        ],
    },
    "ssl": {
        "title": "SSL/TLS Security Scan",
        "findings": [
            {
                "type": "info",
                "title": "SSL Certificate Valid",
                "description": "SSL certificate is valid and properly configured",
                "severity": "info",
            },
            {
                "type": "vulnerability",
                "title": "TLS 1.0/1.1 Supported",
                "description": "Deprecated TLS versions are still supported",
                "severity": "medium",
                "recommendation": "Disable TLS 1.0 and 1.1",
            },
        ],
    },
    "dns_lookup": {
        "title": "DNS Security Scan",
        "findings": [
            {
                "type": "info",
                "title": "DNS Records Found",
                "description": "Standard DNS records configured",
                "severity": "info",
            }
        ],
    },
}


class MockProviderClient(ProviderClient):
    """In-process stand-in for a scanning provider.

    Each status call advances a scan one step through ``MOCK_PROGRESS_STEPS``;
    the last step reports success. Scan types listed in ``rejected_scan_types``
    are refused at creation.
    """

    name = "mock"

    def __init__(self, rejected_scan_types: set[str] | None = None) -> None:
        self.rejected_scan_types = set(rejected_scan_types or {"unsupported"})
        self._scans: dict[str, dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, target: str, scan_type: str, parameters: dict[str, Any] | None = None) -> str:
        if scan_type in self.rejected_scan_types:
            raise ProviderRejected(f"scan type '{scan_type}' is not supported")
        with self._lock:
            provider_ref = f"mock-{next(self._ids)}"
            self._scans[provider_ref] = {
                "target": target,
                "scan_type": scan_type,
                "parameters": dict(parameters or {}),
                "step": -1,
                "stopped": False,
            }
        LOGGER.info("MockProvider: started %s scan %s for %s", scan_type, provider_ref, target)
        return provider_ref

    def _scan(self, provider_ref: str) -> dict[str, Any]:
        scan = self._scans.get(provider_ref)
        if scan is None:
            raise ProviderNotFound(f"unknown scan {provider_ref}")
        return scan

    def status(self, provider_ref: str) -> ProviderStatus:
        with self._lock:
            scan = self._scan(provider_ref)
            if scan["stopped"]:
                return ProviderStatus(ProviderPhase.FAILED, message="scan stopped")
            scan["step"] = min(scan["step"] + 1, len(MOCK_PROGRESS_STEPS) - 1)
            progress = MOCK_PROGRESS_STEPS[scan["step"]]
        if progress >= 100:
            return ProviderStatus(ProviderPhase.SUCCEEDED, progress=100)
        return ProviderStatus(ProviderPhase.RUNNING, progress=progress)

    def fetch_results(self, provider_ref: str) -> Any:
        with self._lock:
            scan_type = self._scan(provider_ref)["scan_type"]
        return MOCK_RESULTS.get(
            scan_type,
            {
                "title": f"{scan_type} Scan Results",
                "findings": [
                    {
                        "type": "info",
                        "title": "Scan Completed",
                        "description": f"Mock {scan_type} scan completed successfully",
                        "severity": "info",
                    }
                ],
            },
        )

    def stop(self, provider_ref: str) -> None:
        with self._lock:
            self._scan(provider_ref)["stopped"] = True
