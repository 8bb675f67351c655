from __future__ import annotations

import json
import logging
from typing import Any

from scan_orchestrator.models import Finding, Severity, fingerprint

LOGGER = logging.getLogger(__name__)


SEVERITY_MAP = {
    "CRITICAL": Severity.CRITICAL,
    "HIGH": Severity.HIGH,
    "ERROR": Severity.HIGH,
    "MEDIUM": Severity.MEDIUM,
    "MODERATE": Severity.MEDIUM,
    "WARNING": Severity.MEDIUM,
    "WARN": Severity.MEDIUM,
    "LOW": Severity.LOW,
    "INFO": Severity.INFO,
    "INFORMATIONAL": Severity.INFO,
    "NONE": Severity.INFO,
    "UNKNOWN": Severity.INFO,
}

# Keys under which providers return their list of findings, in lookup order.
COLLECTION_KEYS = ("findings", "vulnerabilities", "issues", "results", "alerts")
ENVELOPE_KEYS = ("data", "output", "output_data")

HIGH_RISK_PORTS = {22, 23, 445, 3389, 1433, 3306, 5432}
MEDIUM_RISK_PORTS = {21, 25, 110, 143, 161, 389, 636}


class _UnusablePayload(Exception):
    pass


def _severity(value: Any) -> Severity:
    if value is None or isinstance(value, bool):
        return Severity.INFO
    if isinstance(value, (int, float)):
        # CVSS-style score
        if value >= 9.0:
            return Severity.CRITICAL
        if value >= 7.0:
            return Severity.HIGH
        if value >= 4.0:
            return Severity.MEDIUM
        if value > 0:
            return Severity.LOW
        return Severity.INFO
    return SEVERITY_MAP.get(str(value).strip().upper(), Severity.INFO)


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, bool)):
        return None
    if isinstance(value, list):
        parts = [str(item).strip() for item in value if isinstance(item, (str, int, float))]
        joined = "; ".join(part for part in parts if part)
        return joined or None
    text = str(value).strip()
    return text or None


def _first_text(entry: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        text = _text(entry.get(key))
        if text:
            return text
    return None


def _port_severity(port: Any) -> Severity:
    try:
        number = int(port)
    except (TypeError, ValueError):
        return Severity.LOW
    if number in HIGH_RISK_PORTS:
        return Severity.HIGH
    if number in MEDIUM_RISK_PORTS:
        return Severity.MEDIUM
    return Severity.LOW


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        if not payload.strip():
            return {}
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise _UnusablePayload(f"payload is not JSON: {exc}") from exc
    # providers commonly wrap the interesting part in a {"data": ...} envelope
    while isinstance(payload, dict) and not any(key in payload for key in COLLECTION_KEYS):
        inner = next((payload[key] for key in ENVELOPE_KEYS if isinstance(payload.get(key), (dict, list))), None)
        if inner is None:
            break
        payload = inner
    return payload


def _as_list(value: Any, key: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise _UnusablePayload(f"'{key}' is not a list")
    return value


def _generic_finding(job_id: str, entry: Any) -> Finding:
    if not isinstance(entry, dict):
        raise _UnusablePayload(f"finding entry is not an object: {type(entry).__name__}")
    category = _first_text(entry, "category", "type", "group")
    description = _first_text(entry, "description", "message", "details", "summary", "detail")
    title = _first_text(entry, "title", "name", "alert", "check_id", "id") or description or category or "Untitled finding"
    if description is None:
        description = title
    severity = _severity(
        next((entry[key] for key in ("severity", "risk", "level", "cvss") if entry.get(key) is not None), None)
    )
    return Finding(
        job_id=job_id,
        title=title,
        description=description,
        severity=severity,
        recommendation=_first_text(entry, "recommendation", "fix", "solution", "remediation"),
        category=category,
        fingerprint=fingerprint(job_id, category, title, description),
    )


def _port_findings(job_id: str, ports: list[Any]) -> list[Finding]:
    findings: list[Finding] = []
    for port in ports:
        if not isinstance(port, dict):
            raise _UnusablePayload("port entry is not an object")
        if str(port.get("state", "open")).lower() != "open":
            continue
        protocol = _text(port.get("protocol")) or "tcp"
        title = f"Open port {port.get('port')}/{protocol}"
        findings.append(
            Finding(
                job_id=job_id,
                title=title,
                description=f"Service: {_text(port.get('service')) or 'unknown'}",
                severity=_port_severity(port.get("port")),
                category="open_port",
                fingerprint=fingerprint(job_id, "open_port", title),
            )
        )
    return findings


def _subdomain_findings(job_id: str, subdomains: list[Any]) -> list[Finding]:
    findings: list[Finding] = []
    for item in subdomains:
        name = _text(item) if not isinstance(item, dict) else _text(item.get("name"))
        if not name:
            raise _UnusablePayload("subdomain entry has no name")
        findings.append(
            Finding(
                job_id=job_id,
                title=name,
                description=f"Found subdomain: {name}",
                severity=Severity.INFO,
                category="subdomain",
                fingerprint=fingerprint(job_id, "subdomain", name),
            )
        )
    return findings


def _normalize(job_id: str, payload: Any) -> list[Finding]:
    payload = _unwrap(payload)
    if isinstance(payload, list):
        return [_generic_finding(job_id, entry) for entry in payload]
    if not isinstance(payload, dict):
        raise _UnusablePayload(f"unexpected payload type: {type(payload).__name__}")

    for key in COLLECTION_KEYS:
        if key in payload:
            return [_generic_finding(job_id, entry) for entry in _as_list(payload[key], key)]

    findings: list[Finding] = []
    recognized = False
    if "ports" in payload:
        recognized = True
        findings.extend(_port_findings(job_id, _as_list(payload["ports"], "ports")))
    if "subdomains" in payload:
        recognized = True
        findings.extend(_subdomain_findings(job_id, _as_list(payload["subdomains"], "subdomains")))
    if recognized or not payload:
        return findings
    raise _UnusablePayload(f"no recognizable findings in keys: {sorted(payload)[:10]}")


def normalize_results(job_id: str, payload: Any) -> list[Finding] | None:
    """Translate a raw provider result payload into ordered findings.

    Returns ``None`` when the payload is present but unusable; the caller maps
    that to a failed job. Never raises on malformed input. Duplicate entries
    are kept, unknown fields are ignored.
    """
    try:
        return _normalize(job_id, payload)
    except _UnusablePayload as exc:
        LOGGER.warning("Unusable results for job %s: %s", job_id, exc)
        return None
    except (TypeError, ValueError, AttributeError, RecursionError) as exc:
        LOGGER.warning("Failed to normalize results for job %s: %s", job_id, exc)
        return None
