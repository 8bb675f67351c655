import json

import pytest

from scan_orchestrator.models import Severity
from scan_orchestrator.normalizer import normalize_results


def test_empty_payloads_yield_no_findings():
    assert normalize_results("job", {}) == []
    assert normalize_results("job", []) == []
    assert normalize_results("job", {"findings": []}) == []
    assert normalize_results("job", "") == []


def test_generic_findings_keep_order_and_fields():
    payload = {
        "findings": [
            {
                "title": "SQL Injection",
                "description": "Parameter id is injectable",
                "severity": "CRITICAL",
                "recommendation": "Use prepared statements",
                "type": "vulnerability",
            },
            {"title": "Server banner", "severity": "info", "extra": {"ignored": True}},
        ]
    }
    findings = normalize_results("job-1", payload)
    assert [f.title for f in findings] == ["SQL Injection", "Server banner"]
    first = findings[0]
    assert first.job_id == "job-1"
    assert first.severity is Severity.CRITICAL
    assert first.recommendation == "Use prepared statements"
    assert first.category == "vulnerability"
    assert first.fingerprint
    assert findings[1].description == "Server banner"


def test_missing_or_unknown_severity_defaults_to_info():
    findings = normalize_results(
        "job",
        [{"title": "a"}, {"title": "b", "severity": "spicy"}, {"title": "c", "severity": None}],
    )
    assert [f.severity for f in findings] == [Severity.INFO] * 3


@pytest.mark.parametrize(
    "value,expected",
    [
        ("moderate", Severity.MEDIUM),
        ("Warning", Severity.MEDIUM),
        ("error", Severity.HIGH),
        (9.8, Severity.CRITICAL),
        (7.5, Severity.HIGH),
        (5, Severity.MEDIUM),
        (2.1, Severity.LOW),
        (0, Severity.INFO),
    ],
)
def test_severity_aliases_and_scores(value, expected):
    [finding] = normalize_results("job", {"vulnerabilities": [{"name": "x", "risk": value}]})
    assert finding.severity is expected


def test_duplicates_are_kept():
    entry = {"title": "Weak Cipher Suite", "severity": "medium"}
    findings = normalize_results("job", {"issues": [entry, dict(entry)]})
    assert len(findings) == 2
    assert findings[0] == findings[1]


def test_title_falls_back_to_description():
    [finding] = normalize_results("job", {"alerts": [{"message": "Cookie without Secure flag"}]})
    assert finding.title == "Cookie without Secure flag"
    assert finding.description == "Cookie without Secure flag"


def test_envelopes_and_json_strings_are_unwrapped():
    payload = {"data": {"output_data": {"results": [{"title": "Open redirect", "severity": "low"}]}}}
    [finding] = normalize_results("job", json.dumps(payload))
    assert finding.title == "Open redirect"
    assert finding.severity is Severity.LOW


def test_port_scan_output_uses_port_risk():
    payload = {
        "ports": [
            {"port": 22, "protocol": "tcp", "state": "open", "service": "ssh"},
            {"port": 21, "state": "open", "service": "ftp"},
            {"port": 8443, "state": "open"},
            {"port": 3306, "state": "closed"},
        ]
    }
    findings = normalize_results("job", payload)
    assert [(f.title, f.severity) for f in findings] == [
        ("Open port 22/tcp", Severity.HIGH),
        ("Open port 21/tcp", Severity.MEDIUM),
        ("Open port 8443/tcp", Severity.LOW),
    ]
    assert findings[0].description == "Service: ssh"
    assert findings[2].description == "Service: unknown"


def test_subdomain_output():
    findings = normalize_results("job", {"subdomains": ["api.example.com", {"name": "www.example.com"}]})
    assert [f.description for f in findings] == [
        "Found subdomain: api.example.com",
        "Found subdomain: www.example.com",
    ]
    assert {f.severity for f in findings} == {Severity.INFO}


@pytest.mark.parametrize(
    "payload",
    [
        "<html>502 Bad Gateway</html>",
        b"\x00\x01garbage",
        42,
        None,
        {"status": "ok", "scan_id": 7},
        {"findings": "none"},
        {"findings": ["not an object"]},
        [{"title": "ok"}, "broken"],
        {"subdomains": [{}]},
    ],
)
def test_unusable_payloads_are_signalled(payload):
    assert normalize_results("job", payload) is None


def test_deeply_nested_payload_does_not_raise():
    payload = {"title": "x"}
    for _ in range(5000):
        payload = {"data": payload}
    assert normalize_results("job", payload) is None
