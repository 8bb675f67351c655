"""
Export a completed job's findings as JSON, CSV or SARIF for report generation.
"""
import csv
import json
from datetime import datetime, timezone
from io import StringIO
from typing import Any, Dict, List

from scan_orchestrator.models import Finding, ScanJob, severity_counts

# SARIF format version
SARIF_VERSION = "2.1.0"
SARIF_SCHEMA = "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json"

CSV_FIELDS = ["job_id", "severity", "title", "description", "recommendation", "category", "fingerprint"]

SARIF_LEVELS = {
    "critical": "error",
    "high": "error",
    "medium": "warning",
    "low": "note",
    "info": "note",
}


def export_to_json(job: ScanJob, findings: List[Finding]) -> str:
    """Export a job summary and its findings to JSON."""
    output = {
        "version": "1.0",
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "job": job.to_dict(),
        "severity_counts": severity_counts(findings),
        "total_findings": len(findings),
        "findings": [finding.to_dict() for finding in findings],
    }
    return json.dumps(output, indent=2, ensure_ascii=False)


def export_to_csv(findings: List[Finding]) -> str:
    """Export findings to CSV; the header row is always present."""
    output = StringIO()
    writer = csv.DictWriter(output, fieldnames=CSV_FIELDS)
    writer.writeheader()
    for finding in findings:
        writer.writerow(finding.to_dict())
    return output.getvalue()


def export_to_sarif(job: ScanJob, findings: List[Finding], tool_version: str = "1.0.0") -> str:
    """
    Export findings to SARIF v2.1.0, one run per job.
    https://docs.oasis-open.org/sarif/sarif/v2.1.0/sarif-v2.1.0.html
    """
    results: List[Dict[str, Any]] = []
    for finding in findings:
        result: Dict[str, Any] = {
            "ruleId": finding.category or "finding",
            "level": SARIF_LEVELS.get(finding.severity.value, "warning"),
            "message": {"text": finding.description or finding.title},
            "locations": [
                {"physicalLocation": {"artifactLocation": {"uri": job.target}}}
            ],
            "properties": {
                "title": finding.title,
                "severity": finding.severity.value,
                "job_id": job.id,
            },
        }
        if finding.recommendation:
            result["properties"]["recommendation"] = finding.recommendation
        if finding.fingerprint:
            result["partialFingerprints"] = {"findingHash/v1": finding.fingerprint}
        results.append(result)

    sarif = {
        "version": SARIF_VERSION,
        "$schema": SARIF_SCHEMA,
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": f"scan-orchestrator/{job.scan_type}",
                        "version": tool_version,
                    }
                },
                "results": results,
            }
        ],
    }
    return json.dumps(sarif, indent=2)
