from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JobState(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED})
ACTIVE_STATES = frozenset({JobState.PENDING, JobState.SUBMITTED, JobState.RUNNING})

_STATE_RANK = {
    JobState.PENDING: 0,
    JobState.SUBMITTED: 1,
    JobState.RUNNING: 2,
    JobState.COMPLETED: 3,
    JobState.FAILED: 3,
    JobState.TIMED_OUT: 3,
    JobState.CANCELLED: 3,
}

# Allowed edges of the job lifecycle. Running -> Running is the progress update.
_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.SUBMITTED, JobState.FAILED, JobState.CANCELLED}),
    JobState.SUBMITTED: frozenset(
        {JobState.RUNNING, JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED}
    ),
    JobState.RUNNING: frozenset(
        {JobState.RUNNING, JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED}
    ),
}


def can_transition(current: JobState, new: JobState) -> bool:
    """Return True if ``current -> new`` is an edge of the lifecycle.

    Staying in ``Pending`` or ``Submitted`` is allowed too, so that retry
    bookkeeping (attempt counters, poll timestamps) can be committed through
    the same compare-and-set path as real transitions.
    """
    if current is new and current in (JobState.PENDING, JobState.SUBMITTED):
        return True
    return new in _TRANSITIONS.get(current, frozenset())


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ProviderPhase(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProviderPhase.SUCCEEDED, ProviderPhase.FAILED)


@dataclass(frozen=True)
class ProviderStatus:
    phase: ProviderPhase
    progress: int | None = None
    message: str | None = None


@dataclass
class ScanJob:
    id: str
    target: str
    scan_type: str
    state: JobState = JobState.PENDING
    provider_ref: str | None = None
    progress: int = 0
    attempts: int = 0
    error_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    submitted_at: datetime | None = None
    last_polled_at: datetime | None = None
    completed_at: datetime | None = None
    error_reason: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target,
            "scan_type": self.scan_type,
            "state": self.state.value,
            "provider_ref": self.provider_ref,
            "progress": self.progress,
            "attempts": self.attempts,
            "error_count": self.error_count,
            "created_at": to_iso(self.created_at),
            "submitted_at": to_iso(self.submitted_at),
            "last_polled_at": to_iso(self.last_polled_at),
            "completed_at": to_iso(self.completed_at),
            "error_reason": self.error_reason,
            "parameters": dict(self.parameters),
            "context": dict(self.context),
        }


@dataclass(frozen=True)
class Finding:
    job_id: str
    title: str
    description: str
    severity: Severity = Severity.INFO
    recommendation: str | None = None
    category: str | None = None
    fingerprint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["severity"] = self.severity.value
        return payload


def fingerprint(*parts: Any) -> str:
    normalized = "|".join("" if part is None else str(part) for part in parts)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def severity_counts(findings: list[Finding]) -> dict[str, int]:
    counts = {severity.value: 0 for severity in Severity}
    for finding in findings:
        counts[finding.severity.value] += 1
    return counts
