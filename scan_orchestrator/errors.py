"""Error taxonomy shared by the orchestrator, its stores and provider clients."""

from __future__ import annotations


class InvalidRequest(ValueError):
    """Bad input to ``submit``; no job is created."""


class JobNotFound(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Unknown scan job: {job_id}")
        self.job_id = job_id


class InvalidTransition(RuntimeError):
    """A store was asked to apply a transition the lifecycle does not allow."""


class ProviderError(RuntimeError):
    retryable = False


class ProviderUnavailable(ProviderError):
    """Network failure, timeout, 5xx or rate limiting on the provider side."""

    retryable = True


class ProviderRejected(ProviderError):
    """The provider refused the scan request outright (bad target, unsupported type)."""


class ProviderNotFound(ProviderError):
    """The provider does not know the given providerRef."""


class ProviderMalformed(ProviderError):
    """The provider answered, but the payload is unusable."""
