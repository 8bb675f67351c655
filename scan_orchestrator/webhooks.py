"""
Webhook notifications for scan jobs reaching a terminal state.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from scan_orchestrator.models import JobState, ScanJob

logger = logging.getLogger(__name__)


class WebhookEvent(str, Enum):
    """Available webhook events."""
    SCAN_COMPLETED = "scan.completed"
    SCAN_FAILED = "scan.failed"
    SCAN_TIMED_OUT = "scan.timed_out"
    SCAN_CANCELLED = "scan.cancelled"


EVENT_FOR_STATE = {
    JobState.COMPLETED: WebhookEvent.SCAN_COMPLETED,
    JobState.FAILED: WebhookEvent.SCAN_FAILED,
    JobState.TIMED_OUT: WebhookEvent.SCAN_TIMED_OUT,
    JobState.CANCELLED: WebhookEvent.SCAN_CANCELLED,
}


def generate_signature(payload: str, secret: str) -> str:
    """Generate HMAC signature for webhook payload."""
    return hmac.new(
        secret.encode(),
        payload.encode(),
        hashlib.sha256
    ).hexdigest()


class WebhookNotifier:
    """
    Job listener that POSTs terminal transitions to the configured URLs.
    Delivery failures are logged and never raised.
    """

    def __init__(
        self,
        urls: list[str],
        secret: Optional[str] = None,
        timeout_seconds: float = 10.0,
        retry_count: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.urls = list(urls)
        self.secret = secret
        self.retry_count = max(1, retry_count)
        self._sleep = sleep
        self._client = httpx.Client(timeout=timeout_seconds, transport=transport)

    @classmethod
    def from_settings(cls, webhooks: dict[str, Any]) -> "WebhookNotifier":
        return cls(
            urls=list(webhooks.get("urls") or []),
            secret=webhooks.get("secret"),
            timeout_seconds=float(webhooks.get("timeout_seconds", 10)),
            retry_count=int(webhooks.get("retry_count", 3)),
        )

    def __call__(self, job: ScanJob) -> None:
        event = EVENT_FOR_STATE.get(job.state)
        if event is None:
            return
        for url in self.urls:
            self.deliver(url, event, job.to_dict())

    def deliver(self, url: str, event_type: WebhookEvent, payload: dict) -> tuple[bool, Optional[str]]:
        """
        Deliver one event to one URL.
        Returns (success, error_message).
        """
        payload_with_meta = {
            "event": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": payload
        }
        payload_str = json.dumps(payload_with_meta)

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "ScanOrchestrator-Webhook/1.0"
        }
        if self.secret:
            signature = generate_signature(payload_str, self.secret)
            headers["X-Webhook-Signature"] = f"sha256={signature}"

        error_msg = None
        for attempt in range(self.retry_count):
            try:
                response = self._client.post(url, content=payload_str, headers=headers)
                if response.is_success:
                    logger.info("Webhook %s delivered to %s (attempt %d/%d)",
                                event_type.value, url, attempt + 1, self.retry_count)
                    return True, None
                error_msg = f"HTTP {response.status_code}: {response.text[:1000]}"
            except httpx.HTTPError as e:
                error_msg = str(e)
            logger.warning("Webhook delivery to %s failed (attempt %d/%d): %s",
                           url, attempt + 1, self.retry_count, error_msg)

            # exponential backoff between attempts
            if attempt < self.retry_count - 1:
                self._sleep(2 ** attempt)

        return False, error_msg

    def close(self) -> None:
        self._client.close()
