"""Operator alerts for workloads that need a human."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from report_fanout.config import NotificationSettings

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2


@dataclass(slots=True)
class OperatorAlert:
    """One alert about a workload."""

    token: str
    subject: str
    details: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "text": f"[report-fanout] {self.subject} (token={self.token})",
            "token": self.token,
            "subject": self.subject,
            "details": self.details,
        }


class Notifier(Protocol):
    """Protocol implemented by alert channels."""

    def notify(self, alert: OperatorAlert) -> bool:
        """Deliver the alert; True when an external channel accepted it."""


class OperatorNotifier:
    """Log every alert and, when configured, post it to a webhook."""

    def __init__(
        self,
        *,
        webhook_url: str = "",
        timeout_seconds: float = 10.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0))
        self._transport = transport or httpx.HTTPTransport(retries=max_retries)

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> OperatorNotifier:
        return cls(webhook_url=settings.webhook_url, timeout_seconds=settings.timeout_seconds)

    def notify(self, alert: OperatorAlert) -> bool:
        logger.warning(
            "Operator attention needed for %s: %s %s",
            alert.token,
            alert.subject,
            alert.details,
        )
        if not self.webhook_url:
            return False

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self.webhook_url, json=alert.as_payload())
        except httpx.TimeoutException:
            logger.warning("Timeout posting operator alert for %s", alert.token)
            return False
        except httpx.HTTPError as exc:
            logger.warning("HTTP error posting operator alert for %s: %s", alert.token, exc)
            return False
        if not response.is_success:
            logger.warning(
                "Operator webhook rejected alert for %s: HTTP %s",
                alert.token,
                response.status_code,
            )
            return False
        return True
