"""
Notification channels for ADAPT-Remediate.

The pipeline announces approval requests and pages on restore failures
through a Notifier. Delivery is best effort: a notifier reports failure by
returning False and never raises into the pipeline.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import requests

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """A message for operators."""

    title: str
    message: str
    severity: str = "info"  # info, low, medium, high, critical
    attempt_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "attempt_id": self.attempt_id,
            "details": self.details,
            "created_at": self.created_at.isoformat()
        }


class Notifier(ABC):
    """Abstract base class for notifiers."""

    @abstractmethod
    def notify(self, notification: Notification) -> bool:
        """
        Send a notification.

        Args:
            notification: Notification to send

        Returns:
            True if notification sent successfully
        """
        pass


class LogNotifier(Notifier):
    """
    Writes notifications to the application log.

    Critical notifications are logged at CRITICAL, high at ERROR, medium
    at WARNING and everything else at INFO.
    """

    LEVELS = {
        "critical": logging.CRITICAL,
        "high": logging.ERROR,
        "medium": logging.WARNING,
    }

    def __init__(self, logger_name: str = "adapt_remediate.notifications"):
        self.logger = logging.getLogger(logger_name)

    def notify(self, notification: Notification) -> bool:
        level = self.LEVELS.get(notification.severity, logging.INFO)
        attempt = f" [{notification.attempt_id}]" if notification.attempt_id else ""
        self.logger.log(level, f"{notification.title}{attempt}: {notification.message}")
        return True


class SlackNotifier(Notifier):
    """
    Slack webhook notifier.

    Sends notifications to Slack channels via incoming webhooks.
    """

    COLORS = {
        "critical": "#FF0000",
        "high": "#FFA500",
        "medium": "#FFD700",
        "low": "#00FF00",
        "info": "#0000FF"
    }

    def __init__(self, webhook_url: str, channel: Optional[str] = None, timeout: float = 10):
        """
        Initialize Slack notifier.

        Args:
            webhook_url: Slack incoming webhook URL
            channel: Optional channel override
            timeout: HTTP timeout in seconds
        """
        self.webhook_url = webhook_url
        self.channel = channel
        self.timeout = timeout

    def build_payload(self, notification: Notification) -> Dict[str, Any]:
        fields = []
        if notification.attempt_id:
            fields.append({"title": "Attempt", "value": notification.attempt_id, "short": True})
        for key, value in notification.details.items():
            fields.append({"title": str(key), "value": str(value), "short": True})

        payload: Dict[str, Any] = {
            "attachments": [
                {
                    "color": self.COLORS.get(notification.severity, "#808080"),
                    "title": f"[{notification.severity.upper()}] {notification.title}",
                    "text": notification.message,
                    "fields": fields,
                    "footer": "ADAPT-Remediate",
                    "ts": int(notification.created_at.timestamp())
                }
            ]
        }

        if self.channel:
            payload["channel"] = self.channel

        return payload

    def notify(self, notification: Notification) -> bool:
        """Send notification to Slack."""
        try:
            response = requests.post(
                self.webhook_url,
                json=self.build_payload(notification),
                timeout=self.timeout
            )
            response.raise_for_status()
            logger.debug(f"Slack notification sent: {notification.title}")
            return True
        except requests.RequestException as e:
            logger.error(f"Slack notifier error: {e}")
            return False


class WebhookNotifier(Notifier):
    """
    Generic webhook notifier.

    Posts the notification as JSON. Can be used to integrate with paging
    systems or custom receivers.
    """

    def __init__(
        self,
        webhook_url: str,
        headers: Optional[Dict[str, str]] = None,
        auth_token: Optional[str] = None,
        timeout: float = 10
    ):
        """
        Initialize webhook notifier.

        Args:
            webhook_url: Webhook URL to POST notifications to
            headers: Optional custom headers
            auth_token: Optional bearer token (added to headers)
            timeout: HTTP timeout in seconds
        """
        self.webhook_url = webhook_url
        self.headers = dict(headers or {})
        self.timeout = timeout

        if auth_token:
            self.headers['Authorization'] = f'Bearer {auth_token}'

        self.headers['Content-Type'] = 'application/json'

    def notify(self, notification: Notification) -> bool:
        """Send notification to webhook."""
        try:
            response = requests.post(
                self.webhook_url,
                json=notification.to_dict(),
                headers=self.headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            logger.debug(f"Webhook notification sent: {notification.title}")
            return True
        except requests.RequestException as e:
            logger.error(f"Webhook notifier error: {e}")
            return False


class CompositeNotifier(Notifier):
    """Fans a notification out to several notifiers."""

    def __init__(self, notifiers: Iterable[Notifier]):
        self.notifiers: List[Notifier] = list(notifiers)

    def notify(self, notification: Notification) -> bool:
        results = [n.notify(notification) for n in self.notifiers]
        return any(results) if results else False


def build_notifier(
    slack_webhook_url: Optional[str] = None,
    webhook_url: Optional[str] = None,
    webhook_token: Optional[str] = None
) -> Notifier:
    """
    Build the notifier chain from configuration values.

    The log notifier is always included.
    """
    notifiers: List[Notifier] = [LogNotifier()]
    if slack_webhook_url:
        notifiers.append(SlackNotifier(slack_webhook_url))
    if webhook_url:
        notifiers.append(WebhookNotifier(webhook_url, auth_token=webhook_token))
    return notifiers[0] if len(notifiers) == 1 else CompositeNotifier(notifiers)
