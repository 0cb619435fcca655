"""
Operator notifications for ADAPT-Remediate.
"""

from .notifiers import (
    CompositeNotifier,
    LogNotifier,
    Notification,
    Notifier,
    SlackNotifier,
    WebhookNotifier,
    build_notifier,
)

__all__ = [
    "CompositeNotifier",
    "LogNotifier",
    "Notification",
    "Notifier",
    "SlackNotifier",
    "WebhookNotifier",
    "build_notifier",
]
