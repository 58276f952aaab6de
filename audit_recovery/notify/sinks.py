"""Notification sinks the monitor delivers operator alerts through."""

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol

from audit_recovery.monitor.models import Notification, Severity
from audit_recovery.notify.email import is_email_configured, send_alert_email

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> None: ...


class LogNotificationSink:
    """Writes alerts to the application log at a level matching their severity."""

    async def send(self, notification: Notification) -> None:
        logger.log(
            _LOG_LEVELS[notification.severity],
            "ALERT [%s] %s: %s",
            notification.severity.value,
            notification.title,
            notification.message,
        )


class EmailNotificationSink:
    """Emails alerts at or above ``min_severity``; no-ops when SMTP is not configured."""

    def __init__(self, min_severity: Severity = Severity.HIGH) -> None:
        self.min_severity = min_severity

    async def send(self, notification: Notification) -> None:
        if notification.severity.rank < self.min_severity.rank:
            return
        if not is_email_configured():
            logger.debug("Email not configured — alert %r not emailed", notification.title)
            return
        emailed = await asyncio.to_thread(send_alert_email, notification)
        if not emailed:
            logger.warning("Alert %r could not be emailed", notification.title)


class CompositeNotificationSink:
    """Fans an alert out to several sinks; one failing sink does not block the others."""

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self.sinks = list(sinks)

    async def send(self, notification: Notification) -> None:
        for sink in self.sinks:
            try:
                await sink.send(notification)
            except Exception:
                logger.exception("Notification sink %s failed", type(sink).__name__)
