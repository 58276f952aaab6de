"""Email delivery for operator alerts.

Uses stdlib smtplib with STARTTLS.  All functions are designed to never
raise; they return success/failure booleans and log errors.
"""

import logging
import smtplib
from email.mime.text import MIMEText

from audit_recovery.config import get_settings
from audit_recovery.monitor.models import Notification

logger = logging.getLogger(__name__)


def is_email_configured() -> bool:
    """Check whether all required SMTP settings are present."""
    settings = get_settings()
    return bool(
        settings.smtp_host and settings.smtp_username and settings.smtp_password and settings.alert_recipient_email
    )


def format_alert_body(notification: Notification) -> str:
    lines = [notification.message, "", f"Severity: {notification.severity.value}"]
    for key, value in notification.details.items():
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


def send_alert_email(notification: Notification) -> bool:
    """Send a plain-text alert via SMTP with STARTTLS.

    Returns:
        True if the email was sent successfully, False otherwise.
    """
    settings = get_settings()

    if not is_email_configured():
        logger.warning("Email not configured — skipping send")
        return False

    msg = MIMEText(format_alert_body(notification), "plain", "utf-8")
    msg["Subject"] = f"[{notification.severity.value.upper()}] {notification.title}"
    msg["From"] = settings.smtp_username
    msg["To"] = settings.alert_recipient_email

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as server:
            _ = server.starttls()
            server.login(settings.smtp_username, settings.smtp_password)
            server.send_message(msg)
        logger.info("Alert email sent to %s", settings.alert_recipient_email)
        return True
    except Exception:
        logger.exception("Failed to send alert email")
        return False
