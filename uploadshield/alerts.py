"""
alerts.py – Forwarding of security alerts raised by the audit logger.

Two channels, either or both:
  - Slack/Teams/any webhook via ALERT_WEBHOOK_URL
  - E-mail via SMTP (ALERT_SMTP_* environment variables)

Alerts are raised when the trailing-hour event counts cross the configured
thresholds (see security_log.py). Delivery runs on a small worker pool so the
request that triggered the alert is never held up; delivery failures are
logged and go no further.

Environment variables:
  ALERT_WEBHOOK_URL          – URL to POST the JSON payload to
  ALERT_SMTP_HOST            – SMTP server (e.g. smtp.gmail.com)
  ALERT_SMTP_PORT            – SMTP port (default 587)
  ALERT_SMTP_USER            – SMTP user name
  ALERT_SMTP_PASSWORD        – SMTP password
  ALERT_SMTP_FROM            – Sender address
  ALERT_SMTP_TO              – Recipient address(es), comma separated
  ALERT_ENV_NAME             – Environment name shown in the alert (default "production")
"""

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from email.mime.text import MIMEText
import logging
import smtplib

import requests

logger = logging.getLogger("uploadshield.alerts")

WEBHOOK_TIMEOUT_SECONDS = 5
SMTP_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class AlertChannels:
    webhook_url: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_to: tuple[str, ...] = field(default_factory=tuple)
    env_name: str = "production"

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.webhook_url)

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_from and self.smtp_to)


def build_payload(alert_type: str, details: dict, application: str, env_name: str) -> dict:
    return {
        "env": env_name,
        "event": "security_alert",
        "application": application,
        "alert_type": alert_type,
        "severity": "critical",
        **details,
    }


def _send_webhook(channels: AlertChannels, payload: dict) -> None:
    try:
        response = requests.post(channels.webhook_url, json=payload, timeout=WEBHOOK_TIMEOUT_SECONDS)
        response.raise_for_status()
        logger.info("Alert webhook delivered, status=%s", response.status_code)
    except requests.RequestException as exc:
        logger.error("Alert webhook failed: %s", exc)


def _send_email(channels: AlertChannels, payload: dict) -> None:
    try:
        subject = (
            f"[{payload['application']}/{payload['env']}] "
            f"{payload['severity'].upper()} – {payload['alert_type']} "
            f"({payload.get('count')} events in {payload.get('time_window')})"
        )
        body_lines = [f"{key:<14}{value}" for key, value in payload.items()]
        msg = MIMEText("\n".join(body_lines), "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = channels.smtp_from
        msg["To"] = ", ".join(channels.smtp_to)

        with smtplib.SMTP(channels.smtp_host, channels.smtp_port, timeout=SMTP_TIMEOUT_SECONDS) as server:
            server.ehlo()
            server.starttls()
            if channels.smtp_user and channels.smtp_password:
                server.login(channels.smtp_user, channels.smtp_password)
            server.sendmail(channels.smtp_from, list(channels.smtp_to), msg.as_string())
        logger.info("Alert e-mail sent to %s", list(channels.smtp_to))
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Alert e-mail failed: %s", exc)


class AlertForwarder:
    """Sends alert payloads to the configured channels on background threads."""

    def __init__(self, channels: AlertChannels | None = None, max_workers: int = 2):
        self.channels = channels or AlertChannels()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="alert")

    @property
    def enabled(self) -> bool:
        return self.channels.webhook_enabled or self.channels.email_enabled

    def forward(self, payload: dict) -> list[Future]:
        futures = []
        if self.channels.webhook_enabled:
            futures.append(self._executor.submit(_send_webhook, self.channels, payload))
        if self.channels.email_enabled:
            futures.append(self._executor.submit(_send_email, self.channels, payload))
        for future in futures:
            future.add_done_callback(_log_delivery_error)
        return futures

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


def _log_delivery_error(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Alert delivery error: %s", exc)
