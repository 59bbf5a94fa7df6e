"""
services.py – The long-lived service instances and their background jobs.

One ``SecurityServices`` is built per process at startup and handed to the
request handlers through ``app.state``. It owns an APScheduler
``BackgroundScheduler`` running three interval jobs:

  quarantine sweep    – releases records older than QUARANTINE_MAX_AGE_SECONDS
  rate limit cleanup  – evicts lapsed window entries
  audit log rotation  – starts a new security log segment

Jobs log their failures and never raise into the scheduler.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from uploadshield.alerts import AlertChannels, AlertForwarder
from uploadshield.av_engine import ClamAVClient
from uploadshield.quarantine import QuarantineStore
from uploadshield.rate_limit import UploadRateLimiter
from uploadshield.scanner import ContentScanner
from uploadshield.security_log import AlertThresholds, SecurityLogger
from uploadshield.settings import Settings, parse_api_keys
from uploadshield.storage import LocalBlobStore
from uploadshield.validator import UploadValidator
from uploadshield.virus_scan import VirusScanner

logger = logging.getLogger("uploadshield.services")


class SecurityServices:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.api_keys = parse_api_keys(settings.api_keys)

        self.alerts = AlertForwarder(
            AlertChannels(
                webhook_url=settings.alert_webhook_url,
                smtp_host=settings.alert_smtp_host,
                smtp_port=settings.alert_smtp_port,
                smtp_user=settings.alert_smtp_user,
                smtp_password=settings.alert_smtp_password,
                smtp_from=settings.alert_smtp_from,
                smtp_to=settings.alert_smtp_to,
                env_name=settings.alert_env_name,
            )
        )
        self.security_log = SecurityLogger(
            settings.security_log_dir,
            max_bytes=settings.security_log_max_bytes,
            max_files=settings.security_log_max_files,
            application=settings.application_name,
            thresholds=AlertThresholds(
                critical_events=settings.alert_critical_threshold,
                suspicious_activity=settings.alert_suspicious_threshold,
                failed_uploads=settings.alert_failed_threshold,
            ),
            forwarder=self.alerts,
            env_name=settings.alert_env_name,
        )
        self.quarantine = QuarantineStore(
            settings.quarantine_dir,
            enabled=settings.quarantine_enabled,
            max_age_seconds=settings.quarantine_max_age_seconds,
            max_total_bytes=settings.quarantine_max_total_bytes,
        )
        self.rate_limiter = UploadRateLimiter()
        self.content_scanner = ContentScanner()

        engine = None
        if settings.scanner_mode != "off":
            engine = ClamAVClient(
                settings.clamav_host, settings.clamav_port, settings.clamav_timeout_seconds
            )
        self.virus_scanner = VirusScanner(
            self.content_scanner, self.quarantine, engine=engine, mode=settings.scanner_mode
        )
        self.validator = UploadValidator(self.virus_scanner, self.security_log)
        self.blob_store = LocalBlobStore(settings.upload_dir)

        self.scheduler = BackgroundScheduler()
        self.scheduler.add_job(
            self.sweep_quarantine, "interval",
            seconds=settings.quarantine_sweep_interval_seconds, id="quarantine_sweep",
        )
        self.scheduler.add_job(
            self.cleanup_rate_limits, "interval",
            seconds=settings.rate_limit_cleanup_interval_seconds, id="rate_limit_cleanup",
        )
        self.scheduler.add_job(
            self.rotate_security_log, "interval",
            seconds=settings.security_log_rotation_seconds, id="security_log_rotation",
        )

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Background jobs started: %s", [job.id for job in self.scheduler.get_jobs()])

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.alerts.shutdown()
        self.security_log.close()
        logger.info("Security services stopped")

    def sweep_quarantine(self) -> int:
        try:
            return self.quarantine.sweep_expired()
        except Exception:
            logger.exception("Quarantine sweep failed")
            return 0

    def cleanup_rate_limits(self) -> int:
        try:
            return self.rate_limiter.cleanup_expired()
        except Exception:
            logger.exception("Rate limit cleanup failed")
            return 0

    def rotate_security_log(self) -> None:
        try:
            self.security_log.rotate()
        except Exception:
            logger.exception("Security log rotation failed")
