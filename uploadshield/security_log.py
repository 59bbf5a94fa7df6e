"""
security_log.py – Audit trail for upload security decisions.

Every ``SecurityEvent`` is written as one JSON object per line into dated
segments ``security_YYYY-MM-DD_HH-MM-SS.log``. A segment is closed when it
reaches ``max_bytes`` or when ``rotate()`` is called (the scheduler does this
once a day); only the newest ``max_files`` segments are kept.

Each event is also mirrored to the ``uploadshield.security`` console logger
with a ``[SECURITY_<SEVERITY>] <TYPE>`` prefix, kept in a bounded in-memory
buffer for the admin endpoints, and counted towards the trailing-hour alert
thresholds.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable
import logging
import secrets
import threading
import traceback

from pythonjsonlogger.json import JsonFormatter

from uploadshield.alerts import AlertForwarder, build_payload
from uploadshield.models import (
    SecurityEvent,
    SecurityEventResult,
    SecurityEventType,
    SecuritySeverity,
)

logger = logging.getLogger("uploadshield.security")

MIB = 1024 * 1024
BUFFER_LIMIT = 1000
BUFFER_KEEP = 500
ALERT_WINDOW = timedelta(hours=1)

CONSOLE_LEVELS = {
    SecuritySeverity.LOW: logging.INFO,
    SecuritySeverity.MEDIUM: logging.WARNING,
    SecuritySeverity.HIGH: logging.ERROR,
    SecuritySeverity.CRITICAL: logging.CRITICAL,
}

SUSPICIOUS_TYPES = frozenset({
    SecurityEventType.SUSPICIOUS_FILE_CONTENT,
    SecurityEventType.PATH_TRAVERSAL_ATTEMPT,
    SecurityEventType.MALICIOUS_FILE_DETECTED,
})

FAILED_RESULTS = frozenset({SecurityEventResult.FAILURE, SecurityEventResult.BLOCKED})


@dataclass(frozen=True)
class AlertThresholds:
    critical_events: int = 5
    suspicious_activity: int = 10
    failed_uploads: int = 20


class SecurityEventFormatter(JsonFormatter):
    """Renders the event dict carried in ``record.msg`` plus the audit tags."""

    def __init__(self, application: str):
        super().__init__()
        self.application = application

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        log_record.update(message_dict)
        log_record["_logLevel"] = "SECURITY"
        log_record["_application"] = self.application


class DatedRotatingFileHandler(RotatingFileHandler):
    """Size-capped handler that opens a new timestamped file on every rollover."""

    prefix = "security"

    def __init__(self, directory: str | Path, max_bytes: int, max_files: int):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.max_files = max_files
        super().__init__(
            self._next_segment_path(),
            maxBytes=max_bytes,
            backupCount=0,
            encoding="utf-8",
            delay=True,
        )

    @property
    def current_path(self) -> Path:
        return Path(self.baseFilename)

    def _next_segment_path(self) -> Path:
        stamp = datetime.now(UTC).strftime("%Y-%m-%d_%H-%M-%S")
        path = self.directory / f"{self.prefix}_{stamp}.log"
        suffix = 1
        while path.exists():
            path = self.directory / f"{self.prefix}_{stamp}_{suffix}.log"
            suffix += 1
        return path

    def segments(self) -> list[Path]:
        """Existing segments, oldest first."""
        return sorted(
            self.directory.glob(f"{self.prefix}_*.log"),
            key=lambda path: (path.stat().st_mtime, path.name),
        )

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None
        self.baseFilename = str(self._next_segment_path())
        if not self.delay:
            self.stream = self._open()
        self._prune()

    def rotate(self) -> Path:
        self.acquire()
        try:
            self.doRollover()
            return self.current_path
        finally:
            self.release()

    def _prune(self) -> None:
        segments = [path for path in self.segments() if path != self.current_path]
        excess = len(segments) + 1 - self.max_files
        for path in segments[:max(0, excess)]:
            try:
                path.unlink()
                logger.info("Deleted old security log: %s", path.name)
            except FileNotFoundError:
                continue


class SecurityLogger:
    def __init__(
        self,
        log_dir: str | Path,
        *,
        max_bytes: int = 10 * MIB,
        max_files: int = 50,
        application: str = "UploadShield",
        thresholds: AlertThresholds | None = None,
        forwarder: AlertForwarder | None = None,
        env_name: str = "production",
        enabled: bool = True,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.enabled = enabled
        self.application = application
        self.thresholds = thresholds or AlertThresholds()
        self.forwarder = forwarder
        self.env_name = env_name
        self._clock = clock
        self._events: list[SecurityEvent] = []
        self._last_alert: dict[str, datetime] = {}
        self._lock = threading.Lock()

        self.handler = DatedRotatingFileHandler(log_dir, max_bytes=max_bytes, max_files=max_files)
        self.handler.setFormatter(SecurityEventFormatter(application))

    def log_event(
        self,
        event_type: SecurityEventType,
        severity: SecuritySeverity,
        **fields: Any,
    ) -> SecurityEvent | None:
        if not self.enabled:
            return None

        event = SecurityEvent(
            id=secrets.token_hex(8),
            timestamp=self._clock(),
            type=event_type,
            severity=severity,
            source=f"{self.application}-FileUpload",
            **fields,
        )
        with self._lock:
            self._events.append(event)
            if len(self._events) > BUFFER_LIMIT:
                self._events = self._events[-BUFFER_KEEP:]

        self._write(event)
        self._mirror(event)
        self._check_alerts()
        return event

    def _write(self, event: SecurityEvent) -> None:
        payload = event.model_dump(mode="json", by_alias=True, exclude_none=True)
        record = logging.makeLogRecord({
            "name": logger.name,
            "msg": payload,
            "levelno": CONSOLE_LEVELS[event.severity],
            "levelname": logging.getLevelName(CONSOLE_LEVELS[event.severity]),
        })
        self.handler.handle(record)

    def _mirror(self, event: SecurityEvent) -> None:
        extra = {
            "event_id": event.id,
            "user_id": event.user_id,
            "ip_address": event.ip_address,
            "upload_filename": event.filename,
        }
        if event.severity == SecuritySeverity.CRITICAL:
            extra["threats"] = event.threats
            extra["quarantine_id"] = event.quarantine_id
        if event.error_message:
            extra["error_message"] = event.error_message
        logger.log(
            CONSOLE_LEVELS[event.severity],
            "[SECURITY_%s] %s",
            event.severity.value,
            event.type.value,
            extra=extra,
        )

    def _check_alerts(self) -> None:
        now = self._clock()
        recent = self._since(now - ALERT_WINDOW)
        critical = sum(1 for e in recent if e.severity == SecuritySeverity.CRITICAL)
        suspicious = sum(1 for e in recent if e.type in SUSPICIOUS_TYPES)
        failed = sum(1 for e in recent if e.result in FAILED_RESULTS)

        if critical >= self.thresholds.critical_events:
            self._trigger_alert("CRITICAL_EVENTS_THRESHOLD", critical, self.thresholds.critical_events, now)
        if suspicious >= self.thresholds.suspicious_activity:
            self._trigger_alert("SUSPICIOUS_ACTIVITY_THRESHOLD", suspicious, self.thresholds.suspicious_activity, now)
        if failed >= self.thresholds.failed_uploads:
            self._trigger_alert("FAILED_UPLOADS_THRESHOLD", failed, self.thresholds.failed_uploads, now)

    def _trigger_alert(self, alert_type: str, count: int, threshold: int, now: datetime) -> None:
        with self._lock:
            last = self._last_alert.get(alert_type)
            if last is not None and now - last < ALERT_WINDOW:
                return
            self._last_alert[alert_type] = now

        details = {"count": count, "threshold": threshold, "time_window": "1 hour"}
        logger.critical("[SECURITY_ALERT] %s", alert_type, extra={"alert_type": alert_type, **details})
        if self.forwarder is not None and self.forwarder.enabled:
            self.forwarder.forward(build_payload(alert_type, details, self.application, self.env_name))

    def _since(self, cutoff: datetime) -> list[SecurityEvent]:
        with self._lock:
            return [event for event in self._events if event.timestamp > cutoff]

    def recent_events(self, hours: float = 24) -> list[SecurityEvent]:
        return self._since(self._clock() - timedelta(hours=hours))

    def stats(self) -> dict[str, Any]:
        recent = self.recent_events(24)
        by_type: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        quarantined = 0
        for event in recent:
            by_type[event.type.value] = by_type.get(event.type.value, 0) + 1
            by_severity[event.severity.value] = by_severity.get(event.severity.value, 0) + 1
            if event.result == SecurityEventResult.QUARANTINED:
                quarantined += 1
        return {
            "total_events": len(recent),
            "events_by_type": by_type,
            "events_by_severity": by_severity,
            "recent_threats": sum(
                1 for e in recent if e.severity in (SecuritySeverity.HIGH, SecuritySeverity.CRITICAL)
            ),
            "quarantined_files": quarantined,
        }

    def rotate(self) -> Path:
        path = self.handler.rotate()
        logger.info("Security log rotated: %s", path.name)
        return path

    def close(self) -> None:
        self.handler.close()

    # ─── Convenience helpers ──────────────────────────────────────────────────

    def log_file_upload_blocked(
        self,
        filename: str,
        reason: str,
        *,
        threats: list[str] | None = None,
        user_id: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> SecurityEvent | None:
        return self.log_event(
            SecurityEventType.FILE_UPLOAD_BLOCKED,
            SecuritySeverity.MEDIUM,
            user_id=user_id,
            filename=filename,
            threats=threats,
            user_agent=user_agent,
            ip_address=ip_address,
            action="FILE_UPLOAD",
            result=SecurityEventResult.BLOCKED,
            error_message=reason,
        )

    def log_malicious_file_detected(
        self,
        filename: str,
        file_path: str,
        threats: list[str],
        *,
        quarantine_id: str | None = None,
        user_id: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> SecurityEvent | None:
        return self.log_event(
            SecurityEventType.MALICIOUS_FILE_DETECTED,
            SecuritySeverity.CRITICAL,
            user_id=user_id,
            filename=filename,
            file_path=file_path,
            threats=threats,
            quarantine_id=quarantine_id,
            user_agent=user_agent,
            ip_address=ip_address,
            action="MALWARE_DETECTION",
            result=SecurityEventResult.QUARANTINED if quarantine_id else SecurityEventResult.BLOCKED,
        )

    def log_suspicious_file_content(
        self,
        filename: str,
        warnings: list[str],
        *,
        behavior_score: int | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
    ) -> SecurityEvent | None:
        return self.log_event(
            SecurityEventType.SUSPICIOUS_FILE_CONTENT,
            SecuritySeverity.MEDIUM,
            user_id=user_id,
            filename=filename,
            warnings=warnings,
            ip_address=ip_address,
            action="SECURITY_SCAN",
            result=SecurityEventResult.SUCCESS,
            metadata={"behaviorScore": behavior_score},
        )

    def log_path_traversal_attempt(
        self,
        filename: str,
        attempted_path: str,
        *,
        user_id: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> SecurityEvent | None:
        return self.log_event(
            SecurityEventType.PATH_TRAVERSAL_ATTEMPT,
            SecuritySeverity.HIGH,
            user_id=user_id,
            filename=filename,
            user_agent=user_agent,
            ip_address=ip_address,
            action="PATH_TRAVERSAL",
            result=SecurityEventResult.BLOCKED,
            metadata={"attemptedPath": attempted_path},
        )

    def log_security_scan_result(
        self,
        filename: str,
        file_path: str,
        file_size: int,
        mime_type: str | None,
        *,
        threats: list[str] | None = None,
        warnings: list[str] | None = None,
        quarantine_id: str | None = None,
        scan_results: dict | None = None,
        user_id: str | None = None,
    ) -> SecurityEvent | None:
        if threats:
            severity = SecuritySeverity.HIGH
        elif warnings and len(warnings) > 2:
            severity = SecuritySeverity.MEDIUM
        else:
            severity = SecuritySeverity.LOW

        return self.log_event(
            SecurityEventType.SECURITY_SCAN_RESULT,
            severity,
            user_id=user_id,
            filename=filename,
            file_path=file_path,
            file_size=file_size,
            mime_type=mime_type,
            threats=threats,
            warnings=warnings,
            quarantine_id=quarantine_id,
            action="SECURITY_SCAN",
            result=SecurityEventResult.BLOCKED if threats else SecurityEventResult.SUCCESS,
            metadata={"scanResults": scan_results} if scan_results is not None else None,
        )

    def log_system_error(
        self,
        error: BaseException,
        context: str,
        *,
        user_id: str | None = None,
        filename: str | None = None,
    ) -> SecurityEvent | None:
        return self.log_event(
            SecurityEventType.SYSTEM_ERROR,
            SecuritySeverity.MEDIUM,
            user_id=user_id,
            filename=filename,
            action=context,
            result=SecurityEventResult.FAILURE,
            error_message=str(error),
            stack_trace="".join(traceback.format_exception(error)),
        )

    def log_rate_limit_exceeded(
        self,
        ip_address: str,
        tier: str,
        retry_after: int | None,
        *,
        reason: str | None = None,
        user_id: str | None = None,
        user_agent: str | None = None,
        filename: str | None = None,
    ) -> SecurityEvent | None:
        return self.log_event(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            SecuritySeverity.MEDIUM,
            user_id=user_id,
            user_agent=user_agent,
            ip_address=ip_address,
            filename=filename,
            action="FILE_UPLOAD",
            result=SecurityEventResult.BLOCKED,
            error_message=reason,
            metadata={"tier": tier, "retryAfter": retry_after},
        )

    def log_quarantine_action(
        self,
        quarantine_id: str,
        action: str,
        *,
        filename: str | None = None,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> SecurityEvent | None:
        released = action == "RELEASE"
        return self.log_event(
            SecurityEventType.QUARANTINE_ACTION,
            SecuritySeverity.LOW if released else SecuritySeverity.HIGH,
            user_id=user_id,
            filename=filename,
            quarantine_id=quarantine_id,
            action=f"QUARANTINE_{action}",
            result=SecurityEventResult.SUCCESS if released else SecurityEventResult.QUARANTINED,
            metadata={"reason": reason} if reason else None,
        )
