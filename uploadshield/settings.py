"""
settings.py – Environment configuration, read once at startup.

Integers go through ``_env_int``: a missing, malformed or non-positive value
falls back to the default.
"""

from dataclasses import dataclass
from pathlib import Path
import os
import tempfile

MIB = 1024 * 1024
GIB = 1024 * MIB

SCANNER_MODES = ("off", "auto", "clamav")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
        return parsed if parsed > 0 else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = float(value)
        return parsed if parsed > 0 else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in os.getenv(name, "").split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    quarantine_dir: Path = Path("./quarantine")
    quarantine_enabled: bool = True
    quarantine_max_age_seconds: int = 24 * 60 * 60
    quarantine_max_total_bytes: int = GIB
    quarantine_sweep_interval_seconds: int = 60 * 60

    security_log_dir: Path = Path("./logs/security")
    security_log_max_bytes: int = 10 * MIB
    security_log_max_files: int = 50
    security_log_rotation_seconds: int = 24 * 60 * 60
    alert_critical_threshold: int = 5
    alert_suspicious_threshold: int = 10
    alert_failed_threshold: int = 20
    application_name: str = "UploadShield"

    rate_limit_cleanup_interval_seconds: int = 5 * 60

    upload_dir: Path = Path("./uploads")
    upload_tmp_dir: Path | None = None
    max_upload_bytes: int = 100 * MIB

    scanner_mode: str = "off"
    clamav_host: str = "clamav"
    clamav_port: int = 3310
    clamav_timeout_seconds: float = 5.0

    auth_mode: str = "off"
    api_keys: tuple[str, ...] = ()
    admin_user_ids: tuple[str, ...] = ()

    alert_webhook_url: str = ""
    alert_smtp_host: str = ""
    alert_smtp_port: int = 587
    alert_smtp_user: str = ""
    alert_smtp_password: str = ""
    alert_smtp_from: str = ""
    alert_smtp_to: tuple[str, ...] = ()
    alert_env_name: str = "production"

    log_level: str = "INFO"
    environment: str = "production"

    @property
    def tmp_dir(self) -> str:
        return str(self.upload_tmp_dir) if self.upload_tmp_dir else tempfile.gettempdir()

    @classmethod
    def from_env(cls) -> "Settings":
        scanner_mode = os.getenv("SCANNER_MODE", "off").strip().lower()
        if scanner_mode not in SCANNER_MODES:
            scanner_mode = "off"
        tmp_dir = os.getenv("UPLOAD_TMP_DIR", "").strip()

        return cls(
            quarantine_dir=Path(os.getenv("QUARANTINE_DIR", "./quarantine")),
            quarantine_enabled=_env_bool("QUARANTINE_ENABLED", True),
            quarantine_max_age_seconds=_env_int("QUARANTINE_MAX_AGE_SECONDS", 24 * 60 * 60),
            quarantine_max_total_bytes=_env_int("QUARANTINE_MAX_TOTAL_BYTES", GIB),
            quarantine_sweep_interval_seconds=_env_int("QUARANTINE_SWEEP_INTERVAL_SECONDS", 60 * 60),
            security_log_dir=Path(os.getenv("SECURITY_LOG_DIR", "./logs/security")),
            security_log_max_bytes=_env_int("SECURITY_LOG_MAX_BYTES", 10 * MIB),
            security_log_max_files=_env_int("SECURITY_LOG_MAX_FILES", 50),
            security_log_rotation_seconds=_env_int("SECURITY_LOG_ROTATION_SECONDS", 24 * 60 * 60),
            alert_critical_threshold=_env_int("SECURITY_ALERT_CRITICAL_THRESHOLD", 5),
            alert_suspicious_threshold=_env_int("SECURITY_ALERT_SUSPICIOUS_THRESHOLD", 10),
            alert_failed_threshold=_env_int("SECURITY_ALERT_FAILED_THRESHOLD", 20),
            application_name=os.getenv("SECURITY_APPLICATION_NAME", "UploadShield"),
            rate_limit_cleanup_interval_seconds=_env_int("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", 5 * 60),
            upload_dir=Path(os.getenv("UPLOAD_DIR", "./uploads")),
            upload_tmp_dir=Path(tmp_dir) if tmp_dir else None,
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", 100 * MIB),
            scanner_mode=scanner_mode,
            clamav_host=os.getenv("CLAMAV_HOST", "clamav"),
            clamav_port=_env_int("CLAMAV_PORT", 3310),
            clamav_timeout_seconds=_env_float("CLAMAV_TIMEOUT_SECONDS", 5.0),
            auth_mode=os.getenv("AUTH_MODE", "off").strip().lower(),
            api_keys=_env_list("UPLOAD_API_KEYS"),
            admin_user_ids=_env_list("ADMIN_USER_IDS"),
            alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL", "").strip(),
            alert_smtp_host=os.getenv("ALERT_SMTP_HOST", "").strip(),
            alert_smtp_port=_env_int("ALERT_SMTP_PORT", 587),
            alert_smtp_user=os.getenv("ALERT_SMTP_USER", "").strip(),
            alert_smtp_password=os.getenv("ALERT_SMTP_PASSWORD", "").strip(),
            alert_smtp_from=os.getenv("ALERT_SMTP_FROM", "").strip(),
            alert_smtp_to=_env_list("ALERT_SMTP_TO"),
            alert_env_name=os.getenv("ALERT_ENV_NAME", "production"),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            environment=os.getenv("ENVIRONMENT", "production").strip() or "production",
        )


def parse_api_keys(entries: tuple[str, ...]) -> dict[str, str]:
    """Map key -> user id from "userid:key" or bare "key" entries."""
    key_map: dict[str, str] = {}
    for entry in entries:
        if ":" in entry:
            uid, key = entry.split(":", 1)
            key_map[key.strip()] = uid.strip()
        else:
            key_map[entry] = "anonymous"
    return key_map
