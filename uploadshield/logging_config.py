"""
logging_config.py – JSON application logs for UploadShield.

Every record goes to stdout as one JSON object with ``timestamp``, ``level``,
``logger``, ``message``, the static ``service`` / ``environment`` pair and any
``extra={...}`` fields the call site passed (``upload_filename``,
``quarantine_id``, ``event_id`` ...).

Records from the audit mirror (``uploadshield.security``) are tagged
``category: audit``. Their logger level never goes above INFO, so a LOW
severity security event still reaches the console when LOG_LEVEL is
WARNING. The audit trail itself is written by security_log.py into its own
segment files.
"""

import logging
import logging.config

from pythonjsonlogger.json import JsonFormatter

SERVICE_NAME = "uploadshield"
SECURITY_LOGGER = "uploadshield.security"


class _UploadShieldJsonFormatter(JsonFormatter):
    """Shortens the stdlib field names and tags audit-mirror records."""

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = log_record.pop("levelname", record.levelname)
        log_record["logger"] = log_record.pop("name", record.name)
        if record.name == SECURITY_LOGGER:
            log_record["category"] = "audit"


def _at_most_info(level: str) -> str:
    numeric = logging.getLevelNamesMapping().get(level, logging.INFO)
    return level if numeric <= logging.INFO else "INFO"


def setup_logging(level: str = "INFO", environment: str = "production") -> None:
    """Configure the root, uvicorn and service loggers with JSON output.

    Called once from the app lifespan with ``Settings.log_level`` and
    ``Settings.environment``.
    """
    log_level = level.upper()

    def service_logger(logger_level: str) -> dict:
        return {"handlers": ["json"], "level": logger_level, "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "handlers": {
                "json": {
                    "class": "logging.StreamHandler",
                    "formatter": "json",
                    "stream": "ext://sys.stdout",
                },
            },
            "formatters": {
                "json": {
                    "()": _UploadShieldJsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "rename_fields": {"asctime": "timestamp"},
                    "static_fields": {"service": SERVICE_NAME, "environment": environment},
                },
            },
            "root": {
                "handlers": ["json"],
                "level": log_level,
            },
            "loggers": {
                "uvicorn": service_logger(log_level),
                "uvicorn.error": service_logger(log_level),
                "uvicorn.access": service_logger(log_level),
                SERVICE_NAME: service_logger(log_level),
                SECURITY_LOGGER: service_logger(_at_most_info(log_level)),
                # Scheduler ticks and driver command logs drown the upload traffic.
                "apscheduler": service_logger("WARNING"),
                "pymongo": service_logger("WARNING"),
            },
        }
    )
