"""
validator.py – One pass over an uploaded file, collecting every violation.

Steps run in order and only skip ahead when they need an earlier step's
output (no detected MIME type means no size or dimension check). Each step is
isolated: an unexpected exception becomes an error entry plus a SYSTEM_ERROR
audit event, and the remaining steps still run. ``validate`` always returns a
``ValidationVerdict``.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator
import logging

from uploadshield.dimensions import validate_file_size, validate_image_dimensions
from uploadshield.filenames import detect_path_traversal, generate_secure_filename, validate_extension
from uploadshield.models import ValidationVerdict
from uploadshield.results import Err
from uploadshield.security_log import SecurityLogger
from uploadshield.signatures import detect_magic_number
from uploadshield.virus_scan import VirusScanner

logger = logging.getLogger("uploadshield.validator")


@dataclass
class _Pass:
    file_path: Path
    original_filename: str
    user_id: str | None
    ip_address: str | None
    user_agent: str | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    mime_type: str | None = None
    quarantine_id: str | None = None
    threats: list[str] = field(default_factory=list)


class UploadValidator:
    def __init__(self, virus_scanner: VirusScanner, security_log: SecurityLogger):
        self.virus_scanner = virus_scanner
        self.security_log = security_log

    def validate(
        self,
        file_path: str | Path,
        original_filename: str,
        owner_id: str,
        *,
        ip_address: str | None = None,
        user_id: str | None = None,
        user_agent: str | None = None,
    ) -> ValidationVerdict:
        run = _Pass(
            file_path=Path(file_path),
            original_filename=original_filename,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        traversal = detect_path_traversal(original_filename or "")
        if traversal:
            self.security_log.log_path_traversal_attempt(
                original_filename,
                traversal,
                user_id=user_id,
                user_agent=user_agent,
                ip_address=ip_address,
            )

        with self._step(run, "Extension validation"):
            extension = validate_extension(original_filename)
            if isinstance(extension, Err):
                run.errors.append(extension.reason)

        with self._step(run, "Magic number detection"):
            detected = detect_magic_number(run.file_path)
            if isinstance(detected, Err):
                run.errors.append(detected.reason)
            else:
                run.mime_type = detected.value

        if run.mime_type is not None:
            with self._step(run, "File size validation"):
                size_check = validate_file_size(run.file_path.stat().st_size, run.mime_type)
                if isinstance(size_check, Err):
                    run.errors.append(size_check.reason)

            with self._step(run, "Dimension validation"):
                data = run.file_path.read_bytes()
                report = validate_image_dimensions(data, run.mime_type, len(data))
                if report.error:
                    run.errors.append(report.error)
                run.warnings.extend(report.warnings)

        with self._step(run, "Security scan"):
            self._scan(run)

        secure_filename = None
        with self._step(run, "Secure filename generation"):
            secure_filename = generate_secure_filename(original_filename, owner_id)

        verdict = ValidationVerdict(
            is_valid=not run.errors,
            secure_filename=secure_filename,
            detected_mime_type=run.mime_type,
            errors=tuple(run.errors),
            warnings=tuple(run.warnings),
            threats=tuple(run.threats),
            quarantine_id=run.quarantine_id,
        )

        if verdict.is_valid:
            logger.info(
                "Upload validated: filename=%r mime=%s warnings=%d",
                original_filename, run.mime_type, len(run.warnings),
            )
        else:
            self.security_log.log_file_upload_blocked(
                original_filename,
                "; ".join(run.errors),
                threats=run.threats or None,
                user_id=user_id,
                user_agent=user_agent,
                ip_address=ip_address,
            )
        return verdict

    def _scan(self, run: _Pass) -> None:
        report = self.virus_scanner.scan(
            run.file_path,
            quarantine=True,
            detected_mime_type=run.mime_type,
            metadata={
                "originalFilename": run.original_filename,
                "userId": run.user_id,
                "ipAddress": run.ip_address,
            },
        )
        run.quarantine_id = report.quarantine_id
        run.threats = list(report.threats)

        if not report.is_safe:
            run.errors.extend(report.threats)
            if not report.threats:
                run.errors.append(f"High-risk file rejected (behavior score: {report.behavior_score})")
            if report.quarantine_id:
                run.errors.append(f"File quarantined (ID: {report.quarantine_id})")
        run.warnings.extend(report.warnings)

        file_size = run.file_path.stat().st_size
        if report.threats:
            self.security_log.log_malicious_file_detected(
                run.original_filename,
                str(run.file_path),
                report.threats,
                quarantine_id=report.quarantine_id,
                user_id=run.user_id,
                user_agent=run.user_agent,
                ip_address=run.ip_address,
            )
        elif report.risk_level == "medium":
            self.security_log.log_suspicious_file_content(
                run.original_filename,
                report.warnings,
                behavior_score=report.behavior_score,
                user_id=run.user_id,
                ip_address=run.ip_address,
            )
        if report.quarantine_id:
            self.security_log.log_quarantine_action(
                report.quarantine_id,
                "QUARANTINE",
                filename=run.original_filename,
                reason=f"High-risk file detected (score: {report.behavior_score})",
                user_id=run.user_id,
            )
        self.security_log.log_security_scan_result(
            run.original_filename,
            str(run.file_path),
            file_size,
            run.mime_type,
            threats=report.threats or None,
            warnings=report.warnings or None,
            quarantine_id=report.quarantine_id,
            scan_results=report.summary(),
            user_id=run.user_id,
        )

    @contextmanager
    def _step(self, run: _Pass, name: str) -> Iterator[None]:
        try:
            yield
        except Exception as exc:
            logger.exception("%s failed for %r", name, run.original_filename)
            run.errors.append(f"{name} failed: {exc}")
            self.security_log.log_system_error(
                exc,
                name,
                user_id=run.user_id,
                filename=run.original_filename,
            )
