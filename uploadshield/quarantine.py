"""
quarantine.py – Holding area for high-risk uploads.

Layout on disk::

    <root>/<YYYY-MM-DD>/<quarantine id>_<original filename>
    <root>/<YYYY-MM-DD>/<quarantine id>_metadata.json

Files are copied in, never moved, so the caller keeps the original. The total
size of quarantined bodies never exceeds ``max_total_bytes``: intake evicts
the oldest records first and refuses a file larger than the whole budget.
"""

from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from hashlib import sha256
from pathlib import Path
from typing import Any
import logging
import os
import re
import secrets
import threading

from pydantic import ValidationError

from uploadshield.models import QuarantineRecord
from uploadshield.results import Err, Ok, Result

logger = logging.getLogger("uploadshield.quarantine")

GIB = 1024 * 1024 * 1024
DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60
METADATA_SUFFIX = "_metadata.json"
QUARANTINE_ID_RE = re.compile(r"^[0-9a-f]{32}$")


@dataclass(frozen=True)
class QuarantineReceipt:
    quarantine_id: str
    quarantine_path: Path


class QuarantineStore:
    def __init__(
        self,
        root: str | Path,
        *,
        enabled: bool = True,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        max_total_bytes: int = GIB,
    ):
        self.root = Path(root)
        self.enabled = enabled
        self.max_age = timedelta(seconds=max_age_seconds)
        self.max_total_bytes = max_total_bytes
        self._lock = threading.Lock()
        self.root.mkdir(parents=True, exist_ok=True)
        self._total_bytes = sum(record.file_size for record in self.list_quarantined())
        logger.info(
            "Quarantine store ready at %s (%d bytes in use)", self.root, self._total_bytes
        )

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def quarantine_file(
        self,
        file_path: str | Path,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> Result[QuarantineReceipt]:
        if not self.enabled:
            return Err("Quarantine system is disabled")

        source = Path(file_path)
        try:
            content = source.read_bytes()
        except OSError as exc:
            logger.error("Failed to read %s for quarantine: %s", source, exc)
            return Err(f"Quarantine failed: {exc}")

        size = len(content)
        if size > self.max_total_bytes:
            logger.warning("File %s (%d bytes) exceeds the quarantine budget", source, size)
            return Err("File exceeds quarantine capacity")

        with self._lock:
            if not self._make_room(size):
                return Err("Quarantine capacity exhausted")
            self._total_bytes += size

        quarantine_id = secrets.token_hex(16)
        now = datetime.now(UTC)
        directory = self.root / now.strftime("%Y-%m-%d")
        body_path = directory / f"{quarantine_id}_{source.name}"
        record = QuarantineRecord(
            quarantine_id=quarantine_id,
            original_path=str(source),
            original_filename=source.name,
            reason=reason,
            timestamp=now,
            file_size=size,
            file_hash=sha256(content).hexdigest(),
            metadata=metadata or {},
        )

        try:
            directory.mkdir(parents=True, exist_ok=True)
            body_path.write_bytes(content)
            self._write_metadata(directory / f"{quarantine_id}{METADATA_SUFFIX}", record)
        except OSError as exc:
            logger.error("Failed to quarantine %s: %s", source, exc)
            body_path.unlink(missing_ok=True)
            with self._lock:
                self._total_bytes -= size
            return Err(f"Quarantine failed: {exc}")

        logger.warning(
            "File quarantined: id=%s source=%s reason=%s", quarantine_id, source, reason
        )
        return Ok(QuarantineReceipt(quarantine_id=quarantine_id, quarantine_path=body_path))

    def release_file(self, quarantine_id: str) -> Result[QuarantineRecord]:
        if not QUARANTINE_ID_RE.match(quarantine_id or ""):
            return Err("Quarantine record not found")
        with self._lock:
            found = self._find(quarantine_id)
            if found is None:
                return Err("Quarantine record not found")
            metadata_path, record = found
            if not self._remove(metadata_path, record):
                return Err("Quarantine record not found")

        logger.info(
            "File released from quarantine: id=%s filename=%s",
            quarantine_id, record.original_filename,
        )
        return Ok(record)

    def get_record(self, quarantine_id: str) -> QuarantineRecord | None:
        if not QUARANTINE_ID_RE.match(quarantine_id or ""):
            return None
        found = self._find(quarantine_id)
        return found[1] if found else None

    def list_quarantined(self) -> list[QuarantineRecord]:
        records = [record for _path, record in self._iter_records()]
        return sorted(records, key=lambda record: record.timestamp, reverse=True)

    def sweep_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(UTC)) - self.max_age
        released = 0
        for record in self.list_quarantined():
            if record.timestamp > cutoff:
                continue
            result = self.release_file(record.quarantine_id)
            if isinstance(result, Ok):
                released += 1
            else:
                logger.debug("Skipping %s during sweep: %s", record.quarantine_id, result.reason)
        if released:
            logger.info("Cleaned up %d expired quarantine file(s)", released)
        self._prune_partitions(now or datetime.now(UTC))
        return released

    def stats(self) -> dict[str, int]:
        return {
            "count": len(self.list_quarantined()),
            "total_bytes": self._total_bytes,
            "max_total_bytes": self.max_total_bytes,
        }

    def _make_room(self, size: int) -> bool:
        """Evict oldest records until ``size`` more bytes fit. Caller holds the lock."""
        if self._total_bytes + size <= self.max_total_bytes:
            return True
        oldest_first = sorted(self._iter_records(), key=lambda item: item[1].timestamp)
        for metadata_path, record in oldest_first:
            if self._remove(metadata_path, record):
                logger.warning(
                    "Evicted quarantine record %s to stay within the %d byte budget",
                    record.quarantine_id, self.max_total_bytes,
                )
            if self._total_bytes + size <= self.max_total_bytes:
                return True
        return self._total_bytes + size <= self.max_total_bytes

    def _remove(self, metadata_path: Path, record: QuarantineRecord) -> bool:
        """Delete body and metadata. Caller holds the lock."""
        directory = metadata_path.parent
        body_path = directory / f"{record.quarantine_id}_{record.original_filename}"
        try:
            metadata_path.unlink()
        except FileNotFoundError:
            return False
        body_path.unlink(missing_ok=True)
        self._total_bytes = max(0, self._total_bytes - record.file_size)
        return True

    def _prune_partitions(self, now: datetime) -> None:
        # Intake only writes into today's partition, so older empty ones are safe to drop.
        today = now.strftime("%Y-%m-%d")
        for directory in self._partitions():
            if directory.name < today:
                with suppress(OSError):
                    directory.rmdir()

    def _find(self, quarantine_id: str) -> tuple[Path, QuarantineRecord] | None:
        for directory in self._partitions():
            metadata_path = directory / f"{quarantine_id}{METADATA_SUFFIX}"
            record = self._read_metadata(metadata_path)
            if record is not None:
                return metadata_path, record
        return None

    def _partitions(self) -> list[Path]:
        try:
            return [entry for entry in self.root.iterdir() if entry.is_dir()]
        except FileNotFoundError:
            return []

    def _iter_records(self):
        for directory in self._partitions():
            try:
                metadata_paths = list(directory.glob(f"*{METADATA_SUFFIX}"))
            except OSError:
                continue
            for metadata_path in metadata_paths:
                record = self._read_metadata(metadata_path)
                if record is not None:
                    yield metadata_path, record

    @staticmethod
    def _read_metadata(metadata_path: Path) -> QuarantineRecord | None:
        try:
            return QuarantineRecord.model_validate_json(metadata_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            logger.error("Unreadable quarantine metadata %s: %s", metadata_path, exc)
            return None

    @staticmethod
    def _write_metadata(metadata_path: Path, record: QuarantineRecord) -> None:
        tmp_path = metadata_path.with_suffix(".tmp")
        tmp_path.write_text(record.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        os.replace(tmp_path, metadata_path)
