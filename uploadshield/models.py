from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ValidationVerdict(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    is_valid: bool
    secure_filename: str | None = None
    detected_mime_type: str | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    threats: tuple[str, ...] = ()
    quarantine_id: str | None = None


class ContentAnalysis(_CamelModel):
    entropy: float = Field(ge=0.0, le=8.0)
    suspicious_pattern_count: int = 0
    embedded_files_detected: bool = False


class ContentScanResult(_CamelModel):
    threats: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    content_analysis: ContentAnalysis

    @computed_field
    @property
    def is_safe(self) -> bool:
        return not self.threats


class QuarantineRecord(_CamelModel):
    quarantine_id: str
    original_path: str
    original_filename: str
    reason: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    file_size: int = Field(ge=0)
    file_hash: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: Literal["quarantined"] = "quarantined"


class SecurityEventType(str, Enum):
    FILE_UPLOAD_BLOCKED = "FILE_UPLOAD_BLOCKED"
    MALICIOUS_FILE_DETECTED = "MALICIOUS_FILE_DETECTED"
    PATH_TRAVERSAL_ATTEMPT = "PATH_TRAVERSAL_ATTEMPT"
    SUSPICIOUS_FILE_CONTENT = "SUSPICIOUS_FILE_CONTENT"
    QUARANTINE_ACTION = "QUARANTINE_ACTION"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    AUTHENTICATION_FAILURE = "AUTHENTICATION_FAILURE"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    SECURITY_SCAN_RESULT = "SECURITY_SCAN_RESULT"


class SecuritySeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEventResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    BLOCKED = "BLOCKED"
    QUARANTINED = "QUARANTINED"


class SecurityEvent(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    type: SecurityEventType
    severity: SecuritySeverity
    user_id: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    filename: str | None = None
    file_path: str | None = None
    file_size: int | None = None
    mime_type: str | None = None
    threats: list[str] | None = None
    warnings: list[str] | None = None
    quarantine_id: str | None = None
    error_message: str | None = None
    stack_trace: str | None = None
    metadata: dict[str, Any] | None = None
    source: str = "UploadShield-FileUpload"
    action: str = "UNKNOWN"
    result: SecurityEventResult = SecurityEventResult.FAILURE


class UploadRecord(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    original_filename: str
    secure_filename: str
    sha256: str
    mime_type: str
    size: int = Field(ge=0)
    storage_path: str
    warnings: list[str] = Field(default_factory=list)
    user_id: str = Field(default="anonymous")
    client_ip: str = Field(default="unknown")
