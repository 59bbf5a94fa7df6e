"""
scanner.py – Content scanning of uploaded image bytes.

The whole file is inspected as a latin-1 string so byte patterns and text
patterns can be matched the same way. Threats block a file; warnings never do.
The pattern tables and thresholds live in ``ScanPolicy`` so the false-positive
calibration can be tuned per deployment.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal
import logging
import struct

from uploadshield.models import ContentAnalysis, ContentScanResult
from uploadshield.signatures import ENTROPY_WINDOW, detect_mime_type, prefix_entropy

logger = logging.getLogger("uploadshield.scanner")

MIB = 1024 * 1024

Severity = Literal["high", "medium", "low"]


def _has_pe_header(content: bytes, offset: int) -> bool:
    """An MZ stub counts only if its e_lfanew field points at a PE header."""
    lfanew_at = offset + 0x3C
    if lfanew_at + 4 > len(content):
        return False
    (lfanew,) = struct.unpack_from("<I", content, lfanew_at)
    pe_at = offset + lfanew
    return content[pe_at:pe_at + 4] == b"PE\x00\x00"


def _dos_executable(content: bytes) -> bool:
    if b"This program cannot be run in DOS mode" in content:
        return True
    start = content.find(b"MZ")
    while start != -1:
        if _has_pe_header(content, start):
            return True
        start = content.find(b"MZ", start + 1)
    return False


@dataclass(frozen=True)
class ExecutableSignature:
    description: str
    pattern: bytes | None = None
    matcher: Callable[[bytes], bool] | None = None

    def found_in(self, content: bytes) -> bool:
        if self.matcher is not None:
            return self.matcher(content)
        return self.pattern is not None and self.pattern in content


@dataclass(frozen=True)
class ScriptPattern:
    pattern: str
    severity: Severity
    description: str


@dataclass(frozen=True)
class PolyglotIndicator:
    pattern: str
    description: str
    native_type: str | None = None


DEFAULT_EXECUTABLE_SIGNATURES = (
    ExecutableSignature("DOS/Windows executable header", matcher=_dos_executable),
    ExecutableSignature("Linux ELF executable", pattern=b"\x7fELF"),
    ExecutableSignature("Mach-O executable (fat binary)", pattern=b"\xca\xfe\xba\xbe"),
    ExecutableSignature("Mach-O executable", pattern=b"\xfe\xed\xfa"),
    ExecutableSignature("ZIP/JAR archive (potential malware container)", pattern=b"PK\x03\x04"),
    ExecutableSignature("ZIP archive directory", pattern=b"PK\x05\x06"),
    ExecutableSignature("RAR archive signature", pattern=b"Rar!"),
)

DEFAULT_SCRIPT_PATTERNS = (
    ScriptPattern("<script", "high", "JavaScript injection"),
    ScriptPattern("</script>", "high", "JavaScript injection"),
    ScriptPattern("javascript:", "high", "JavaScript protocol"),
    ScriptPattern("vbscript:", "high", "VBScript protocol"),
    ScriptPattern("onload=", "medium", "Event handler injection"),
    ScriptPattern("onerror=", "medium", "Error handler injection"),
    ScriptPattern("onclick=", "medium", "Click handler injection"),
    ScriptPattern("eval(", "high", "Dynamic code execution"),
    ScriptPattern("document.write", "medium", "DOM manipulation"),
    ScriptPattern("innerhtml", "low", "HTML injection potential"),
)

DEFAULT_SQL_PATTERNS = (
    "union select", "drop table", "delete from", "insert into",
    "update set", "alter table", "create table", "exec(",
    "xp_cmdshell", "sp_executesql",
)

DEFAULT_COMMAND_PATTERNS = (
    "$(", "`", "&&", "||", ";", "|",
    "cmd.exe", "/bin/sh", "/bin/bash", "powershell",
)

DEFAULT_POLYGLOT_INDICATORS = (
    PolyglotIndicator("GIF89a", "GIF header in non-GIF file", "image/gif"),
    PolyglotIndicator("GIF87a", "GIF header in non-GIF file", "image/gif"),
    PolyglotIndicator("JFIF", "JPEG header in non-JPEG file", "image/jpeg"),
    PolyglotIndicator("\x89PNG", "PNG header in non-PNG file", "image/png"),
    PolyglotIndicator("%PDF", "PDF header in image file"),
    PolyglotIndicator("<?php", "PHP code in image file"),
    PolyglotIndicator("<%", "ASP/JSP code in image file"),
)

DEFAULT_STEGANOGRAPHY_PATTERNS = (
    "steghide", "outguess", "jsteg", "f5", "lsb", "least significant bit",
)


@dataclass(frozen=True)
class ScanPolicy:
    executable_signatures: tuple[ExecutableSignature, ...] = DEFAULT_EXECUTABLE_SIGNATURES
    script_patterns: tuple[ScriptPattern, ...] = DEFAULT_SCRIPT_PATTERNS
    sql_patterns: tuple[str, ...] = DEFAULT_SQL_PATTERNS
    command_patterns: tuple[str, ...] = DEFAULT_COMMAND_PATTERNS
    command_pattern_threshold: int = 3
    polyglot_indicators: tuple[PolyglotIndicator, ...] = DEFAULT_POLYGLOT_INDICATORS
    steganography_patterns: tuple[str, ...] = DEFAULT_STEGANOGRAPHY_PATTERNS
    entropy_window: int = ENTROPY_WINDOW
    entropy_threat_threshold: float = 7.8
    entropy_warning_threshold: float = 7.5
    null_byte_ratio_threshold: float = 0.1
    large_file_warning_bytes: int = 100 * MIB


@dataclass
class _Findings:
    threats: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suspicious: int = 0
    embedded: bool = False


class ContentScanner:
    def __init__(self, policy: ScanPolicy | None = None):
        self.policy = policy or ScanPolicy()

    def scan(self, file_path: str | Path) -> ContentScanResult:
        """Read ``file_path`` and scan it. I/O errors propagate to the caller."""
        content = Path(file_path).read_bytes()
        return self.scan_bytes(content)

    def scan_bytes(self, content: bytes, detected_mime_type: str | None = None) -> ContentScanResult:
        if detected_mime_type is None:
            detected_mime_type = detect_mime_type(content[:16])

        text = content.decode("latin-1")
        lowered = text.lower()
        found = _Findings()

        self._check_executables(content, found)
        self._check_scripts(lowered, found)
        self._check_sql(lowered, found)
        self._check_commands(text, found)
        self._check_polyglot(text, detected_mime_type, found)

        entropy = prefix_entropy(content, self.policy.entropy_window)
        if entropy > self.policy.entropy_threat_threshold:
            found.threats.append(
                f"Very high entropy ({entropy:.2f}) - encrypted or obfuscated content"
            )
        elif entropy > self.policy.entropy_warning_threshold:
            found.warnings.append(f"High entropy ({entropy:.2f}) - possibly compressed content")

        null_bytes = content.count(0)
        if content and null_bytes > len(content) * self.policy.null_byte_ratio_threshold:
            found.warnings.append(f"High null byte ratio ({null_bytes}) - possible data hiding")

        if len(content) > self.policy.large_file_warning_bytes:
            found.warnings.append(
                f"Very large file ({round(len(content) / MIB)}MB) - denial of service risk"
            )

        for pattern in self.policy.steganography_patterns:
            if pattern.lower() in lowered:
                found.warnings.append(f"Steganography indicator detected: {pattern}")

        if found.threats:
            logger.info(
                "Content scan found %d threat(s), %d warning(s)",
                len(found.threats), len(found.warnings),
            )

        return ContentScanResult(
            threats=found.threats,
            warnings=found.warnings,
            content_analysis=ContentAnalysis(
                entropy=min(8.0, max(0.0, entropy)),
                suspicious_pattern_count=found.suspicious,
                embedded_files_detected=found.embedded,
            ),
        )

    def _check_executables(self, content: bytes, found: _Findings) -> None:
        for signature in self.policy.executable_signatures:
            if signature.found_in(content):
                found.threats.append(f"Dangerous: {signature.description} detected")
                found.suspicious += 1
                found.embedded = True

    def _check_scripts(self, lowered: str, found: _Findings) -> None:
        for item in self.policy.script_patterns:
            if item.pattern.lower() not in lowered:
                continue
            if item.severity == "high":
                found.threats.append(f"High risk: {item.description} detected")
            elif item.severity == "medium":
                found.warnings.append(f"Medium risk: {item.description} detected")
            else:
                found.warnings.append(f"Low risk: {item.description} detected")
            found.suspicious += 1

    def _check_sql(self, lowered: str, found: _Findings) -> None:
        for pattern in self.policy.sql_patterns:
            if pattern in lowered:
                found.threats.append(f"SQL injection pattern detected: {pattern}")
                found.suspicious += 1

    def _check_commands(self, text: str, found: _Findings) -> None:
        matches = sum(1 for pattern in self.policy.command_patterns if pattern in text)
        if matches > self.policy.command_pattern_threshold:
            found.threats.append(f"Multiple command injection patterns detected ({matches} patterns)")
            found.suspicious += matches

    def _check_polyglot(self, text: str, detected_mime_type: str | None, found: _Findings) -> None:
        for indicator in self.policy.polyglot_indicators:
            if indicator.pattern not in text:
                continue
            if indicator.native_type is not None and indicator.native_type == detected_mime_type:
                continue
            found.threats.append(f"Polyglot attack: {indicator.description}")
            found.suspicious += 1
