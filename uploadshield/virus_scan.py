"""
virus_scan.py – Risk scoring on top of the content scan, with quarantine.

The behaviour score adds up what the content scan saw:

  +30  entropy above 7.8
  +15  entropy above 7.5
  +10  per suspicious pattern
  +25  embedded file signatures
  +20  per threat or warning

A file is high risk at a score of 50 or with any threat, medium risk at 25 or
with more than two warnings. High-risk files are copied into quarantine when
the caller asks for it.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal
import logging

from uploadshield.av_engine import ClamAVClient, EngineResult
from uploadshield.quarantine import QuarantineStore
from uploadshield.results import Ok
from uploadshield.scanner import ContentScanner

logger = logging.getLogger("uploadshield.virus_scan")

RiskLevel = Literal["high", "medium", "low"]
ScannerMode = Literal["off", "auto", "clamav"]

HIGH_RISK_SCORE = 50
MEDIUM_RISK_SCORE = 25


@dataclass
class VirusScanReport:
    risk_level: RiskLevel
    behavior_score: int
    signature_matches: int
    entropy: float
    threats: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suspicious_patterns: list[str] = field(default_factory=list)
    quarantine_id: str | None = None
    engine: EngineResult | None = None

    @property
    def is_safe(self) -> bool:
        return self.risk_level != "high"

    def summary(self) -> dict:
        return {
            "riskLevel": self.risk_level,
            "behaviorScore": self.behavior_score,
            "signatureMatches": self.signature_matches,
            "entropyScore": round(self.entropy, 4),
            "suspiciousPatterns": self.suspicious_patterns,
            "engine": self.engine.status if self.engine else None,
        }


class VirusScanner:
    def __init__(
        self,
        content_scanner: ContentScanner,
        quarantine: QuarantineStore | None = None,
        *,
        engine: ClamAVClient | None = None,
        mode: ScannerMode = "off",
    ):
        self.content_scanner = content_scanner
        self.quarantine = quarantine
        self.engine = engine
        self.mode = mode

    def scan(
        self,
        file_path: str | Path,
        quarantine: bool = True,
        *,
        detected_mime_type: str | None = None,
        metadata: dict | None = None,
    ) -> VirusScanReport:
        """Score ``file_path``. Read errors propagate to the caller."""
        content = Path(file_path).read_bytes()
        result = self.content_scanner.scan_bytes(content, detected_mime_type)
        threats = list(result.threats)
        warnings = list(result.warnings)

        engine_result = self._engine_scan(content)
        if engine_result is not None:
            if engine_result.status == "malicious":
                threats.append(f"Malware signature detected: {engine_result.detail}")
            elif engine_result.status == "error" and self.mode == "clamav":
                threats.append(f"Antivirus scan failed: {engine_result.detail}")

        analysis = result.content_analysis
        score = 0
        suspicious_patterns = []
        if analysis.entropy > 7.8:
            score += 30
            suspicious_patterns.append("High entropy detected")
        elif analysis.entropy > 7.5:
            score += 15
            suspicious_patterns.append("Elevated entropy detected")
        score += analysis.suspicious_pattern_count * 10
        if analysis.embedded_files_detected:
            score += 25
            suspicious_patterns.append("Embedded files detected")
        signature_matches = len(threats) + len(warnings)
        score += signature_matches * 20

        if score >= HIGH_RISK_SCORE or threats:
            risk_level = "high"
        elif score >= MEDIUM_RISK_SCORE or len(warnings) > 2:
            risk_level = "medium"
        else:
            risk_level = "low"

        report = VirusScanReport(
            risk_level=risk_level,
            behavior_score=score,
            signature_matches=signature_matches,
            entropy=analysis.entropy,
            threats=threats,
            warnings=warnings,
            suspicious_patterns=suspicious_patterns,
            engine=engine_result,
        )

        if quarantine and not report.is_safe and self.quarantine is not None:
            report.quarantine_id = self._quarantine(file_path, report, metadata)
        return report

    def _engine_scan(self, content: bytes) -> EngineResult | None:
        if self.mode == "off" or self.engine is None:
            return None
        engine_result = self.engine.scan(content)
        if engine_result.status == "error":
            logger.warning("Antivirus engine error (mode=%s): %s", self.mode, engine_result.detail)
        return engine_result

    def _quarantine(self, file_path: str | Path, report: VirusScanReport, metadata: dict | None) -> str | None:
        outcome = self.quarantine.quarantine_file(
            file_path,
            f"High-risk file detected (score: {report.behavior_score})",
            {
                "behaviorScore": report.behavior_score,
                "signatureMatches": report.signature_matches,
                "entropy": report.entropy,
                "threats": report.threats,
                "warnings": report.warnings,
                **(metadata or {}),
            },
        )
        if isinstance(outcome, Ok):
            logger.warning(
                "High-risk file quarantined: path=%s id=%s score=%d",
                file_path, outcome.value.quarantine_id, report.behavior_score,
            )
            return outcome.value.quarantine_id
        logger.error("Could not quarantine high-risk file %s: %s", file_path, outcome.reason)
        return None
