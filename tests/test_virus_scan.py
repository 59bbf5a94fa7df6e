import struct
from unittest.mock import Mock

import pytest

import imagegen
from uploadshield.av_engine import ClamAVClient, EngineResult
from uploadshield.quarantine import QuarantineStore
from uploadshield.scanner import ContentScanner
from uploadshield.virus_scan import VirusScanner

PE_STUB = b"MZ" + imagegen.FILLER * 58 + struct.pack("<I", 64) + b"PE\x00\x00"


@pytest.fixture
def virus_scanner(quarantine):
    return VirusScanner(ContentScanner(), quarantine)


def engine_returning(status, detail):
    engine = Mock(spec=ClamAVClient)
    engine.scan.return_value = EngineResult(status=status, detail=detail)
    return engine


# ─── Scoring ──────────────────────────────────────────────────────────────────

def test_clean_file_is_low_risk(virus_scanner, write_file, quarantine):
    path = write_file("clean.png", imagegen.png())
    report = virus_scanner.scan(path)
    assert report.risk_level == "low"
    assert report.behavior_score == 0
    assert report.is_safe
    assert report.quarantine_id is None
    assert quarantine.list_quarantined() == []


def test_single_warning_is_medium_risk(virus_scanner, write_file):
    path = write_file("handler.png", imagegen.png() + b"onerror=" + imagegen.FILLER * 32)
    report = virus_scanner.scan(path)
    # one suspicious pattern (10) plus one warning (20)
    assert report.behavior_score == 30
    assert report.risk_level == "medium"
    assert report.is_safe


def test_executable_is_high_risk_and_quarantined(virus_scanner, write_file, quarantine):
    path = write_file("payload.png", imagegen.png() + PE_STUB + imagegen.FILLER * 32)
    report = virus_scanner.scan(path, detected_mime_type="image/png", metadata={"userId": "u1"})

    # pattern (10) + embedded (25) + threat (20)
    assert report.behavior_score == 55
    assert report.risk_level == "high"
    assert not report.is_safe
    assert "Embedded files detected" in report.suspicious_patterns
    assert report.quarantine_id is not None

    record = quarantine.get_record(report.quarantine_id)
    assert record.reason == "High-risk file detected (score: 55)"
    assert record.metadata["userId"] == "u1"
    assert record.metadata["behaviorScore"] == 55
    assert path.exists()


def test_any_threat_is_high_risk_regardless_of_score(virus_scanner, write_file):
    path = write_file("sql.png", imagegen.png() + b"drop table x" + imagegen.FILLER * 32)
    report = virus_scanner.scan(path, quarantine=False)
    assert report.risk_level == "high"
    assert report.quarantine_id is None


def test_quarantine_can_be_skipped(virus_scanner, write_file, quarantine):
    path = write_file("payload.png", imagegen.png() + PE_STUB)
    report = virus_scanner.scan(path, quarantine=False)
    assert not report.is_safe
    assert quarantine.list_quarantined() == []


def test_quarantine_failure_keeps_verdict(write_file, tmp_path):
    disabled = QuarantineStore(tmp_path / "q", enabled=False)
    scanner = VirusScanner(ContentScanner(), disabled)
    path = write_file("payload.png", imagegen.png() + PE_STUB)
    report = scanner.scan(path)
    assert report.risk_level == "high"
    assert report.quarantine_id is None


def test_missing_file_raises(virus_scanner, tmp_path):
    with pytest.raises(FileNotFoundError):
        virus_scanner.scan(tmp_path / "gone.png")


def test_summary_is_camel_case(virus_scanner, write_file):
    path = write_file("clean.png", imagegen.png())
    summary = virus_scanner.scan(path).summary()
    assert summary["riskLevel"] == "low"
    assert summary["behaviorScore"] == 0
    assert summary["engine"] is None


# ─── Antivirus engine ─────────────────────────────────────────────────────────

def test_engine_detection_is_a_threat(write_file):
    engine = engine_returning("malicious", "Eicar-Test-Signature")
    scanner = VirusScanner(ContentScanner(), engine=engine, mode="auto")
    report = scanner.scan(write_file("eicar.png", imagegen.png()))
    assert "Malware signature detected: Eicar-Test-Signature" in report.threats
    assert report.risk_level == "high"
    assert report.summary()["engine"] == "malicious"


def test_engine_error_is_ignored_in_auto_mode(write_file):
    engine = engine_returning("error", "ClamAV unavailable")
    scanner = VirusScanner(ContentScanner(), engine=engine, mode="auto")
    report = scanner.scan(write_file("clean.png", imagegen.png()))
    assert report.threats == []
    assert report.risk_level == "low"


def test_engine_error_blocks_in_clamav_mode(write_file):
    engine = engine_returning("error", "ClamAV unavailable")
    scanner = VirusScanner(ContentScanner(), engine=engine, mode="clamav")
    report = scanner.scan(write_file("clean.png", imagegen.png()))
    assert report.threats == ["Antivirus scan failed: ClamAV unavailable"]
    assert report.risk_level == "high"


def test_engine_is_not_called_when_off(write_file):
    engine = engine_returning("malicious", "Eicar-Test-Signature")
    scanner = VirusScanner(ContentScanner(), engine=engine, mode="off")
    scanner.scan(write_file("clean.png", imagegen.png()))
    engine.scan.assert_not_called()


class FakeSocket:
    def __init__(self, response):
        self.response = response
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def sendall(self, data):
        self.sent.append(data)

    def recv(self, size):
        return self.response


@pytest.mark.parametrize("response,status,detail", [
    (b"stream: Eicar-Test-Signature FOUND\0", "malicious", "Eicar-Test-Signature"),
    (b"stream: OK\0", "clean", "No signature matched"),
    (b"INSTREAM size limit exceeded. ERROR\0", "error", "Unexpected response: INSTREAM size limit exceeded. ERROR"),
])
def test_clamav_client_parses_responses(monkeypatch, response, status, detail):
    sock = FakeSocket(response)
    monkeypatch.setattr("uploadshield.av_engine.socket.create_connection", lambda *a, **kw: sock)
    result = ClamAVClient().scan(b"abc")
    assert result == EngineResult(status=status, detail=detail)
    assert sock.sent[0] == b"zINSTREAM\0"
    assert sock.sent[-1] == struct.pack(">I", 0)


def test_clamav_client_reports_unreachable_daemon(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr("uploadshield.av_engine.socket.create_connection", refuse)
    assert ClamAVClient().scan(b"abc") == EngineResult(status="error", detail="ClamAV unavailable")
