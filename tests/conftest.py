import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# AUTH_MODE=off before the app is imported so tests don't need an API key
os.environ.setdefault("AUTH_MODE", "off")

from uploadshield.main import app
from uploadshield.quarantine import QuarantineStore
from uploadshield.security_log import SecurityLogger


class FakeUploads:
    def __init__(self):
        self.docs = []

    async def insert_one(self, doc):
        self.docs.append(doc)

    async def create_index(self, *args, **kwargs):
        return "ok"


class FakeDB:
    def __init__(self):
        self.uploads = FakeUploads()


class BrokenUploads:
    async def insert_one(self, doc):
        raise RuntimeError("db down")


class BrokenDB:
    uploads = BrokenUploads()


@pytest.fixture
def service_env(tmp_path, monkeypatch):
    """Point every service directory at tmp_path."""
    monkeypatch.setenv("QUARANTINE_DIR", str(tmp_path / "quarantine"))
    monkeypatch.setenv("SECURITY_LOG_DIR", str(tmp_path / "logs" / "security"))
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("UPLOAD_TMP_DIR", str(tmp_path / "tmp"))
    monkeypatch.setenv("SCANNER_MODE", "off")
    monkeypatch.setenv("AUTH_MODE", "off")
    monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("ALERT_SMTP_HOST", raising=False)
    return tmp_path


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDB()

    async def _no_indexes():
        return None

    monkeypatch.setattr("uploadshield.main.get_db", lambda: db)
    monkeypatch.setattr("uploadshield.main.ensure_upload_indexes", _no_indexes)
    # Keep pytest's own log capture in place.
    monkeypatch.setattr("uploadshield.main.setup_logging", lambda *args: None)
    return db


@pytest.fixture
def client(service_env, fake_db):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def authed_client(service_env, fake_db, monkeypatch):
    """Client with API key authentication enabled."""
    monkeypatch.setenv("AUTH_MODE", "apikey")
    monkeypatch.setenv("UPLOAD_API_KEYS", "testuser:test-secret-key,admin:admin-key")
    monkeypatch.setenv("ADMIN_USER_IDS", "admin")
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def security_log(tmp_path):
    logger = SecurityLogger(tmp_path / "security")
    yield logger
    logger.close()


@pytest.fixture
def quarantine(tmp_path):
    return QuarantineStore(tmp_path / "quarantine")


@pytest.fixture
def write_file(tmp_path):
    """Write bytes under tmp_path/files and return the path."""
    base = tmp_path / "files"
    base.mkdir()

    def _write(name: str, content: bytes) -> Path:
        path = base / name
        path.write_bytes(content)
        return path

    return _write
