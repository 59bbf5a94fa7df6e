import asyncio
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import imagegen
from conftest import BrokenDB
from uploadshield.main import app
from uploadshield.storage import StorageError

ADMIN = {"X-API-Key": "admin-key"}
USER = {"X-API-Key": "test-secret-key"}


def upload(client, content=None, filename="photo.png", headers=None):
    content = imagegen.png() if content is None else content
    return client.post(
        "/upload",
        files={"file": (filename, content, "application/octet-stream")},
        headers=headers,
    )


def malicious_png():
    return imagegen.png() + b"<script>alert(1)</script>" + imagegen.FILLER * 64


# ─── Accepted uploads ─────────────────────────────────────────────────────────

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_upload_accepts_valid_png(client, fake_db, service_env):
    r = upload(client)
    assert r.status_code == 200
    body = r.json()
    assert body["isValid"] is True
    assert body["detectedMimeType"] == "image/png"
    assert body["errors"] == []
    assert body["dbStatus"] == "stored"
    assert body["size"] == len(imagegen.png())
    assert len(body["sha256"]) == 64
    assert body["secureFilename"].endswith("_photo.png")

    stored = Path(body["storagePath"])
    assert stored.read_bytes() == imagegen.png()
    assert (service_env / "uploads").resolve() in stored.parents

    assert r.headers["X-RateLimit-Limit"] == "50"
    assert r.headers["X-RateLimit-Remaining"] == "49"


def test_upload_record_is_written(client, fake_db):
    body = upload(client).json()
    assert len(fake_db.uploads.docs) == 1
    doc = fake_db.uploads.docs[0]
    assert doc["sha256"] == body["sha256"]
    assert doc["original_filename"] == "photo.png"
    assert doc["secure_filename"] == body["secureFilename"]
    assert doc["mime_type"] == "image/png"
    assert doc["user_id"] == "anonymous"
    assert doc["client_ip"] == "testclient"
    assert "created_at" in doc


def test_temp_files_are_removed(client, service_env):
    upload(client)
    upload(client, filename="evil.exe")
    assert list((service_env / "tmp").iterdir()) == []


def test_blocking_file_work_runs_off_the_event_loop(client, monkeypatch):
    offloaded = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(func, /, *args, **kwargs):
        offloaded.append(func.__name__)
        return await real_to_thread(func, *args, **kwargs)

    monkeypatch.setattr("uploadshield.main.asyncio.to_thread", recording_to_thread)
    assert upload(client).status_code == 200
    assert offloaded[:2] == ["_write_temp", "validate"]
    assert "put" in offloaded


def test_client_declared_type_is_ignored(client):
    r = client.post("/upload", files={"file": ("photo.png", imagegen.png(), "application/x-msdownload")})
    assert r.status_code == 200
    assert r.json()["detectedMimeType"] == "image/png"


def test_upload_succeeds_when_db_insert_fails(client, monkeypatch):
    monkeypatch.setattr("uploadshield.main.get_db", lambda: BrokenDB())
    r = upload(client)
    assert r.status_code == 200
    assert r.json()["dbStatus"] == "unavailable"


def test_upload_succeeds_when_db_is_unreachable(client, monkeypatch):
    def no_db():
        raise RuntimeError("no mongo")

    monkeypatch.setattr("uploadshield.main.get_db", no_db)
    r = upload(client)
    assert r.status_code == 200
    assert r.json()["dbStatus"] == "unavailable"


def test_storage_failure_is_503(client, monkeypatch):
    def broken_put(*args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(client.app.state.services.blob_store, "put", broken_put)
    r = upload(client)
    assert r.status_code == 503
    assert r.json()["detail"] == "Storage unavailable"


# ─── Rejected uploads ─────────────────────────────────────────────────────────

def test_dangerous_extension_is_rejected(client, fake_db):
    r = upload(client, filename="evil.png.exe")
    assert r.status_code == 422
    body = r.json()
    assert body["isValid"] is False
    assert body["errors"][0] == "Dangerous file extension: .exe"
    assert fake_db.uploads.docs == []


def test_non_image_content_is_rejected(client):
    r = upload(client, content=b"just some text", filename="notes.png")
    assert r.status_code == 422
    assert "Invalid file format - unsupported image type" in r.json()["errors"]


def test_script_in_image_is_rejected_and_quarantined(client, service_env):
    r = upload(client, content=malicious_png())
    assert r.status_code == 422
    body = r.json()
    assert "High risk: JavaScript injection detected" in body["threats"]
    assert body["quarantineId"]
    assert any(p.name.endswith("_metadata.json") for p in (service_env / "quarantine").rglob("*"))
    assert not (service_env / "uploads").exists() or list((service_env / "uploads").rglob("*.png")) == []


def test_threat_marks_the_caller_suspicious(client):
    upload(client, content=malicious_png())
    r = client.get("/api/v1/admin/rate-limit/testclient")
    assert r.status_code == 200
    assert r.json()["is_suspicious"] is True


def test_path_traversal_filename_is_neutralised(client):
    r = upload(client, filename="../../etc/photo.png")
    assert r.status_code == 200
    body = r.json()
    assert "/" not in body["secureFilename"]
    assert body["secureFilename"].endswith("_photo.png")


# ─── Size and rate limits ─────────────────────────────────────────────────────

@pytest.fixture
def small_limit_client(service_env, fake_db, monkeypatch):
    monkeypatch.setenv("MAX_UPLOAD_BYTES", "1024")
    with TestClient(app) as test_client:
        yield test_client


def test_upload_over_max_bytes_is_413(small_limit_client):
    r = upload(small_limit_client, content=imagegen.png(body_size=4096))
    assert r.status_code == 413


def test_eleventh_upload_in_a_minute_is_429(client):
    for _ in range(10):
        assert upload(client).status_code == 200

    r = upload(client)
    assert r.status_code == 429
    body = r.json()
    assert body["tier"] == "burst"
    assert 0 < body["retryAfter"] <= 60
    assert r.headers["Retry-After"] == str(body["retryAfter"])
    assert r.headers["X-RateLimit-Remaining"] == "0"

    events = client.get("/api/v1/admin/security/events").json()["items"]
    assert events[0]["type"] == "RATE_LIMIT_EXCEEDED"
    assert events[0]["metadata"]["tier"] == "burst"


# ─── Authentication ───────────────────────────────────────────────────────────

def test_upload_requires_api_key(authed_client):
    r = upload(authed_client)
    assert r.status_code == 401


def test_upload_rejects_unknown_api_key(authed_client):
    r = upload(authed_client, headers={"X-API-Key": "nope"})
    assert r.status_code == 401


def test_upload_with_api_key_records_user(authed_client, fake_db):
    r = upload(authed_client, headers=USER)
    assert r.status_code == 200
    assert fake_db.uploads.docs[0]["user_id"] == "testuser"


def test_failed_authentication_is_audited(authed_client):
    upload(authed_client, headers={"X-API-Key": "nope"})
    events = authed_client.get("/api/v1/admin/security/events", headers=ADMIN).json()["items"]
    assert any(e["type"] == "AUTHENTICATION_FAILURE" for e in events)


def test_admin_endpoints_need_admin_user(authed_client):
    r = authed_client.get("/api/v1/admin/quarantine", headers=USER)
    assert r.status_code == 403
    events = authed_client.get("/api/v1/admin/security/events", headers=ADMIN).json()["items"]
    denied = [e for e in events if e["type"] == "UNAUTHORIZED_ACCESS"]
    assert denied and denied[0]["userId"] == "testuser"


def test_admin_endpoints_need_a_key(authed_client):
    assert authed_client.get("/api/v1/admin/security/stats").status_code == 401


# ─── Admin endpoints ──────────────────────────────────────────────────────────

def test_quarantine_listing_and_release(authed_client):
    quarantine_id = upload(authed_client, content=malicious_png(), headers=USER).json()["quarantineId"]

    listing = authed_client.get("/api/v1/admin/quarantine", headers=ADMIN).json()
    assert [item["quarantineId"] for item in listing["items"]] == [quarantine_id]
    assert listing["stats"]["count"] == 1

    record = authed_client.get(f"/api/v1/admin/quarantine/{quarantine_id}", headers=ADMIN).json()
    assert record["metadata"]["userId"] == "testuser"

    released = authed_client.delete(f"/api/v1/admin/quarantine/{quarantine_id}", headers=ADMIN)
    assert released.status_code == 200
    assert released.json()["released"] is True

    again = authed_client.delete(f"/api/v1/admin/quarantine/{quarantine_id}", headers=ADMIN)
    assert again.status_code == 404

    events = authed_client.get("/api/v1/admin/security/events", headers=ADMIN).json()["items"]
    assert any(e["action"] == "QUARANTINE_RELEASE" and e["userId"] == "admin" for e in events)


def test_unknown_quarantine_record_is_404(client):
    assert client.get("/api/v1/admin/quarantine/" + "0" * 32).status_code == 404


def test_security_stats(client):
    upload(client, content=malicious_png())
    stats = client.get("/api/v1/admin/security/stats").json()
    assert stats["events_by_type"]["MALICIOUS_FILE_DETECTED"] == 1
    assert stats["quarantined_files"] >= 1
    assert stats["quarantine"]["count"] == 1


def test_mark_suspicious_and_read_status(client):
    r = client.post(
        "/api/v1/admin/rate-limit/suspicious",
        json={"identifier": "198.51.100.9", "duration_seconds": 600},
    )
    assert r.status_code == 200
    status = client.get("/api/v1/admin/rate-limit/198.51.100.9").json()
    assert status["is_suspicious"] is True
    assert status["tiers"] == {}


def test_mark_suspicious_validates_body(client):
    r = client.post("/api/v1/admin/rate-limit/suspicious", json={"identifier": ""})
    assert r.status_code == 422
