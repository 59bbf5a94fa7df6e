from contextlib import asynccontextmanager
from hashlib import sha256
from pathlib import Path
import asyncio
import logging
import os
import tempfile

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from uploadshield.auth import ANONYMOUS, client_ip, get_current_user
from uploadshield.db import ensure_upload_indexes, get_db
from uploadshield.logging_config import setup_logging
from uploadshield.models import UploadRecord
from uploadshield.routers import admin
from uploadshield.services import SecurityServices
from uploadshield.settings import Settings
from uploadshield.storage import StorageError

logger = logging.getLogger("uploadshield")

READ_CHUNK_BYTES = 1024 * 1024


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.environment)
    services = SecurityServices(settings)
    app.state.services = services
    try:
        await ensure_upload_indexes()
    except Exception:
        # The API stays available even if indexes can't be ensured at startup.
        logger.exception("Failed to ensure MongoDB indexes on startup")
    services.start()
    try:
        yield
    finally:
        services.shutdown()


app = FastAPI(title="UploadShield API", lifespan=lifespan)
app.include_router(admin.router)


@app.get("/health")
def health():
    return {"status": "ok"}


def _declared_size(request: Request, file: UploadFile) -> int:
    if file.size is not None:
        return file.size
    cl = request.headers.get("content-length")
    return int(cl) if cl and cl.isdigit() else 0


async def _read_capped(file: UploadFile, max_bytes: int) -> bytes:
    """Read the upload in chunks; raise 413 as soon as it exceeds ``max_bytes``."""
    chunks = []
    total = 0
    while True:
        chunk = await file.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(status_code=413, detail="File too large")
        chunks.append(chunk)
    return b"".join(chunks)


def _write_temp(content: bytes, tmp_dir: str) -> Path:
    Path(tmp_dir).mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix="upload_", suffix=".tmp", dir=tmp_dir)
    with os.fdopen(fd, "wb") as handle:
        handle.write(content)
    return Path(name)


@app.post("/upload")
async def upload(
    request: Request,
    file: UploadFile = File(...),
    current_user: str = Depends(get_current_user),
):
    services: SecurityServices = request.app.state.services
    settings = services.settings
    ip_address = client_ip(request)
    user_agent = request.headers.get("user-agent")
    user_id = None if current_user == ANONYMOUS else current_user
    filename = file.filename or ""

    decision = services.rate_limiter.check_upload(ip_address, user_id, _declared_size(request, file))
    if not decision.allowed:
        services.security_log.log_rate_limit_exceeded(
            ip_address,
            decision.tier,
            decision.retry_after,
            reason=decision.reason,
            user_id=user_id,
            user_agent=user_agent,
            filename=filename,
        )
        return JSONResponse(
            status_code=429,
            content={
                "detail": decision.reason,
                "tier": decision.tier,
                "retryAfter": decision.retry_after,
            },
            headers=decision.headers(),
        )

    # Content-Length includes the multipart framing, hence the extra chunk of slack.
    cl = request.headers.get("content-length")
    if cl and cl.isdigit() and int(cl) > settings.max_upload_bytes + READ_CHUNK_BYTES:
        raise HTTPException(status_code=413, detail="File too large")
    content = await _read_capped(file, settings.max_upload_bytes)

    tmp_path = await asyncio.to_thread(_write_temp, content, settings.tmp_dir)
    try:
        verdict = await asyncio.to_thread(
            services.validator.validate,
            tmp_path,
            filename,
            user_id or ip_address,
            ip_address=ip_address,
            user_id=user_id,
            user_agent=user_agent,
        )
    finally:
        tmp_path.unlink(missing_ok=True)

    if not verdict.is_valid:
        if verdict.threats:
            services.rate_limiter.mark_suspicious(user_id or ip_address)
        logger.warning(
            "Upload rejected: file=%r errors=%d threats=%d ip=%s",
            filename, len(verdict.errors), len(verdict.threats), ip_address,
        )
        return JSONResponse(
            status_code=422,
            content=verdict.model_dump(mode="json", by_alias=True),
            headers=decision.headers(),
        )

    file_sha256 = sha256(content).hexdigest()
    try:
        storage_path = await asyncio.to_thread(
            services.blob_store.put, user_id or ip_address, verdict.secure_filename, content
        )
    except (StorageError, OSError):
        logger.exception("Failed to store accepted upload %s", verdict.secure_filename)
        raise HTTPException(status_code=503, detail="Storage unavailable")

    record = UploadRecord(
        original_filename=filename,
        secure_filename=verdict.secure_filename,
        sha256=file_sha256,
        mime_type=verdict.detected_mime_type,
        size=len(content),
        storage_path=str(storage_path),
        warnings=list(verdict.warnings),
        user_id=current_user,
        client_ip=ip_address,
    )
    db_status = "skipped"
    try:
        db = get_db()
        await db.uploads.insert_one(record.model_dump())
        db_status = "stored"
    except Exception:
        logger.exception("Failed to store upload record for %s", filename)
        db_status = "unavailable"

    logger.info(
        "Upload accepted: file=%r secure=%s mime=%s size=%d",
        filename, verdict.secure_filename, verdict.detected_mime_type, len(content),
    )
    return JSONResponse(
        content={
            **verdict.model_dump(mode="json", by_alias=True),
            "sha256": file_sha256,
            "size": len(content),
            "storagePath": str(storage_path),
            "dbStatus": db_status,
        },
        headers=decision.headers(),
    )
