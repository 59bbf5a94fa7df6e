from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from uploadshield.auth import require_admin
from uploadshield.results import Err

router = APIRouter(
    prefix="/api/v1/admin",
    tags=["Security Administration"],
    dependencies=[Depends(require_admin)],
)


class SuspiciousMark(BaseModel):
    identifier: str = Field(min_length=1)
    duration_seconds: int = Field(default=3600, gt=0, le=7 * 24 * 60 * 60)


def _dump(model) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


@router.get("/quarantine", summary="List quarantined files, newest first")
def list_quarantine(request: Request, limit: int = Query(100, ge=1, le=1000)):
    quarantine = request.app.state.services.quarantine
    records = quarantine.list_quarantined()
    return {
        "items": [_dump(record) for record in records[:limit]],
        "stats": quarantine.stats(),
    }


@router.get("/quarantine/{quarantine_id}", summary="Get one quarantine record")
def get_quarantine_record(quarantine_id: str, request: Request):
    record = request.app.state.services.quarantine.get_record(quarantine_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Quarantine record not found")
    return _dump(record)


@router.delete("/quarantine/{quarantine_id}", summary="Release a file from quarantine")
def release_quarantine_record(
    quarantine_id: str,
    request: Request,
    admin_id: str = Depends(require_admin),
):
    services = request.app.state.services
    released = services.quarantine.release_file(quarantine_id)
    if isinstance(released, Err):
        raise HTTPException(status_code=404, detail=released.reason)

    services.security_log.log_quarantine_action(
        quarantine_id,
        "RELEASE",
        filename=released.value.original_filename,
        reason="Released by administrator",
        user_id=admin_id,
    )
    return {"released": True, "record": _dump(released.value)}


@router.get("/security/events", summary="Recent security events from memory")
def recent_security_events(request: Request, hours: float = Query(24, gt=0, le=24 * 7)):
    events = request.app.state.services.security_log.recent_events(hours)
    return {"items": [_dump(event) for event in reversed(events)], "count": len(events)}


@router.get("/security/stats", summary="Security event counts for the last 24 hours")
def security_stats(request: Request):
    services = request.app.state.services
    stats = services.security_log.stats()
    stats["quarantine"] = services.quarantine.stats()
    return stats


@router.post("/rate-limit/suspicious", summary="Flag an IP or user id as suspicious")
def mark_suspicious(body: SuspiciousMark, request: Request):
    limiter = request.app.state.services.rate_limiter
    limiter.mark_suspicious(body.identifier, body.duration_seconds)
    return {"identifier": body.identifier, "is_suspicious": True, "duration_seconds": body.duration_seconds}


@router.get("/rate-limit/{identifier}", summary="Current rate limit state for an identity")
def rate_limit_status(identifier: str, request: Request):
    return request.app.state.services.rate_limiter.status(identifier)
