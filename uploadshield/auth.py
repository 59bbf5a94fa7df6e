"""
auth.py – API key authentication for the upload API.

Two modes via the AUTH_MODE environment variable:
  off      – No authentication (default); every caller is "anonymous"
  apikey   – API key in the X-API-Key header

API keys are a comma separated list in UPLOAD_API_KEYS. Each key may carry an
owner prefix: "user1:abc123,user2:xyz456". Keys without a prefix resolve to
"anonymous".

Admin endpoints additionally require the resolved user id to be listed in
ADMIN_USER_IDS (ignored when AUTH_MODE=off).
"""

import logging

from fastapi import HTTPException, Request

from uploadshield.models import SecurityEventResult, SecurityEventType, SecuritySeverity
from uploadshield.services import SecurityServices

logger = logging.getLogger("uploadshield.auth")

ANONYMOUS = "anonymous"


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _services(request: Request) -> SecurityServices:
    return request.app.state.services


async def get_current_user(request: Request) -> str:
    """
    FastAPI dependency returning the caller's user id.

    AUTH_MODE=off always yields "anonymous". A missing or unknown key raises 401.
    """
    services = _services(request)
    auth_mode = services.settings.auth_mode
    if auth_mode == "off":
        return ANONYMOUS

    if auth_mode == "apikey":
        key = request.headers.get("X-API-Key", "").strip()
        user_id = services.api_keys.get(key) if key else None
        if user_id is None:
            logger.warning(
                "Unauthorized request from %s – invalid or missing API key", client_ip(request),
            )
            services.security_log.log_event(
                SecurityEventType.AUTHENTICATION_FAILURE,
                SecuritySeverity.MEDIUM,
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent"),
                action="API_KEY_AUTH",
                error_message="Invalid or missing API key",
            )
            raise HTTPException(
                status_code=401,
                detail="Invalid or missing API key. Provide the X-API-Key header.",
            )
        return user_id

    # Unknown mode – fail closed
    raise HTTPException(status_code=500, detail=f"Unknown AUTH_MODE: {auth_mode}")


async def require_admin(request: Request) -> str:
    user_id = await get_current_user(request)
    services = _services(request)
    if services.settings.auth_mode == "off" or user_id in services.settings.admin_user_ids:
        return user_id

    logger.warning("Admin access denied for user %s from %s", user_id, client_ip(request))
    services.security_log.log_event(
        SecurityEventType.UNAUTHORIZED_ACCESS,
        SecuritySeverity.HIGH,
        user_id=user_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        action="ADMIN_ACCESS",
        result=SecurityEventResult.BLOCKED,
    )
    raise HTTPException(status_code=403, detail="Admin privileges required")
