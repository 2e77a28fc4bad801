"""Channel authentication and citizen identity for API endpoints.

Citizens never call the API directly: a front-end channel (IVR,
WhatsApp bot, CSC kiosk) authenticates the citizen and forwards an
opaque owner identifier in ``X-Owner-Id``.  The channel itself proves it
is trusted with ``X-Channel-Key``, compared in constant time against
``SAMAYSETU_CHANNEL_API_KEY``.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from config.settings import settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_channel_key_header = APIKeyHeader(name="X-Channel-Key", auto_error=False)
_owner_header = APIKeyHeader(name="X-Owner-Id", auto_error=False)

_MAX_OWNER_ID_LENGTH = 128


async def require_channel_key(
    request: Request,
    api_key: str | None = Security(_channel_key_header),
) -> str:
    """FastAPI dependency that enforces channel authentication.

    Returns the validated key on success; raises 401/403 on failure.
    """
    configured_key = settings.channel_api_key

    if not configured_key:
        if not settings.is_production:
            logger.debug("auth.channel_key_not_configured")
            return ""
        logger.error("auth.channel_key_not_configured_production")
        raise HTTPException(status_code=503, detail="Channel authentication is not configured.")

    if not api_key:
        logger.warning("auth.missing_channel_key", path=request.url.path)
        raise HTTPException(
            status_code=401,
            detail="Missing X-Channel-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not hmac.compare_digest(api_key.encode(), configured_key.encode()):
        logger.warning("auth.invalid_channel_key", path=request.url.path)
        raise HTTPException(status_code=403, detail="Invalid channel key.")

    return api_key


async def require_owner(
    owner_id: str | None = Security(_owner_header),
    _channel: str = Security(require_channel_key),
) -> str:
    """FastAPI dependency returning the citizen identity for the request."""
    if not owner_id or not owner_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header.")
    owner_id = owner_id.strip()
    if len(owner_id) > _MAX_OWNER_ID_LENGTH:
        raise HTTPException(status_code=400, detail="X-Owner-Id is too long.")
    return owner_id
