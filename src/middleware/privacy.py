"""DPDPA (Digital Personal Data Protection Act) compliance middleware.

Masks PII (Aadhaar numbers, phone numbers, email addresses) before it
reaches the logs, replaces the forwarded citizen identity with a
non-reversible reference, and adds privacy headers to every response.
"""

from __future__ import annotations

import re
from collections.abc import MutableMapping
from typing import Any, Final

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.services.retention import owner_reference

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# PII sanitisation patterns
# ---------------------------------------------------------------------------

# Aadhaar: 12 digits, optionally grouped 4-4-4 by spaces or hyphens.
# Only the last 4 digits survive.
_AADHAAR_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b(\d{4})[\s-]?(\d{4})[\s-]?(\d{4})\b"
)

# Indian mobile numbers: optional +91, then 10 digits starting 6-9.
_PHONE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?:\+91[\s-]?)?([6-9]\d{5})(\d{4})\b"
)

_EMAIL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"
)

# Log fields that may carry citizen-typed text.
_FREE_TEXT_KEYS: Final[frozenset[str]] = frozenset({"text", "details", "complainant_name", "message"})


def sanitize_aadhaar(text: str) -> str:
    """``1234 5678 9012`` becomes ``XXXX-XXXX-9012``."""
    return _AADHAAR_PATTERN.sub(lambda m: f"XXXX-XXXX-{m.group(3)}", text)


def sanitize_phone(text: str) -> str:
    """``+91 9876543210`` becomes ``XXXXXX3210``."""
    return _PHONE_PATTERN.sub(lambda m: f"XXXXXX{m.group(2)}", text)


def sanitize_email(text: str) -> str:
    return _EMAIL_PATTERN.sub("[EMAIL_REDACTED]", text)


def sanitize_pii(text: str) -> str:
    """Apply all PII sanitisation routines to *text*.

    Aadhaar runs first because a 12-digit number also contains a
    phone-shaped run.
    """
    text = sanitize_aadhaar(text)
    text = sanitize_phone(text)
    return sanitize_email(text)


def redact_pii(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """structlog processor: pseudonymise owners and mask PII in string values."""
    owner = event_dict.pop("owner_id", None)
    if isinstance(owner, str):
        event_dict["owner_ref"] = owner_reference(owner)
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = "[TEXT_REDACTED]" if key in _FREE_TEXT_KEYS else sanitize_pii(value)
    return event_dict


# ---------------------------------------------------------------------------
# DPDPA Middleware
# ---------------------------------------------------------------------------

_PRIVACY_HEADERS: Final[dict[str, str]] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "X-DPDPA-Compliant": "true",
    "X-Data-Processing-Purpose": "service-delivery-accountability",
    "X-Data-Retention-Policy": "sessions-90-days; deletion-on-request-24h",
}


class DPDPAMiddleware(BaseHTTPMiddleware):
    """Middleware implementing DPDPA compliance requirements.

    - Logs requests with the citizen identity pseudonymised.
    - Records consent status from ``X-DPDPA-Consent`` when present.
    - Adds privacy headers to every response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        owner = request.headers.get("X-Owner-Id")
        logger.info(
            "request.incoming",
            method=request.method,
            path=sanitize_pii(request.url.path),
            owner_ref=owner_reference(owner) if owner else None,
            consent=request.headers.get("X-DPDPA-Consent", "not_provided"),
        )

        response = await call_next(request)

        for header, value in _PRIVACY_HEADERS.items():
            response.headers[header] = value
        return response
