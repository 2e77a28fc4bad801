"""Concrete capability providers.

The HTTP providers speak a small JSON protocol to whatever service is
deployed behind the configured URL.  :class:`CatalogRetrievalProvider`
answers retrieval requests from the locally seeded catalogs and is used
when no retrieval service is configured.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from src.models.scheme import SchemeRule
from src.models.timeline import TimelineRule
from src.services.calendar_service import local_today, national_of
from src.services.collaborators import (
    CollaboratorGateway,
    ExtractionResult,
    SynthesisResult,
    TranscriptionResult,
)
from src.services.timeline_catalog import TimelineRuleCatalog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_USER_AGENT = "SamaySetu/1.0 (Citizen Service Accountability)"


# ---------------------------------------------------------------------------
# HTTP base
# ---------------------------------------------------------------------------


class _JsonServiceClient:
    """Thin ``httpx.AsyncClient`` wrapper shared by the HTTP providers.

    Parameters
    ----------
    base_url:
        Root URL of the provider service.
    timeout:
        Per-request timeout in seconds.  The gateway applies its own
        overall bound on top of this.
    """

    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(path, json=payload)
        response.raise_for_status()
        return response.json()


class HttpExtractionProvider(_JsonServiceClient):
    async def extract(self, document_ref: str) -> ExtractionResult:
        data = await self._post("/extract", {"document_ref": document_ref})
        return ExtractionResult.model_validate(data)


class HttpSpeechProvider(_JsonServiceClient):
    async def transcribe(self, audio: bytes, language_hint: str) -> TranscriptionResult:
        data = await self._post(
            "/transcribe",
            {"audio": base64.b64encode(audio).decode("ascii"), "language_hint": language_hint},
        )
        return TranscriptionResult(
            text=str(data.get("text", "")),
            confidence=float(data.get("confidence", 0.0)),
            language=str(data.get("language", language_hint)),
        )

    async def synthesize(self, text: str, language: str) -> SynthesisResult:
        data = await self._post("/synthesize", {"text": text, "language": language})
        return SynthesisResult(
            audio=base64.b64decode(data["audio"]),
            language=language,
            mime_type=str(data.get("mime_type", "audio/mpeg")),
        )


class HttpRetrievalProvider(_JsonServiceClient):
    async def retrieve_timeline_rule(self, service_identifier: str, jurisdiction: str) -> TimelineRule | None:
        response = await self._client.get(
            "/timeline-rules",
            params={"service": service_identifier, "jurisdiction": jurisdiction},
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return TimelineRule.model_validate(response.json())

    async def retrieve_scheme_rules(self, jurisdiction: str) -> list[SchemeRule]:
        response = await self._client.get("/scheme-rules", params={"jurisdiction": jurisdiction})
        response.raise_for_status()
        return [SchemeRule.model_validate(item) for item in response.json()]


class HttpGenerationProvider(_JsonServiceClient):
    async def generate(self, facts: dict[str, Any], language: str) -> str:
        data = await self._post("/generate", {"facts": facts, "language": language})
        return str(data.get("text", ""))


# ---------------------------------------------------------------------------
# Local catalog retrieval
# ---------------------------------------------------------------------------


class CatalogRetrievalProvider:
    """Retrieval backed by the in-process timeline catalog and scheme list."""

    __slots__ = ("_schemes", "_timelines", "_timezone")

    def __init__(
        self,
        timelines: TimelineRuleCatalog,
        schemes: list[SchemeRule],
        *,
        timezone: str = "Asia/Kolkata",
    ) -> None:
        self._timelines = timelines
        self._schemes = list(schemes)
        self._timezone = timezone

    async def retrieve_timeline_rule(self, service_identifier: str, jurisdiction: str) -> TimelineRule | None:
        today = local_today(datetime.now(UTC), self._timezone)
        snapshot = self._timelines.snapshot()
        rule = snapshot.find(service_identifier, jurisdiction, today)
        if rule is None and national_of(jurisdiction) != jurisdiction:
            # Central services are published once for the whole country.
            rule = snapshot.find(service_identifier, national_of(jurisdiction), today)
        return rule

    async def retrieve_scheme_rules(self, jurisdiction: str) -> list[SchemeRule]:
        scope = {jurisdiction, national_of(jurisdiction)}
        return [rule for rule in self._schemes if rule.jurisdiction in scope]


def build_gateway(settings: Any, *, timelines: TimelineRuleCatalog, schemes: list[SchemeRule]) -> CollaboratorGateway:
    """Wire providers from settings; unset URLs leave the provider absent."""
    timeout = settings.collaborator_timeout_seconds
    retrieval: Any = (
        HttpRetrievalProvider(settings.retrieval_url, timeout)
        if settings.retrieval_url
        else CatalogRetrievalProvider(timelines, schemes, timezone=settings.timezone)
    )
    gateway = CollaboratorGateway(
        extraction=HttpExtractionProvider(settings.extraction_url, timeout) if settings.extraction_url else None,
        speech=HttpSpeechProvider(settings.speech_url, timeout) if settings.speech_url else None,
        retrieval=retrieval,
        generation=HttpGenerationProvider(settings.generation_url, timeout) if settings.generation_url else None,
        max_retries=settings.collaborator_max_retries,
        timeout_seconds=timeout,
        backoff_min_seconds=settings.collaborator_backoff_min_seconds,
        backoff_max_seconds=settings.collaborator_backoff_max_seconds,
    )
    logger.info(
        "collaborators.configured",
        extraction=gateway.extraction is not None,
        speech=gateway.speech is not None,
        retrieval=type(retrieval).__name__,
        generation=gateway.generation is not None,
    )
    return gateway


async def close_gateway(gateway: CollaboratorGateway) -> None:
    for provider in (gateway.extraction, gateway.speech, gateway.retrieval, gateway.generation):
        if isinstance(provider, _JsonServiceClient):
            await provider.close()
