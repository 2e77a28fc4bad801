"""External capability providers and the gateway that calls them.

The core never implements extraction, speech, retrieval or generation;
it calls a provider and waits.  Every call goes through
:class:`CollaboratorGateway`, which bounds it with a timeout and retries
transient failures with exponential backoff.  When retries are exhausted
(or the provider is not configured at all) the caller receives
:class:`CollaboratorUnavailable`, which is always recoverable.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.models.enums import Capability
from src.models.errors import CollaboratorUnavailable
from src.models.scheme import SchemeRule
from src.models.timeline import TimelineRule

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Result shapes
# ---------------------------------------------------------------------------


class ExtractionResult(BaseModel):
    """Fields read from a document image or PDF.

    ``field_confidence`` is optional; a field without its own score
    inherits the overall ``confidence``.
    """

    fields: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(..., ge=0.0, le=1.0)
    field_confidence: dict[str, float] = Field(default_factory=dict)
    service_name_hint: str | None = None

    def split_by_confidence(self, threshold: float) -> tuple[dict[str, Any], list[str]]:
        """Return ``(trusted_fields, rejected_field_names)``."""
        trusted: dict[str, Any] = {}
        rejected: list[str] = []
        for name, value in self.fields.items():
            if self.field_confidence.get(name, self.confidence) >= threshold:
                trusted[name] = value
            else:
                rejected.append(name)
        return trusted, sorted(rejected)


@dataclass(slots=True)
class TranscriptionResult:
    text: str
    confidence: float
    language: str = "hi"


@dataclass(slots=True)
class SynthesisResult:
    audio: bytes
    language: str
    mime_type: str = field(default="audio/mpeg")


# ---------------------------------------------------------------------------
# Provider protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ExtractionProvider(Protocol):
    async def extract(self, document_ref: str) -> ExtractionResult: ...


@runtime_checkable
class SpeechProvider(Protocol):
    async def transcribe(self, audio: bytes, language_hint: str) -> TranscriptionResult: ...

    async def synthesize(self, text: str, language: str) -> SynthesisResult: ...


@runtime_checkable
class RetrievalProvider(Protocol):
    async def retrieve_timeline_rule(self, service_identifier: str, jurisdiction: str) -> TimelineRule | None: ...

    async def retrieve_scheme_rules(self, jurisdiction: str) -> list[SchemeRule]: ...


@runtime_checkable
class GenerationProvider(Protocol):
    async def generate(self, facts: dict[str, Any], language: str) -> str: ...


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class CollaboratorGateway:
    """Timeout + retry wrapper around the four providers.

    Parameters
    ----------
    max_retries:
        Retries after the first attempt fails, so a call makes at most
        ``max_retries + 1`` attempts.
    timeout_seconds:
        Upper bound on each individual attempt.
    backoff_min_seconds, backoff_max_seconds:
        Bounds of the exponential wait between attempts.
    """

    __slots__ = (
        "_backoff_max",
        "_backoff_min",
        "_max_retries",
        "_timeout",
        "extraction",
        "generation",
        "retrieval",
        "speech",
    )

    def __init__(
        self,
        *,
        extraction: ExtractionProvider | None = None,
        speech: SpeechProvider | None = None,
        retrieval: RetrievalProvider | None = None,
        generation: GenerationProvider | None = None,
        max_retries: int = 3,
        timeout_seconds: float = 8.0,
        backoff_min_seconds: float = 0.5,
        backoff_max_seconds: float = 4.0,
    ) -> None:
        self.extraction = extraction
        self.speech = speech
        self.retrieval = retrieval
        self.generation = generation
        self._max_retries = max_retries
        self._timeout = timeout_seconds
        self._backoff_min = backoff_min_seconds
        self._backoff_max = backoff_max_seconds

    def available(self, capability: Capability) -> bool:
        return getattr(self, capability.value) is not None

    async def call(
        self,
        capability: Capability,
        operation: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``fn`` with timeout and retries.

        Raises
        ------
        CollaboratorUnavailable
            All attempts failed or timed out.
        """
        start = time.perf_counter()
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(Exception),
                stop=stop_after_attempt(self._max_retries + 1),
                wait=wait_exponential(multiplier=self._backoff_min, min=self._backoff_min, max=self._backoff_max),
                reraise=False,
            ):
                with attempt:
                    attempts += 1
                    result = await asyncio.wait_for(fn(), timeout=self._timeout)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            logger.warning(
                "collaborator.unavailable",
                capability=capability,
                operation=operation,
                attempts=attempts,
                error_type=type(cause).__name__ if cause else None,
                elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise CollaboratorUnavailable(capability.value, operation) from cause

        logger.debug(
            "collaborator.call_complete",
            capability=capability,
            operation=operation,
            attempts=attempts,
            elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return result

    def _require(self, capability: Capability) -> Any:
        provider = getattr(self, capability.value)
        if provider is None:
            raise CollaboratorUnavailable(capability.value, "not configured")
        return provider

    # -- typed convenience wrappers -------------------------------------------

    async def extract(self, document_ref: str) -> ExtractionResult:
        provider: ExtractionProvider = self._require(Capability.EXTRACTION)
        return await self.call(Capability.EXTRACTION, "extract", lambda: provider.extract(document_ref))

    async def transcribe(self, audio: bytes, language_hint: str) -> TranscriptionResult:
        provider: SpeechProvider = self._require(Capability.SPEECH)
        return await self.call(Capability.SPEECH, "transcribe", lambda: provider.transcribe(audio, language_hint))

    async def synthesize(self, text: str, language: str) -> SynthesisResult:
        provider: SpeechProvider = self._require(Capability.SPEECH)
        return await self.call(Capability.SPEECH, "synthesize", lambda: provider.synthesize(text, language))

    async def retrieve_timeline_rule(self, service_identifier: str, jurisdiction: str) -> TimelineRule | None:
        provider: RetrievalProvider = self._require(Capability.RETRIEVAL)
        return await self.call(
            Capability.RETRIEVAL,
            "retrieve_timeline_rule",
            lambda: provider.retrieve_timeline_rule(service_identifier, jurisdiction),
        )

    async def retrieve_scheme_rules(self, jurisdiction: str) -> list[SchemeRule]:
        provider: RetrievalProvider = self._require(Capability.RETRIEVAL)
        return await self.call(
            Capability.RETRIEVAL,
            "retrieve_scheme_rules",
            lambda: provider.retrieve_scheme_rules(jurisdiction),
        )

    async def generate(self, facts: dict[str, Any], language: str) -> str:
        provider: GenerationProvider = self._require(Capability.GENERATION)
        return await self.call(Capability.GENERATION, "generate", lambda: provider.generate(facts, language))
