"""
Lecture Notes Backend — Google Gemini Service Implementation
==============================================================

What:  Transcription, document text extraction and Cornell-notes synthesis
       on top of the Google Gemini API.
Why:   One multimodal model covers the three AI stages, so a single client,
       a single API key and a single circuit breaker guard all of them.
How:   Source files are uploaded with `genai.upload_file`, then prompted
       with `generate_content_async`. Provider exceptions are translated
       into the collaborator error taxonomy; the pipeline decides whether
       to retry.
Who:   Instantiated once at app startup; called by JobPipeline stages.

Resilience Strategy:
    1. Circuit breaker shared by every Gemini call; an OPEN circuit fails
       instantly with ServiceUnavailable (retryable at the stage boundary)
    2. Per-request timeout through `request_options`
    3. NO internal retry: the pipeline's stage retry already backs off, and
       nesting two retry loops multiplies upstream calls

Exception mapping (google.api_core.exceptions → taxonomy):
    ResourceExhausted, TooManyRequests          → RateLimited
    Unauthenticated, PermissionDenied           → AuthFailed
    InvalidArgument, BadRequest, NotFound       → BadInput
    ServiceUnavailable, DeadlineExceeded,
    InternalServerError, other GoogleAPICallError → ServiceUnavailable
    blank answer / unparseable notes JSON       → EmptyResult
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError as PydanticValidationError

from lecturenotes.config import settings
from lecturenotes.exceptions import (
    AuthFailed,
    BadInput,
    CircuitBreakerOpenError,
    CollaboratorError,
    EmptyResult,
    FileStorageError,
    RateLimited,
    ServiceUnavailable,
)
from lecturenotes.services.collaborators import (
    NoteSynthesisService,
    StructuredNotes,
    TextExtractionService,
    TranscriptionService,
)
from lecturenotes.services.file_service import PLAIN_TEXT_EXTENSIONS, file_service

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Implements the circuit breaker pattern to prevent cascade failures.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all requests)
            → All calls raise CircuitBreakerOpenError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Allow ONE request through
            → On success: transition to CLOSED (reset failure_count)
            → On failure: transition back to OPEN (reset timer)

    Only infrastructure failures count. A BadInput for one user's corrupt
    upload says nothing about Gemini's health and must not open the circuit.

    Thread Safety:
        Simple counters, not thread-safe. Pipeline tasks share one event
        loop in one process, so no two updates interleave.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Check if a request is allowed through the circuit breaker.

        Raises:
            CircuitBreakerOpenError if OPEN and the recovery timeout hasn't elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.time() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker transitioning to HALF_OPEN after %.1fs",
                    elapsed,
                )
                self.state = self.HALF_OPEN
                return True
            remaining = int(self.recovery_timeout - elapsed)
            raise CircuitBreakerOpenError(recovery_time=remaining)

        # HALF_OPEN: allow the test request through
        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Error Translation
# ══════════════════════════════════════════════════════════════════════════

def translate_google_error(exc: Exception, operation: str) -> Optional[CollaboratorError]:
    """
    Map a Gemini SDK / transport exception onto the collaborator taxonomy.

    Returns None for exceptions outside it (programming errors); the caller
    re-raises those unchanged.
    """
    service = f"gemini.{operation}"
    detail = str(exc) or type(exc).__name__
    context = {"error_type": type(exc).__name__}

    if isinstance(exc, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
        return RateLimited(message=f"Gemini rate limit hit: {detail}", service=service, context=context)
    if isinstance(exc, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return AuthFailed(message=f"Gemini rejected credentials: {detail}", service=service, context=context)
    if isinstance(
        exc,
        (google_exceptions.InvalidArgument, google_exceptions.BadRequest, google_exceptions.NotFound),
    ):
        return BadInput(message=f"Gemini rejected the input: {detail}", service=service, context=context)
    if isinstance(exc, FileNotFoundError):
        return BadInput(message=f"Source file is missing: {detail}", service=service, context=context)
    if isinstance(exc, (google_exceptions.GoogleAPICallError, ConnectionError, TimeoutError)):
        return ServiceUnavailable(message=f"Gemini unavailable: {detail}", service=service, context=context)
    return None


# ══════════════════════════════════════════════════════════════════════════
# Gemini Service
# ══════════════════════════════════════════════════════════════════════════

class GeminiService(TranscriptionService, TextExtractionService, NoteSynthesisService):
    """
    Google Gemini implementation of the three AI collaborator contracts.

    Error Handling Chain:
        circuit OPEN → ServiceUnavailable, no call made
        call fails   → translate → infrastructure errors count as breaker failures
        blank answer → EmptyResult (the call itself worked; breaker success)
    """

    TRANSCRIBE_PROMPT = """You are a careful lecture transcriber. Transcribe the
spoken content of this audio recording verbatim.

Instructions:
1. Write plain text paragraphs, one per change of topic
2. Keep technical terms, formulas and names exactly as spoken
3. Mark inaudible passages as [inaudible]
4. Return ONLY the transcript, no commentary"""

    EXTRACT_PROMPT = """Extract ALL readable text from this document.

Instructions:
1. Preserve headings, lists and paragraph breaks
2. Render tables as plain text rows
3. Return ONLY the extracted text, no commentary"""

    SYNTHESIZE_PROMPT = """You are an expert study-notes writer. Produce Cornell-style
study notes for the lecture titled "{title}"{subject_clause}.

{sources}

Respond with a single JSON object of this exact shape:
{{
  "title": string,
  "subject": string or null,
  "summary": string (3-5 sentences),
  "sections": [{{"heading": string, "cues": [string], "notes": [string]}}],
  "key_terms": [{{"term": string, "definition": string}}],
  "review_questions": [string]
}}
Cues are short questions or keywords for the left column; notes are the
detailed points they recall."""

    def __init__(self):
        if settings.gemini_api_key and settings.gemini_api_key != "your_gemini_api_key_here":
            genai.configure(api_key=settings.gemini_api_key)

        self.model = genai.GenerativeModel(settings.gemini_model)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

        logger.info(
            "GeminiService initialized with model=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            settings.gemini_model,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    # ── Contract methods ──────────────────────────────────────────────────

    async def transcribe(self, audio_ref: str) -> str:
        path = file_service.resolve_ref(audio_ref)
        text = await self._generate(
            "transcribe",
            lambda: self._prompt_with_file(self.TRANSCRIBE_PROMPT, str(path)),
        )
        return self._require_text(text, "transcribe", "Transcription returned no speech")

    async def extract(self, document_ref: str) -> str:
        path = file_service.resolve_ref(document_ref)
        if path.suffix.lower() in PLAIN_TEXT_EXTENSIONS:
            # Plain text needs no model call
            try:
                text = await file_service.read_text(document_ref)
            except FileStorageError as e:
                raise BadInput(message=e.message, service="gemini.extract", context=e.context)
        else:
            text = await self._generate(
                "extract",
                lambda: self._prompt_with_file(self.EXTRACT_PROMPT, str(path)),
            )
        return self._require_text(text, "extract", "Document contains no readable text")

    async def synthesize(
        self,
        transcript: str,
        supplement_text: Optional[str],
        title: str,
        subject: Optional[str],
    ) -> StructuredNotes:
        if not transcript or not transcript.strip():
            raise BadInput(
                message="Synthesis needs source text",
                service="gemini.synthesize",
            )
        prompt = self.SYNTHESIZE_PROMPT.format(
            title=title,
            subject_clause=f" ({subject})" if subject else "",
            sources=self._format_sources(transcript, supplement_text),
        )
        raw = await self._generate(
            "synthesize",
            lambda: self.model.generate_content_async(
                prompt,
                generation_config={"response_mime_type": "application/json"},
                request_options={"timeout": settings.gemini_request_timeout},
            ),
        )
        raw = self._require_text(raw, "synthesize", "Synthesis returned no notes")
        try:
            return StructuredNotes.model_validate(json.loads(raw))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise EmptyResult(
                message="Synthesis returned notes that do not match the notes format",
                service="gemini.synthesize",
                context={"error": str(e)[:500]},
            )

    # ── Internals ─────────────────────────────────────────────────────────

    async def _prompt_with_file(self, prompt: str, path: str):
        # upload_file is a blocking HTTP call in the SDK
        uploaded = await asyncio.to_thread(genai.upload_file, path=path)
        return await self.model.generate_content_async(
            [prompt, uploaded],
            request_options={"timeout": settings.gemini_request_timeout},
        )

    async def _generate(self, operation: str, call) -> str:
        """
        Run one Gemini request under the circuit breaker and return its text.

        `call` is a zero-argument coroutine factory so the breaker check
        happens before any upload starts.
        """
        request_id = str(uuid.uuid4())[:8]
        try:
            self.circuit_breaker.can_execute()
        except CircuitBreakerOpenError as e:
            raise ServiceUnavailable(
                message=e.message,
                service=f"gemini.{operation}",
                context={"recovery_time": e.recovery_time},
            )

        start_time = time.time()
        try:
            response = await call()
            text = self._response_text(response)
        except CollaboratorError:
            raise
        except Exception as e:
            error = translate_google_error(e, operation)
            if error is None:
                self.circuit_breaker.record_failure()
                logger.error(
                    "[%s] Unexpected Gemini %s error: %s", request_id, operation, str(e), exc_info=True
                )
                raise
            if isinstance(error, (ServiceUnavailable, RateLimited)):
                self.circuit_breaker.record_failure()
            else:
                self.circuit_breaker.record_success()
            logger.warning(
                "[%s] Gemini %s failed after %.0fms: %s (%s)",
                request_id,
                operation,
                (time.time() - start_time) * 1000,
                error.code,
                str(e),
            )
            raise error

        self.circuit_breaker.record_success()
        logger.info(
            "[%s] Gemini %s completed in %.0fms, %d chars",
            request_id,
            operation,
            (time.time() - start_time) * 1000,
            len(text),
        )
        return text

    @staticmethod
    def _response_text(response) -> str:
        # .text raises ValueError when the candidate was blocked or empty
        try:
            return (response.text or "").strip()
        except ValueError:
            return ""

    @staticmethod
    def _require_text(text: str, operation: str, message: str) -> str:
        if not text or not text.strip():
            raise EmptyResult(message=message, service=f"gemini.{operation}")
        return text.strip()

    @staticmethod
    def _format_sources(transcript: str, supplement_text: Optional[str]) -> str:
        parts = [f"Lecture source (primary):\n{transcript}"]
        if supplement_text:
            parts.append(f"Supplementary document:\n{supplement_text}")
        return "\n\n".join(parts)


# ── Singleton Instance ────────────────────────────────────────────────────
# Holds the circuit breaker state, which every pipeline task must share.
gemini_service = GeminiService()
