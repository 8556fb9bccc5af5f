"""
Lecture Notes Backend — External Collaborator Contracts
=========================================================

What:  Abstract interfaces for the four external processing services the
       pipeline drives, and the structured notes format they exchange.
Why:   The pipeline depends only on these contracts. Concrete providers
       (Gemini, Gotenberg) can be swapped, and tests pass in fakes.
How:   Strategy pattern via ABCs, as with any pluggable service here.

Error contract (every implementation):
    - Raise only CollaboratorError subclasses from lecturenotes.exceptions
    - ServiceUnavailable / RateLimited  → retried at the stage boundary
    - AuthFailed / BadInput             → job fails immediately
    - EmptyResult                       → job fails, distinct integrity code
    - Implementations do NOT retry internally; retries belong to the pipeline
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, Field


# ── Structured Notes ──────────────────────────────────────────────────────

class NoteSection(BaseModel):
    """One Cornell row: a cue (question/keyword) beside the detailed notes."""

    heading: str = Field(..., min_length=1)
    cues: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)


class KeyTerm(BaseModel):
    term: str
    definition: str


class StructuredNotes(BaseModel):
    """Cornell-style study notes produced by the synthesis stage."""

    title: str = Field(..., min_length=1)
    subject: Optional[str] = None
    summary: str = Field(..., min_length=1)
    sections: List[NoteSection] = Field(..., min_length=1)
    key_terms: List[KeyTerm] = Field(default_factory=list)
    review_questions: List[str] = Field(default_factory=list)


# ── Contracts ─────────────────────────────────────────────────────────────

class TranscriptionService(ABC):
    @abstractmethod
    async def transcribe(self, audio_ref: str) -> str:
        """Return the transcript of the stored audio file `audio_ref`."""
        ...


class TextExtractionService(ABC):
    @abstractmethod
    async def extract(self, document_ref: str) -> str:
        """Return the plain text of the stored document `document_ref`."""
        ...


class NoteSynthesisService(ABC):
    @abstractmethod
    async def synthesize(
        self,
        transcript: str,
        supplement_text: Optional[str],
        title: str,
        subject: Optional[str],
    ) -> StructuredNotes:
        """
        Turn source text into structured notes.

        `transcript` is the primary source: the lecture transcript, or the
        document text for document-only jobs. `supplement_text` is an
        optional secondary document.
        """
        ...


class DocumentRenderingService(ABC):
    @abstractmethod
    async def render(self, notes: StructuredNotes, fmt: str) -> bytes:
        """Render `notes` as one output format (txt, md, pdf)."""
        ...
