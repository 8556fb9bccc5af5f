"""
Lecture Notes Backend — Test Configuration (conftest.py)
==========================================================

What:  Shared pytest fixtures for the entire test suite.
How:   Environment overrides run before any lecturenotes import, so the
       settings singleton, engine and file service all point at throwaway
       locations.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── db_engine / session_factory: temp-file SQLite database, all tables
    ├── db: one session on it (tests commit explicitly)
    ├── clock: a settable clock shared by every service under test
    ├── temp_storage / files: FileService on a temp storage root
    ├── fake collaborators: in-memory transcriber/extractor/synthesizer/renderer
    └── test_client: HTTPX AsyncClient on the FastAPI app
"""

import os
import tempfile

# Override settings for testing BEFORE any app imports
_TEST_DIR = tempfile.mkdtemp(prefix="lecturenotes_test_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/app.db"
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["STORAGE_ROOT"] = os.path.join(_TEST_DIR, "storage")
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["LOG_LEVEL"] = "WARNING"

import uuid
from datetime import datetime, timezone
from typing import List, Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import lecturenotes.models  # noqa: F401
from lecturenotes.database import Base
from lecturenotes.models.account import Account
from lecturenotes.services.collaborators import (
    DocumentRenderingService,
    KeyTerm,
    NoteSection,
    NoteSynthesisService,
    StructuredNotes,
    TextExtractionService,
    TranscriptionService,
)
from lecturenotes.services.file_service import FileService
from lecturenotes.services.usage_tracker import UsageTracker


# ══════════════════════════════════════════════════════════════════════════
# Clock
# ══════════════════════════════════════════════════════════════════════════

class FakeClock:
    """Callable clock; tests move it with `set()`."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))


# ══════════════════════════════════════════════════════════════════════════
# Database
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A fresh SQLite file per test with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    # expire_on_commit=False, as in production: services read attributes
    # after their own commits.
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_account(session_factory, clock):
    """Insert an account row and return it."""

    async def _make(
        tier: str = "free",
        previous_tier: Optional[str] = None,
        pending_downgrade_effective_at: Optional[datetime] = None,
        billing_anchor: Optional[datetime] = None,
        grace_consumed: int = 0,
        grace_reset_date=None,
    ) -> Account:
        account = Account(
            id=uuid.uuid4(),
            current_tier=tier,
            previous_tier=previous_tier,
            pending_downgrade_effective_at=pending_downgrade_effective_at,
            billing_anchor=billing_anchor,
            grace_consumed=grace_consumed,
            grace_reset_date=grace_reset_date or clock().date(),
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(account)
        return account

    return _make


@pytest.fixture
def tracker(session_factory, clock):
    return UsageTracker(session_factory=session_factory, clock=clock, retry_attempts=3)


# ══════════════════════════════════════════════════════════════════════════
# Files
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def temp_storage(tmp_path):
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir()
    return str(storage_dir)


@pytest.fixture
def files(temp_storage):
    return FileService(storage_root=temp_storage)


# ══════════════════════════════════════════════════════════════════════════
# Fake Collaborators
# ══════════════════════════════════════════════════════════════════════════

def sample_notes(title: str = "Thermodynamics I") -> StructuredNotes:
    return StructuredNotes(
        title=title,
        subject="Physics",
        summary="Energy is conserved; entropy of an isolated system never decreases.",
        sections=[
            NoteSection(
                heading="First law",
                cues=["What is conserved?"],
                notes=["dU = dQ - dW", "Internal energy is a state function"],
            ),
        ],
        key_terms=[KeyTerm(term="Entropy", definition="Measure of disorder")],
        review_questions=["State the first law."],
    )


class FakeTranscriber(TranscriptionService):
    def __init__(self, text: str = "Today we cover the first law of thermodynamics.", errors=None):
        self.text = text
        self.errors: List[Exception] = list(errors or [])
        self.calls = 0

    async def transcribe(self, audio_ref: str) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.text


class FakeExtractor(TextExtractionService):
    def __init__(self, text: str = "Slide 1: The first law. Slide 2: Entropy.", errors=None):
        self.text = text
        self.errors: List[Exception] = list(errors or [])
        self.calls = 0

    async def extract(self, document_ref: str) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.text


class FakeSynthesizer(NoteSynthesisService):
    def __init__(self, errors=None):
        self.errors: List[Exception] = list(errors or [])
        self.calls = []

    async def synthesize(self, transcript, supplement_text, title, subject) -> StructuredNotes:
        self.calls.append((transcript, supplement_text, title, subject))
        if self.errors:
            raise self.errors.pop(0)
        return sample_notes(title)


class FakeRenderer(DocumentRenderingService):
    def __init__(self, errors=None):
        self.errors: List[Exception] = list(errors or [])
        self.rendered: List[str] = []

    async def render(self, notes: StructuredNotes, fmt: str) -> bytes:
        if self.errors:
            raise self.errors.pop(0)
        self.rendered.append(fmt)
        return f"{fmt}:{notes.title}".encode("utf-8")


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def renderer():
    return FakeRenderer()


# ══════════════════════════════════════════════════════════════════════════
# API Client
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def test_client(session_factory, clock):
    """
    HTTPX AsyncClient on the FastAPI app, backed by the per-test database.

    ASGITransport does not run the lifespan, so the job runner is a mock:
    submissions are recorded on `app.state.job_runner.submit` instead of
    being processed.
    """
    from lecturenotes.database import get_db_session
    from lecturenotes.main import app
    from lecturenotes.services.pipeline import JobPipeline

    async def override_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    runner = MagicMock()
    runner.active_jobs = 0
    runner.pipeline = JobPipeline(
        transcriber=FakeTranscriber(),
        extractor=FakeExtractor(),
        synthesizer=FakeSynthesizer(),
        renderer=FakeRenderer(),
        session_factory=session_factory,
        clock=clock,
    )
    app.state.job_runner = runner
    app.dependency_overrides[get_db_session] = override_db_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
