"""
Lecture Notes Backend — File Storage Service
==============================================

What:  Resolves stored input refs, validates input types, and writes or
       deletes rendered artifacts.
Why:   Centralizes all file system operations with security checks.
How:   Every ref is a path relative to `storage_root`; resolution rejects
       anything that escapes the root. Artifacts are written with aiofiles
       under `artifacts/<job_id>/notes.<format>`.
Who:   JobService (input validation at submission), GeminiService (reading
       inputs), JobPipeline (artifact writes and discards).

Security Model:
    1. Extension allow-lists per input kind (audio vs document)
    2. Refs are resolved and must stay inside storage_root (no ../ escapes,
       no absolute paths)
    3. Artifact names contain no user input: job UUID + format only

Directory Structure:
    storage/
    ├── uploads/...                 (written by the upload front end)
    └── artifacts/
        └── <job_id>/
            ├── notes.txt
            ├── notes.md
            └── notes.pdf
"""

import logging
import shutil
import uuid
from pathlib import Path, PurePosixPath
from typing import Optional

import aiofiles

from lecturenotes.config import settings
from lecturenotes.exceptions import FileStorageError, ValidationError

logger = logging.getLogger(__name__)

# ── Allowed File Types ────────────────────────────────────────────────────
AUDIO_EXTENSIONS = {".mp3", ".wav", ".m4a", ".mp4"}
DOCUMENT_EXTENSIONS = {".pdf", ".txt", ".md"}

# Documents that are already text and can be read without a model call
PLAIN_TEXT_EXTENSIONS = {".txt", ".md"}

ARTIFACTS_DIR = "artifacts"


class FileService:
    """Manages input lookup and the artifact lifecycle under one storage root."""

    def __init__(self, storage_root: Optional[str] = None):
        """
        Args:
            storage_root: Override the default storage path (used in tests).
        """
        self.storage_root = Path(storage_root or settings.storage_root).resolve()
        self.storage_root.mkdir(parents=True, exist_ok=True)
        logger.info("FileService initialized with storage_root=%s", self.storage_root)

    # ── Validation ────────────────────────────────────────────────────────

    def validate_ref(self, ref: str, field: str) -> str:
        """
        Check that `ref` is a relative path that stays inside storage_root.

        Returns the normalized ref. Raises ValidationError otherwise.
        """
        if not ref or not ref.strip():
            raise ValidationError(message="File reference must not be empty", field=field)
        candidate = PurePosixPath(ref.strip())
        if candidate.is_absolute() or ".." in candidate.parts:
            raise ValidationError(
                message="File reference must be a relative path inside storage",
                field=field,
                context={"ref": ref},
            )
        return str(candidate)

    def validate_extension(self, ref: str, allowed: set, field: str) -> str:
        ext = PurePosixPath(ref).suffix.lower()
        if ext not in allowed:
            raise ValidationError(
                message=(
                    f"File type '{ext or '(none)'}' is not supported. "
                    f"Allowed types: {', '.join(sorted(allowed))}"
                ),
                field=field,
                context={"extension": ext, "allowed": sorted(allowed)},
            )
        return ext

    def validate_audio_ref(self, ref: str) -> str:
        ref = self.validate_ref(ref, "audio_ref")
        self.validate_extension(ref, AUDIO_EXTENSIONS, "audio_ref")
        return ref

    def validate_document_ref(self, ref: str) -> str:
        ref = self.validate_ref(ref, "document_ref")
        self.validate_extension(ref, DOCUMENT_EXTENSIONS, "document_ref")
        return ref

    # ── Reading ───────────────────────────────────────────────────────────

    def resolve_ref(self, ref: str) -> Path:
        """Absolute path of a stored ref. Raises FileStorageError on escape."""
        path = (self.storage_root / ref).resolve()
        if not path.is_relative_to(self.storage_root):
            raise FileStorageError(
                message="File reference points outside storage",
                context={"ref": ref},
            )
        return path

    async def read_text(self, ref: str) -> str:
        path = self.resolve_ref(ref)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
                return await f.read()
        except OSError as e:
            logger.error("Failed to read %s: %s", ref, str(e))
            raise FileStorageError(
                message="Failed to read stored file",
                context={"ref": ref, "os_error": str(e)},
            )

    # ── Artifacts ─────────────────────────────────────────────────────────

    def artifact_ref(self, job_id: uuid.UUID, fmt: str) -> str:
        return f"{ARTIFACTS_DIR}/{job_id}/notes.{fmt}"

    async def store_artifact(self, job_id: uuid.UUID, fmt: str, content: bytes) -> str:
        """
        Write one rendered artifact, replacing any earlier partial write.

        Returns the storage ref recorded on the job.
        Raises FileStorageError if the write fails.
        """
        ref = self.artifact_ref(job_id, fmt)
        path = self.resolve_ref(ref)
        tmp_path = path.with_name(path.name + ".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(content)
            tmp_path.replace(path)
        except OSError as e:
            logger.error("Failed to store artifact %s: %s", ref, str(e))
            raise FileStorageError(
                message="Failed to save rendered notes",
                context={"ref": ref, "os_error": str(e)},
            )
        logger.info("Artifact stored: %s (%d bytes)", ref, len(content))
        return ref

    async def delete_artifacts(self, job_id: uuid.UUID) -> None:
        """
        Remove every artifact of a job (discarded after a failed commit).

        Best-effort: a failed delete is logged, not raised.
        """
        job_dir = self.storage_root / ARTIFACTS_DIR / str(job_id)
        if not job_dir.exists():
            logger.debug("Cleanup: no artifacts for job %s", job_id)
            return
        try:
            shutil.rmtree(job_dir)
            logger.info("Discarded artifacts for job %s", job_id)
        except OSError as e:
            logger.warning("Failed to discard artifacts for job %s: %s", job_id, str(e))


# ── Singleton Instance ────────────────────────────────────────────────────
file_service = FileService()
