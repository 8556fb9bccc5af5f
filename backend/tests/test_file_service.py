"""
Lecture Notes Backend — File Service Unit Tests
=================================================

What:  Tests for FileService ref validation and the artifact lifecycle.
Why:   File refs are a security boundary: a ref must never reach outside
       the storage root.
How:   Each test gets a FileService on a temporary directory.

Test Strategy:
    ✅ Allowed audio and document extensions, case-insensitive
    ✅ Rejected extensions and missing extensions
    ✅ Absolute paths and ../ traversal rejected
    ✅ Artifacts written under artifacts/<job_id>/, partial writes replaced
    ✅ Discarding artifacts removes the job directory and tolerates absence
"""

import uuid

import pytest

from lecturenotes.exceptions import FileStorageError, ValidationError
from lecturenotes.services.file_service import FileService


class TestRefValidation:
    """Tests for input reference validation."""

    @pytest.fixture(autouse=True)
    def _service(self, temp_storage):
        self.service = FileService(storage_root=temp_storage)

    # ── Extensions ────────────────────────────────────────────────────────

    def test_audio_extensions(self):
        for ref in ("a/lecture.mp3", "lecture.wav", "lecture.m4a", "lecture.mp4"):
            assert self.service.validate_audio_ref(ref) == ref

    def test_extension_check_is_case_insensitive(self):
        self.service.validate_audio_ref("LECTURE.MP3")
        self.service.validate_document_ref("Slides.PDF")

    def test_document_extensions(self):
        for ref in ("slides.pdf", "notes.txt", "readme.md"):
            self.service.validate_document_ref(ref)

    def test_document_as_audio_rejected(self):
        with pytest.raises(ValidationError, match="not supported") as exc_info:
            self.service.validate_audio_ref("slides.pdf")
        assert exc_info.value.context["field"] == "audio_ref"

    def test_executable_rejected(self):
        with pytest.raises(ValidationError, match="not supported"):
            self.service.validate_document_ref("malware.exe")

    def test_no_extension_rejected(self):
        with pytest.raises(ValidationError, match="not supported"):
            self.service.validate_document_ref("noextension")

    # ── Path safety ───────────────────────────────────────────────────────

    def test_traversal_rejected(self):
        with pytest.raises(ValidationError):
            self.service.validate_audio_ref("../../etc/passwd.mp3")

    def test_absolute_path_rejected(self):
        with pytest.raises(ValidationError):
            self.service.validate_document_ref("/etc/notes.txt")

    def test_empty_ref_rejected(self):
        with pytest.raises(ValidationError):
            self.service.validate_audio_ref("   ")

    def test_resolve_rejects_escape(self):
        with pytest.raises(FileStorageError):
            self.service.resolve_ref("../outside.txt")

    def test_resolve_stays_inside_root(self):
        path = self.service.resolve_ref("uploads/lecture.mp3")
        assert path.is_relative_to(self.service.storage_root)


class TestArtifacts:
    @pytest.mark.asyncio
    async def test_store_artifact(self, files):
        job_id = uuid.uuid4()

        ref = await files.store_artifact(job_id, "md", b"# Notes")

        assert ref == f"artifacts/{job_id}/notes.md"
        assert files.resolve_ref(ref).read_bytes() == b"# Notes"

    @pytest.mark.asyncio
    async def test_store_replaces_earlier_write(self, files):
        job_id = uuid.uuid4()
        await files.store_artifact(job_id, "txt", b"partial")
        ref = await files.store_artifact(job_id, "txt", b"complete")

        path = files.resolve_ref(ref)
        assert path.read_bytes() == b"complete"
        assert sorted(p.name for p in path.parent.iterdir()) == ["notes.txt"]

    @pytest.mark.asyncio
    async def test_delete_artifacts(self, files):
        job_id = uuid.uuid4()
        ref = await files.store_artifact(job_id, "pdf", b"%PDF-1.7")

        await files.delete_artifacts(job_id)

        assert not files.resolve_ref(ref).parent.exists()

    @pytest.mark.asyncio
    async def test_delete_without_artifacts_is_noop(self, files):
        await files.delete_artifacts(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_read_text(self, files):
        (files.storage_root / "notes.txt").write_text("Entropy rises", encoding="utf-8")
        assert await files.read_text("notes.txt") == "Entropy rises"
