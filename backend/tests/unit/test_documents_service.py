"""
Unit Tests — DocumentService
════════════════════════════
Intake, listing, lookup and deletion against real SQLite + local artifacts.

Coverage targets:
  ✅ valid upload → unprocessed row, sha256 checksum, artifact stored
  ✅ filename sanitization strips path traversal
  ✅ empty → 400, oversized → 413 FILE_TOO_LARGE, bad type → 415,
     declared type contradicted by magic bytes → 415
  ✅ rejected uploads never reach the artifact store
  ✅ DB insert failure removes the just-stored artifact
  ✅ list is owner-scoped, newest first
  ✅ foreign documents are indistinguishable from missing ones
  ✅ delete cascades to conversations/messages and the artifact
  ✅ delete refused while processing
"""

from __future__ import annotations

import hashlib
import uuid
from pathlib import Path

import pytest
from sqlalchemy import func, select, update

from docchat.core.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    PayloadTooLargeError,
    UnsupportedMediaTypeError,
)
from docchat.models.documents import Conversation, Document, Message
from docchat.services.documents import DocumentService, sanitize_filename
from docchat.storage.artifacts import ArtifactNotFoundError
from tests.factories import OTHER_USER, USER_ID, jpeg_image, png_image, processed_document, text_pdf


def _stored_files(settings) -> list[Path]:
    root = Path(settings.storage_root)
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


@pytest.mark.unit
class TestSanitizeFilename:

    @pytest.mark.parametrize("raw, expected", [
        ("report.pdf",               "report.pdf"),
        ("../../etc/passwd.png",     "passwd.png"),
        ("C:\\Users\\me\\scan.tiff", "scan.tiff"),
        ("weird<name>|?.jpg",        "weird_name___.jpg"),
        ("",                         "upload"),
        (None,                       "upload"),
        ("...",                      "upload"),
    ])
    def test_sanitize(self, raw, expected):
        assert sanitize_filename(raw) == expected


@pytest.mark.unit
class TestUpload:

    async def test_valid_png(self, document_service, artifacts):
        data = png_image()

        doc = await document_service.upload(USER_ID, "scan.png", "image/png", data)

        assert doc.status == "unprocessed"
        assert doc.user_id == USER_ID
        assert doc.filename == "scan.png"
        assert doc.content_type == "image/png"
        assert doc.size_bytes == len(data)
        assert doc.checksum == hashlib.sha256(data).hexdigest()
        assert doc.storage_key.endswith(".png")
        assert doc.extracted_text is None
        assert await artifacts.get(doc.storage_key) == data

    async def test_alias_mime_is_normalized(self, document_service):
        doc = await document_service.upload(USER_ID, "photo.jpg", "image/jpg", jpeg_image())
        assert doc.content_type == "image/jpeg"

    async def test_empty_file_rejected(self, document_service, settings):
        with pytest.raises(BadRequestError, match="empty"):
            await document_service.upload(USER_ID, "empty.pdf", "application/pdf", b"")
        assert _stored_files(settings) == []

    @pytest.mark.parametrize("settings_overrides", [{"max_upload_bytes": 1024}])
    async def test_oversized_rejected(self, document_service, settings):
        with pytest.raises(PayloadTooLargeError) as exc_info:
            await document_service.upload(USER_ID, "big.png", "image/png", b"\x89PNG\r\n\x1a\n" + b"0" * 2048)

        assert exc_info.value.status_code == 413
        assert exc_info.value.error_code == "FILE_TOO_LARGE"
        assert _stored_files(settings) == []

    async def test_unsupported_type_rejected(self, document_service, settings):
        with pytest.raises(UnsupportedMediaTypeError):
            await document_service.upload(USER_ID, "notes.txt", "text/plain", b"hello")
        assert _stored_files(settings) == []

    async def test_declared_type_must_match_content(self, document_service, settings):
        with pytest.raises(UnsupportedMediaTypeError, match="does not match"):
            await document_service.upload(USER_ID, "fake.pdf", "application/pdf", png_image())
        assert _stored_files(settings) == []

    async def test_insert_failure_removes_artifact(self, artifacts, settings):
        class _FailingSession:
            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc):
                return False

            def begin(self):
                return self

            def add(self, obj):
                raise RuntimeError("database unavailable")

        service = DocumentService(lambda: _FailingSession(), artifacts, settings)

        with pytest.raises(RuntimeError):
            await service.upload(USER_ID, "scan.png", "image/png", png_image())

        assert _stored_files(settings) == []


@pytest.mark.unit
class TestListAndGet:

    async def test_list_is_owner_scoped_newest_first(self, document_service):
        first = await document_service.upload(USER_ID, "first.png", "image/png", png_image())
        second = await document_service.upload(USER_ID, "second.pdf", "application/pdf", text_pdf())
        await document_service.upload(OTHER_USER, "theirs.png", "image/png", png_image())

        docs = await document_service.list_documents(USER_ID)

        assert [d.id for d in docs] == [second.id, first.id]

    async def test_list_empty(self, document_service):
        assert await document_service.list_documents(USER_ID) == []

    async def test_get_foreign_and_missing_look_the_same(self, document_service):
        doc = await document_service.upload(USER_ID, "scan.png", "image/png", png_image())

        with pytest.raises(NotFoundError) as foreign:
            await document_service.get_document(OTHER_USER, doc.id)
        with pytest.raises(NotFoundError) as missing:
            await document_service.get_document(USER_ID, uuid.uuid4())

        assert foreign.value.message == missing.value.message

    async def test_get_returns_extracted_text(self, document_service, processor):
        doc = await processed_document(document_service, processor, USER_ID)
        fetched = await document_service.get_document(USER_ID, doc.id)
        assert fetched.extracted_text == "page 1 text"


@pytest.mark.unit
class TestDelete:

    async def test_delete_cascades(self, document_service, processor, conversation_service, sessions, artifacts):
        doc = await processed_document(document_service, processor, USER_ID)
        conversation = await conversation_service.create_conversation(USER_ID, doc.id)
        await conversation_service.send_message(USER_ID, conversation.id, "What is on page one?")

        await document_service.delete_document(USER_ID, doc.id)

        async with sessions() as db:
            assert await db.scalar(select(func.count()).select_from(Document)) == 0
            assert await db.scalar(select(func.count()).select_from(Conversation)) == 0
            assert await db.scalar(select(func.count()).select_from(Message)) == 0
        with pytest.raises(ArtifactNotFoundError):
            await artifacts.get(doc.storage_key)

    async def test_delete_foreign_not_found(self, document_service):
        doc = await document_service.upload(USER_ID, "scan.png", "image/png", png_image())

        with pytest.raises(NotFoundError):
            await document_service.delete_document(OTHER_USER, doc.id)

        assert (await document_service.get_document(USER_ID, doc.id)).id == doc.id

    async def test_delete_refused_while_processing(self, document_service, processor, conversation_service, sessions):
        doc = await processed_document(document_service, processor, USER_ID)
        conversation = await conversation_service.create_conversation(USER_ID, doc.id)
        async with sessions() as db, db.begin():
            await db.execute(
                update(Document).where(Document.id == doc.id).values(status="processing")
                .execution_options(synchronize_session=False)
            )

        with pytest.raises(ConflictError):
            await document_service.delete_document(USER_ID, doc.id)

        # Rolled back as a unit: the conversation survives too
        detail = await conversation_service.get_conversation(USER_ID, conversation.id)
        assert detail.document.id == doc.id
