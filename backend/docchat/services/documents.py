"""
Document Service — intake and management of uploaded files

Upload pipeline:
  1. Reject empty payloads and payloads over MAX_UPLOAD_BYTES
  2. Map the declared MIME type onto the closed MediaType set
  3. Check the file's magic bytes agree with the declared type
  4. Sanitize the filename (basename only, safe characters)
  5. Store the bytes in the Artifact Store (durable before we continue)
  6. Insert the Document row (status=unprocessed)

Security invariants enforced here:
  - user_id is ALWAYS taken from the verified bearer token, never the body.
  - Storage keys are constructed server-side; the filename never reaches
    the storage layer.
  - A document owned by someone else is reported exactly like a missing one.
"""

from __future__ import annotations

import logging
import re
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docchat.core.config import Settings
from docchat.core.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    PayloadTooLargeError,
    UnsupportedMediaTypeError,
)
from docchat.models.documents import Conversation, Document, Message
from docchat.processing.media import MediaType
from docchat.storage.artifacts import ArtifactStore, sha256_hex

logger = logging.getLogger(__name__)

DOCUMENT_NOT_FOUND = "Document not found"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def sanitize_filename(filename: str | None) -> str:
    """
    Strip path components and replace unsafe characters.
    Returns only the basename with OS-safe characters.
    """
    basename = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\- ]", "_", basename).strip(" .")
    return safe[:200] or "upload"


async def get_owned_document(
    db: AsyncSession,
    document_id: uuid.UUID,
    user_id: str,
) -> Document:
    """Load a document owned by *user_id* or raise NotFoundError."""
    result = await db.execute(
        select(Document).where(Document.id == document_id, Document.user_id == user_id)
    )
    doc = result.scalar_one_or_none()
    if doc is None:
        raise NotFoundError(DOCUMENT_NOT_FOUND)
    return doc


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentService:
    """
    Long-lived service object created once by the app factory.
    Each operation opens its own short-lived session.
    """

    def __init__(
        self,
        sessions:  async_sessionmaker[AsyncSession],
        artifacts: ArtifactStore,
        settings:  Settings,
    ) -> None:
        self._sessions  = sessions
        self._artifacts = artifacts
        self._max_bytes = settings.max_upload_bytes

    async def upload(
        self,
        user_id:       str,
        filename:      str | None,
        declared_type: str | None,
        data:          bytes,
    ) -> Document:
        # ---- Step 1: Size guard -----------------------------------------
        if not data:
            raise BadRequestError("Uploaded file is empty")
        if len(data) > self._max_bytes:
            max_mb = self._max_bytes // (1024 * 1024)
            raise PayloadTooLargeError(
                f"Uploaded file exceeds the {max_mb} MB limit ({len(data):,} bytes received)"
            )

        # ---- Step 2/3: Media type, declared and sniffed -----------------
        media_type = MediaType.from_mime(declared_type)
        if not media_type.matches_content(data[:8]):
            raise UnsupportedMediaTypeError(
                f"File content does not match the declared type '{media_type.value}'"
            )

        # ---- Step 4: Filename and checksum ------------------------------
        safe_filename = sanitize_filename(filename)
        checksum = sha256_hex(data)

        logger.info(
            "Upload start | user=%s file=%s type=%s size=%d sha256=%s",
            user_id, safe_filename, media_type.value, len(data), checksum,
        )

        # ---- Step 5: Durable artifact before the row exists --------------
        storage_key = await self._artifacts.put(data, media_type.extension)

        # ---- Step 6: Persist document record -----------------------------
        doc = Document(
            id=uuid.uuid4(),
            user_id=user_id,
            filename=safe_filename,
            storage_key=storage_key,
            content_type=media_type.value,
            size_bytes=len(data),
            checksum=checksum,
            status="unprocessed",
        )
        try:
            async with self._sessions() as db, db.begin():
                db.add(doc)
        except Exception:
            logger.exception("Document insert failed, removing artifact | key=%s", storage_key)
            await self._artifacts.delete(storage_key)
            raise

        logger.info("Upload complete | user=%s doc=%s key=%s", user_id, doc.id, storage_key)
        return doc

    async def list_documents(self, user_id: str) -> list[Document]:
        """Owned documents, newest first."""
        async with self._sessions() as db:
            result = await db.execute(
                select(Document)
                .where(Document.user_id == user_id)
                .order_by(Document.created_at.desc(), Document.id)
            )
            return list(result.scalars().all())

    async def get_document(self, user_id: str, document_id: uuid.UUID) -> Document:
        async with self._sessions() as db:
            return await get_owned_document(db, document_id, user_id)

    async def delete_document(self, user_id: str, document_id: uuid.UUID) -> None:
        """
        Delete the document with its conversations and messages in one
        transaction, then remove the artifact. Refused while processing.
        """
        async with self._sessions() as db, db.begin():
            doc = await get_owned_document(db, document_id, user_id)
            conversation_ids = select(Conversation.id).where(Conversation.document_id == doc.id)

            await db.execute(
                delete(Message)
                .where(Message.conversation_id.in_(conversation_ids))
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                delete(Conversation)
                .where(Conversation.document_id == doc.id)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                delete(Document)
                .where(Document.id == doc.id, Document.status != "processing")
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Raising rolls back the message/conversation deletes above
                raise ConflictError("Document is being processed; try again once it finishes")

        try:
            await self._artifacts.delete(doc.storage_key)
        except Exception:
            # Row is already gone; the blob is left orphaned
            logger.exception("Artifact delete failed | doc=%s key=%s", doc.id, doc.storage_key)

        logger.info("Document deleted | user=%s doc=%s", user_id, doc.id)
