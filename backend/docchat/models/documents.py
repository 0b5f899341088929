"""
SQLAlchemy ORM Models — Documents, Conversations & Messages

SQLAlchemy 2.x mapped classes with portable column types (Uuid, DateTime)
so the same models run on PostgreSQL in production and SQLite in tests.

Ownership is enforced in the service layer: every lookup filters on the
authenticated user_id and a foreign row is reported exactly like a missing
one.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file and the text extracted from it.

    State machine (status column):
        unprocessed — stored, OCR never run
        processing  — a processing run holds the lease (lease_token set)
        processed   — extracted_text reflects a complete run (may carry
                      per-page failure markers, see failed_pages)
        failed      — last run aborted; error_message explains why and
                      extracted_text still holds the previous good result

    The lease columns implement single-flight processing: a run may only
    write its result while lease_token still matches the token it acquired.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('unprocessed', 'processing', 'processed', 'failed')",
            name="documents_status_check",
        ),
        Index("idx_documents_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Owner: the authenticated subject from the identity provider
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original sanitized filename provided by the client",
    )
    storage_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Artifact store key: <nonce>/<sha256><ext>",
    )
    content_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Declared media type, validated against the supported set at intake",
    )
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    checksum: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 hex digest of the stored bytes",
    )

    # Processing state machine
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="unprocessed")
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )
    page_count:   Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Processing lease
    lease_token:       Mapped[Optional[str]]      = mapped_column(String(32), nullable=True)
    lease_acquired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} user={self.user_id} "
            f"status={self.status} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Conversation model — conversations
# ---------------------------------------------------------------------------

class Conversation(Base):
    """
    A chat thread grounded in exactly one Document.

    last_sequence is the sequence number of the newest message; the next
    message gets last_sequence + 1. It is only advanced while the
    per-conversation lock is held.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index("idx_conversations_user_updated", "user_id", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    last_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Conversation id={self.id} user={self.user_id} document={self.document_id}>"


# ---------------------------------------------------------------------------
# Message model — messages
# ---------------------------------------------------------------------------

class Message(Base):
    """Immutable chat turn. Ordered by sequence within its conversation."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant')", name="messages_role_check"),
        UniqueConstraint("conversation_id", "sequence", name="uq_messages_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    role:     Mapped[str] = mapped_column(String(16), nullable=False)
    content:  Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Message id={self.id} conversation={self.conversation_id} seq={self.sequence} role={self.role}>"
