"""
Conversation Engine — document-grounded chat with ordered history

send_message() flow (serialized per conversation id):

  1. Load conversation + document (ownership enforced) ─ NotFoundError
  2. Reject empty content / document without text ────── BadRequestError
  3. Persist the user message (sequence = last_sequence + 1), bump updated_at
  4. Build prompt: system prompt with document text + full history in order
  5. Call the completion service once (LLM_TIMEOUT_SECONDS, no retry)
  6a. Success → persist assistant message, bump updated_at, return both
  6b. Failure → return the persisted user message with `error` set

The per-conversation lock makes steps 3–6 atomic with respect to other
send_message calls on the same conversation, so history never interleaves.
Sequence numbers are additionally protected by a UNIQUE constraint.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docchat.core.errors import BadRequestError, NotFoundError, UpstreamFailureError
from docchat.llm.completion import CompletionService
from docchat.llm.prompts import build_messages
from docchat.models.documents import Conversation, Document, Message, utcnow
from docchat.processing.leases import KeyedLocks
from docchat.services.documents import get_owned_document

logger = logging.getLogger(__name__)

CONVERSATION_NOT_FOUND = "Conversation not found"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class ConversationSummary:
    conversation: Conversation
    document:     Document
    last_message: Message | None


@dataclass
class ConversationDetail:
    conversation: Conversation
    document:     Document
    messages:     list[Message]


@dataclass
class SendMessageResult:
    """assistant_message is None exactly when error is set."""
    user_message:      Message
    assistant_message: Message | None = None
    error:             str | None     = None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ConversationService:

    def __init__(
        self,
        sessions:   async_sessionmaker[AsyncSession],
        completion: CompletionService,
    ) -> None:
        self._sessions   = sessions
        self._completion = completion
        self._locks      = KeyedLocks()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    async def _owned_conversation(
        db: AsyncSession,
        user_id: str,
        conversation_id: uuid.UUID,
    ) -> tuple[Conversation, Document]:
        result = await db.execute(
            select(Conversation, Document)
            .join(Document, Document.id == Conversation.document_id)
            .where(Conversation.id == conversation_id, Conversation.user_id == user_id)
        )
        row = result.first()
        if row is None:
            raise NotFoundError(CONVERSATION_NOT_FOUND)
        return row[0], row[1]

    @staticmethod
    async def _history(db: AsyncSession, conversation_id: uuid.UUID) -> list[Message]:
        result = await db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.sequence)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_conversation(self, user_id: str, document_id: uuid.UUID) -> Conversation:
        async with self._sessions() as db, db.begin():
            doc = await get_owned_document(db, document_id, user_id)
            conversation = Conversation(id=uuid.uuid4(), user_id=user_id, document_id=doc.id)
            db.add(conversation)

        logger.info("Conversation created | user=%s conversation=%s doc=%s", user_id, conversation.id, doc.id)
        return conversation

    async def list_conversations(self, user_id: str) -> list[ConversationSummary]:
        """Owned conversations, most recently active first, with their newest message."""
        async with self._sessions() as db:
            result = await db.execute(
                select(Conversation, Document)
                .join(Document, Document.id == Conversation.document_id)
                .where(Conversation.user_id == user_id)
                .order_by(Conversation.updated_at.desc(), Conversation.id)
            )
            rows = result.all()
            if not rows:
                return []

            latest = await db.execute(
                select(Message).where(
                    Message.conversation_id.in_([conv.id for conv, _ in rows]),
                    Message.sequence == (
                        select(Conversation.last_sequence)
                        .where(Conversation.id == Message.conversation_id)
                        .scalar_subquery()
                    ),
                )
            )
            last_by_conversation = {m.conversation_id: m for m in latest.scalars()}

        return [
            ConversationSummary(conv, doc, last_by_conversation.get(conv.id))
            for conv, doc in rows
        ]

    async def get_conversation(self, user_id: str, conversation_id: uuid.UUID) -> ConversationDetail:
        async with self._sessions() as db:
            conversation, doc = await self._owned_conversation(db, user_id, conversation_id)
            messages = await self._history(db, conversation.id)
        return ConversationDetail(conversation, doc, messages)

    async def delete_conversation(self, user_id: str, conversation_id: uuid.UUID) -> None:
        async with self._locks.lock(conversation_id):
            async with self._sessions() as db, db.begin():
                conversation, _ = await self._owned_conversation(db, user_id, conversation_id)
                await db.execute(
                    delete(Message)
                    .where(Message.conversation_id == conversation.id)
                    .execution_options(synchronize_session=False)
                )
                await db.execute(
                    delete(Conversation)
                    .where(Conversation.id == conversation.id)
                    .execution_options(synchronize_session=False)
                )

        logger.info("Conversation deleted | user=%s conversation=%s", user_id, conversation_id)

    async def send_message(self, user_id: str, conversation_id: uuid.UUID, content: str) -> SendMessageResult:
        if not content or not content.strip():
            raise BadRequestError("Message content must not be empty")

        async with self._locks.lock(conversation_id):
            # ---- Steps 1-3: validate and persist the user turn ---------------
            async with self._sessions() as db, db.begin():
                conversation, doc = await self._owned_conversation(db, user_id, conversation_id)
                if not doc.extracted_text:
                    raise BadRequestError(
                        "Document has no extracted text yet. Process the document before chatting."
                    )
                history = await self._history(db, conversation.id)
                user_message = self._append(db, conversation, "user", content)
                document_text = doc.extracted_text

            # ---- Steps 4-5: one completion call ------------------------------
            messages = build_messages(
                document_text,
                [(m.role, m.content) for m in history] + [(user_message.role, user_message.content)],
            )
            try:
                reply = await self._completion.complete(messages)
            except (UpstreamFailureError, asyncio.TimeoutError) as exc:
                error = getattr(exc, "message", None) or "Failed to generate response: completion service timed out"
                logger.warning(
                    "Assistant turn failed | conversation=%s seq=%d error=%s",
                    conversation_id, user_message.sequence, error,
                )
                return SendMessageResult(user_message=user_message, error=error)

            # ---- Step 6a: persist the assistant turn --------------------------
            async with self._sessions() as db, db.begin():
                conversation, _ = await self._owned_conversation(db, user_id, conversation_id)
                assistant_message = self._append(db, conversation, "assistant", reply.content)

        logger.info(
            "Assistant turn | conversation=%s seq=%d model=%s latency_ms=%.1f",
            conversation_id, assistant_message.sequence, reply.model_used, reply.latency_ms,
        )
        return SendMessageResult(user_message=user_message, assistant_message=assistant_message)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _append(db: AsyncSession, conversation: Conversation, role: str, content: str) -> Message:
        """
        Add the next message to *conversation* inside the caller's transaction.
        Caller must hold the conversation lock.
        """
        # created_at never goes backwards within a conversation, even if the
        # wall clock does
        now = max(utcnow(), _as_utc(conversation.updated_at) + timedelta(microseconds=1))

        conversation.last_sequence += 1
        conversation.updated_at = now
        message = Message(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            sequence=conversation.last_sequence,
            role=role,
            content=content,
            created_at=now,
        )
        db.add(message)
        return message
