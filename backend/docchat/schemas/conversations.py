"""Conversation request/response schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CreateConversationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: UUID = Field(..., alias="documentId")


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: UUID = Field(..., alias="conversationId")
    content:         str  = Field(..., max_length=20_000)


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:         UUID
    sequence:   int
    role:       str
    content:    str
    created_at: datetime


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:          UUID
    document_id: UUID
    created_at:  datetime
    updated_at:  datetime


class ConversationSummaryResponse(ConversationResponse):
    """List entry: the conversation, its document, and the newest message."""
    document_filename:     str
    document_content_type: str
    last_message:          MessageResponse | None = None


class ConversationDetailResponse(ConversationResponse):
    document_filename: str
    document_text:     str | None
    messages:          list[MessageResponse] = Field(default_factory=list)


class SendMessageResponse(BaseModel):
    """
    user_message is always persisted. When the completion service fails,
    assistant_message is null and error explains why.
    """
    user_message:      MessageResponse
    assistant_message: MessageResponse | None = None
    error:             str | None             = None
