"""
Conversations API Router

  POST   /api/v1/conversations           {"documentId": "..."}
  GET    /api/v1/conversations           owned, most recently active first
  GET    /api/v1/conversations/{id}      full history + document text
  POST   /api/v1/conversations/message   {"conversationId": "...", "content": "..."}
  DELETE /api/v1/conversations/{id}

A failed completion call is NOT an HTTP error: the message endpoint returns
200 with the persisted user message, assistant_message=null and `error` set.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Response, status

from docchat.auth.dependencies import Conversations, CurrentUser
from docchat.schemas.common import ErrorResponse
from docchat.schemas.conversations import (
    ConversationDetailResponse,
    ConversationResponse,
    ConversationSummaryResponse,
    CreateConversationRequest,
    MessageResponse,
    SendMessageRequest,
    SendMessageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/conversations",
    tags=["Conversations"],
)

_COMMON_ERRORS = {
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    404: {"model": ErrorResponse, "description": "Conversation or document not found"},
}


@router.post(
    "",
    response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a conversation about a document",
    responses=_COMMON_ERRORS,
)
async def create_conversation(
    body:          CreateConversationRequest,
    user:          CurrentUser,
    conversations: Conversations,
) -> ConversationResponse:
    conversation = await conversations.create_conversation(user.sub, body.document_id)
    return ConversationResponse.model_validate(conversation)


@router.get(
    "",
    response_model=list[ConversationSummaryResponse],
    summary="List conversations",
    responses={401: _COMMON_ERRORS[401]},
)
async def list_conversations(user: CurrentUser, conversations: Conversations) -> list[ConversationSummaryResponse]:
    summaries = await conversations.list_conversations(user.sub)
    return [
        ConversationSummaryResponse(
            id=s.conversation.id,
            document_id=s.conversation.document_id,
            created_at=s.conversation.created_at,
            updated_at=s.conversation.updated_at,
            document_filename=s.document.filename,
            document_content_type=s.document.content_type,
            last_message=MessageResponse.model_validate(s.last_message) if s.last_message else None,
        )
        for s in summaries
    ]


@router.post(
    "/message",
    response_model=SendMessageResponse,
    summary="Send a message and get the assistant's reply",
    responses={
        **_COMMON_ERRORS,
        400: {"model": ErrorResponse, "description": "Empty message or document not processed yet"},
    },
)
async def send_message(
    body:          SendMessageRequest,
    user:          CurrentUser,
    conversations: Conversations,
) -> SendMessageResponse:
    result = await conversations.send_message(user.sub, body.conversation_id, body.content)
    return SendMessageResponse(
        user_message=MessageResponse.model_validate(result.user_message),
        assistant_message=(
            MessageResponse.model_validate(result.assistant_message)
            if result.assistant_message else None
        ),
        error=result.error,
    )


@router.get(
    "/{conversation_id}",
    response_model=ConversationDetailResponse,
    summary="Get a conversation with its full history",
    responses=_COMMON_ERRORS,
)
async def get_conversation(
    conversation_id: UUID,
    user:            CurrentUser,
    conversations:   Conversations,
) -> ConversationDetailResponse:
    detail = await conversations.get_conversation(user.sub, conversation_id)
    return ConversationDetailResponse(
        id=detail.conversation.id,
        document_id=detail.conversation.document_id,
        created_at=detail.conversation.created_at,
        updated_at=detail.conversation.updated_at,
        document_filename=detail.document.filename,
        document_text=detail.document.extracted_text,
        messages=[MessageResponse.model_validate(m) for m in detail.messages],
    )


@router.delete(
    "/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a conversation and its messages",
    responses=_COMMON_ERRORS,
)
async def delete_conversation(
    conversation_id: UUID,
    user:            CurrentUser,
    conversations:   Conversations,
) -> Response:
    await conversations.delete_conversation(user.sub, conversation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
