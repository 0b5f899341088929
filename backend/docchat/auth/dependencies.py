"""
Composed FastAPI Dependencies

Route handlers import from here — never from auth/token or app.state
directly. Services are built once by create_app() and stored on app.state;
these accessors hand them to handlers.

This is the single wiring point for the request context.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from docchat.auth.token import TokenPayload, get_current_user
from docchat.processing.orchestrator import DocumentProcessor
from docchat.services.conversations import ConversationService
from docchat.services.documents import DocumentService


def get_document_service(request: Request) -> DocumentService:
    return request.app.state.document_service


def get_document_processor(request: Request) -> DocumentProcessor:
    return request.app.state.document_processor


def get_conversation_service(request: Request) -> ConversationService:
    return request.app.state.conversation_service


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CurrentUser   = Annotated[TokenPayload,        Depends(get_current_user)]
Documents     = Annotated[DocumentService,     Depends(get_document_service)]
Processor     = Annotated[DocumentProcessor,   Depends(get_document_processor)]
Conversations = Annotated[ConversationService, Depends(get_conversation_service)]
