"""
OCR API Router

  POST /api/v1/ocr/process         body: {"documentId": "...", "language": "eng"}
  POST /api/v1/ocr/process/{id}    default language

Runs the full processing pipeline synchronously and returns the result.
A second request for a document that is already being processed gets 409.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter

from docchat.auth.dependencies import CurrentUser, Processor
from docchat.schemas.common import ErrorResponse
from docchat.schemas.documents import ProcessDocumentRequest, ProcessDocumentResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/ocr",
    tags=["OCR"],
)

_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid language code"},
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    404: {"model": ErrorResponse, "description": "Document not found"},
    409: {"model": ErrorResponse, "description": "Document is already being processed"},
    415: {"model": ErrorResponse, "description": "Unsupported media type"},
    500: {"model": ErrorResponse, "description": "Processing failed"},
}


@router.post(
    "/process",
    response_model=ProcessDocumentResponse,
    summary="Extract text from a document",
    responses=_RESPONSES,
)
async def process_document(
    body:      ProcessDocumentRequest,
    user:      CurrentUser,
    processor: Processor,
) -> ProcessDocumentResponse:
    doc = await processor.process_document(body.document_id, user.sub, body.language)
    return ProcessDocumentResponse.model_validate(doc)


@router.post(
    "/process/{document_id}",
    response_model=ProcessDocumentResponse,
    summary="Extract text from a document (default language)",
    responses=_RESPONSES,
)
async def process_document_by_id(
    document_id: UUID,
    user:        CurrentUser,
    processor:   Processor,
) -> ProcessDocumentResponse:
    doc = await processor.process_document(document_id, user.sub)
    return ProcessDocumentResponse.model_validate(doc)
