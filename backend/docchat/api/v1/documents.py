"""
Documents API Router

  POST   /api/v1/documents        multipart upload (field: file)
  GET    /api/v1/documents        owned documents, newest first
  GET    /api/v1/documents/{id}   metadata + extracted text
  DELETE /api/v1/documents/{id}   document, its conversations and artifact

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Bearer token verification → user id (sub claim)      │
  │ 2. Body read capped at MAX_UPLOAD_BYTES + 1             │
  │ 3. DocumentService.upload: size, type, magic bytes,     │
  │    artifact store, DB insert (status=unprocessed)       │
  └─────────────────────────────────────────────────────────┘

Errors are raised as DocChatError subclasses and rendered by the
application's exception handlers.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, File, Request, Response, UploadFile, status

from docchat.auth.dependencies import CurrentUser, Documents
from docchat.schemas.common import ErrorResponse
from docchat.schemas.documents import DocumentDetailResponse, DocumentResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)

_COMMON_ERRORS = {
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    404: {"model": ErrorResponse, "description": "Document not found"},
}


# ---------------------------------------------------------------------------
# POST /documents
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a document",
    description="Accepts PDF, JPEG, PNG or TIFF files up to MAX_UPLOAD_BYTES (10 MB by default).",
    responses={
        400: {"model": ErrorResponse, "description": "Empty file"},
        401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        415: {"model": ErrorResponse, "description": "Unsupported or mismatched file type"},
    },
)
async def upload_document(
    request:   Request,
    user:      CurrentUser,
    documents: Documents,
    file:      UploadFile = File(..., description="Document file (PDF, JPEG, PNG, TIFF)"),
) -> DocumentResponse:
    limit = request.app.state.settings.max_upload_bytes
    # One byte over the limit is enough for the service to reject it
    data = await file.read(limit + 1)

    doc = await documents.upload(
        user_id=user.sub,
        filename=file.filename,
        declared_type=file.content_type,
        data=data,
    )
    return DocumentResponse.model_validate(doc)


# ---------------------------------------------------------------------------
# GET /documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=list[DocumentResponse],
    summary="List owned documents",
    responses={401: _COMMON_ERRORS[401]},
)
async def list_documents(user: CurrentUser, documents: Documents) -> list[DocumentResponse]:
    docs = await documents.list_documents(user.sub)
    return [DocumentResponse.model_validate(d) for d in docs]


# ---------------------------------------------------------------------------
# GET /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentDetailResponse,
    summary="Get a document with its extracted text",
    responses=_COMMON_ERRORS,
)
async def get_document(document_id: UUID, user: CurrentUser, documents: Documents) -> DocumentDetailResponse:
    doc = await documents.get_document(user.sub, document_id)
    return DocumentDetailResponse.model_validate(doc)


# ---------------------------------------------------------------------------
# DELETE /documents/{document_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document",
    responses={
        **_COMMON_ERRORS,
        409: {"model": ErrorResponse, "description": "Document is being processed"},
    },
)
async def delete_document(document_id: UUID, user: CurrentUser, documents: Documents) -> Response:
    await documents.delete_document(user.sub, document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
