"""
Documents & OCR — Pydantic Request/Response Schemas

Covers:
  - Upload response (201 Created)
  - Document listing / detail
  - OCR process request and result

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - checksum is the SHA-256 of the raw file bytes, computed server-side.
  - Request bodies accept the camelCase keys used by the web client
    (documentId) as well as snake_case.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Processing state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status column.
    Transitions: unprocessed → processing → processed | failed
                 processed | failed → processing (re-run)
    """
    UNPROCESSED = "unprocessed"   # stored, never run
    PROCESSING  = "processing"    # a run holds the lease
    PROCESSED   = "processed"     # extracted_text is current
    FAILED      = "failed"        # last run aborted, see error_message


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class DocumentResponse(BaseModel):
    """Document metadata without the (potentially large) extracted text."""
    model_config = ConfigDict(from_attributes=True)

    id:            UUID
    filename:      str
    content_type:  str
    size_bytes:    int
    checksum:      str
    status:        DocumentStatus
    page_count:    int        = 0
    failed_pages:  int        = 0
    error_message: str | None = None
    created_at:    datetime
    updated_at:    datetime


class DocumentDetailResponse(DocumentResponse):
    extracted_text: str | None = None


# ---------------------------------------------------------------------------
# OCR process request / result
# ---------------------------------------------------------------------------

class ProcessDocumentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: UUID       = Field(..., alias="documentId")
    language:    str | None = Field(
        None,
        max_length=64,
        description="Tesseract language code, e.g. 'eng' or 'deu+eng'. Defaults to server setting.",
    )

    @field_validator("language")
    @classmethod
    def _blank_is_default(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class ProcessDocumentResponse(BaseModel):
    """Returned once a processing run completes successfully."""
    model_config = ConfigDict(from_attributes=True)

    id:             UUID
    status:         DocumentStatus
    page_count:     int
    failed_pages:   int
    extracted_text: str | None
