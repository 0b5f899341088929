"""
Error taxonomy shared by every layer.

Services raise these; the API layer turns them into the ErrorResponse
envelope (see docchat.schemas.common) with the matching HTTP status.

  NotFoundError             404  missing OR foreign resource (never leaks existence)
  ConflictError             409  processing lease already held / lost
  UnsupportedMediaTypeError 415  media type outside the supported set
  BadRequestError           400  caller error (e.g. chatting before OCR)
  PayloadTooLargeError      413  upload over MAX_UPLOAD_BYTES
  UpstreamFailureError      502  recognition / completion service error or timeout
  InternalError             500  storage or persistence failure
"""

from __future__ import annotations


class DocChatError(Exception):
    """Base for all errors with a stable, client-facing error kind."""

    error_code:  str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class NotFoundError(DocChatError):
    error_code  = "NOT_FOUND"
    status_code = 404


class ConflictError(DocChatError):
    error_code  = "CONFLICT"
    status_code = 409


class UnsupportedMediaTypeError(DocChatError):
    error_code  = "UNSUPPORTED_MEDIA_TYPE"
    status_code = 415


class BadRequestError(DocChatError):
    error_code  = "BAD_REQUEST"
    status_code = 400


class PayloadTooLargeError(BadRequestError):
    error_code  = "FILE_TOO_LARGE"
    status_code = 413


class UpstreamFailureError(DocChatError):
    error_code  = "UPSTREAM_FAILURE"
    status_code = 502


class InternalError(DocChatError):
    error_code  = "INTERNAL_ERROR"
    status_code = 500
