"""
Supported media types and how each one is turned into pages.

The set is closed: anything outside MediaType is rejected at intake and
again before a processing run starts.

    MediaType   MIME              PageStrategy
    ─────────   ───────────────   ─────────────────────────────────────────
    PDF         application/pdf   PDF   (text layer, else render per page)
    TIFF        image/tiff        MULTI_FRAME_IMAGE (one page per frame)
    JPEG        image/jpeg        SINGLE_IMAGE
    PNG         image/png         SINGLE_IMAGE
"""

from __future__ import annotations

from enum import Enum

from docchat.core.errors import UnsupportedMediaTypeError


class PageStrategy(str, Enum):
    PDF               = "pdf"
    MULTI_FRAME_IMAGE = "multi_frame_image"
    SINGLE_IMAGE      = "single_image"


class MediaType(str, Enum):
    PDF  = "application/pdf"
    JPEG = "image/jpeg"
    PNG  = "image/png"
    TIFF = "image/tiff"

    @classmethod
    def from_mime(cls, mime: str | None) -> "MediaType":
        """Map a declared MIME type onto the closed set, or raise."""
        normalized = (mime or "").split(";", 1)[0].strip().lower()
        normalized = _MIME_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise UnsupportedMediaTypeError(
                f"Unsupported file type '{mime}'. Allowed: PDF, JPEG, PNG, TIFF."
            ) from None

    @property
    def strategy(self) -> PageStrategy:
        return _STRATEGIES[self]

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    def matches_content(self, head: bytes) -> bool:
        """True if the leading bytes carry this type's signature."""
        return any(head.startswith(magic) for magic in _MAGIC_BYTES[self])


_MIME_ALIASES: dict[str, str] = {
    "image/jpg":   "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/tif":   "image/tiff",
}

_STRATEGIES: dict[MediaType, PageStrategy] = {
    MediaType.PDF:  PageStrategy.PDF,
    MediaType.TIFF: PageStrategy.MULTI_FRAME_IMAGE,
    MediaType.JPEG: PageStrategy.SINGLE_IMAGE,
    MediaType.PNG:  PageStrategy.SINGLE_IMAGE,
}

_EXTENSIONS: dict[MediaType, str] = {
    MediaType.PDF:  ".pdf",
    MediaType.TIFF: ".tiff",
    MediaType.JPEG: ".jpg",
    MediaType.PNG:  ".png",
}

# Magic byte signatures checked against the first bytes of the upload
_MAGIC_BYTES: dict[MediaType, tuple[bytes, ...]] = {
    MediaType.PDF:  (b"%PDF",),
    MediaType.JPEG: (b"\xff\xd8\xff",),
    MediaType.PNG:  (b"\x89PNG\r\n\x1a\n",),
    MediaType.TIFF: (b"II*\x00", b"MM\x00*"),
}
