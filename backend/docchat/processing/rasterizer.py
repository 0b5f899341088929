"""
Page Rasterizer — turns a stored artifact into an ordered sequence of pages
═══════════════════════════════════════════════════════════════════════════

Per media type:

  PDF, text layer present
    The native text layer is read with PyMuPDF. If it holds at least
    PDF_TEXT_MIN_CHARS non-blank characters the whole document becomes ONE
    synthetic text unit and recognition is skipped entirely.

  PDF, scanned
    Page i is split into its own single-page PDF inside the run's WorkArea,
    rendered to PNG at OCR_RENDER_DPI and emitted as unit i.

  TIFF
    One unit per frame (Pillow), converted to PNG.

  JPEG / PNG
    One unit carrying the original bytes.

Failure model:
  - A page that cannot be split or rendered becomes a unit with `error` set;
    the sequence continues with the next page.
  - A source that cannot be opened at all raises SourceUnreadableError
    (run-level failure).

Threading:
  PyMuPDF documents are not safe to share across threads, so every fitz
  call of a run executes on the PageSequence's own single-thread executor.
  The async iterator pulls one page per call, which keeps memory bounded
  and lets the recognition pool pull pages only when it has a free slot.
"""

from __future__ import annotations

import asyncio
import io
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import AsyncIterator, Iterator

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from docchat.core.errors import InternalError
from docchat.processing.media import MediaType, PageStrategy
from docchat.processing.workarea import WorkArea

logger = logging.getLogger(__name__)

# Pillow modes PNG can store directly; anything else is converted to RGB
_PNG_MODES = frozenset({"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"})

_DONE  = object()
_UNSET = object()


class SourceUnreadableError(InternalError):
    """The artifact cannot be opened as its declared media type."""


# ---------------------------------------------------------------------------
# Page unit
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PageUnit:
    """
    One page of one document, in source order.

    index : 0-based, contiguous across the sequence
    image : PNG/JPEG bytes to recognize (image units)
    text  : pre-extracted text (the synthetic text-layer unit)
    error : set when this page could not be produced
    """
    document_id: uuid.UUID
    index:       int
    image:       bytes | None = None
    text:        str | None   = None
    error:       str | None   = None

    @property
    def is_text_layer(self) -> bool:
        return self.text is not None


# ---------------------------------------------------------------------------
# Page sequence
# ---------------------------------------------------------------------------

class PageSequence:
    """
    Lazy, finite, restartable sequence of PageUnits.

    Every iteration re-opens the source, so iterating twice yields the same
    pages. Use as a context manager to release the executor thread:

        async with rasterizer.pages(doc_id, data, media_type, area) as pages:
            async for unit in pages:
                ...
    """

    def __init__(
        self,
        document_id: uuid.UUID,
        source:      bytes,
        media_type:  MediaType,
        work_area:   WorkArea,
        *,
        dpi:           int = 300,
        min_text_chars: int = 1,
    ) -> None:
        self.document_id = document_id
        self.media_type  = media_type
        self._source     = source
        self._work_area  = work_area
        self._dpi        = dpi
        self._min_chars  = min_text_chars
        self._executor   = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rasterizer")
        self._open_generators: list[Iterator[PageUnit]] = []
        # Text-layer decision, made once per sequence (the source never changes)
        self._layer_text: object = _UNSET

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> "PageSequence":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    async def __aenter__(self) -> "PageSequence":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # A render may still be running on the executor thread; wait for it
        # without blocking the event loop.
        await asyncio.to_thread(self.close)

    def close(self) -> None:
        """Close any half-consumed iteration on its own thread, then stop the thread."""
        generators, self._open_generators = self._open_generators, []
        for gen in generators:
            self._executor.submit(gen.close)
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[PageUnit]:
        """Synchronous iteration on the calling thread."""
        return self._generate()

    async def __aiter__(self) -> AsyncIterator[PageUnit]:
        loop = asyncio.get_running_loop()
        gen = self._generate()
        self._open_generators.append(gen)
        try:
            while True:
                unit = await loop.run_in_executor(self._executor, next, gen, _DONE)
                if unit is _DONE:
                    return
                yield unit
        finally:
            if gen in self._open_generators:
                self._open_generators.remove(gen)
                await loop.run_in_executor(self._executor, gen.close)

    async def count(self) -> int:
        """Number of units a full iteration yields."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._count_sync)

    def _generate(self) -> Iterator[PageUnit]:
        strategy = self.media_type.strategy
        if strategy is PageStrategy.PDF:
            return self._pdf_pages()
        if strategy is PageStrategy.MULTI_FRAME_IMAGE:
            return self._frame_pages()
        return self._single_image()

    def _count_sync(self) -> int:
        strategy = self.media_type.strategy
        if strategy is PageStrategy.PDF:
            doc = self._open_pdf()
            try:
                return 1 if self._cached_text_layer(doc) is not None else doc.page_count
            finally:
                doc.close()
        if strategy is PageStrategy.MULTI_FRAME_IMAGE:
            with self._open_image() as img:
                return getattr(img, "n_frames", 1)
        self._open_image().close()
        return 1

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    def _open_pdf(self) -> fitz.Document:
        try:
            doc = fitz.open(stream=self._source, filetype="pdf")
        except Exception as exc:
            raise SourceUnreadableError(f"Cannot open PDF: {exc}") from exc
        if doc.needs_pass:
            doc.close()
            raise SourceUnreadableError("PDF is password-protected")
        if doc.page_count == 0:
            doc.close()
            raise SourceUnreadableError("PDF contains no pages")
        return doc

    def _cached_text_layer(self, doc: fitz.Document) -> str | None:
        if self._layer_text is _UNSET:
            self._layer_text = self._text_layer(doc)
        return self._layer_text  # type: ignore[return-value]

    def _text_layer(self, doc: fitz.Document) -> str | None:
        """Return the joined text layer, or None when the PDF looks scanned."""
        texts = [page.get_text().strip() for page in doc]
        if sum(len(t) for t in texts) < self._min_chars:
            return None
        return "\n\n".join(t for t in texts if t)

    def _pdf_pages(self) -> Iterator[PageUnit]:
        doc = self._open_pdf()
        try:
            text = self._cached_text_layer(doc)
            if text is not None:
                logger.info(
                    "Rasterizer | doc=%s strategy=text_layer pages=%d chars=%d",
                    self.document_id, doc.page_count, len(text),
                )
                yield PageUnit(self.document_id, 0, text=text)
                return

            logger.info(
                "Rasterizer | doc=%s strategy=render pages=%d dpi=%d",
                self.document_id, doc.page_count, self._dpi,
            )
            for i in range(doc.page_count):
                try:
                    image = self._render_page(doc, i)
                except Exception as exc:
                    logger.warning("Page render failed | doc=%s page=%d error=%s", self.document_id, i + 1, exc)
                    yield PageUnit(self.document_id, i, error=f"page could not be rendered: {exc}")
                    continue
                yield PageUnit(self.document_id, i, image=image)
        finally:
            doc.close()

    def _render_page(self, doc: fitz.Document, i: int) -> bytes:
        """Split page i into the work area, then render it to PNG."""
        page_path = self._work_area.file(f"page-{i + 1:04d}.pdf")
        single = fitz.open()
        try:
            single.insert_pdf(doc, from_page=i, to_page=i)
            single.save(str(page_path))
        finally:
            single.close()

        split = fitz.open(str(page_path))
        try:
            pix = split[0].get_pixmap(dpi=self._dpi)
            return pix.tobytes("png")
        finally:
            split.close()

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def _open_image(self) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(self._source))
            img.load()
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise SourceUnreadableError(f"Cannot open image: {exc}") from exc
        return img

    def _frame_pages(self) -> Iterator[PageUnit]:
        img = self._open_image()
        try:
            frames = getattr(img, "n_frames", 1)
            logger.info("Rasterizer | doc=%s strategy=frames frames=%d", self.document_id, frames)
            for i in range(frames):
                try:
                    img.seek(i)
                    frame = img if img.mode in _PNG_MODES else img.convert("RGB")
                    buf = io.BytesIO()
                    frame.save(buf, format="PNG")
                except Exception as exc:
                    logger.warning("Frame extraction failed | doc=%s frame=%d error=%s", self.document_id, i + 1, exc)
                    yield PageUnit(self.document_id, i, error=f"frame could not be extracted: {exc}")
                    continue
                yield PageUnit(self.document_id, i, image=buf.getvalue())
        finally:
            img.close()

    def _single_image(self) -> Iterator[PageUnit]:
        self._open_image().close()
        logger.info("Rasterizer | doc=%s strategy=single_image", self.document_id)
        yield PageUnit(self.document_id, 0, image=self._source)


# ---------------------------------------------------------------------------
# Rasterizer
# ---------------------------------------------------------------------------

class PageRasterizer:
    """Factory for PageSequences; holds the rendering settings."""

    def __init__(self, dpi: int = 300, min_text_chars: int = 1) -> None:
        self._dpi       = dpi
        self._min_chars = min_text_chars

    def pages(
        self,
        document_id: uuid.UUID,
        source:      bytes,
        media_type:  MediaType,
        work_area:   WorkArea,
    ) -> PageSequence:
        return PageSequence(
            document_id,
            source,
            media_type,
            work_area,
            dpi=self._dpi,
            min_text_chars=self._min_chars,
        )
