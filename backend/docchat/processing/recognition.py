"""
Recognition Worker Pool — bounded parallel OCR over a PageSequence

                 ┌────────── semaphore (OCR_CONCURRENCY slots) ──────────┐
  PageSequence ──┤ acquire slot → pull next unit → spawn page task        ├──► {index: PageResult}
                 └── page task: preprocess → recognize (timeout) → slot ──┘

  - A unit is pulled only after a slot is free, so at most N rendered
    pages are held in memory at once.
  - Text-layer units and units that already carry an error never reach
    the recognizer.
  - Pre-processing failure is logged and the original image is used.
  - Recognition errors and timeouts become per-page errors; sibling pages
    are unaffected.
  - If pulling the next unit fails (run-level error), in-flight page tasks
    are cancelled and the error propagates.

Blocking work (Pillow, Tesseract) runs in worker threads.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass
from typing import Protocol

import pytesseract
from PIL import Image, ImageFilter, ImageOps

from docchat.core.errors import UpstreamFailureError
from docchat.processing.rasterizer import PageSequence, PageUnit

logger = logging.getLogger(__name__)


class RecognitionError(UpstreamFailureError):
    """The recognition engine failed on a page."""


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PageResult:
    """
    Outcome for one page.

    extraction_method : "text_layer" | "ocr" | "none"
    """
    index:             int
    text:              str | None = None
    error:             str | None = None
    extraction_method: str        = "none"

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Recognizer
# ---------------------------------------------------------------------------

class Recognizer(Protocol):
    """Blocking OCR engine; called from a worker thread."""

    def recognize(self, image: bytes, language: str) -> str: ...


class TesseractRecognizer:
    """
    Tesseract via pytesseract.

    The timeout is passed to pytesseract as well, which kills the tesseract
    subprocess; the pool's own deadline alone would leave it running.
    """

    def __init__(self, tesseract_cmd: str = "", timeout: float = 0) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self._timeout = timeout

    def recognize(self, image: bytes, language: str) -> str:
        try:
            with Image.open(io.BytesIO(image)) as img:
                return pytesseract.image_to_string(img, lang=language, timeout=self._timeout)
        except pytesseract.TesseractNotFoundError as exc:
            raise RecognitionError("Tesseract is not installed or not on PATH") from exc
        except (pytesseract.TesseractError, RuntimeError, OSError) as exc:
            raise RecognitionError(f"Tesseract failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Pre-processing
# ---------------------------------------------------------------------------

class ImagePreprocessor:
    """Grayscale → autocontrast → sharpen. Output is PNG bytes."""

    def process(self, image: bytes) -> bytes:
        with Image.open(io.BytesIO(image)) as img:
            out = ImageOps.grayscale(img)
            out = ImageOps.autocontrast(out)
            out = out.filter(ImageFilter.SHARPEN)
            buf = io.BytesIO()
            out.save(buf, format="PNG")
            return buf.getvalue()


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

class RecognitionPool:

    def __init__(
        self,
        recognizer:   Recognizer,
        preprocessor: ImagePreprocessor | None = None,
        concurrency:  int = 4,
        page_timeout: float = 120.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._recognizer   = recognizer
        self._preprocessor = preprocessor or ImagePreprocessor()
        self._concurrency  = concurrency
        self._page_timeout = page_timeout

    async def run(self, pages: PageSequence, language: str) -> dict[int, PageResult]:
        """Recognize every unit of *pages*; returns results keyed by page index."""
        t0 = time.monotonic()
        slots = asyncio.Semaphore(self._concurrency)
        tasks: list[asyncio.Task[PageResult]] = []
        units = pages.__aiter__()

        try:
            while True:
                await slots.acquire()
                try:
                    unit = await units.__anext__()
                except StopAsyncIteration:
                    slots.release()
                    break
                except BaseException:
                    slots.release()
                    raise
                tasks.append(asyncio.create_task(self._run_page(unit, language, slots)))

            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            await units.aclose()

        failed = sum(1 for r in results if not r.ok)
        logger.info(
            "RecognitionPool | doc=%s pages=%d failed=%d concurrency=%d elapsed_ms=%.0f",
            pages.document_id, len(results), failed, self._concurrency,
            (time.monotonic() - t0) * 1000,
        )
        return {r.index: r for r in results}

    async def _run_page(self, unit: PageUnit, language: str, slots: asyncio.Semaphore) -> PageResult:
        try:
            return await self._recognize_unit(unit, language)
        finally:
            slots.release()

    async def _recognize_unit(self, unit: PageUnit, language: str) -> PageResult:
        if unit.error is not None:
            return PageResult(unit.index, error=unit.error)
        if unit.is_text_layer:
            return PageResult(unit.index, text=unit.text, extraction_method="text_layer")

        image = await asyncio.to_thread(self._preprocess, unit)
        try:
            text = await asyncio.wait_for(
                asyncio.to_thread(self._recognizer.recognize, image, language),
                timeout=self._page_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Recognition timed out | doc=%s page=%d timeout=%.0fs",
                unit.document_id, unit.index + 1, self._page_timeout,
            )
            return PageResult(unit.index, error=f"recognition timed out after {self._page_timeout:g}s")
        except Exception as exc:
            logger.warning(
                "Recognition failed | doc=%s page=%d error=%s",
                unit.document_id, unit.index + 1, exc,
            )
            return PageResult(unit.index, error=str(exc) or type(exc).__name__)

        return PageResult(unit.index, text=text.strip(), extraction_method="ocr")

    def _preprocess(self, unit: PageUnit) -> bytes:
        try:
            return self._preprocessor.process(unit.image)
        except Exception as exc:
            logger.warning(
                "Pre-processing failed, using original image | doc=%s page=%d error=%s",
                unit.document_id, unit.index + 1, exc,
            )
            return unit.image
