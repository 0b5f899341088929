"""
Document Processing Orchestrator
═══════════════════════════════

    process_document(document_id, user_id, language)
        │
        ├─ load + ownership check ─────────────── NotFoundError
        ├─ media type / language validation ───── UnsupportedMediaTypeError / BadRequestError
        ├─ in-process single-flight (KeyedLocks) ─ ConflictError
        ├─ DB lease (compare-and-set) ──────────── ConflictError
        │     status: * → processing, lease_token = <run token>
        │
        ├─ artifact → WorkArea → PageSequence → RecognitionPool → TextAssembler
        │     heartbeat: lease_acquired_at renewed every TTL/3 while the
        │     pipeline runs; a renewal that matches no row cancels the
        │     pipeline → ConflictError, nothing written
        │
        ├─ success        status → processed, text + counters, lease cleared
        │                 (guarded by lease_token: a run whose lease was taken
        │                  over writes nothing and gets ConflictError)
        ├─ all pages failed / run-level error
        │                 status → failed, error_message set, previous
        │                 extracted_text left untouched
        └─ cancelled      row stays 'processing'; once the lease is older
                          than PROCESSING_LEASE_TTL_SECONDS a new run may take it

Partial failure policy: at least one page succeeded → processed (with
per-page failure markers in the text); every page failed → failed.

Re-processing a processed document always re-runs the full pipeline and
overwrites the previous text.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from datetime import timedelta

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docchat.core.config import Settings
from docchat.core.errors import BadRequestError, ConflictError, DocChatError, InternalError
from docchat.models.documents import Document, utcnow
from docchat.processing.assembler import AssembledText, TextAssembler
from docchat.processing.leases import KeyedLocks
from docchat.processing.media import MediaType
from docchat.processing.rasterizer import PageRasterizer
from docchat.processing.recognition import RecognitionPool
from docchat.processing.workarea import WorkArea
from docchat.services.documents import get_owned_document
from docchat.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)

# Tesseract language codes: eng, chi_sim, deu+eng, …
_LANGUAGE_RE = re.compile(r"^[A-Za-z_]{2,32}(\+[A-Za-z_]{2,32}){0,7}$")

ALREADY_PROCESSING = "Document is already being processed"
LEASE_LOST         = "Processing lease was taken over by another run; result discarded"


class ExtractionFailedError(InternalError):
    """Every page of the document failed to produce text."""


class DocumentProcessor:

    def __init__(
        self,
        sessions:   async_sessionmaker[AsyncSession],
        artifacts:  ArtifactStore,
        rasterizer: PageRasterizer,
        pool:       RecognitionPool,
        settings:   Settings,
        assembler:  TextAssembler | None = None,
    ) -> None:
        self._sessions   = sessions
        self._artifacts  = artifacts
        self._rasterizer = rasterizer
        self._pool       = pool
        self._assembler  = assembler or TextAssembler()
        self._work_dir   = settings.work_dir
        self._default_language = settings.ocr_default_language
        self._lease_ttl  = timedelta(seconds=settings.processing_lease_ttl_seconds)
        self._heartbeat_every = settings.processing_lease_ttl_seconds / 3
        self._inflight   = KeyedLocks()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def process_document(
        self,
        document_id: uuid.UUID,
        user_id:     str,
        language:    str | None = None,
    ) -> Document:
        async with self._sessions() as db:
            doc = await get_owned_document(db, document_id, user_id)

        media_type = MediaType.from_mime(doc.content_type)
        lang = self.resolve_language(language)

        async with self._inflight.try_lock(doc.id, ALREADY_PROCESSING):
            token = await self._acquire_lease(doc.id)
            t0 = time.monotonic()
            logger.info(
                "Processing start | doc=%s user=%s type=%s lang=%s token=%s",
                doc.id, user_id, media_type.value, lang, token,
            )

            try:
                assembled = await self._run_leased(doc, media_type, lang, token)
                if assembled.all_failed:
                    raise ExtractionFailedError(
                        f"Text extraction failed on all {assembled.page_count} page(s)"
                    )
                await self._mark_processed(doc.id, token, assembled)
            except asyncio.CancelledError:
                logger.warning(
                    "Processing cancelled | doc=%s token=%s (row stays 'processing' until the lease expires)",
                    doc.id, token,
                )
                raise
            except DocChatError as exc:
                await self._mark_failed(doc.id, token, exc.message)
                raise
            except Exception as exc:
                logger.exception("Processing crashed | doc=%s", doc.id)
                await self._mark_failed(doc.id, token, f"Processing failed: {exc}")
                raise InternalError(f"Processing failed: {exc}") from exc

            logger.info(
                "Processing done | doc=%s pages=%d failed_pages=%d used_ocr=%s chars=%d elapsed_ms=%.0f",
                doc.id, assembled.page_count, len(assembled.failed_pages),
                assembled.used_ocr, len(assembled.text), (time.monotonic() - t0) * 1000,
            )

        async with self._sessions() as db:
            return await get_owned_document(db, document_id, user_id)

    def resolve_language(self, language: str | None) -> str:
        lang = (language or "").strip() or self._default_language
        if not _LANGUAGE_RE.match(lang):
            raise BadRequestError(f"Invalid OCR language code '{lang}' (expected e.g. 'eng' or 'deu+eng')")
        return lang

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_leased(self, doc: Document, media_type: MediaType, language: str, token: str) -> AssembledText:
        """Run the pipeline while a heartbeat keeps the lease alive."""
        pipeline  = asyncio.create_task(self._run_pipeline(doc, media_type, language))
        heartbeat = asyncio.create_task(self._heartbeat(doc.id, token))
        try:
            done, _ = await asyncio.wait({pipeline, heartbeat}, return_when=asyncio.FIRST_COMPLETED)
            if pipeline in done:
                return pipeline.result()
            # The heartbeat only returns by raising: lease lost or renewal failed
            pipeline.cancel()
            await asyncio.gather(pipeline, return_exceptions=True)
            heartbeat.result()
            raise ConflictError(LEASE_LOST)
        finally:
            for task in (pipeline, heartbeat):
                task.cancel()
            await asyncio.gather(pipeline, heartbeat, return_exceptions=True)

    async def _heartbeat(self, document_id: uuid.UUID, token: str) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_every)
            if not await self._renew_lease(document_id, token):
                logger.warning("Lease lost mid-run, aborting | doc=%s token=%s", document_id, token)
                raise ConflictError(LEASE_LOST)

    async def _run_pipeline(self, doc: Document, media_type: MediaType, language: str) -> AssembledText:
        source = await self._artifacts.get(doc.storage_key)

        with WorkArea(self._work_dir, doc.id) as area:
            async with self._rasterizer.pages(doc.id, source, media_type, area) as pages:
                page_count = await pages.count()
                results = await self._pool.run(pages, language)

        return self._assembler.assemble(results, page_count)

    # ------------------------------------------------------------------
    # Lease and state transitions
    # ------------------------------------------------------------------

    async def _acquire_lease(self, document_id: uuid.UUID) -> str:
        token = uuid.uuid4().hex
        now = utcnow()
        stale_before = now - self._lease_ttl

        async with self._sessions() as db, db.begin():
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    or_(
                        Document.status != "processing",
                        Document.lease_acquired_at.is_(None),
                        Document.lease_acquired_at < stale_before,
                    ),
                )
                .values(
                    status="processing",
                    lease_token=token,
                    lease_acquired_at=now,
                    error_message=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

        if result.rowcount != 1:
            logger.info("Lease refused | doc=%s (another run holds it)", document_id)
            raise ConflictError(ALREADY_PROCESSING)
        return token

    async def _renew_lease(self, document_id: uuid.UUID, token: str) -> bool:
        now = utcnow()
        async with self._sessions() as db, db.begin():
            result = await db.execute(
                update(Document)
                .where(Document.id == document_id, Document.lease_token == token)
                .values(lease_acquired_at=now)
                .execution_options(synchronize_session=False)
            )
        logger.debug("Lease renewed | doc=%s token=%s rows=%d", document_id, token, result.rowcount)
        return result.rowcount == 1

    async def _mark_processed(self, document_id: uuid.UUID, token: str, assembled: AssembledText) -> None:
        async with self._sessions() as db, db.begin():
            result = await db.execute(
                update(Document)
                .where(Document.id == document_id, Document.lease_token == token)
                .values(
                    status="processed",
                    extracted_text=assembled.text,
                    page_count=assembled.page_count,
                    failed_pages=len(assembled.failed_pages),
                    error_message=None,
                    lease_token=None,
                    lease_acquired_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

        if result.rowcount != 1:
            logger.warning("Lease lost before commit | doc=%s token=%s", document_id, token)
            raise ConflictError(LEASE_LOST)

    async def _mark_failed(self, document_id: uuid.UUID, token: str, message: str) -> None:
        """Record a failed run. Never raises, so the original error propagates."""
        try:
            async with self._sessions() as db, db.begin():
                result = await db.execute(
                    update(Document)
                    .where(Document.id == document_id, Document.lease_token == token)
                    .values(
                        status="failed",
                        error_message=message[:2000],
                        lease_token=None,
                        lease_acquired_at=None,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
        except Exception:
            logger.exception("Could not record failure | doc=%s", document_id)
            return

        if result.rowcount == 1:
            logger.warning("Processing failed | doc=%s error=%s", document_id, message)
        else:
            logger.warning("Failure not recorded, lease lost | doc=%s token=%s", document_id, token)
