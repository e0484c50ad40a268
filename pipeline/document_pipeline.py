"""
Document pipeline - exam PDF → page images → transcriptions → candidate questions.

Stages (each a background job submitted from the API):
  1. extract_pages : render every PDF page to PNG and create page rows
  2. parse_pages   : for each page not yet completed, in page order:
                       claim → vision model → question parser → save
                     then finalize the document
Targeted runs (`process_unit`, next pending page) reuse the same per-page step.

A page failure (timeout, model error, unparseable output, unreadable image)
marks only that page `error`; the loop moves on. The document ends
`completed` (all pages ok), `partial` (some ok) or `error` (none ok).

No database session is held open across a model call.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import config
from database import crud, models
from database.models import DocumentStatus, PageStatus, ReviewStatus
from generation.llm_client import GenerationInvoker, ImagePayload
from generation.prompts import build_page_prompt
from ingestion.file_store import LocalFileStore
from ingestion.page_renderer import PageRenderError, count_pdf_pages, render_pdf_pages
from parsing.question_parser import ExtractionMode, get_extractor, normalize_content
from pipeline.errors import InvocationError, NotFound, ParseFailure, PreconditionFailed, ValidationFailure
from pipeline.states import DOCUMENT_LIFECYCLE, PAGE_LIFECYCLE

log = logging.getLogger("pipeline.documents")

INTERRUPTED = "Interrupted by a restart before completion"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def document_dir(document_id: str) -> str:
    return f"exams/{document_id}"


class DocumentPipeline:
    """Drives exam documents through extraction and parsing"""

    def __init__(
        self,
        session_factory: sessionmaker,
        invoker: GenerationInvoker,
        file_store: LocalFileStore,
        unit_delay: float = config.UNIT_DELAY_SECONDS,
        timeout: float = config.GENERATION_TIMEOUT_SECONDS,
        render_dpi: int = config.RENDER_DPI,
    ):
        self.session_factory = session_factory
        self.invoker = invoker
        self.file_store = file_store
        self.unit_delay = unit_delay
        self.timeout = timeout
        self.render_dpi = render_dpi

    # ─── Upload / delete ──────────────────────────────────────────────────────

    def register_upload(
        self,
        db: Session,
        document_id: str,
        subject_id: str,
        filename: str,
        data: bytes,
        extraction_mode: ExtractionMode = ExtractionMode.MULTIPLE_CHOICE,
        is_deliverable: bool = False,
    ) -> models.ExamDocument:
        """Store the PDF, count its pages and create the document row (status uploaded)"""
        relative_path = self.file_store.save(f"{document_dir(document_id)}/original.pdf", data)
        try:
            page_count = count_pdf_pages(self.file_store.path_for(relative_path))
        except PageRenderError as e:
            self.file_store.delete_tree(document_dir(document_id))
            raise ValidationFailure(str(e), candidate_id=document_id) from e

        document = models.ExamDocument(
            id=document_id,
            subject_id=subject_id,
            filename=filename,
            file_path=relative_path,
            page_count=page_count,
            extraction_mode=ExtractionMode(extraction_mode).value,
            is_deliverable=is_deliverable,
            status=DocumentStatus.UPLOADED,
        )
        try:
            document = crud.create_document(db, document)
        except SQLAlchemyError:
            db.rollback()
            self.file_store.delete_tree(document_dir(document_id))
            raise
        log.info(f"Registered {document_id} ({filename}, {page_count} pages, mode={document.extraction_mode})")
        return document

    def delete_document(self, db: Session, document_id: str) -> None:
        """Delete a document, its pages, candidates and files. Not while a job runs on it."""
        document = crud.get_document(db, document_id)
        if not document:
            raise NotFound(f"Exam '{document_id}' not found")
        if document.status in (DocumentStatus.EXTRACTING, DocumentStatus.PARSING):
            raise PreconditionFailed(
                f"Cannot delete exam while it is {document.status.value}", current_status=document.status.value
            )
        crud.delete_document(db, document_id)
        self.file_store.delete_tree(document_dir(document_id))
        log.info(f"Deleted {document_id}")

    # ─── Lifecycle entry points (synchronous, from request handlers) ──────────

    def begin_extraction(self, db: Session, document_id: str) -> None:
        DOCUMENT_LIFECYCLE.advance(db, document_id, "begin_extraction", error_message=None)
        db.commit()

    def begin_parsing(self, db: Session, document_id: str) -> None:
        document = crud.get_document(db, document_id)
        if not document:
            raise NotFound(f"Exam '{document_id}' not found")
        DOCUMENT_LIFECYCLE.check("begin_parsing", document.status)
        if crud.count_pages(db, document_id) == 0:
            raise PreconditionFailed(
                "Exam has no pages; run extraction first", current_status=document.status.value
            )
        DOCUMENT_LIFECYCLE.advance(db, document_id, "begin_parsing", error_message=None)
        db.commit()

    # ─── Background jobs ──────────────────────────────────────────────────────

    async def extract_pages(self, document_id: str) -> None:
        """Render pages and create page rows. Existing pages keep their state."""
        with self.session_factory() as db:
            document = crud.get_document(db, document_id)
            if not document:
                raise NotFound(f"Exam '{document_id}' not found")
            pdf_path = self.file_store.path_for(document.file_path)

        pages_dir = f"{document_dir(document_id)}/pages"
        log.info(f"[{document_id}] Rendering pages at {self.render_dpi} DPI")
        try:
            rendered = await asyncio.to_thread(
                render_pdf_pages, pdf_path, self.file_store.path_for(pages_dir), self.render_dpi
            )
            if not rendered:
                raise PageRenderError("PDF has no pages")
        except PageRenderError as e:
            log.error(f"[{document_id}] Extraction failed: {e}")
            self._fail_document(document_id, f"Page extraction failed: {e}")
            return

        with self.session_factory() as db:
            try:
                crud.insert_missing_pages(
                    db, document_id, [(page_no, f"{pages_dir}/{path.name}") for page_no, path in rendered]
                )
                DOCUMENT_LIFECYCLE.advance(db, document_id, "finish_extraction", page_count=len(rendered))
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                log.exception(f"[{document_id}] Could not save pages")
                self._fail_document(document_id, "Storage error while saving pages")
                raise
        log.info(f"[{document_id}] Extracted {len(rendered)} pages")

    async def parse_pages(self, document_id: str) -> None:
        """Process every pending or errored page in order, then finalize"""
        with self.session_factory() as db:
            page_ids = [p.id for p in crud.get_pages_to_process(db, document_id)]

        log.info(f"[{document_id}] Parsing {len(page_ids)} page(s)")
        try:
            for index, page_id in enumerate(page_ids):
                if index:
                    await asyncio.sleep(self.unit_delay)
                await self._process_page(document_id, page_id)
        except SQLAlchemyError:
            self._fail_document(document_id, "Storage error while parsing pages")
            raise
        self.finalize(document_id)

    async def process_unit(self, document_id: str, page_id: str) -> Optional[str]:
        """
        Process one page on request. No-op for pages already completed or in
        flight. Re-finalizes the document when no page is left to do.
        Returns the page status afterwards.
        """
        await self._process_page(document_id, page_id)
        self.finalize(document_id)
        with self.session_factory() as db:
            page = crud.get_page(db, page_id)
            return page.status.value if page else None

    def next_unit(self, db: Session, document_id: str) -> Optional[models.ExamPage]:
        """Lowest-numbered pending page of a document (None when nothing is pending)"""
        if not crud.get_document(db, document_id):
            raise NotFound(f"Exam '{document_id}' not found")
        return crud.get_next_pending_page(db, document_id)

    async def process_next_unit(self, document_id: str) -> Optional[str]:
        """Process the lowest-numbered pending page; returns its id or None"""
        with self.session_factory() as db:
            page = self.next_unit(db, document_id)
        if page is None:
            return None
        await self.process_unit(document_id, page.id)
        return page.id

    # ─── One page ─────────────────────────────────────────────────────────────

    async def _process_page(self, document_id: str, page_id: str) -> bool:
        """claim → invoke → extract → persist. Returns False when it was a no-op."""
        with self.session_factory() as db:
            page = crud.get_page(db, page_id)
            if not page or page.document_id != document_id:
                raise NotFound(f"Page '{page_id}' not found in exam '{document_id}'")
            if page.status in (PageStatus.COMPLETED, PageStatus.PROCESSING):
                log.info(f"[{document_id}] Page {page.page_number} is {page.status.value}; skipping")
                return False

            document = page.document
            mode = ExtractionMode(document.extraction_mode)
            subject = crud.get_subject(db, document.subject_id)
            prompt = build_page_prompt(mode.value, subject.name if subject else "")
            page_number, image_path = page.page_number, page.image_path

            try:
                PAGE_LIFECYCLE.advance(db, page_id, "claim", error_message=None)
                db.commit()
            except PreconditionFailed:
                db.rollback()
                log.info(f"[{document_id}] Page {page_number} was claimed elsewhere; skipping")
                return False

        log.info(f"[{document_id}] Page {page_number}: calling model ({mode.value})")
        try:
            image = ImagePayload.from_bytes(self.file_store.read(image_path), image_path)
        except (OSError, ValueError) as e:
            self._fail_page(page_id, f"Page image unavailable: {e}")
            return True

        try:
            result = await self.invoker.invoke(prompt, image=image, timeout=self.timeout)
        except InvocationError as e:
            log.warning(f"[{document_id}] Page {page_number}: {type(e).__name__}: {e}")
            self._fail_page(page_id, str(e))
            return True

        if result.truncated:
            log.warning(f"[{document_id}] Page {page_number}: output truncated at the deadline")

        try:
            questions = get_extractor(mode).extract(result.text, document_id, page_id)
        except ParseFailure as e:
            log.warning(f"[{document_id}] Page {page_number}: unparseable output ({e.raw_length} chars)")
            self._fail_page(page_id, str(e), tokens_used=result.tokens, raw_text=result.text)
            return True

        rows = [
            {
                **q.model_dump(),
                "document_id": document_id,
                "page_id": page_id,
                "status": ReviewStatus.PENDING,
            }
            for q in questions
        ]
        with self.session_factory() as db:
            try:
                crud.upsert_parsed_questions(db, rows)
                PAGE_LIFECYCLE.advance(
                    db, page_id, "complete",
                    raw_text=result.text,
                    processed_text=normalize_content(result.text),
                    tokens_used=result.tokens,
                    error_message=None,
                    processed_at=_now(),
                )
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                log.exception(f"[{document_id}] Page {page_number}: could not save questions")
                self._fail_page(page_id, "Storage error while saving questions")
                raise

        log.info(
            f"[{document_id}] Page {page_number}: {len(questions)} question(s), {result.tokens} tokens"
        )
        return True

    # ─── Finalize / status ────────────────────────────────────────────────────

    def finalize(self, document_id: str) -> Optional[DocumentStatus]:
        """
        Settle the document status once no page is pending or processing:
        all pages completed → completed, some → partial, none → error.
        Returns the resulting status (unchanged when not yet settled).
        """
        with self.session_factory() as db:
            document = crud.get_document(db, document_id)
            if not document:
                return None
            if not DOCUMENT_LIFECYCLE.can("complete", document.status):
                return document.status

            counts = crud.page_status_counts(db, document_id)
            if counts.get(PageStatus.PENDING.value) or counts.get(PageStatus.PROCESSING.value):
                return document.status

            total = sum(counts.values())
            completed = counts.get(PageStatus.COMPLETED.value, 0)
            failed = counts.get(PageStatus.ERROR.value, 0)
            if total and completed == total:
                op, message = "complete", None
            elif completed:
                op, message = "complete_partially", f"{failed} of {total} pages failed"
            else:
                op, message = "fail", f"All {total} pages failed" if total else "Exam has no pages"

            try:
                status = DOCUMENT_LIFECYCLE.advance(db, document_id, op, error_message=message, processed_at=_now())
                db.commit()
            except PreconditionFailed as e:
                db.rollback()
                log.info(f"[{document_id}] Finalize skipped: {e}")
                return None
        log.info(f"[{document_id}] Finalized as {status.value}" + (f" ({message})" if message else ""))
        return status

    def status(self, db: Session, document_id: str) -> dict:
        """Polling payload: document status plus page and candidate counts"""
        document = crud.get_document(db, document_id)
        if not document:
            raise NotFound(f"Exam '{document_id}' not found")

        page_counts = crud.page_status_counts(db, document_id)
        question_counts = crud.parsed_question_status_counts(db, document_id)
        pages = crud.get_pages(db, document_id)
        return {
            "id": document.id,
            "status": document.status.value,
            "error_message": document.error_message,
            "page_count": document.page_count,
            "counts": {
                **{s.value: page_counts.get(s.value, 0) for s in PageStatus},
                "total": sum(page_counts.values()),
            },
            "questions": {
                **{s.value: question_counts.get(s.value, 0) for s in ReviewStatus},
                "total": sum(question_counts.values()),
            },
            "tokens_used": sum(p.tokens_used or 0 for p in pages),
            "pages": [
                {
                    "id": p.id,
                    "page_number": p.page_number,
                    "status": p.status.value,
                    "error_message": p.error_message,
                }
                for p in pages
            ],
        }

    # ─── Failure bookkeeping ──────────────────────────────────────────────────

    def _fail_page(self, page_id: str, message: str, **values) -> None:
        with self.session_factory() as db:
            try:
                PAGE_LIFECYCLE.advance(db, page_id, "fail", error_message=message, processed_at=_now(), **values)
                db.commit()
            except (PreconditionFailed, NotFound) as e:
                db.rollback()
                log.warning(f"Could not mark page {page_id} as error: {e}")

    def _fail_document(self, document_id: str, message: str) -> None:
        with self.session_factory() as db:
            try:
                DOCUMENT_LIFECYCLE.advance(db, document_id, "fail", error_message=message)
                db.commit()
            except (PreconditionFailed, NotFound) as e:
                db.rollback()
                log.warning(f"Could not mark exam {document_id} as error: {e}")

    def recover_interrupted(self) -> int:
        """
        Mark pages and documents left mid-flight by a previous process as
        error so they can be re-requested. Returns the number of rows touched.
        """
        touched = 0
        with self.session_factory() as db:
            stuck_pages = db.query(models.ExamPage.id).filter(
                models.ExamPage.status == PageStatus.PROCESSING
            ).all()
            for (page_id,) in stuck_pages:
                PAGE_LIFECYCLE.advance(db, page_id, "fail", error_message=INTERRUPTED)
                touched += 1
            stuck_documents = db.query(models.ExamDocument.id).filter(
                models.ExamDocument.status.in_([DocumentStatus.EXTRACTING, DocumentStatus.PARSING])
            ).all()
            for (document_id,) in stuck_documents:
                DOCUMENT_LIFECYCLE.advance(db, document_id, "fail", error_message=INTERRUPTED)
                touched += 1
            db.commit()
        if touched:
            log.warning(f"Recovered {touched} interrupted page/exam row(s)")
        return touched
