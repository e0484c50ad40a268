import asyncio

import fitz
import pytest
from sqlalchemy.exc import IntegrityError

from database import crud
from database.models import DocumentStatus, PageStatus, ReviewStatus
from parsing.question_parser import MultipleChoiceExtractor
from pipeline.document_pipeline import DocumentPipeline
from pipeline.errors import InvocationFailed, InvocationTimeout, NotFound, PreconditionFailed, ValidationFailure

from conftest import FakeInvoker, mcq_page, seed_document


def _pipeline(session_factory, file_store, invoker) -> DocumentPipeline:
    return DocumentPipeline(session_factory, invoker, file_store, unit_delay=0, timeout=5)


def _pdf_bytes(pages: int) -> bytes:
    doc = fitz.open()
    for n in range(pages):
        doc.new_page().insert_text((72, 72), f"Pregunta {n + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def test_timeout_on_one_page_leaves_document_partial(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=3)
    invoker = FakeInvoker(mcq_page(1, 2), InvocationTimeout("No output within 5s"), mcq_page(3))
    pipeline = _pipeline(session_factory, file_store, invoker)

    with session_factory() as db:
        pipeline.begin_parsing(db, "exam_1")
    asyncio.run(pipeline.parse_pages("exam_1"))

    with session_factory() as db:
        document = crud.get_document(db, "exam_1")
        assert document.status == DocumentStatus.PARTIAL
        assert document.error_message == "1 of 3 pages failed"

        statuses = [p.status for p in crud.get_pages(db, "exam_1")]
        assert statuses == [PageStatus.COMPLETED, PageStatus.ERROR, PageStatus.COMPLETED]

        questions = crud.get_parsed_questions(db, "exam_1")
        assert [q.id for q in questions] == ["exam_1_p1_q1", "exam_1_p1_q2", "exam_1_p3_q3"]
        assert all(q.status == ReviewStatus.PENDING for q in questions)

    # Pages are processed in order and each gets the page image
    assert len(invoker.calls) == 3
    assert all(call["image"] is not None for call in invoker.calls)


def test_retrying_a_failed_page_completes_the_document(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=3)
    invoker = FakeInvoker(mcq_page(1), InvocationFailed("rate limited"), mcq_page(2))
    pipeline = _pipeline(session_factory, file_store, invoker)

    with session_factory() as db:
        pipeline.begin_parsing(db, "exam_1")
    asyncio.run(pipeline.parse_pages("exam_1"))

    invoker.queue(mcq_page(5))
    assert asyncio.run(pipeline.process_unit("exam_1", "exam_1_page_2")) == "completed"

    with session_factory() as db:
        document = crud.get_document(db, "exam_1")
        assert document.status == DocumentStatus.COMPLETED
        assert document.error_message is None
        assert crud.count_parsed_questions(db, document_id="exam_1") == 3


def test_completed_page_is_never_reprocessed(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=1)
    invoker = FakeInvoker(mcq_page(1))
    pipeline = _pipeline(session_factory, file_store, invoker)

    with session_factory() as db:
        pipeline.begin_parsing(db, "exam_1")
    asyncio.run(pipeline.parse_pages("exam_1"))
    assert asyncio.run(pipeline.process_unit("exam_1", "exam_1_page_1")) == "completed"

    assert len(invoker.calls) == 1
    with session_factory() as db:
        assert crud.count_parsed_questions(db, document_id="exam_1") == 1


def test_reparse_overwrites_candidates_instead_of_duplicating(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=1)
    invoker = FakeInvoker(InvocationTimeout("slow"))
    pipeline = _pipeline(session_factory, file_store, invoker)

    # First attempt stores the candidate, then the page fails on a later run
    with session_factory() as db:
        crud.upsert_parsed_questions(db, [{
            "id": "exam_1_p1_q1", "document_id": "exam_1", "page_id": "exam_1_page_1",
            "question_number": 1, "question_type": "multiple_choice",
            "raw_content": "old", "normalized_content": "old", "options": None,
            "is_incomplete": False, "status": ReviewStatus.PENDING,
        }])
        db.commit()
        pipeline.begin_parsing(db, "exam_1")
    asyncio.run(pipeline.parse_pages("exam_1"))

    invoker.queue(mcq_page(1))
    asyncio.run(pipeline.process_unit("exam_1", "exam_1_page_1"))

    with session_factory() as db:
        questions = crud.get_parsed_questions(db, "exam_1")
        assert len(questions) == 1
        assert questions[0].normalized_content == "Enunciado de la pregunta 1?"


def test_unparseable_output_fails_only_that_page(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=1)
    pipeline = _pipeline(session_factory, file_store, FakeInvoker("   \n"))

    with session_factory() as db:
        pipeline.begin_parsing(db, "exam_1")
    asyncio.run(pipeline.parse_pages("exam_1"))

    with session_factory() as db:
        page = crud.get_page(db, "exam_1_page_1")
        assert page.status == PageStatus.ERROR
        assert "empty" in page.error_message
        document = crud.get_document(db, "exam_1")
        assert document.status == DocumentStatus.ERROR
        assert document.error_message == "All 1 pages failed"


def test_no_questions_sentinel_completes_page_without_candidates(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=1)
    pipeline = _pipeline(session_factory, file_store, FakeInvoker(MultipleChoiceExtractor.NO_QUESTIONS))

    with session_factory() as db:
        pipeline.begin_parsing(db, "exam_1")
    asyncio.run(pipeline.parse_pages("exam_1"))

    with session_factory() as db:
        assert crud.get_page(db, "exam_1_page_1").status == PageStatus.COMPLETED
        assert crud.get_document(db, "exam_1").status == DocumentStatus.COMPLETED
        assert crud.count_parsed_questions(db, document_id="exam_1") == 0


def test_missing_page_image_fails_the_page(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=1)
    file_store.delete("exams/exam_1/pages/page_1.png")
    invoker = FakeInvoker()
    pipeline = _pipeline(session_factory, file_store, invoker)

    with session_factory() as db:
        pipeline.begin_parsing(db, "exam_1")
    asyncio.run(pipeline.parse_pages("exam_1"))

    assert invoker.calls == []
    with session_factory() as db:
        assert crud.get_page(db, "exam_1_page_1").status == PageStatus.ERROR


def test_parsing_requires_extracted_document(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, status=DocumentStatus.UPLOADED)
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())

    with session_factory() as db:
        with pytest.raises(PreconditionFailed) as excinfo:
            pipeline.begin_parsing(db, "exam_1")
    assert excinfo.value.current_status == "uploaded"


def test_parsing_requires_pages(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=0)
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())

    with session_factory() as db:
        with pytest.raises(PreconditionFailed, match="no pages"):
            pipeline.begin_parsing(db, "exam_1")


def test_second_parse_request_is_rejected_while_running(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store)
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())

    with session_factory() as db:
        pipeline.begin_parsing(db, "exam_1")
        with pytest.raises(PreconditionFailed) as excinfo:
            pipeline.begin_parsing(db, "exam_1")
    assert excinfo.value.current_status == "parsing"


def test_unknown_document_is_not_found(session_factory, file_store) -> None:
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())
    with session_factory() as db:
        with pytest.raises(NotFound):
            pipeline.begin_parsing(db, "nope")
        with pytest.raises(NotFound):
            pipeline.status(db, "nope")


def test_process_next_unit_takes_lowest_pending_page(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=2)
    invoker = FakeInvoker(mcq_page(1), mcq_page(2))
    pipeline = _pipeline(session_factory, file_store, invoker)

    assert asyncio.run(pipeline.process_next_unit("exam_1")) == "exam_1_page_1"
    with session_factory() as db:
        # Page 2 still pending, so the document is not finalized yet
        assert crud.get_document(db, "exam_1").status == DocumentStatus.EXTRACTED

    assert asyncio.run(pipeline.process_next_unit("exam_1")) == "exam_1_page_2"
    assert asyncio.run(pipeline.process_next_unit("exam_1")) is None
    with session_factory() as db:
        assert crud.get_document(db, "exam_1").status == DocumentStatus.COMPLETED


def test_status_payload_counts_pages_and_candidates(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=2)
    pipeline = _pipeline(session_factory, file_store, FakeInvoker(mcq_page(1, 2), InvocationTimeout("slow")))

    with session_factory() as db:
        pipeline.begin_parsing(db, "exam_1")
    asyncio.run(pipeline.parse_pages("exam_1"))

    with session_factory() as db:
        payload = pipeline.status(db, "exam_1")
    assert payload["status"] == "partial"
    assert payload["counts"]["completed"] == 1
    assert payload["counts"]["error"] == 1
    assert payload["counts"]["total"] == 2
    assert payload["questions"]["pending"] == 2
    assert payload["tokens_used"] == 100
    assert [p["status"] for p in payload["pages"]] == ["completed", "error"]


def test_finalize_waits_for_pending_pages(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=2, status=DocumentStatus.PARSING)
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())

    assert pipeline.finalize("exam_1") == DocumentStatus.PARSING


def test_register_upload_and_extract_pages(session_factory, file_store, subject) -> None:
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())

    with session_factory() as db:
        document = pipeline.register_upload(db, "exam_pdf", "bda", "parcial.pdf", _pdf_bytes(2))
        assert document.status == DocumentStatus.UPLOADED
        assert document.page_count == 2
        pipeline.begin_extraction(db, "exam_pdf")

    asyncio.run(pipeline.extract_pages("exam_pdf"))

    with session_factory() as db:
        assert crud.get_document(db, "exam_pdf").status == DocumentStatus.EXTRACTED
        pages = crud.get_pages(db, "exam_pdf")
    assert [(p.page_number, p.status) for p in pages] == [(1, PageStatus.PENDING), (2, PageStatus.PENDING)]
    assert all(file_store.exists(p.image_path) for p in pages)


def test_register_upload_rejects_invalid_pdf(session_factory, file_store, subject) -> None:
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())

    with session_factory() as db:
        with pytest.raises(ValidationFailure):
            pipeline.register_upload(db, "exam_bad", "bda", "bad.pdf", b"this is not a pdf at all")
        assert crud.get_document(db, "exam_bad") is None
    assert not file_store.exists("exams/exam_bad/original.pdf")


def test_delete_refused_while_parsing(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, status=DocumentStatus.PARSING)
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())

    with session_factory() as db:
        with pytest.raises(PreconditionFailed):
            pipeline.delete_document(db, "exam_1")


def test_delete_cascades_to_pages_and_files(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=2, status=DocumentStatus.COMPLETED)
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())

    with session_factory() as db:
        pipeline.delete_document(db, "exam_1")
    with session_factory() as db:
        assert crud.get_document(db, "exam_1") is None
        assert crud.count_pages(db, "exam_1") == 0
    assert not file_store.exists("exams/exam_1/pages/page_1.png")


def test_recover_interrupted_marks_stuck_rows_as_error(session_factory, file_store, subject) -> None:
    seed_document(
        session_factory, file_store, pages=2,
        status=DocumentStatus.PARSING, page_status=PageStatus.PROCESSING,
    )
    pipeline = _pipeline(session_factory, file_store, FakeInvoker())

    assert pipeline.recover_interrupted() == 3
    with session_factory() as db:
        assert crud.get_document(db, "exam_1").status == DocumentStatus.ERROR
        assert {p.status for p in crud.get_pages(db, "exam_1")} == {PageStatus.ERROR}


def test_open_mode_document_uses_content_prompt_and_open_extractor(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=1, mode="open", is_deliverable=True)
    page = (
        "## Memoria del proyecto\n"
        "1. Describe el modelo entidad-relación que diseñaste para la biblioteca.\n"
        "2. Justifica la elección de un índice B+ sobre la columna fecha_prestamo.\n"
    )
    invoker = FakeInvoker(page)
    pipeline = _pipeline(session_factory, file_store, invoker)

    with session_factory() as db:
        pipeline.begin_parsing(db, "exam_1")
    asyncio.run(pipeline.parse_pages("exam_1"))

    prompt = invoker.calls[0]["prompt"]
    assert "transcribe ALL of its text content" in prompt
    assert 'university document for the course "Bases de Datos Avanzadas"' in prompt
    assert MultipleChoiceExtractor.NO_QUESTIONS not in prompt

    with session_factory() as db:
        assert crud.get_document(db, "exam_1").status == DocumentStatus.COMPLETED
        questions = crud.get_parsed_questions(db, "exam_1")
        assert [q.id for q in questions] == ["exam_1_p1_q1", "exam_1_p1_q2"]
        assert all(q.question_type == "open" for q in questions)
        assert all(q.options is None for q in questions)
        assert questions[1].normalized_content.startswith("Justifica la elección")


class _DeletingInvoker(FakeInvoker):
    """Deletes the exam while its page is being transcribed"""

    def __init__(self, session_factory, *responses):
        super().__init__(*responses)
        self.session_factory = session_factory

    async def invoke(self, prompt, **kwargs):
        with self.session_factory() as db:
            crud.delete_document(db, "exam_1")
        return await super().invoke(prompt, **kwargs)


def test_exam_deleted_mid_page_surfaces_the_storage_error(session_factory, file_store, subject) -> None:
    seed_document(session_factory, file_store, pages=1)
    pipeline = _pipeline(session_factory, file_store, _DeletingInvoker(session_factory, mcq_page(1)))

    with pytest.raises(IntegrityError):
        asyncio.run(pipeline.process_unit("exam_1", "exam_1_page_1"))

    with session_factory() as db:
        assert crud.get_document(db, "exam_1") is None
        assert crud.count_parsed_questions(db, document_id="exam_1") == 0
