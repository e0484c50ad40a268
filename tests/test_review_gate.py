import pytest

from database import crud
from database.models import DocumentStatus, ReviewStatus
from pipeline.errors import NotFound, PreconditionFailed, ValidationFailure
from services import review_gate

from conftest import seed_document

FOUR_OPTIONS = {"a": "Serializable", "b": "Recuperable", "c": "Estricto", "d": "Ninguno"}


@pytest.fixture
def exam(session_factory, file_store, subject):
    return seed_document(session_factory, file_store, pages=1, status=DocumentStatus.COMPLETED)


def _candidate(db, number, options=FOUR_OPTIONS, question_type="multiple_choice",
               content="Qué planificación es recuperable?", status=ReviewStatus.PENDING, page=1):
    crud.upsert_parsed_questions(db, [{
        "id": f"exam_1_p{page}_q{number}",
        "document_id": "exam_1",
        "page_id": f"exam_1_page_{page}",
        "question_number": number,
        "question_type": question_type,
        "raw_content": f"## Pregunta {number}\n{content}",
        "normalized_content": content,
        "options": options,
        "is_incomplete": False,
        "status": status,
    }])
    db.commit()
    return f"exam_1_p{page}_q{number}"


def test_approval_copies_into_corpus_once(db, exam) -> None:
    candidate_id = _candidate(db, 1)

    approved = review_gate.approve_candidate(db, candidate_id, topic="Transacciones", notes="ok")
    assert approved.status == ReviewStatus.APPROVED
    assert approved.reviewer_notes == "ok"
    assert approved.reviewed_at is not None

    # Approving again is a no-op, not a second corpus row
    review_gate.approve_candidate(db, candidate_id, topic="Transacciones")
    questions = crud.get_questions(db, "bda")
    assert [q.id for q in questions] == ["bda_exam_1_q1"]
    assert questions[0].topic == "Transacciones"
    assert questions[0].options == FOUR_OPTIONS
    assert questions[0].source_question_id == candidate_id


def test_approval_requires_two_options(db, exam) -> None:
    candidate_id = _candidate(db, 2, options={"a": "Solo una"})

    with pytest.raises(ValidationFailure) as excinfo:
        review_gate.approve_candidate(db, candidate_id, topic="Transacciones")
    assert excinfo.value.candidate_id == candidate_id

    assert crud.get_parsed_question(db, candidate_id).status == ReviewStatus.PENDING
    assert crud.count_questions(db, "bda") == 0


def test_blank_options_do_not_count(db, exam) -> None:
    candidate_id = _candidate(db, 3, options={"a": "Uno", "b": "   "})
    with pytest.raises(ValidationFailure):
        review_gate.approve_candidate(db, candidate_id, topic="SQL")


def test_open_question_is_approved_without_options(db, exam) -> None:
    candidate_id = _candidate(db, 4, options=None, question_type="open",
                              content="Explica por qué elegiste un índice hash.")
    review_gate.approve_candidate(db, candidate_id, topic="Índices")
    assert crud.get_question(db, "bda_exam_1_q4").options is None


def test_reject_leaves_corpus_untouched(db, exam) -> None:
    candidate_id = _candidate(db, 1)

    rejected = review_gate.reject_candidate(db, candidate_id, notes="duplicada")
    assert rejected.status == ReviewStatus.REJECTED
    assert crud.count_questions(db, "bda") == 0

    with pytest.raises(PreconditionFailed) as excinfo:
        review_gate.approve_candidate(db, candidate_id, topic="SQL")
    assert excinfo.value.current_status == "rejected"


def test_edit_reopens_a_decided_question(db, exam) -> None:
    candidate_id = _candidate(db, 1)
    review_gate.approve_candidate(db, candidate_id, topic="Transacciones")

    edited = review_gate.edit_candidate(
        db, candidate_id, normalized_content="Qué planificación es estricta?", options={"A ": " uno ", "b": "dos"}
    )
    assert edited.status == ReviewStatus.APPROVED
    assert edited.options == {"a": "uno", "b": "dos"}

    review_gate.approve_candidate(db, candidate_id, topic="Concurrencia")
    questions = crud.get_questions(db, "bda")
    assert len(questions) == 1
    assert questions[0].topic == "Concurrencia"
    assert questions[0].content == "Qué planificación es estricta?"
    assert questions[0].options == {"a": "uno", "b": "dos"}


def test_edited_rejection_can_be_approved(db, exam) -> None:
    candidate_id = _candidate(db, 1, options={"a": "Solo una"})
    review_gate.reject_candidate(db, candidate_id)
    review_gate.edit_candidate(db, candidate_id, options={"a": "Una", "b": "Otra"})

    approved = review_gate.approve_candidate(db, candidate_id, topic="SQL")
    assert approved.status == ReviewStatus.APPROVED


def test_bulk_approval_reports_skipped_records(db, exam) -> None:
    _candidate(db, 1)
    _candidate(db, 2, options={"a": "Solo una"})
    _candidate(db, 3)
    _candidate(db, 4, status=ReviewStatus.REJECTED)

    result = review_gate.approve_all_pending(db, "exam_1", topic="Normalización")

    assert result.total == 3
    assert result.approved == 2
    assert result.skipped == 1
    assert result.skipped_ids == ["exam_1_p1_q2"]
    assert result.approved + result.skipped == result.total

    statuses = {q.id: q.status for q in crud.get_parsed_questions(db, "exam_1")}
    assert statuses == {
        "exam_1_p1_q1": ReviewStatus.APPROVED,
        "exam_1_p1_q2": ReviewStatus.PENDING,
        "exam_1_p1_q3": ReviewStatus.APPROVED,
        "exam_1_p1_q4": ReviewStatus.REJECTED,
    }
    assert sorted(q.id for q in crud.get_questions(db, "bda")) == ["bda_exam_1_q1", "bda_exam_1_q3"]


def test_list_candidates_filters_by_status(db, exam) -> None:
    _candidate(db, 1)
    _candidate(db, 2, status=ReviewStatus.REJECTED)

    pending = review_gate.list_candidates(db, "exam_1", ReviewStatus.PENDING)
    assert [q.question_number for q in pending] == [1]
    assert len(review_gate.list_candidates(db, "exam_1")) == 2


def test_unknown_candidate_is_not_found(db, exam) -> None:
    with pytest.raises(NotFound):
        review_gate.approve_candidate(db, "exam_1_p1_q99", topic="SQL")
    with pytest.raises(NotFound):
        review_gate.list_candidates(db, "exam_404")


def test_reparse_keeps_review_decision(db, exam) -> None:
    candidate_id = _candidate(db, 1)
    review_gate.approve_candidate(db, candidate_id, topic="SQL")

    # A later transcription of the same page only refreshes the text
    _candidate(db, 1, content="Texto corregido por el modelo")
    db.expire_all()
    candidate = crud.get_parsed_question(db, candidate_id)
    assert candidate.status == ReviewStatus.APPROVED
    assert candidate.normalized_content == "Texto corregido por el modelo"


def test_question_split_across_pages_keeps_one_corpus_slot(session_factory, file_store, subject, db) -> None:
    seed_document(session_factory, file_store, pages=2, status=DocumentStatus.COMPLETED)
    first = _candidate(db, 5, page=1, options={"a": "Uno", "b": "Dos"})
    second = _candidate(db, 5, page=2, options={"c": "Tres", "d": "Cuatro"})

    result = review_gate.approve_all_pending(db, "exam_1", topic="Concurrencia")

    assert result.total == 2
    assert result.approved == 1
    assert result.skipped_ids == [second]
    assert crud.count_questions(db, "bda") == result.approved
    assert crud.get_question(db, "bda_exam_1_q5").source_question_id == first
    assert crud.get_parsed_question(db, second).status == ReviewStatus.PENDING

    with pytest.raises(ValidationFailure) as excinfo:
        review_gate.approve_candidate(db, second, topic="Concurrencia")
    assert excinfo.value.candidate_id == second
    assert crud.get_question(db, "bda_exam_1_q5").options == {"a": "Uno", "b": "Dos"}

    # Once merged by hand, the second half can be rejected
    assert review_gate.reject_candidate(db, second).status == ReviewStatus.REJECTED
