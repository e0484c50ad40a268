"""
CRUD operations for the exam question pipeline
All database operations go through these functions
"""

import random
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from database import models


def _value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


# ==========================================
# GENERIC HELPERS
# ==========================================

def upsert_rows(
    db: Session,
    model,
    rows: List[dict],
    conflict_columns: List[str],
    update_columns: Optional[List[str]] = None,
) -> None:
    """
    INSERT ... ON CONFLICT DO UPDATE (or DO NOTHING when no update columns).
    Does not commit: callers group the upsert with their own status changes.
    """
    if not rows:
        return

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")

    stmt = insert(model).values(rows)
    if update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_columns,
            set_={col: stmt.excluded[col] for col in update_columns},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
    db.execute(stmt)


def compare_and_set_status(db: Session, model, key, sources: Iterable, target, **values) -> bool:
    """
    Move one row to `target` only if its current status is one of `sources`.
    Returns True when this call won the transition. Does not commit.
    """
    pk = model.__mapper__.primary_key[0]
    result = db.execute(
        update(model)
        .where(pk == key, model.status.in_(list(sources)))
        .values(status=target, **values)
    )
    return result.rowcount == 1


def count_by_status(db: Session, status_column, *criteria) -> Dict[str, int]:
    """{status_value: count} for rows matching the criteria"""
    rows = (
        db.query(status_column, func.count())
        .filter(*criteria)
        .group_by(status_column)
        .all()
    )
    return {_value(status): count for status, count in rows}


# ==========================================
# SUBJECT CRUD
# ==========================================

def create_subject(db: Session, subject_id: str, name: str, description: Optional[str] = None,
                   expertise: Optional[str] = None) -> models.Subject:
    """Create a new subject"""
    db_subject = models.Subject(id=subject_id, name=name, description=description, expertise=expertise)
    db.add(db_subject)
    db.commit()
    db.refresh(db_subject)
    return db_subject


def get_subject(db: Session, subject_id: str) -> Optional[models.Subject]:
    """Get subject by ID"""
    return db.query(models.Subject).filter(models.Subject.id == subject_id).first()


def get_subjects(db: Session, skip: int = 0, limit: int = 100) -> List[models.Subject]:
    """Get all subjects with pagination"""
    return db.query(models.Subject).order_by(models.Subject.id).offset(skip).limit(limit).all()


# ==========================================
# EXAM DOCUMENT CRUD
# ==========================================

def create_document(db: Session, document: models.ExamDocument) -> models.ExamDocument:
    db.add(document)
    db.commit()
    db.refresh(document)
    return document


def get_document(db: Session, document_id: str) -> Optional[models.ExamDocument]:
    """Get exam document by ID"""
    return db.query(models.ExamDocument).filter(models.ExamDocument.id == document_id).first()


def get_documents(db: Session, subject_id: Optional[str] = None) -> List[models.ExamDocument]:
    """List exam documents, newest first"""
    query = db.query(models.ExamDocument)
    if subject_id:
        query = query.filter(models.ExamDocument.subject_id == subject_id)
    return query.order_by(models.ExamDocument.uploaded_at.desc(), models.ExamDocument.id).all()


def get_completed_documents(db: Session, subject_id: str, exclude_id: Optional[str] = None,
                            limit: int = 2) -> List[models.ExamDocument]:
    """Completed, non-deliverable exams of a subject (used as style samples)"""
    query = db.query(models.ExamDocument).filter(
        models.ExamDocument.subject_id == subject_id,
        models.ExamDocument.status == models.DocumentStatus.COMPLETED,
        models.ExamDocument.is_deliverable.is_(False),
    )
    if exclude_id:
        query = query.filter(models.ExamDocument.id != exclude_id)
    return query.order_by(models.ExamDocument.uploaded_at, models.ExamDocument.id).limit(limit).all()


def delete_document(db: Session, document_id: str) -> bool:
    """Delete a document (cascades to pages and parsed questions)"""
    db_document = get_document(db, document_id)
    if not db_document:
        return False

    db.delete(db_document)
    db.commit()
    return True


# ==========================================
# EXAM PAGE CRUD
# ==========================================

def get_page(db: Session, page_id: str) -> Optional[models.ExamPage]:
    return db.query(models.ExamPage).filter(models.ExamPage.id == page_id).first()


def get_pages(db: Session, document_id: str) -> List[models.ExamPage]:
    """All pages of a document in page order"""
    return db.query(models.ExamPage).filter(
        models.ExamPage.document_id == document_id
    ).order_by(models.ExamPage.page_number).all()


def get_pages_to_process(db: Session, document_id: str) -> List[models.ExamPage]:
    """Pages not yet completed and not currently claimed, in page order"""
    return db.query(models.ExamPage).filter(
        models.ExamPage.document_id == document_id,
        models.ExamPage.status.in_([models.PageStatus.PENDING, models.PageStatus.ERROR]),
    ).order_by(models.ExamPage.page_number).all()


def get_next_pending_page(db: Session, document_id: str) -> Optional[models.ExamPage]:
    """Lowest-numbered pending page"""
    return db.query(models.ExamPage).filter(
        models.ExamPage.document_id == document_id,
        models.ExamPage.status == models.PageStatus.PENDING,
    ).order_by(models.ExamPage.page_number).first()


def count_pages(db: Session, document_id: str) -> int:
    return db.query(func.count(models.ExamPage.id)).filter(
        models.ExamPage.document_id == document_id
    ).scalar() or 0


def page_status_counts(db: Session, document_id: str) -> Dict[str, int]:
    return count_by_status(db, models.ExamPage.status, models.ExamPage.document_id == document_id)


def insert_missing_pages(db: Session, document_id: str, rendered: List[tuple]) -> None:
    """
    Create page rows for (page_number, image_path) pairs.
    Pages that already exist keep their status and content.
    """
    rows = [
        {
            "id": f"{document_id}_page_{page_number}",
            "document_id": document_id,
            "page_number": page_number,
            "image_path": image_path,
            "status": models.PageStatus.PENDING,
            "tokens_used": 0,
        }
        for page_number, image_path in rendered
    ]
    upsert_rows(db, models.ExamPage, rows, conflict_columns=["id"])


# ==========================================
# PARSED QUESTION CRUD
# ==========================================

def get_parsed_question(db: Session, question_id: str) -> Optional[models.ParsedQuestion]:
    return db.query(models.ParsedQuestion).filter(models.ParsedQuestion.id == question_id).first()


def get_parsed_questions(db: Session, document_id: str, status: Optional[str] = None) -> List[models.ParsedQuestion]:
    """Candidates of a document ordered by page then question number"""
    query = db.query(models.ParsedQuestion).join(models.ExamPage).filter(
        models.ParsedQuestion.document_id == document_id
    )
    if status:
        query = query.filter(models.ParsedQuestion.status == status)
    return query.order_by(models.ExamPage.page_number, models.ParsedQuestion.question_number).all()


def count_parsed_questions(db: Session, **filters) -> int:
    return db.query(func.count(models.ParsedQuestion.id)).filter_by(**filters).scalar() or 0


def parsed_question_status_counts(db: Session, document_id: str) -> Dict[str, int]:
    return count_by_status(db, models.ParsedQuestion.status, models.ParsedQuestion.document_id == document_id)


def upsert_parsed_questions(db: Session, rows: List[dict]) -> None:
    """
    Insert candidates, overwriting the transcription of ones already present.
    Review fields (status, notes, timestamps) are left untouched on conflict.
    """
    upsert_rows(
        db, models.ParsedQuestion, rows,
        conflict_columns=["id"],
        update_columns=["page_id", "question_type", "raw_content", "normalized_content", "options", "is_incomplete"],
    )


# ==========================================
# CORPUS QUESTION CRUD
# ==========================================

def get_question(db: Session, question_id: str) -> Optional[models.Question]:
    return db.query(models.Question).filter(models.Question.id == question_id).first()


def get_questions(db: Session, subject_id: str, topic: Optional[str] = None) -> List[models.Question]:
    query = db.query(models.Question).filter(models.Question.subject_id == subject_id)
    if topic:
        query = query.filter(models.Question.topic == topic)
    return query.order_by(models.Question.topic, models.Question.question_number, models.Question.id).all()


def get_topics(db: Session, subject_id: str) -> List[str]:
    rows = db.query(models.Question.topic).filter(
        models.Question.subject_id == subject_id
    ).distinct().order_by(models.Question.topic).all()
    return [row[0] for row in rows]


def count_questions(db: Session, subject_id: Optional[str] = None) -> int:
    query = db.query(func.count(models.Question.id))
    if subject_id:
        query = query.filter(models.Question.subject_id == subject_id)
    return query.scalar() or 0


def upsert_corpus_question(db: Session, row: dict) -> None:
    """Insert or refresh one corpus question. Does not commit."""
    upsert_rows(
        db, models.Question, [row],
        conflict_columns=["id"],
        update_columns=["topic", "question_number", "content", "options", "source_question_id"],
    )


def sample_questions_by_topic(db: Session, subject_id: str, topic_focus: Optional[List[str]] = None,
                              per_topic: int = 4) -> List[models.Question]:
    """
    Random sample of corpus questions for each topic.
    With a topic focus, only topics matching one of the focus terms (substring
    either way, case-insensitive) are sampled.
    """
    focus = [term.lower() for term in (topic_focus or []) if term and term.strip()]
    samples: List[models.Question] = []

    for topic in get_topics(db, subject_id):
        if focus and not any(term in topic.lower() or topic.lower() in term for term in focus):
            continue
        questions = get_questions(db, subject_id, topic)
        samples.extend(random.sample(questions, min(per_topic, len(questions))))

    return samples


# ==========================================
# SOLUTION CACHE
# ==========================================

def get_cached_solution(db: Session, question_id: str) -> Optional[models.SolutionCache]:
    return db.query(models.SolutionCache).filter(models.SolutionCache.question_id == question_id).first()


def save_solution(db: Session, row: dict) -> models.SolutionCache:
    upsert_rows(
        db, models.SolutionCache, [row],
        conflict_columns=["question_id"],
        update_columns=["answer", "explanation", "wrong_options", "tokens_used"],
    )
    db.commit()
    db.expire_all()
    return get_cached_solution(db, row["question_id"])


# ==========================================
# GENERATION SESSION CRUD
# ==========================================

def create_generation_session(db: Session, session: models.GenerationSession) -> models.GenerationSession:
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def get_generation_session(db: Session, session_id: str) -> Optional[models.GenerationSession]:
    return db.query(models.GenerationSession).filter(models.GenerationSession.id == session_id).first()


def get_generation_sessions(db: Session, subject_id: str) -> List[models.GenerationSession]:
    return db.query(models.GenerationSession).filter(
        models.GenerationSession.subject_id == subject_id
    ).order_by(models.GenerationSession.created_at.desc()).all()


def get_generated_questions(db: Session, session_id: str) -> List[models.GeneratedQuestion]:
    return db.query(models.GeneratedQuestion).filter(
        models.GeneratedQuestion.session_id == session_id
    ).order_by(models.GeneratedQuestion.question_number).all()


def get_generated_question(db: Session, question_id: str) -> Optional[models.GeneratedQuestion]:
    return db.query(models.GeneratedQuestion).filter(models.GeneratedQuestion.id == question_id).first()


def record_generated_attempt(db: Session, question: models.GeneratedQuestion, user_answer: str) -> models.GeneratedAttempt:
    attempt = models.GeneratedAttempt(
        question_id=question.id,
        user_answer=user_answer,
        is_correct=user_answer == question.correct_answer,
    )
    db.add(attempt)
    db.commit()
    db.refresh(attempt)
    return attempt


def generation_session_stats(db: Session, session_id: str) -> dict:
    """Attempt totals for a practice session, counting the latest answer per question"""
    total = db.query(func.count(models.GeneratedQuestion.id)).filter(
        models.GeneratedQuestion.session_id == session_id
    ).scalar() or 0

    attempts = (
        db.query(models.GeneratedAttempt)
        .join(models.GeneratedQuestion)
        .filter(models.GeneratedQuestion.session_id == session_id)
        .order_by(models.GeneratedAttempt.attempted_at, models.GeneratedAttempt.id)
        .all()
    )
    latest = {}
    for attempt in attempts:
        latest[attempt.question_id] = attempt

    answered = len(latest)
    correct = sum(1 for attempt in latest.values() if attempt.is_correct)
    return {
        "total_questions": total,
        "answered": answered,
        "correct": correct,
        "incorrect": answered - correct,
        "accuracy": round(correct / answered * 100, 1) if answered else 0.0,
    }


# ==========================================
# VERIFICATION SESSION CRUD
# ==========================================

def create_verification_session(db: Session, session: models.VerificationSession) -> models.VerificationSession:
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def get_verification_session(db: Session, session_id: str) -> Optional[models.VerificationSession]:
    return db.query(models.VerificationSession).filter(models.VerificationSession.id == session_id).first()


def get_verification_sessions(db: Session, subject_id: Optional[str] = None) -> List[models.VerificationSession]:
    query = db.query(models.VerificationSession)
    if subject_id:
        query = query.filter(models.VerificationSession.subject_id == subject_id)
    return query.order_by(models.VerificationSession.created_at.desc()).all()


def get_verification_questions(db: Session, session_id: str) -> List[models.VerificationQuestion]:
    return db.query(models.VerificationQuestion).filter(
        models.VerificationQuestion.session_id == session_id
    ).order_by(models.VerificationQuestion.question_number).all()


def get_verification_question(db: Session, question_id: str) -> Optional[models.VerificationQuestion]:
    return db.query(models.VerificationQuestion).filter(models.VerificationQuestion.id == question_id).first()
