"""
Review gate - human approval of parsed questions before they reach the corpus.

    pending ──approve──▶ approved   (copied into `questions`)
       └────reject────▶ rejected   (nothing copied)

Approved and rejected are final unless the question is edited afterwards;
an edit re-opens it for review without changing its status. Approving a
question already approved (and not edited since) is a no-op.

Promotion upserts a snapshot under {subject}_{document}_q{number}, so
approving twice never creates a second corpus row. A second candidate with
the same number (a question split across pages) is refused, never overwrites.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from database import crud, models
from database.models import QuestionType, ReviewStatus
from database.schemas import BulkApprovalResult
from pipeline.errors import NotFound, ValidationFailure
from pipeline.states import REVIEW_LIFECYCLE

log = logging.getLogger(__name__)

MIN_OPTIONS = 2


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything written here is UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _edited_since_review(candidate: models.ParsedQuestion) -> bool:
    if candidate.edited_at is None:
        return False
    if candidate.reviewed_at is None:
        return True
    return _aware(candidate.edited_at) > _aware(candidate.reviewed_at)


def _needs_review(candidate: models.ParsedQuestion, op: str) -> bool:
    """
    True when `op` should be applied, False when it already was (no-op).
    Raises PreconditionFailed for a decided question that was not edited.
    """
    if REVIEW_LIFECYCLE.can(op, candidate.status) or _edited_since_review(candidate):
        return True
    if candidate.status == REVIEW_LIFECYCLE.target(op):
        return False
    REVIEW_LIFECYCLE.check(op, candidate.status)
    return True


def corpus_id(subject_id: str, document_id: str, question_number: int) -> str:
    return f"{subject_id}_{document_id}_q{question_number}"


def validate_for_approval(candidate: models.ParsedQuestion) -> None:
    """Multiple-choice needs at least two non-empty options; open questions need a body"""
    if candidate.question_type == QuestionType.OPEN.value:
        if not (candidate.normalized_content or candidate.raw_content or "").strip():
            raise ValidationFailure(f"Question {candidate.id} has no content", candidate_id=candidate.id)
        return

    options = {k: v for k, v in (candidate.options or {}).items() if str(v or "").strip()}
    if len(options) < MIN_OPTIONS:
        raise ValidationFailure(
            f"Question {candidate.id} has {len(options)} option(s); at least {MIN_OPTIONS} are required",
            candidate_id=candidate.id,
        )


def _check_corpus_slot(db: Session, candidate: models.ParsedQuestion) -> str:
    """
    The corpus id only carries the question number, so a question split across
    two pages maps both halves to one slot. The first approval keeps it.
    """
    document = candidate.document
    question_id = corpus_id(document.subject_id, document.id, candidate.question_number)
    existing = crud.get_question(db, question_id)
    if existing is not None and existing.source_question_id not in (None, candidate.id):
        raise ValidationFailure(
            f"Corpus question {question_id} already holds {existing.source_question_id}; "
            f"merge {candidate.id} into it or reject it",
            candidate_id=candidate.id,
        )
    return question_id


def _promote(db: Session, candidate: models.ParsedQuestion, topic: str) -> str:
    document = candidate.document
    question_id = corpus_id(document.subject_id, document.id, candidate.question_number)
    crud.upsert_corpus_question(db, {
        "id": question_id,
        "subject_id": document.subject_id,
        "topic": topic,
        "question_number": candidate.question_number,
        "content": candidate.normalized_content or candidate.raw_content,
        "options": candidate.options,
        "source_question_id": candidate.id,
    })
    return question_id


# ─── Queries ──────────────────────────────────────────────────────────────────

def list_candidates(db: Session, document_id: str, status: Optional[ReviewStatus] = None) -> List[models.ParsedQuestion]:
    if not crud.get_document(db, document_id):
        raise NotFound(f"Exam '{document_id}' not found")
    return crud.get_parsed_questions(db, document_id, status=status)


def get_candidate(db: Session, candidate_id: str) -> models.ParsedQuestion:
    candidate = crud.get_parsed_question(db, candidate_id)
    if not candidate:
        raise NotFound(f"Question '{candidate_id}' not found")
    return candidate


# ─── Edit ─────────────────────────────────────────────────────────────────────

def edit_candidate(
    db: Session,
    candidate_id: str,
    normalized_content: Optional[str] = None,
    options: Optional[Dict[str, str]] = None,
    raw_content: Optional[str] = None,
    is_incomplete: Optional[bool] = None,
) -> models.ParsedQuestion:
    """Correct a candidate's text or options. Status is left as it is."""
    candidate = get_candidate(db, candidate_id)

    if options is not None:
        if not isinstance(options, dict) or not all(
            isinstance(k, str) and k.strip() and isinstance(v, str) for k, v in options.items()
        ):
            raise ValidationFailure("Options must map option letters to text", candidate_id=candidate_id)
        candidate.options = {k.strip().lower(): v.strip() for k, v in options.items()} or None
    if normalized_content is not None:
        candidate.normalized_content = normalized_content
    if raw_content is not None:
        candidate.raw_content = raw_content
    if is_incomplete is not None:
        candidate.is_incomplete = is_incomplete

    candidate.edited_at = _now()
    db.commit()
    db.refresh(candidate)
    return candidate


# ─── Approve / reject ─────────────────────────────────────────────────────────

def approve_candidate(db: Session, candidate_id: str, topic: str, notes: Optional[str] = None) -> models.ParsedQuestion:
    """
    Copy the candidate into the corpus under `topic` and mark it approved,
    in one transaction. Raises ValidationFailure when it has < 2 options.
    """
    candidate = get_candidate(db, candidate_id)
    if not _needs_review(candidate, "approve"):
        return candidate
    validate_for_approval(candidate)
    _check_corpus_slot(db, candidate)

    question_id = _promote(db, candidate, topic)
    candidate.status = ReviewStatus.APPROVED
    candidate.reviewed_at = _now()
    if notes is not None:
        candidate.reviewer_notes = notes
    db.commit()
    db.refresh(candidate)
    log.info(f"Approved {candidate_id} → {question_id} ({topic})")
    return candidate


def reject_candidate(db: Session, candidate_id: str, notes: Optional[str] = None) -> models.ParsedQuestion:
    """Mark the candidate rejected; the corpus is not touched"""
    candidate = get_candidate(db, candidate_id)
    if not _needs_review(candidate, "reject"):
        return candidate

    candidate.status = ReviewStatus.REJECTED
    candidate.reviewed_at = _now()
    if notes is not None:
        candidate.reviewer_notes = notes
    db.commit()
    db.refresh(candidate)
    log.info(f"Rejected {candidate_id}")
    return candidate


def approve_all_pending(db: Session, document_id: str, topic: str) -> BulkApprovalResult:
    """
    Approve every pending candidate of a document independently.
    Candidates failing the option check, or whose corpus slot is
    already taken by another candidate, are skipped and reported; each
    approval is committed on its own so one bad record never undoes the rest.
    """
    pending = list_candidates(db, document_id, status=ReviewStatus.PENDING)
    approved, skipped_ids = 0, []

    for candidate in pending:
        try:
            validate_for_approval(candidate)
            _check_corpus_slot(db, candidate)
        except ValidationFailure as e:
            log.info(f"Skipping {candidate.id}: {e}")
            skipped_ids.append(candidate.id)
            continue

        _promote(db, candidate, topic)
        candidate.status = ReviewStatus.APPROVED
        candidate.reviewed_at = _now()
        db.commit()
        approved += 1

    log.info(f"Bulk approval for {document_id}: {approved} approved, {len(skipped_ids)} skipped of {len(pending)}")
    return BulkApprovalResult(
        approved=approved,
        skipped=len(skipped_ids),
        total=len(pending),
        skipped_ids=skipped_ids,
    )
