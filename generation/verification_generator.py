"""
Oral verification question generation.

Context sent to the model:
  - the student's deliverable (pages of a completed document), capped at MAX_DELIVERABLE_CHARS
  - up to SAMPLE_EXAMS other completed exams of the subject as a style guide
Output: JSON array of open questions with expected answer and criteria.
"""

import logging
import re
from typing import List, Optional

from sqlalchemy.orm import Session

from database import crud, models
from generation.json_output import extract_json_array
from generation.prompts import (
    DELIVERABLE_SECTION, NO_DELIVERABLE_SECTION, SAMPLES_SECTION_HEADER, VERIFICATION_PROMPT,
)

log = logging.getLogger("generation.pipeline")

MAX_DELIVERABLE_CHARS = 15000
SAMPLE_EXAMS = 2
SAMPLE_PAGES = 2
SAMPLE_CHARS = 3000
DIFFICULTIES = ("easy", "medium", "hard")


def _page_text(page: models.ExamPage) -> str:
    return page.processed_text or page.raw_text or ""


def deliverable_content(db: Session, deliverable_id: Optional[str]) -> Optional[dict]:
    """Combined page text of a completed deliverable, or None"""
    if not deliverable_id:
        return None

    document = crud.get_document(db, deliverable_id)
    if not document or document.status != models.DocumentStatus.COMPLETED:
        return None

    texts = [_page_text(p) for p in crud.get_pages(db, deliverable_id)]
    content = "\n\n---\n\n".join(t for t in texts if t.strip())
    if not content.strip():
        return None

    return {
        "filename": document.filename,
        "page_count": document.page_count,
        "content": content,
        "word_count": len(re.findall(r"\S+", content)),
    }


def sample_exams_content(db: Session, subject_id: str, exclude_id: Optional[str] = None) -> List[dict]:
    """First pages of up to SAMPLE_EXAMS completed exams of the subject"""
    samples = []
    for document in crud.get_completed_documents(db, subject_id, exclude_id=exclude_id, limit=SAMPLE_EXAMS):
        pages = crud.get_pages(db, document.id)[:SAMPLE_PAGES]
        text = "\n".join(t for t in (_page_text(p) for p in pages) if t)
        if text:
            samples.append({"filename": document.filename, "content": text[:SAMPLE_CHARS]})
    return samples


def build_verification_prompt(db: Session, session: models.VerificationSession) -> str:
    subject = crud.get_subject(db, session.subject_id)
    subject_name = subject.name if subject else session.subject_id
    deliverable = deliverable_content(db, session.deliverable_id)
    samples = sample_exams_content(db, session.subject_id, exclude_id=session.deliverable_id)

    log.info(
        f"Verification session {session.id}: deliverable={'yes' if deliverable else 'no'}, "
        f"{len(samples)} sample exam(s)"
    )

    if deliverable:
        content = deliverable["content"]
        if len(content) > MAX_DELIVERABLE_CHARS:
            content = content[:MAX_DELIVERABLE_CHARS] + "\n\n[... content truncated ...]"
        deliverable_section = DELIVERABLE_SECTION.format(
            filename=deliverable["filename"],
            page_count=deliverable["page_count"],
            word_count=deliverable["word_count"],
            content=content,
        )
    else:
        deliverable_section = NO_DELIVERABLE_SECTION.format(subject_name=subject_name)

    samples_section = ""
    if samples:
        samples_section = SAMPLES_SECTION_HEADER + "".join(
            f"--- {s['filename']} ---\n{s['content']}\n\n" for s in samples
        ) + "=== END OF REFERENCE EXAMS ===\n"

    focus = session.focus_areas or []
    return VERIFICATION_PROMPT.format(
        expertise=(subject.expertise or subject_name) if subject else subject_name,
        student_line=f"STUDENT: {session.student_name}" if session.student_name else "",
        samples_section=samples_section,
        deliverable_section=deliverable_section,
        count=session.question_count,
        focus_line=f"\nFOCUS AREAS: {', '.join(focus)}" if focus else "",
    )


def parse_verification_questions(raw: str) -> List[dict]:
    """Open questions from the model reply; items without content are dropped"""
    questions = []
    for item in extract_json_array(raw):
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            log.warning("Skipping verification question without content")
            continue
        criteria = item.get("criteria")
        difficulty = str(item.get("difficulty") or "").lower()
        questions.append({
            "content": content.strip(),
            "expected_answer": str(item.get("expectedAnswer") or ""),
            "evaluation_criteria": [str(c) for c in criteria] if isinstance(criteria, list) else [],
            "related_section": str(item.get("section") or "general"),
            "difficulty": difficulty if difficulty in DIFFICULTIES else "medium",
        })
    return questions
