"""
Exam pipeline API.

Upload → Extract (render pages) → Process (vision model per page) → Review.
Extract / process endpoints only queue work and return at once; clients poll
GET /pipeline/exams/{id}/status.
"""

import logging
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status
from sqlalchemy.orm import Session

import config
from database import crud, schemas
from database.database import get_db
from database.models import PageStatus, ReviewStatus
from parsing.question_parser import ExtractionMode
from pipeline.document_pipeline import DocumentPipeline
from pipeline.errors import NotFound
from pipeline.job_queue import JobQueue
from routers.deps import get_document_pipeline, get_job_queue
from services import review_gate

log = logging.getLogger(__name__)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])

ALLOWED_EXTENSIONS = {"pdf"}


def validate_file(file: UploadFile) -> str:
    """Validate uploaded file; returns the cleaned filename"""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required"
        )

    filename = Path(file.filename.strip()).name
    extension = Path(filename).suffix.lower().lstrip(".")
    if extension not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported file type: .{extension or '?'}. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )
    return filename


async def read_upload(upload_file: UploadFile, max_size: int = config.MAX_UPLOAD_SIZE) -> bytes:
    """Read the upload in 1MB chunks, refusing anything over max_size"""
    chunks, size = [], 0
    while True:
        chunk = await upload_file.read(1024 * 1024)
        if not chunk:
            break
        size += len(chunk)
        if size > max_size:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File too large: over {max_size} bytes"
            )
        chunks.append(chunk)
    if not size:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    return b"".join(chunks)


def _get_exam(db: Session, exam_id: str):
    exam = crud.get_document(db, exam_id)
    if not exam:
        raise NotFound(f"Exam '{exam_id}' not found")
    return exam


# ─── Exams ────────────────────────────────────────────────────────────────────

@router.post("/upload", response_model=schemas.ExamDocumentResponse, status_code=status.HTTP_201_CREATED)
async def upload_exam(
    file: UploadFile = File(...),
    subject_id: str = Form(...),
    extraction_mode: ExtractionMode = Form(ExtractionMode.MULTIPLE_CHOICE),
    is_deliverable: bool = Form(False),
    db: Session = Depends(get_db),
    pipeline: DocumentPipeline = Depends(get_document_pipeline),
):
    """
    Upload an exam PDF for a subject.
    extraction_mode: multiple_choice (test questions) or open (full content,
    e.g. a student deliverable for oral verification).
    """
    filename = validate_file(file)
    if not crud.get_subject(db, subject_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Subject with ID {subject_id} not found"
        )

    data = await read_upload(file)
    return pipeline.register_upload(
        db,
        document_id=f"exam_{uuid4().hex[:12]}",
        subject_id=subject_id,
        filename=filename,
        data=data,
        extraction_mode=extraction_mode,
        is_deliverable=is_deliverable,
    )


@router.get("/exams", response_model=List[schemas.ExamDocumentResponse])
def list_exams(subject_id: Optional[str] = None, db: Session = Depends(get_db)):
    """List uploaded exams, optionally for one subject"""
    return crud.get_documents(db, subject_id)


@router.get("/exams/{exam_id}", response_model=schemas.ExamDetailResponse)
def get_exam(exam_id: str, db: Session = Depends(get_db)):
    """Exam with its pages"""
    return _get_exam(db, exam_id)


@router.delete("/exams/{exam_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_exam(
    exam_id: str,
    db: Session = Depends(get_db),
    pipeline: DocumentPipeline = Depends(get_document_pipeline),
):
    """Delete an exam with its pages, parsed questions and files"""
    pipeline.delete_document(db, exam_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ─── Lifecycle ────────────────────────────────────────────────────────────────

@router.post("/exams/{exam_id}/extract", response_model=schemas.JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def extract_exam(
    exam_id: str,
    db: Session = Depends(get_db),
    pipeline: DocumentPipeline = Depends(get_document_pipeline),
    queue: JobQueue = Depends(get_job_queue),
):
    """Render pages to images (uploaded/error → extracting → extracted)"""
    pipeline.begin_extraction(db, exam_id)
    job_id = queue.submit(f"extract {exam_id}", pipeline.extract_pages, exam_id)
    return schemas.JobAccepted(id=exam_id, job_id=job_id, status="extracting")


@router.post("/exams/{exam_id}/process", response_model=schemas.JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def process_exam(
    exam_id: str,
    db: Session = Depends(get_db),
    pipeline: DocumentPipeline = Depends(get_document_pipeline),
    queue: JobQueue = Depends(get_job_queue),
):
    """Run the vision model over every page not yet completed (extracted/error → parsing)"""
    pipeline.begin_parsing(db, exam_id)
    job_id = queue.submit(f"parse {exam_id}", pipeline.parse_pages, exam_id)
    return schemas.JobAccepted(id=exam_id, job_id=job_id, status="parsing")


@router.post("/exams/{exam_id}/process-next", response_model=schemas.JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def process_next_page(
    exam_id: str,
    db: Session = Depends(get_db),
    pipeline: DocumentPipeline = Depends(get_document_pipeline),
    queue: JobQueue = Depends(get_job_queue),
):
    """Queue the lowest-numbered pending page"""
    page = pipeline.next_unit(db, exam_id)
    if page is None:
        exam = _get_exam(db, exam_id)
        return schemas.JobAccepted(id=exam_id, status=exam.status.value, message="No pending pages")

    job_id = queue.submit(f"page {page.id}", pipeline.process_unit, exam_id, page.id)
    return schemas.JobAccepted(id=exam_id, job_id=job_id, status=page.status.value, page_id=page.id)


@router.post("/exams/{exam_id}/pages/{page_id}/process", response_model=schemas.JobAccepted,
             status_code=status.HTTP_202_ACCEPTED)
async def process_page(
    exam_id: str,
    page_id: str,
    db: Session = Depends(get_db),
    pipeline: DocumentPipeline = Depends(get_document_pipeline),
    queue: JobQueue = Depends(get_job_queue),
):
    """
    (Re)process one page. Safe to repeat: a completed page is left as is and
    a page already being processed is not queued twice.
    """
    page = crud.get_page(db, page_id)
    if not page or page.document_id != exam_id:
        raise NotFound(f"Page '{page_id}' not found in exam '{exam_id}'")

    if page.status in (PageStatus.COMPLETED, PageStatus.PROCESSING):
        return schemas.JobAccepted(
            id=exam_id, status=page.status.value, page_id=page_id,
            message=f"Page is already {page.status.value}",
        )

    job_id = queue.submit(f"page {page_id}", pipeline.process_unit, exam_id, page_id)
    return schemas.JobAccepted(id=exam_id, job_id=job_id, status=page.status.value, page_id=page_id)


@router.get("/exams/{exam_id}/status")
def exam_status(
    exam_id: str,
    db: Session = Depends(get_db),
    pipeline: DocumentPipeline = Depends(get_document_pipeline),
):
    """Polling payload: {status, error_message, counts, questions, pages}"""
    return pipeline.status(db, exam_id)


# ─── Review ───────────────────────────────────────────────────────────────────

@router.get("/exams/{exam_id}/questions", response_model=List[schemas.ParsedQuestionResponse])
def list_exam_questions(exam_id: str, status: Optional[ReviewStatus] = None, db: Session = Depends(get_db)):
    """Parsed questions of an exam, optionally filtered by review status"""
    return review_gate.list_candidates(db, exam_id, status)


@router.post("/exams/{exam_id}/approve-all", response_model=schemas.BulkApprovalResult)
def approve_all(exam_id: str, body: schemas.ApproveAllRequest, db: Session = Depends(get_db)):
    """Approve every pending question with at least two options; the rest are skipped"""
    return review_gate.approve_all_pending(db, exam_id, body.topic)


@router.get("/questions/{question_id}", response_model=schemas.ParsedQuestionResponse)
def get_question(question_id: str, db: Session = Depends(get_db)):
    return review_gate.get_candidate(db, question_id)


@router.put("/questions/{question_id}", response_model=schemas.ParsedQuestionResponse)
def update_question(question_id: str, body: schemas.ParsedQuestionUpdate, db: Session = Depends(get_db)):
    """Correct text or options of a parsed question (status unchanged)"""
    return review_gate.edit_candidate(db, question_id, **body.model_dump(exclude_unset=True))


@router.post("/questions/{question_id}/approve", response_model=schemas.ParsedQuestionResponse)
def approve_question(question_id: str, body: schemas.ApproveRequest, db: Session = Depends(get_db)):
    """Approve and copy into the subject's corpus under the given topic"""
    return review_gate.approve_candidate(db, question_id, body.topic, body.notes)


@router.post("/questions/{question_id}/reject", response_model=schemas.ParsedQuestionResponse)
def reject_question(question_id: str, body: Optional[schemas.RejectRequest] = None, db: Session = Depends(get_db)):
    return review_gate.reject_candidate(db, question_id, body.notes if body else None)
