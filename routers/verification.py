"""
Oral verification API.

create (pending) → generate (generating → ready) → start (in_progress)
→ score questions → complete (average score)
"""

from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from database import crud, models, schemas
from database.database import get_db
from database.models import SessionStatus
from pipeline.errors import NotFound
from pipeline.job_queue import JobQueue
from pipeline.session_pipeline import (
    VerificationGenerationJob, complete_verification, score_verification_question, start_verification,
)
from routers.deps import get_job_queue, get_verification_job

router = APIRouter(prefix="/verification", tags=["verification"])


def _get_session(db: Session, session_id: str) -> models.VerificationSession:
    session = crud.get_verification_session(db, session_id)
    if not session:
        raise NotFound(f"Verification session '{session_id}' not found")
    return session


@router.post("/sessions", response_model=schemas.VerificationSessionResponse, status_code=status.HTTP_201_CREATED)
def create_session(body: schemas.VerificationSessionCreate, db: Session = Depends(get_db)):
    """Create a verification session, optionally tied to a deliverable exam document"""
    if not crud.get_subject(db, body.subject_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Subject with ID {body.subject_id} not found"
        )
    if body.deliverable_id:
        deliverable = crud.get_document(db, body.deliverable_id)
        if not deliverable or deliverable.subject_id != body.subject_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Deliverable {body.deliverable_id} not found for subject {body.subject_id}"
            )

    session = models.VerificationSession(
        id=str(uuid4()),
        subject_id=body.subject_id,
        deliverable_id=body.deliverable_id,
        student_name=body.student_name,
        focus_areas=[a.strip() for a in (body.focus_areas or []) if a and a.strip()] or None,
        question_count=body.question_count,
        status=SessionStatus.PENDING,
    )
    return crud.create_verification_session(db, session)


@router.get("/sessions", response_model=List[schemas.VerificationSessionResponse])
def list_sessions(subject_id: Optional[str] = None, db: Session = Depends(get_db)):
    return crud.get_verification_sessions(db, subject_id)


@router.post("/sessions/{session_id}/generate", response_model=schemas.JobAccepted,
             status_code=status.HTTP_202_ACCEPTED)
async def generate_questions(
    session_id: str,
    db: Session = Depends(get_db),
    job: VerificationGenerationJob = Depends(get_verification_job),
    queue: JobQueue = Depends(get_job_queue),
):
    """Queue question generation (pending → generating); 409 when already started"""
    job.begin(db, session_id)
    job_id = queue.submit(f"verification {session_id}", job.run, session_id)
    return schemas.JobAccepted(id=session_id, job_id=job_id, status=SessionStatus.GENERATING.value)


@router.post("/sessions/{session_id}/retry", response_model=schemas.JobAccepted,
             status_code=status.HTTP_202_ACCEPTED)
async def retry_generation(
    session_id: str,
    db: Session = Depends(get_db),
    job: VerificationGenerationJob = Depends(get_verification_job),
    queue: JobQueue = Depends(get_job_queue),
):
    """Re-run a failed generation (error → pending → generating)"""
    job.retry(db, session_id)
    job.begin(db, session_id)
    job_id = queue.submit(f"verification {session_id}", job.run, session_id)
    return schemas.JobAccepted(id=session_id, job_id=job_id, status=SessionStatus.GENERATING.value)


@router.get("/sessions/{session_id}", response_model=schemas.VerificationSessionDetail)
def get_session(session_id: str, db: Session = Depends(get_db)):
    """Session with its questions"""
    return _get_session(db, session_id)


@router.post("/sessions/{session_id}/start", response_model=schemas.VerificationSessionResponse)
def start_session(session_id: str, db: Session = Depends(get_db)):
    return start_verification(db, session_id)


@router.post("/sessions/{session_id}/complete", response_model=schemas.VerificationSessionResponse)
def complete_session(session_id: str, body: Optional[schemas.CompleteRequest] = None, db: Session = Depends(get_db)):
    return complete_verification(db, session_id, body.notes if body else None)


@router.get("/questions/{question_id}", response_model=schemas.VerificationQuestionResponse)
def get_question(question_id: str, db: Session = Depends(get_db)):
    question = crud.get_verification_question(db, question_id)
    if not question:
        raise NotFound(f"Verification question '{question_id}' not found")
    return question


@router.post("/questions/{question_id}/score", response_model=schemas.VerificationQuestionResponse)
def score_question(question_id: str, body: schemas.ScoreRequest, db: Session = Depends(get_db)):
    """Record the examiner's 0-10 score and feedback"""
    return score_verification_question(db, question_id, body.score, body.feedback, body.actual_answer)
