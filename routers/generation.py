"""
Practice question generation API.

POST /generate/sessions             - create a session (pending)
POST /generate/sessions/{id}/start  - queue generation (pending → generating)
GET  /generate/sessions/{id}        - poll status
"""

from typing import List
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from database import crud, models, schemas
from database.database import get_db
from database.models import SessionStatus
from pipeline.errors import NotFound, PreconditionFailed
from pipeline.job_queue import JobQueue
from pipeline.session_pipeline import PracticeGenerationJob
from routers.deps import get_job_queue, get_practice_job

router = APIRouter(prefix="/generate", tags=["generation"])


def _get_session(db: Session, session_id: str) -> models.GenerationSession:
    session = crud.get_generation_session(db, session_id)
    if not session:
        raise NotFound(f"Practice session '{session_id}' not found")
    return session


@router.post("/sessions", response_model=schemas.GenerationSessionResponse, status_code=status.HTTP_201_CREATED)
def create_session(body: schemas.GenerationSessionCreate, db: Session = Depends(get_db)):
    """Create a practice session; nothing is generated until it is started"""
    if not crud.get_subject(db, body.subject_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Subject with ID {body.subject_id} not found"
        )
    focus = [t.strip() for t in (body.topic_focus or []) if t and t.strip()] or None
    session = models.GenerationSession(
        id=str(uuid4()),
        subject_id=body.subject_id,
        topic_focus=focus,
        difficulty=body.difficulty,
        question_count=body.question_count,
        status=SessionStatus.PENDING,
    )
    return crud.create_generation_session(db, session)


@router.post("/sessions/{session_id}/start", response_model=schemas.JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def start_session(
    session_id: str,
    db: Session = Depends(get_db),
    job: PracticeGenerationJob = Depends(get_practice_job),
    queue: JobQueue = Depends(get_job_queue),
):
    """Queue generation (pending → generating); 409 when already started"""
    job.begin(db, session_id)
    job_id = queue.submit(f"practice {session_id}", job.run, session_id)
    return schemas.JobAccepted(id=session_id, job_id=job_id, status=SessionStatus.GENERATING.value)


@router.post("/sessions/{session_id}/retry", response_model=schemas.JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def retry_session(
    session_id: str,
    db: Session = Depends(get_db),
    job: PracticeGenerationJob = Depends(get_practice_job),
    queue: JobQueue = Depends(get_job_queue),
):
    """Re-run a failed session (error → pending → generating)"""
    job.retry(db, session_id)
    job.begin(db, session_id)
    job_id = queue.submit(f"practice {session_id}", job.run, session_id)
    return schemas.JobAccepted(id=session_id, job_id=job_id, status=SessionStatus.GENERATING.value)


@router.get("/sessions/{session_id}", response_model=schemas.GenerationSessionResponse)
def get_session(session_id: str, db: Session = Depends(get_db)):
    return _get_session(db, session_id)


@router.get("/sessions/{session_id}/questions", response_model=List[schemas.GeneratedQuestionResponse])
def get_session_questions(session_id: str, db: Session = Depends(get_db)):
    _get_session(db, session_id)
    return crud.get_generated_questions(db, session_id)


@router.post("/sessions/{session_id}/attempt", response_model=schemas.AttemptResponse)
def record_attempt(session_id: str, body: schemas.AttemptCreate, db: Session = Depends(get_db)):
    """Answer a practice question; returns correctness and the explanation"""
    session = _get_session(db, session_id)
    if session.status != SessionStatus.COMPLETED:
        raise PreconditionFailed(
            f"Practice session is {session.status.value}; answers are accepted once it is completed",
            current_status=session.status.value,
        )
    question = crud.get_generated_question(db, body.question_id)
    if not question or question.session_id != session_id:
        raise NotFound(f"Question '{body.question_id}' not found in session '{session_id}'")

    attempt = crud.record_generated_attempt(db, question, body.user_answer.lower())
    return schemas.AttemptResponse(
        id=attempt.id,
        question_id=question.id,
        user_answer=attempt.user_answer,
        is_correct=attempt.is_correct,
        correct_answer=question.correct_answer,
        explanation=question.explanation,
        attempted_at=attempt.attempted_at,
    )


@router.get("/sessions/{session_id}/stats", response_model=schemas.SessionStats)
def session_stats(session_id: str, db: Session = Depends(get_db)):
    _get_session(db, session_id)
    return crud.generation_session_stats(db, session_id)


@router.get("/subjects/{subject_id}/sessions", response_model=List[schemas.GenerationSessionResponse])
def list_subject_sessions(subject_id: str, db: Session = Depends(get_db)):
    return crud.get_generation_sessions(db, subject_id)
