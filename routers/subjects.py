"""
Subject API endpoints
Subjects own exams, corpus questions and sessions
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional

from database import schemas, crud
from database.database import get_db
from database.models import ExamDocument

router = APIRouter(prefix="/subjects", tags=["subjects"])


@router.post("/", response_model=schemas.SubjectResponse, status_code=status.HTTP_201_CREATED)
def create_subject(subject: schemas.SubjectCreate, db: Session = Depends(get_db)):
    """
    Create a new subject
    Subject ids must be unique
    """
    if crud.get_subject(db, subject.id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Subject with id '{subject.id}' already exists"
        )

    return crud.create_subject(db, subject.id, subject.name, subject.description, subject.expertise)


@router.get("/", response_model=List[schemas.SubjectResponse])
def list_subjects(skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    """
    List all subjects with pagination
    """
    return crud.get_subjects(db, skip=skip, limit=limit)


@router.get("/{subject_id}")
def get_subject(subject_id: str, db: Session = Depends(get_db)):
    """
    Get a subject with exam, corpus and topic counts
    """
    subject = crud.get_subject(db, subject_id)
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Subject with ID {subject_id} not found"
        )

    exam_count = db.query(ExamDocument).filter(ExamDocument.subject_id == subject_id).count()
    return {
        **schemas.SubjectResponse.model_validate(subject).model_dump(),
        "exam_count": exam_count,
        "question_count": crud.count_questions(db, subject_id),
        "topics": crud.get_topics(db, subject_id),
    }


@router.get("/{subject_id}/questions", response_model=List[schemas.CorpusQuestionResponse])
def list_subject_questions(subject_id: str, topic: Optional[str] = None, db: Session = Depends(get_db)):
    """
    Approved corpus questions of a subject, optionally for one topic
    """
    if not crud.get_subject(db, subject_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Subject with ID {subject_id} not found"
        )
    return crud.get_questions(db, subject_id, topic)
