"""
Pydantic schemas for request/response validation
Separate from SQLAlchemy models for clean API contracts
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict
from datetime import datetime


# ==========================================
# SUBJECT SCHEMAS
# ==========================================

class SubjectBase(BaseModel):
    """Base schema for Subject - shared fields"""
    name: str = Field(..., min_length=1, max_length=255, description="Subject name")
    description: Optional[str] = Field(None, description="Subject description")
    expertise: Optional[str] = Field(None, description="Domain the model should act as an expert in")


class SubjectCreate(SubjectBase):
    """Schema for creating a new Subject"""
    id: str = Field(..., min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_\-]+$", description="Short key, e.g. 'bda'")


class SubjectResponse(SubjectBase):
    """Schema for Subject response"""
    id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CorpusQuestionResponse(BaseModel):
    """Approved question in the corpus"""
    id: str
    subject_id: str
    topic: str
    question_number: Optional[int] = None
    content: str
    options: Optional[Dict[str, str]] = None
    source_question_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ==========================================
# EXAM DOCUMENT SCHEMAS
# ==========================================

class ExamDocumentResponse(BaseModel):
    """Schema for an uploaded exam"""
    id: str
    subject_id: str
    filename: str
    page_count: int
    extraction_mode: str
    is_deliverable: bool
    status: str
    error_message: Optional[str] = None
    uploaded_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ExamPageResponse(BaseModel):
    """Schema for one page of an exam"""
    id: str
    page_number: int
    status: str
    tokens_used: int
    error_message: Optional[str] = None
    raw_text: Optional[str] = None
    processed_text: Optional[str] = None
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ExamDetailResponse(ExamDocumentResponse):
    """Exam with its pages"""
    pages: List[ExamPageResponse] = []


class JobAccepted(BaseModel):
    """Returned when a background job was queued"""
    id: str = Field(..., description="Exam or session id to poll")
    job_id: Optional[str] = Field(None, description="Queue handle, None when nothing was queued")
    status: str = Field(..., description="Status right after the request")
    message: Optional[str] = None
    page_id: Optional[str] = None


# ==========================================
# PARSED QUESTION (REVIEW) SCHEMAS
# ==========================================

class ParsedQuestionResponse(BaseModel):
    """Candidate question awaiting review"""
    id: str
    document_id: str
    page_id: str
    question_number: int
    question_type: str
    raw_content: str
    normalized_content: Optional[str] = None
    options: Optional[Dict[str, str]] = None
    is_incomplete: bool
    status: str
    reviewer_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    edited_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ParsedQuestionUpdate(BaseModel):
    """Schema for correcting a candidate - all fields optional"""
    normalized_content: Optional[str] = None
    raw_content: Optional[str] = None
    options: Optional[Dict[str, str]] = None
    is_incomplete: Optional[bool] = None


class ApproveRequest(BaseModel):
    topic: str = Field(..., min_length=1, max_length=255, description="Corpus topic the question is filed under")
    notes: Optional[str] = Field(None, description="Reviewer notes")


class RejectRequest(BaseModel):
    notes: Optional[str] = Field(None, description="Reviewer notes")


class ApproveAllRequest(BaseModel):
    topic: str = Field(..., min_length=1, max_length=255)


class BulkApprovalResult(BaseModel):
    """Outcome of approving every pending question of an exam"""
    approved: int = Field(..., ge=0)
    skipped: int = Field(..., ge=0, description="Pending questions failing the option check or the corpus slot check")
    total: int = Field(..., ge=0)
    skipped_ids: List[str] = Field(default_factory=list)


# ==========================================
# PRACTICE GENERATION SCHEMAS
# ==========================================

class GenerationSessionCreate(BaseModel):
    subject_id: str = Field(..., min_length=1)
    topic_focus: Optional[List[str]] = Field(None, description="Only sample topics matching these terms")
    difficulty: str = Field(default="mixed", pattern=r"^(easy|medium|hard|mixed)$")
    question_count: int = Field(default=10, ge=1, le=50)


class GenerationSessionResponse(BaseModel):
    id: str
    subject_id: str
    topic_focus: Optional[List[str]] = None
    difficulty: str
    question_count: int
    status: str
    error_message: Optional[str] = None
    tokens_used: int
    counts: Dict[str, int] = Field(default_factory=dict, description="requested / generated questions")
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class GeneratedQuestionResponse(BaseModel):
    id: str
    session_id: str
    question_number: int
    content: str
    options: Dict[str, str]
    correct_answer: str
    explanation: str
    wrong_explanations: Optional[Dict[str, str]] = None
    based_on: Optional[str] = None
    difficulty: str

    model_config = ConfigDict(from_attributes=True)


class AttemptCreate(BaseModel):
    question_id: str
    user_answer: str = Field(..., pattern=r"^[a-dA-D]$")


class AttemptResponse(BaseModel):
    id: int
    question_id: str
    user_answer: str
    is_correct: bool
    correct_answer: str
    explanation: str
    attempted_at: datetime


class SessionStats(BaseModel):
    total_questions: int
    answered: int
    correct: int
    incorrect: int
    accuracy: float


# ==========================================
# VERIFICATION SCHEMAS
# ==========================================

class VerificationSessionCreate(BaseModel):
    subject_id: str = Field(..., min_length=1)
    deliverable_id: Optional[str] = Field(None, description="Exam document holding the student's work")
    student_name: Optional[str] = Field(None, max_length=255)
    focus_areas: Optional[List[str]] = None
    question_count: int = Field(default=5, ge=1, le=20)


class VerificationQuestionResponse(BaseModel):
    id: str
    session_id: str
    question_number: int
    content: str
    expected_answer: Optional[str] = None
    evaluation_criteria: Optional[List[str]] = None
    related_section: Optional[str] = None
    difficulty: str
    actual_answer: Optional[str] = None
    score: Optional[float] = None
    feedback: Optional[str] = None
    scored_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class VerificationSessionResponse(BaseModel):
    id: str
    subject_id: str
    deliverable_id: Optional[str] = None
    student_name: Optional[str] = None
    focus_areas: Optional[List[str]] = None
    question_count: int
    status: str
    error_message: Optional[str] = None
    tokens_used: int
    counts: Dict[str, int] = Field(default_factory=dict, description="requested / generated / scored questions")
    score: Optional[float] = None
    notes: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class VerificationSessionDetail(VerificationSessionResponse):
    questions: List[VerificationQuestionResponse] = []


class ScoreRequest(BaseModel):
    score: float = Field(..., ge=0, le=10)
    feedback: Optional[str] = None
    actual_answer: Optional[str] = None


class CompleteRequest(BaseModel):
    notes: Optional[str] = None


# ==========================================
# SOLVING SCHEMAS
# ==========================================

class SolutionResponse(BaseModel):
    question_id: str
    answer: str
    explanation: str
    wrong_options: Dict[str, str] = {}
    tokens_used: int
    cached: bool
