"""
SQLAlchemy models for the exam question pipeline
Subject → ExamDocument → ExamPage → ParsedQuestion → Question (corpus)

Generation and verification sessions hang off the subject as well.
Status columns store the enum values below as plain strings.
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Text, Float, JSON, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from database.database import Base


class DocumentStatus(str, enum.Enum):
    """Lifecycle of an uploaded exam document"""
    UPLOADED = "uploaded"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    PARSING = "parsing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    ERROR = "error"


class PageStatus(str, enum.Enum):
    """Lifecycle of a single page (the unit of retry)"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class SessionStatus(str, enum.Enum):
    """Lifecycle of practice and verification sessions"""
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class ReviewStatus(str, enum.Enum):
    """Review state of a parsed candidate question"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class QuestionType(str, enum.Enum):
    """Shape of a parsed question"""
    MULTIPLE_CHOICE = "multiple_choice"
    OPEN = "open"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _status_column(enum_cls, default):
    return Column(
        SQLEnum(enum_cls, native_enum=False, values_callable=_enum_values, length=20),
        default=default,
        nullable=False,
        index=True,
    )


# ==========================================
# SUBJECTS
# ==========================================

class Subject(Base):
    """
    A course whose exams are ingested.
    `expertise` is free text injected into prompts ("database systems", ...).
    """
    __tablename__ = "subjects"

    id = Column(String(50), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    expertise = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    documents = relationship("ExamDocument", back_populates="subject", cascade="all, delete-orphan", passive_deletes=True)
    questions = relationship("Question", back_populates="subject", cascade="all, delete-orphan", passive_deletes=True)

    def __repr__(self):
        return f"<Subject(id='{self.id}', name='{self.name}')>"


# ==========================================
# EXAM DOCUMENTS AND PAGES
# ==========================================

class ExamDocument(Base):
    """
    An uploaded exam PDF.
    page_count is declared at upload; pages are created during extraction.
    """
    __tablename__ = "exam_documents"

    id = Column(String(64), primary_key=True)
    subject_id = Column(String(50), ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False, index=True)
    filename = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)
    page_count = Column(Integer, default=0, nullable=False)
    extraction_mode = Column(String(20), default="multiple_choice", nullable=False)
    is_deliverable = Column(Boolean, default=False, nullable=False)
    status = _status_column(DocumentStatus, DocumentStatus.UPLOADED)
    error_message = Column(Text, nullable=True)
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    subject = relationship("Subject", back_populates="documents")
    pages = relationship(
        "ExamPage", back_populates="document", order_by="ExamPage.page_number",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    parsed_questions = relationship(
        "ParsedQuestion", back_populates="document",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def __repr__(self):
        return f"<ExamDocument(id='{self.id}', status='{self.status}', pages={self.page_count})>"


class ExamPage(Base):
    """
    One page of an exam document: the unit of work of the document pipeline.
    Once completed only raw_text / processed_text may still be corrected.
    """
    __tablename__ = "exam_pages"
    __table_args__ = (UniqueConstraint("document_id", "page_number", name="uq_exam_page_number"),)

    id = Column(String(100), primary_key=True)
    document_id = Column(String(64), ForeignKey("exam_documents.id", ondelete="CASCADE"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)
    image_path = Column(String(500), nullable=True)
    status = _status_column(PageStatus, PageStatus.PENDING)
    raw_text = Column(Text, nullable=True)
    processed_text = Column(Text, nullable=True)
    tokens_used = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    document = relationship("ExamDocument", back_populates="pages")
    parsed_questions = relationship("ParsedQuestion", back_populates="page", passive_deletes=True)

    def __repr__(self):
        return f"<ExamPage(id='{self.id}', status='{self.status}')>"


class ParsedQuestion(Base):
    """
    Candidate question transcribed from a page, awaiting review.
    The id is derived from document, page and question number so re-parsing
    a page overwrites instead of duplicating.
    """
    __tablename__ = "parsed_questions"

    id = Column(String(150), primary_key=True)
    document_id = Column(String(64), ForeignKey("exam_documents.id", ondelete="CASCADE"), nullable=False, index=True)
    page_id = Column(String(100), ForeignKey("exam_pages.id", ondelete="CASCADE"), nullable=False, index=True)
    question_number = Column(Integer, nullable=False)
    question_type = Column(String(20), default=QuestionType.MULTIPLE_CHOICE.value, nullable=False)
    raw_content = Column(Text, nullable=False)
    normalized_content = Column(Text, nullable=True)
    options = Column(JSON, nullable=True)  # {"a": "...", "b": "..."} or null
    is_incomplete = Column(Boolean, default=False, nullable=False)
    status = _status_column(ReviewStatus, ReviewStatus.PENDING)
    reviewer_notes = Column(Text, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    document = relationship("ExamDocument", back_populates="parsed_questions")
    page = relationship("ExamPage", back_populates="parsed_questions")

    def __repr__(self):
        return f"<ParsedQuestion(id='{self.id}', status='{self.status}')>"


# ==========================================
# AUTHORITATIVE CORPUS
# ==========================================

class Question(Base):
    """Reviewed question promoted from a parsed candidate"""
    __tablename__ = "questions"

    id = Column(String(200), primary_key=True)
    subject_id = Column(String(50), ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False, index=True)
    topic = Column(String(255), nullable=False, index=True)
    question_number = Column(Integer, nullable=True)
    content = Column(Text, nullable=False)
    options = Column(JSON, nullable=True)
    source_question_id = Column(String(150), ForeignKey("parsed_questions.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    subject = relationship("Subject", back_populates="questions")
    solution = relationship("SolutionCache", uselist=False, cascade="all, delete-orphan", passive_deletes=True)

    def __repr__(self):
        return f"<Question(id='{self.id}', topic='{self.topic}')>"


class SolutionCache(Base):
    """Model answer for a corpus question, computed once"""
    __tablename__ = "solutions_cache"

    question_id = Column(String(200), ForeignKey("questions.id", ondelete="CASCADE"), primary_key=True)
    answer = Column(String(1), nullable=False)
    explanation = Column(Text, nullable=False)
    wrong_options = Column(JSON, nullable=True)
    tokens_used = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


# ==========================================
# PRACTICE GENERATION
# ==========================================

class GenerationSession(Base):
    """
    Request for a batch of new practice questions modelled on corpus samples.
    topic_focus / difficulty / question_count are fixed at creation.
    """
    __tablename__ = "generation_sessions"

    id = Column(String(36), primary_key=True)
    subject_id = Column(String(50), ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False, index=True)
    topic_focus = Column(JSON, nullable=True)
    difficulty = Column(String(10), default="mixed", nullable=False)
    question_count = Column(Integer, default=10, nullable=False)
    status = _status_column(SessionStatus, SessionStatus.PENDING)
    error_message = Column(Text, nullable=True)
    tokens_used = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    questions = relationship(
        "GeneratedQuestion", back_populates="session", order_by="GeneratedQuestion.question_number",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def counts(self):
        return {"requested": self.question_count, "generated": len(self.questions)}

    def __repr__(self):
        return f"<GenerationSession(id='{self.id}', status='{self.status}')>"


class GeneratedQuestion(Base):
    """Practice multiple-choice question produced by a generation session"""
    __tablename__ = "generated_questions"

    id = Column(String(60), primary_key=True)
    session_id = Column(String(36), ForeignKey("generation_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    question_number = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    options = Column(JSON, nullable=False)
    correct_answer = Column(String(1), nullable=False)
    explanation = Column(Text, nullable=False)
    wrong_explanations = Column(JSON, nullable=True)
    based_on = Column(Text, nullable=True)
    difficulty = Column(String(10), default="medium", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    session = relationship("GenerationSession", back_populates="questions")
    attempts = relationship("GeneratedAttempt", cascade="all, delete-orphan", passive_deletes=True)


class GeneratedAttempt(Base):
    """One answer given to a practice question"""
    __tablename__ = "generated_attempts"

    id = Column(Integer, primary_key=True, index=True)
    question_id = Column(String(60), ForeignKey("generated_questions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_answer = Column(String(1), nullable=False)
    is_correct = Column(Boolean, nullable=False)
    attempted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


# ==========================================
# ORAL VERIFICATION
# ==========================================

class VerificationSession(Base):
    """
    Oral check that a student authored a deliverable.
    The deliverable is an exam document uploaded in content mode.
    """
    __tablename__ = "verification_sessions"

    id = Column(String(36), primary_key=True)
    subject_id = Column(String(50), ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False, index=True)
    deliverable_id = Column(String(64), ForeignKey("exam_documents.id", ondelete="SET NULL"), nullable=True)
    student_name = Column(String(255), nullable=True)
    focus_areas = Column(JSON, nullable=True)
    question_count = Column(Integer, default=5, nullable=False)
    status = _status_column(SessionStatus, SessionStatus.PENDING)
    error_message = Column(Text, nullable=True)
    tokens_used = Column(Integer, default=0, nullable=False)
    score = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    questions = relationship(
        "VerificationQuestion", back_populates="session", order_by="VerificationQuestion.question_number",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def counts(self):
        return {
            "requested": self.question_count,
            "generated": len(self.questions),
            "scored": sum(1 for q in self.questions if q.score is not None),
        }

    def __repr__(self):
        return f"<VerificationSession(id='{self.id}', status='{self.status}')>"


class VerificationQuestion(Base):
    """Open question asked during an oral verification, scored 0-10"""
    __tablename__ = "verification_questions"

    id = Column(String(60), primary_key=True)
    session_id = Column(String(36), ForeignKey("verification_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    question_number = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    expected_answer = Column(Text, nullable=True)
    evaluation_criteria = Column(JSON, nullable=True)
    related_section = Column(String(255), nullable=True)
    difficulty = Column(String(10), default="medium", nullable=False)
    actual_answer = Column(Text, nullable=True)
    score = Column(Float, nullable=True)
    feedback = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    scored_at = Column(DateTime(timezone=True), nullable=True)

    session = relationship("VerificationSession", back_populates="questions")
