"""
Session pipeline - practice and oral-verification generation.

Both session kinds run the same job: one model call produces every question
of the session, so the session is its own single unit of work.

    begin (pending → generating)            synchronous, from the request
    run   build prompt → invoke → parse → persist → finish / fail
    retry (error → pending)                 explicit re-request

Practice sessions finish as `completed`; verification sessions finish as
`ready`, then the examiner starts, scores and completes them.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import config
from database import crud, models
from database.models import SessionStatus
from generation.llm_client import GenerationInvoker
from generation.practice_generator import build_practice_prompt, parse_practice_questions
from generation.verification_generator import build_verification_prompt, parse_verification_questions
from pipeline.errors import NotFound, ParseFailure, PipelineError, PreconditionFailed, ValidationFailure
from pipeline.states import Lifecycle, PRACTICE_LIFECYCLE, VERIFICATION_LIFECYCLE

log = logging.getLogger("pipeline.sessions")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class GenerationJob(ABC):
    """One model call per session; subclasses supply prompt, parser and storage"""

    lifecycle: Lifecycle
    model = None
    question_model = None

    def __init__(self, session_factory: sessionmaker, invoker: GenerationInvoker,
                 timeout: float = config.GENERATION_TIMEOUT_SECONDS):
        self.session_factory = session_factory
        self.invoker = invoker
        self.timeout = timeout

    @abstractmethod
    def build_prompt(self, db: Session, session) -> str:
        ...

    @abstractmethod
    def parse(self, raw: str) -> List[dict]:
        ...

    def finish_values(self) -> dict:
        """Extra columns written with the finishing transition"""
        return {}

    # ─── Lifecycle entry points ───────────────────────────────────────────────

    def begin(self, db: Session, session_id: str) -> None:
        self.lifecycle.advance(db, session_id, "begin", error_message=None)
        db.commit()

    def retry(self, db: Session, session_id: str) -> None:
        """error → pending; questions from an earlier attempt are discarded"""
        self.lifecycle.advance(db, session_id, "retry", error_message=None)
        db.query(self.question_model).filter(self.question_model.session_id == session_id).delete()
        db.commit()

    # ─── Background job ───────────────────────────────────────────────────────

    async def run(self, session_id: str) -> None:
        name = self.lifecycle.name
        with self.session_factory() as db:
            session = db.get(self.model, session_id)
            if not session:
                raise NotFound(f"{name.capitalize()} '{session_id}' not found")
            if session.status != SessionStatus.GENERATING:
                log.info(f"[{session_id}] {name} is {session.status.value}; nothing to run")
                return
            question_count = session.question_count
            try:
                prompt = self.build_prompt(db, session)
            except ValidationFailure as e:
                prompt, problem = None, str(e)

        if prompt is None:
            log.warning(f"[{session_id}] {name} cannot start: {problem}")
            self._fail(session_id, problem)
            return

        log.info(f"[{session_id}] Generating {question_count} question(s) for {name}")
        try:
            result = await self.invoker.invoke(prompt, timeout=self.timeout, temperature=0.7)
            items = self.parse(result.text)
            if not items:
                raise ParseFailure("No valid questions were generated", raw_length=len(result.text))
        except PipelineError as e:
            log.warning(f"[{session_id}] {name} failed: {type(e).__name__}: {e}")
            self._fail(session_id, str(e))
            return

        rows = [
            {"id": f"{session_id}_q{n}", "session_id": session_id, "question_number": n, **item}
            for n, item in enumerate(items, start=1)
        ]
        with self.session_factory() as db:
            try:
                crud.upsert_rows(
                    db, self.question_model, rows,
                    conflict_columns=["id"],
                    update_columns=[k for k in rows[0] if k not in ("id", "session_id")],
                )
                self.lifecycle.advance(
                    db, session_id, "finish",
                    tokens_used=result.tokens, error_message=None, **self.finish_values()
                )
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                log.exception(f"[{session_id}] Could not save generated questions")
                self._fail(session_id, "Storage error while saving questions")
                raise
        log.info(f"[{session_id}] {len(rows)} question(s) saved, {result.tokens} tokens")

    def _fail(self, session_id: str, message: str) -> None:
        with self.session_factory() as db:
            try:
                self.lifecycle.advance(db, session_id, "fail", error_message=message)
                db.commit()
            except PreconditionFailed as e:
                db.rollback()
                log.warning(f"Could not mark {session_id} as error: {e}")

    def recover_interrupted(self) -> int:
        """Sessions left `generating` by a previous process become `error`"""
        with self.session_factory() as db:
            stuck = db.query(self.model.id).filter(self.model.status == SessionStatus.GENERATING).all()
            for (session_id,) in stuck:
                self.lifecycle.advance(db, session_id, "fail", error_message="Interrupted by a restart")
            db.commit()
        return len(stuck)


class PracticeGenerationJob(GenerationJob):
    lifecycle = PRACTICE_LIFECYCLE
    model = models.GenerationSession
    question_model = models.GeneratedQuestion

    def build_prompt(self, db: Session, session) -> str:
        return build_practice_prompt(db, session)

    def parse(self, raw: str) -> List[dict]:
        return parse_practice_questions(raw)

    def finish_values(self) -> dict:
        return {"completed_at": _now()}


class VerificationGenerationJob(GenerationJob):
    lifecycle = VERIFICATION_LIFECYCLE
    model = models.VerificationSession
    question_model = models.VerificationQuestion

    def build_prompt(self, db: Session, session) -> str:
        return build_verification_prompt(db, session)

    def parse(self, raw: str) -> List[dict]:
        return parse_verification_questions(raw)


# ─── Verification: examiner side ──────────────────────────────────────────────

def start_verification(db: Session, session_id: str) -> models.VerificationSession:
    """ready → in_progress (repeating it while in progress is harmless)"""
    session = crud.get_verification_session(db, session_id)
    if not session:
        raise NotFound(f"Verification session '{session_id}' not found")
    VERIFICATION_LIFECYCLE.check("start", session.status)
    VERIFICATION_LIFECYCLE.advance(db, session_id, "start", started_at=session.started_at or _now())
    db.commit()
    db.refresh(session)
    return session


def score_verification_question(
    db: Session,
    question_id: str,
    score: float,
    feedback: Optional[str] = None,
    actual_answer: Optional[str] = None,
) -> models.VerificationQuestion:
    """Record the examiner's 0-10 score for one question"""
    question = crud.get_verification_question(db, question_id)
    if not question:
        raise NotFound(f"Verification question '{question_id}' not found")
    if not 0 <= score <= 10:
        raise ValidationFailure("Score must be between 0 and 10", candidate_id=question_id)

    session = question.session
    VERIFICATION_LIFECYCLE.check("complete", session.status)

    question.score = score
    question.feedback = feedback
    if actual_answer is not None:
        question.actual_answer = actual_answer
    question.scored_at = _now()
    db.commit()
    db.refresh(question)
    return question


def complete_verification(db: Session, session_id: str, notes: Optional[str] = None) -> models.VerificationSession:
    """Close the session with the average score of the scored questions"""
    session = crud.get_verification_session(db, session_id)
    if not session:
        raise NotFound(f"Verification session '{session_id}' not found")
    VERIFICATION_LIFECYCLE.check("complete", session.status)

    scores = [q.score for q in crud.get_verification_questions(db, session_id) if q.score is not None]
    average = round(sum(scores) / len(scores), 2) if scores else None
    VERIFICATION_LIFECYCLE.advance(
        db, session_id, "complete",
        score=average, notes=notes, completed_at=_now(),
    )
    db.commit()
    db.refresh(session)
    log.info(f"[{session_id}] Verification completed, average score {average}")
    return session
