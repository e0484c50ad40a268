"""
Exam Question Pipeline API - Main Application
FastAPI application that turns scanned exam PDFs into reviewed question
records, and generates practice and oral-verification questions.

Run:  uvicorn main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

import config
from database.database import Base, create_db_engine, create_session_factory
from generation.llm_client import GenerationInvoker
from generation.solver import QuestionSolver
from ingestion.file_store import LocalFileStore
from pipeline.document_pipeline import DocumentPipeline
from pipeline.errors import (
    InvocationFailed, InvocationTimeout, NotFound, ParseFailure, PipelineError,
    PreconditionFailed, ValidationFailure,
)
from pipeline.job_queue import JobQueue
from pipeline.session_pipeline import PracticeGenerationJob, VerificationGenerationJob
from routers import generation, pipeline, solving, subjects, verification

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s  %(levelname)s  %(message)s")
log = logging.getLogger(__name__)

# Most specific first: the first matching class decides the status code
ERROR_STATUS = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (PreconditionFailed, status.HTTP_409_CONFLICT),
    (ValidationFailure, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvocationTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (InvocationFailed, status.HTTP_502_BAD_GATEWAY),
    (ParseFailure, status.HTTP_502_BAD_GATEWAY),
]


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    code = next((c for cls, c in ERROR_STATUS if isinstance(exc, cls)), status.HTTP_500_INTERNAL_SERVER_ERROR)
    body = {"detail": str(exc), "error": type(exc).__name__}
    current_status = getattr(exc, "current_status", None)
    if current_status:
        body["current_status"] = current_status
    candidate_id = getattr(exc, "candidate_id", None)
    if candidate_id:
        body["candidate_id"] = candidate_id
    return JSONResponse(status_code=code, content=body)


def create_app(
    session_factory: Optional[sessionmaker] = None,
    invoker: Optional[GenerationInvoker] = None,
    file_store: Optional[LocalFileStore] = None,
    unit_delay: float = config.UNIT_DELAY_SECONDS,
) -> FastAPI:
    """
    Build the application. Every collaborator can be injected (tests pass an
    in-memory database, a fake model and a temporary file store).
    """
    engine = None
    if session_factory is None:
        engine = create_db_engine(config.DATABASE_URL)
        session_factory = create_session_factory(engine)
    invoker = invoker or GenerationInvoker()
    file_store = file_store or LocalFileStore(config.STORAGE_DIR)

    document_pipeline = DocumentPipeline(session_factory, invoker, file_store, unit_delay=unit_delay)
    practice_job = PracticeGenerationJob(session_factory, invoker)
    verification_job = VerificationGenerationJob(session_factory, invoker)
    job_queue = JobQueue()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: create tables, recover interrupted jobs, start the queue."""
        Base.metadata.create_all(bind=session_factory.kw["bind"])
        document_pipeline.recover_interrupted()
        practice_job.recover_interrupted()
        verification_job.recover_interrupted()
        job_queue.start()
        yield
        await job_queue.stop()
        if engine is not None:
            engine.dispose()

    app = FastAPI(
        title="Exam Question Pipeline API",
        description="Exam PDF ingestion, question review, practice and oral verification generation",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.session_factory = session_factory
    app.state.document_pipeline = document_pipeline
    app.state.practice_job = practice_job
    app.state.verification_job = verification_job
    app.state.solver = QuestionSolver(session_factory, invoker)
    app.state.job_queue = job_queue

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PipelineError, pipeline_error_handler)

    # ─── Routers ───────────────────────────────────────────────────────────────
    app.include_router(subjects.router)
    app.include_router(pipeline.router)          # /pipeline/*
    app.include_router(generation.router)        # /generate/*
    app.include_router(verification.router)      # /verification/*
    app.include_router(solving.router)           # /solve/*

    @app.get("/")
    def root():
        return {"name": "Exam Question Pipeline API", "version": "1.0.0", "docs": "/docs"}

    @app.get("/health")
    def health():
        return {"status": "ok", "job_queue": "running" if job_queue.running else "stopped"}

    return app


app = create_app()
