"""
FastAPI dependencies for the components built by main.create_app()
"""

from fastapi import Request

from generation.solver import QuestionSolver
from pipeline.document_pipeline import DocumentPipeline
from pipeline.job_queue import JobQueue
from pipeline.session_pipeline import PracticeGenerationJob, VerificationGenerationJob


def get_document_pipeline(request: Request) -> DocumentPipeline:
    return request.app.state.document_pipeline


def get_practice_job(request: Request) -> PracticeGenerationJob:
    return request.app.state.practice_job


def get_verification_job(request: Request) -> VerificationGenerationJob:
    return request.app.state.verification_job


def get_solver(request: Request) -> QuestionSolver:
    return request.app.state.solver


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue
