"""
Errors raised by the pipeline and the review gate.

Routers never catch these; main.py maps them to HTTP responses.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors"""


class NotFound(PipelineError):
    """A document, page, session or candidate does not exist"""


class PreconditionFailed(PipelineError):
    """A lifecycle operation was requested from a state that does not allow it"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class InvocationError(PipelineError):
    """The external model call did not produce usable output"""


class InvocationTimeout(InvocationError):
    """The deadline passed before any output arrived"""


class InvocationFailed(InvocationError):
    """The model call errored for a reason other than the deadline"""


class ParseFailure(PipelineError):
    """Model output was empty or not parseable as any structure"""

    def __init__(self, message: str, raw_length: int = 0):
        super().__init__(message)
        self.raw_length = raw_length


class ValidationFailure(PipelineError):
    """A candidate failed a precondition for approval"""

    def __init__(self, message: str, candidate_id: Optional[str] = None):
        super().__init__(message)
        self.candidate_id = candidate_id
