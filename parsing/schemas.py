"""
Pydantic schemas for question parsing
Candidate questions produced from one page transcription
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict


class ExtractedQuestion(BaseModel):
    """
    A question recovered from a model transcription, before review.

    The id is deterministic ({job}_p{page}_q{number}) so parsing the same page
    twice yields the same ids.
    """
    id: str = Field(..., description="Deterministic candidate id")
    question_number: int = Field(..., ge=0, description="Number printed on the exam")
    question_type: str = Field(..., description="multiple_choice or open")
    raw_content: str = Field(..., description="Block as transcribed, marker included")
    normalized_content: str = Field(..., description="Question body with whitespace normalized")
    options: Optional[Dict[str, str]] = Field(None, description="Letter → option text, None when none found")
    is_incomplete: bool = Field(default=False, description="Question cut off by the page boundary")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "exam_3f2a_p2_q4",
                "question_number": 4,
                "question_type": "multiple_choice",
                "raw_content": "## Pregunta 4\nWhich schedule is recoverable?\na) S1\nb) S2",
                "normalized_content": "Which schedule is recoverable?",
                "options": {"a": "S1", "b": "S2"},
                "is_incomplete": False,
            }
        }
