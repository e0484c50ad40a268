"""
Question solving API
Worked answer for a corpus question, cached after the first call
"""

from fastapi import APIRouter, Depends

from database import schemas
from generation.solver import QuestionSolver
from routers.deps import get_solver

router = APIRouter(prefix="/solve", tags=["solving"])


@router.post("/{question_id}", response_model=schemas.SolutionResponse)
async def solve_question(question_id: str, force: bool = False, solver: QuestionSolver = Depends(get_solver)):
    """
    Solve a corpus question.
    Returns the cached solution unless force=true.
    """
    return await solver.solve(question_id, force=force)
