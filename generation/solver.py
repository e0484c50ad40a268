"""
Worked solution for one corpus question.

One model call under the short solving deadline; the answer is cached in
solutions_cache so each question is solved once unless forced.
"""

import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

import config
from database import crud
from generation.json_output import extract_json_obj
from generation.llm_client import GenerationInvoker
from generation.prompts import SOLVE_PROMPT
from pipeline.errors import NotFound, ParseFailure

log = logging.getLogger(__name__)


def _question_text(content: str, options: Optional[dict]) -> str:
    lines = [content]
    for letter in sorted(options or {}):
        lines.append(f"{letter}) {options[letter]}")
    return "\n".join(lines)


def _solution_dict(solution, cached: bool) -> dict:
    return {
        "question_id": solution.question_id,
        "answer": solution.answer,
        "explanation": solution.explanation,
        "wrong_options": solution.wrong_options or {},
        "tokens_used": solution.tokens_used,
        "cached": cached,
    }


class QuestionSolver:
    """Solve corpus questions with the model, caching the result"""

    def __init__(self, session_factory: sessionmaker, invoker: GenerationInvoker,
                 timeout: float = config.SOLVE_TIMEOUT_SECONDS):
        self.session_factory = session_factory
        self.invoker = invoker
        self.timeout = timeout

    async def solve(self, question_id: str, force: bool = False) -> dict:
        with self.session_factory() as db:
            question = crud.get_question(db, question_id)
            if not question:
                raise NotFound(f"Question '{question_id}' not found")
            if not force:
                cached = crud.get_cached_solution(db, question_id)
                if cached:
                    return _solution_dict(cached, cached=True)
            subject = crud.get_subject(db, question.subject_id)
            prompt = SOLVE_PROMPT.format(
                expertise=(subject.expertise or subject.name) if subject else "the course",
                question=_question_text(question.content, question.options),
            )
            valid_letters = set(question.options or {}) or {"a", "b", "c", "d"}

        result = await self.invoker.invoke(prompt, timeout=self.timeout, temperature=0.0, max_tokens=2048)
        data = extract_json_obj(result.text)

        answer = str(data.get("answer") or "").strip().lower()[:1]
        explanation = str(data.get("explanation") or "").strip()
        if answer not in valid_letters or not explanation:
            raise ParseFailure(f"Model answer {answer!r} is not one of the options", raw_length=len(result.text))

        wrong = data.get("wrongOptions")
        with self.session_factory() as db:
            solution = crud.save_solution(db, {
                "question_id": question_id,
                "answer": answer,
                "explanation": explanation,
                "wrong_options": wrong if isinstance(wrong, dict) else {},
                "tokens_used": result.tokens,
            })
        log.info(f"Solved {question_id}: answer={answer}, {result.tokens} tokens")
        return _solution_dict(solution, cached=False)
