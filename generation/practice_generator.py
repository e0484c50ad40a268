"""
Practice question generation - new MCQs modelled on real corpus questions.

Prompt: a few real questions per topic (filtered by the session's topic focus)
Output: JSON array of {content, options a-d, correctAnswer, explanation, ...}
"""

import logging
from typing import List

from sqlalchemy.orm import Session

from database import crud, models
from generation.json_output import extract_json_array
from generation.prompts import DIFFICULTY_INSTRUCTIONS, PRACTICE_PROMPT, format_example_question
from pipeline.errors import ValidationFailure

log = logging.getLogger("generation.pipeline")

SAMPLES_PER_TOPIC = 4
OPTION_LETTERS = ("a", "b", "c", "d")
DIFFICULTIES = ("easy", "medium", "hard")


def build_practice_prompt(db: Session, session: models.GenerationSession) -> str:
    """
    Prompt for a practice session.
    Raises ValidationFailure when the corpus has nothing to base questions on.
    """
    subject = crud.get_subject(db, session.subject_id)
    samples = crud.sample_questions_by_topic(
        db, session.subject_id, session.topic_focus, per_topic=SAMPLES_PER_TOPIC
    )
    # Only multiple-choice questions make useful examples
    samples = [q for q in samples if q.options and len(q.options) >= 2]
    log.info(f"Practice session {session.id}: {len(samples)} real questions as examples")

    if not samples:
        raise ValidationFailure("No real questions found to base generation on", candidate_id=session.id)

    examples = "\n\n".join(
        format_example_question(i, q.topic, q.content, q.options) for i, q in enumerate(samples, start=1)
    )
    return PRACTICE_PROMPT.format(
        expertise=(subject.expertise or subject.name) if subject else "the course",
        sample_count=len(samples),
        examples=examples,
        count=session.question_count,
        difficulty_instructions=DIFFICULTY_INSTRUCTIONS.get(session.difficulty, DIFFICULTY_INSTRUCTIONS["mixed"]),
    )


def parse_practice_questions(raw: str) -> List[dict]:
    """
    Validated practice questions from the model reply.
    Items missing content, any of the four options, a valid answer letter or
    an explanation are dropped.
    """
    questions = []
    for item in extract_json_array(raw):
        content = item.get("content")
        options = item.get("options")
        answer = str(item.get("correctAnswer") or "").strip().lower()
        explanation = item.get("explanation")

        if not isinstance(content, str) or not content.strip():
            log.warning("Generated question missing content")
            continue
        if not isinstance(options, dict) or not all(str(options.get(k) or "").strip() for k in OPTION_LETTERS):
            log.warning("Generated question missing some options")
            continue
        if answer not in OPTION_LETTERS:
            log.warning(f"Generated question has invalid correctAnswer {answer!r}")
            continue
        if not isinstance(explanation, str) or not explanation.strip():
            log.warning("Generated question missing explanation")
            continue

        wrong = item.get("wrongExplanations")
        difficulty = str(item.get("difficulty") or "").lower()
        questions.append({
            "content": content.strip(),
            "options": {k: str(options[k]).strip() for k in OPTION_LETTERS},
            "correct_answer": answer,
            "explanation": explanation.strip(),
            "wrong_explanations": wrong if isinstance(wrong, dict) else None,
            "based_on": item.get("basedOn") or item.get("section"),
            "difficulty": difficulty if difficulty in DIFFICULTIES else "medium",
        })
    return questions
