"""
Prompt templates for every model call.

The page prompts fix the exact markers parsing/question_parser.py looks for
("## Pregunta N", "a) ..", "[INCOMPLETO]", the no-questions sentinel), so the
two files change together.
"""

from parsing.question_parser import MultipleChoiceExtractor

# ── Page transcription ────────────────────────────────────────────────────────

PAGE_MULTIPLE_CHOICE_PROMPT = """\
{subject_line}

Read the page image and transcribe EVERY multiple-choice question on it.

Use exactly this Markdown layout for each question:

## Pregunta N

[Full question text, including any shared statement it depends on]

a) [Option A]
b) [Option B]
c) [Option C]
d) [Option D]

---

RULES:
1. Keep the original language and wording, including formulas, symbols and notation
2. Describe tables or diagrams in brackets: [Table: ...] or [Diagram: ...]
3. If a question is cut off by the page edge, end it with {incomplete}
4. Number questions as printed; if unnumbered, number them from 1
5. Repeat a shared statement in every question that uses it
6. Separate questions with a horizontal rule (---)
7. If the page has no multiple-choice questions, reply exactly: {no_questions}

OUTPUT: only the Markdown, no commentary."""

PAGE_CONTENT_PROMPT = """\
{subject_line}

Read the page image and transcribe ALL of its text content.

RULES:
1. Keep the structure: use ## for titles and sections
2. Include instructions and statements in full
3. Write questions of any kind as a numbered list ("1. ...", "2. ...") keeping their numbering
4. Keep names of projects, files, classes and methods exactly as written
5. Describe tables, lists and diagrams as faithfully as possible

OUTPUT: only the Markdown, no commentary."""


def _subject_line(subject_name: str, kind: str) -> str:
    if subject_name:
        return f"This is a page of a university {kind} for the course \"{subject_name}\"."
    return f"This is a page of a university {kind}."


def build_page_prompt(mode: str, subject_name: str = "") -> str:
    """Transcription prompt for a page in the given extraction mode"""
    if mode == "open":
        return PAGE_CONTENT_PROMPT.format(subject_line=_subject_line(subject_name, "document"))
    return PAGE_MULTIPLE_CHOICE_PROMPT.format(
        subject_line=_subject_line(subject_name, "exam"),
        incomplete=MultipleChoiceExtractor.INCOMPLETE_MARKERS[0],
        no_questions=MultipleChoiceExtractor.NO_QUESTIONS,
    )


# ── Practice generation ───────────────────────────────────────────────────────

DIFFICULTY_INSTRUCTIONS = {
    "easy": "Make the questions EASIER than the examples (core concepts).",
    "medium": "Keep the questions at the same difficulty as the examples.",
    "hard": "Make the questions HARDER than the examples (complex cases).",
    "mixed": "Vary the difficulty: some easier, some harder than the examples.",
}

PRACTICE_PROMPT = """\
You are an expert lecturer in {expertise} writing exam questions.

## REAL EXAM QUESTIONS (EXAMPLES)

These are {sample_count} REAL questions from past exams.
Write questions SIMILAR in style, format and difficulty.

{examples}

## TASK

Write exactly {count} NEW multiple-choice questions (options a/b/c/d) based on the examples.

## RULES

1. Follow the style of the examples
2. Change the data: numbers, relation names, specific values
3. Keep the same terminology and level of detail
4. Only use concepts that appear in the examples
5. Do not copy an example verbatim

{difficulty_instructions}

## OUTPUT FORMAT (JSON)

Reply ONLY with a valid JSON array:

[
  {{
    "content": "Full question text...",
    "options": {{"a": "...", "b": "...", "c": "...", "d": "..."}},
    "correctAnswer": "b",
    "explanation": "Why b is correct...",
    "wrongExplanations": {{"a": "...", "c": "...", "d": "..."}},
    "basedOn": "Which example it is based on",
    "difficulty": "easy|medium|hard"
  }}
]"""


def format_example_question(number: int, topic: str, content: str, options: dict) -> str:
    lines = [f"--- Example {number} ---", f"QUESTION ({topic}):", content]
    for letter in sorted(options or {}):
        lines.append(f"{letter}) {options[letter]}")
    return "\n".join(lines)


# ── Oral verification ─────────────────────────────────────────────────────────

VERIFICATION_PROMPT = """\
You are an expert lecturer in {expertise}.
{student_line}
{samples_section}
{deliverable_section}
TASK: write {count} ORAL VERIFICATION questions to check that the student did their own work.

QUESTION TYPE:
- OPEN questions answered orally; NO a/b/c/d options
- They check deep understanding, not memorisation
- Only the author of the work should be able to answer them
{focus_line}

INCLUDE QUESTIONS ABOUT:
1. Justification: "Explain why you chose X over Y"
2. Alternatives: "What other options did you consider and why did you drop them"
3. Consequences: "What would happen if you replaced X with Z"
4. Process: "Describe step by step how you reached this decision"
5. Connections: "How does this part relate to the rest of the work"

JSON FORMAT (reply ONLY with this JSON):

[
  {{
    "content": "Full open question the examiner will read out...",
    "expectedAnswer": "Key points the student should mention...",
    "criteria": ["concept_understanding", "decision_justification"],
    "section": "area_of_the_work",
    "difficulty": "medium"
  }}
]

Suggested criteria: concept_understanding, decision_justification, alternatives_considered,
impact_of_changes, overall_coherence, technical_depth.
Difficulties: easy, medium, hard."""

DELIVERABLE_SECTION = """
=== STUDENT WORK TO VERIFY ===
File: {filename}
Pages: {page_count}
Words: {word_count}

EXTRACTED CONTENT:
{content}
=== END OF WORK ===

- Every question MUST refer to CONCRETE elements of the work above
- Mention names, classes, methods or elements the student used
- No generic questions anyone could answer
"""

NO_DELIVERABLE_SECTION = """
NOTE: the student's work is not available.
Ask more general questions about the methodology and concepts of {subject_name}.
"""

SAMPLES_SECTION_HEADER = """
=== REFERENCE EXAMS (question style) ===
Past exams of the course. Use them as a GUIDE for style and format:
"""

# ── Solving ───────────────────────────────────────────────────────────────────

SOLVE_PROMPT = """\
You are a lecturer in {expertise} explaining a question to a student.

QUESTION:
{question}

INSTRUCTIONS:
1. Reason step by step from first principles
2. Your final answer must match your reasoning
3. Explain clearly enough for the student to learn from it
4. If the question refers to a figure you cannot see, infer the most likely answer from the context and options; never refuse

Reply ONLY with JSON, explanation first and answer last:

{{
  "explanation": "Detailed explanation ending with: Therefore the correct answer is X.",
  "wrongOptions": {{"letter": "Why this option is wrong..."}},
  "answer": "letter"
}}"""
