"""
Question Parser
Turns a page transcription returned by the vision model into candidate questions

Two strategies share one interface and one normalization pass:
  - MultipleChoiceExtractor: "## Pregunta N" blocks with a) .. d) options
  - OpenQuestionExtractor:   numbered items ("1.", "2)", "3-") of free text

The caller picks the strategy from the document's extraction mode; the text
itself is never used to guess it. Deterministic, no model calls.
"""

import enum
import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from parsing.schemas import ExtractedQuestion
from pipeline.errors import ParseFailure

log = logging.getLogger(__name__)


class ExtractionMode(str, enum.Enum):
    """How a document's pages are transcribed and parsed"""
    MULTIPLE_CHOICE = "multiple_choice"
    OPEN = "open"


def normalize_content(text: str) -> str:
    """Strip every line, collapse runs of 3+ newlines to one blank line, trim"""
    lines = [line.strip() for line in text.replace("\r\n", "\n").split("\n")]
    collapsed = re.sub(r"\n{3,}", "\n\n", "\n".join(lines))
    return collapsed.strip()


def unit_suffix(unit_id: Optional[str]) -> str:
    """Page number part of a page id ("exam_1_page_3" → "3"), "x" when unknown"""
    if not unit_id:
        return "x"
    return unit_id.rsplit("_", 1)[-1] or "x"


def question_id(job_id: str, unit_id: Optional[str], number: int) -> str:
    return f"{job_id}_p{unit_suffix(unit_id)}_q{number}"


class QuestionExtractor(ABC):
    """Common contract: raw model text → candidate questions"""

    mode: ExtractionMode

    def extract(self, text: Optional[str], job_id: str, unit_id: Optional[str] = None) -> List[ExtractedQuestion]:
        """
        Parse `text` into candidates.

        Raises ParseFailure when the text is empty. Non-empty text that holds
        no recognizable question is a valid empty result.
        """
        if text is None or not text.strip():
            raise ParseFailure("Model returned empty output", raw_length=len(text or ""))

        questions: List[ExtractedQuestion] = []
        seen = set()
        for question in self._parse(text, job_id, unit_id):
            if question.id in seen:
                log.warning(f"Duplicate question number {question.question_number} on {unit_id}; keeping the first")
                continue
            seen.add(question.id)
            questions.append(question)
        return questions

    @abstractmethod
    def _parse(self, text: str, job_id: str, unit_id: Optional[str]) -> List[ExtractedQuestion]:
        ...


class MultipleChoiceExtractor(QuestionExtractor):
    """
    Blocks start at a "## Pregunta N" / "## Question N" heading.

    Inside a block, lines like "a) text" are options (a-d); whatever precedes
    the first option is the question body. "[INCOMPLETO]" flags a question cut
    by the page edge. A page without questions is answered with NO_QUESTIONS.
    """

    mode = ExtractionMode.MULTIPLE_CHOICE

    NO_QUESTIONS = "[NO HAY PREGUNTAS DE TEST EN ESTA PÁGINA]"
    NO_QUESTIONS_MARKERS = (NO_QUESTIONS, "[NO MULTIPLE-CHOICE QUESTIONS ON THIS PAGE]")

    INCOMPLETE_MARKERS = ("[INCOMPLETO]", "[INCOMPLETE]")

    BLOCK_SPLIT = re.compile(r"(?=^[ \t]*#{1,3}[ \t]*(?:Pregunta|Question)\b)", re.MULTILINE | re.IGNORECASE)
    HEADER = re.compile(r"^[ \t]*#{1,3}[ \t]*(?:Pregunta|Question)\b[ \t]*([^\n]*)\n?", re.IGNORECASE)
    NUMBER = re.compile(r"(\d+)\b")
    TRAILING_SEPARATOR = re.compile(r"\n?[ \t]*-{3,}[ \t]*$")
    OPTION_LINE = re.compile(r"^[ \t]*([a-dA-D])\)[ \t]*(.+)$", re.MULTILINE)

    def _parse(self, text: str, job_id: str, unit_id: Optional[str]) -> List[ExtractedQuestion]:
        has_header = self.BLOCK_SPLIT.search(text) is not None
        if not has_header and any(marker in text for marker in self.NO_QUESTIONS_MARKERS):
            return []

        questions = []
        for block in self.BLOCK_SPLIT.split(text):
            block = block.strip()
            header = self.HEADER.match(block)
            if not header:
                continue  # preamble before the first question

            number = self.NUMBER.match(header.group(1).strip())
            if not number:
                log.warning(f"Skipping question block with unreadable number: {header.group(0).strip()!r}")
                continue

            questions.append(self._build(block, header.end(), int(number.group(1)), job_id, unit_id))
        return questions

    def _build(self, block: str, body_start: int, number: int, job_id: str, unit_id: Optional[str]) -> ExtractedQuestion:
        content = self.TRAILING_SEPARATOR.sub("", block[body_start:]).strip()

        options: Dict[str, str] = {}
        first_option_at = None
        for match in self.OPTION_LINE.finditer(content):
            if first_option_at is None:
                first_option_at = match.start()
            options[match.group(1).lower()] = self._strip_markers(match.group(2)).strip()

        body = content if first_option_at is None else content[:first_option_at]
        is_incomplete = any(marker in content for marker in self.INCOMPLETE_MARKERS)

        return ExtractedQuestion(
            id=question_id(job_id, unit_id, number),
            question_number=number,
            question_type=self.mode.value,
            raw_content=block,
            normalized_content=normalize_content(self._strip_markers(body)),
            options=options or None,
            is_incomplete=is_incomplete,
        )

    @classmethod
    def _strip_markers(cls, text: str) -> str:
        for marker in cls.INCOMPLETE_MARKERS:
            text = text.replace(marker, "")
        return text


class OpenQuestionExtractor(QuestionExtractor):
    """
    Numbered free-text items. An item runs until the next number, a heading,
    a horizontal rule, a "Página N" footer or the end of the text; items
    shorter than MIN_LENGTH are noise (stray list numbers, page furniture).
    """

    mode = ExtractionMode.OPEN

    MIN_LENGTH = 20

    ITEM = re.compile(r"^[ \t]*(\d+)[.)\-]+[ \t]+(.*)$")
    BOUNDARY = re.compile(r"^[ \t]*(?:#{1,3}\s|-{3,}|\*{3,}|P[aá]gina\s+\d+)", re.IGNORECASE)

    def _parse(self, text: str, job_id: str, unit_id: Optional[str]) -> List[ExtractedQuestion]:
        items = []
        current = None

        for line in text.replace("\r\n", "\n").split("\n"):
            item = self.ITEM.match(line)
            if item:
                if current:
                    items.append(current)
                current = (int(item.group(1)), [item.group(2)], [line])
            elif self.BOUNDARY.match(line):
                if current:
                    items.append(current)
                current = None
            elif current:
                current[1].append(line)
                current[2].append(line)
        if current:
            items.append(current)

        questions = []
        for number, body_lines, raw_lines in items:
            content = normalize_content("\n".join(body_lines))
            if len(content) < self.MIN_LENGTH:
                continue
            questions.append(ExtractedQuestion(
                id=question_id(job_id, unit_id, number),
                question_number=number,
                question_type=self.mode.value,
                raw_content="\n".join(raw_lines).strip(),
                normalized_content=content,
                options=None,
                is_incomplete=False,
            ))
        return questions


_EXTRACTORS = {
    ExtractionMode.MULTIPLE_CHOICE: MultipleChoiceExtractor,
    ExtractionMode.OPEN: OpenQuestionExtractor,
}


def get_extractor(mode) -> QuestionExtractor:
    """Extractor for an ExtractionMode (or its string value)"""
    try:
        return _EXTRACTORS[ExtractionMode(mode)]()
    except ValueError:
        raise ValueError(f"Unknown extraction mode: {mode!r}")
