from typing import List, Optional

import pytest

from database import crud, models
from database.database import Base, create_db_engine, create_session_factory
from database.models import DocumentStatus, PageStatus
from generation.llm_client import InvocationResult
from ingestion.file_store import LocalFileStore

# The page image is only base64-encoded for the model, never decoded
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeInvoker:
    """Stands in for GenerationInvoker: replays scripted replies or exceptions in order"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: List[dict] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    async def invoke(self, prompt, image=None, timeout=None, system=None, temperature=0.2, max_tokens=4096):
        self.calls.append({"prompt": prompt, "image": image, "timeout": timeout, "temperature": temperature})
        if not self.responses:
            raise AssertionError("Unexpected model call")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, InvocationResult):
            return item
        return InvocationResult(text=item, tokens=100)


def mcq_page(*numbers: int, options: str = "abcd") -> str:
    """Transcription in the multiple-choice layout with one block per number"""
    blocks = []
    for n in numbers:
        lines = [f"## Pregunta {n}", "", f"Enunciado de la pregunta {n}?", ""]
        lines += [f"{letter}) Opción {letter.upper()} de {n}" for letter in options]
        blocks.append("\n".join(lines) + "\n\n---")
    return "\n\n".join(blocks)


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_store(tmp_path):
    return LocalFileStore(tmp_path / "store")


@pytest.fixture
def invoker():
    return FakeInvoker()


@pytest.fixture
def subject(db):
    return crud.create_subject(db, "bda", "Bases de Datos Avanzadas", expertise="database systems")


def seed_document(
    session_factory,
    file_store: LocalFileStore,
    document_id: str = "exam_1",
    subject_id: str = "bda",
    pages: int = 3,
    status: DocumentStatus = DocumentStatus.EXTRACTED,
    mode: str = "multiple_choice",
    is_deliverable: bool = False,
    page_status: PageStatus = PageStatus.PENDING,
    page_texts: Optional[List[str]] = None,
) -> str:
    """Document row plus `pages` page rows with image files on disk"""
    with session_factory() as db:
        db.add(models.ExamDocument(
            id=document_id,
            subject_id=subject_id,
            filename=f"{document_id}.pdf",
            file_path=f"exams/{document_id}/original.pdf",
            page_count=pages,
            extraction_mode=mode,
            is_deliverable=is_deliverable,
            status=status,
        ))
        for n in range(1, pages + 1):
            image_path = file_store.save(f"exams/{document_id}/pages/page_{n}.png", PNG_BYTES)
            text = page_texts[n - 1] if page_texts else None
            db.add(models.ExamPage(
                id=f"{document_id}_page_{n}",
                document_id=document_id,
                page_number=n,
                image_path=image_path,
                status=page_status,
                raw_text=text,
                processed_text=text,
            ))
        db.commit()
    return document_id


def add_corpus_question(db, question_id: str, topic: str, subject_id: str = "bda", options=None):
    db.add(models.Question(
        id=question_id,
        subject_id=subject_id,
        topic=topic,
        question_number=1,
        content=f"Pregunta de {topic}?",
        options=options if options is not None else {"a": "uno", "b": "dos", "c": "tres", "d": "cuatro"},
    ))
    db.commit()
