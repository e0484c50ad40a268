import json
import time

import fitz
import pytest
from fastapi.testclient import TestClient

from database.database import create_db_engine, create_session_factory
from ingestion.file_store import LocalFileStore
from main import create_app
from pipeline.errors import InvocationTimeout

from conftest import FakeInvoker, mcq_page


def _pdf_bytes(pages: int) -> bytes:
    doc = fitz.open()
    for n in range(pages):
        doc.new_page().insert_text((72, 72), f"Pregunta {n + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def _wait_for(client, url, *statuses, timeout=5.0) -> dict:
    """Poll a status URL until it reaches one of `statuses`"""
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(url).json()
        if body["status"] in statuses:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"{url} stuck in {body['status']}")
        time.sleep(0.02)


@pytest.fixture
def invoker():
    return FakeInvoker()


@pytest.fixture
def client(tmp_path, invoker):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'api.db'}")
    app = create_app(
        session_factory=create_session_factory(engine),
        invoker=invoker,
        file_store=LocalFileStore(tmp_path / "store"),
        unit_delay=0,
    )
    with TestClient(app) as test_client:
        response = test_client.post("/subjects/", json={"id": "bda", "name": "Bases de Datos", "expertise": "databases"})
        assert response.status_code == 201
        yield test_client
    engine.dispose()


def _upload(client, pages=2, **form) -> dict:
    response = client.post(
        "/pipeline/upload",
        files={"file": ("parcial.pdf", _pdf_bytes(pages), "application/pdf")},
        data={"subject_id": "bda", **form},
    )
    assert response.status_code == 201, response.text
    return response.json()


def _extracted_exam(client, pages=2) -> str:
    exam_id = _upload(client, pages)["id"]
    assert client.post(f"/pipeline/exams/{exam_id}/extract").status_code == 202
    _wait_for(client, f"/pipeline/exams/{exam_id}/status", "extracted")
    return exam_id


def test_health_and_root(client) -> None:
    assert client.get("/health").json() == {"status": "ok", "job_queue": "running"}
    assert client.get("/").json()["docs"] == "/docs"


def test_subject_endpoints(client) -> None:
    assert client.post("/subjects/", json={"id": "bda", "name": "Otra"}).status_code == 400
    assert [s["id"] for s in client.get("/subjects/").json()] == ["bda"]

    detail = client.get("/subjects/bda").json()
    assert detail["exam_count"] == 0
    assert detail["question_count"] == 0
    assert client.get("/subjects/nope").status_code == 404


def test_upload_validation(client) -> None:
    bad_type = client.post(
        "/pipeline/upload",
        files={"file": ("notas.txt", b"hola", "text/plain")},
        data={"subject_id": "bda"},
    )
    assert bad_type.status_code == 400

    unknown_subject = client.post(
        "/pipeline/upload",
        files={"file": ("parcial.pdf", _pdf_bytes(1), "application/pdf")},
        data={"subject_id": "nope"},
    )
    assert unknown_subject.status_code == 404

    broken = client.post(
        "/pipeline/upload",
        files={"file": ("roto.pdf", b"not a pdf at all", "application/pdf")},
        data={"subject_id": "bda"},
    )
    assert broken.status_code == 422


def test_exam_pipeline_end_to_end(client, invoker) -> None:
    exam = _upload(client, pages=2)
    assert exam["status"] == "uploaded"
    assert exam["page_count"] == 2
    exam_id = exam["id"]

    early = client.post(f"/pipeline/exams/{exam_id}/process")
    assert early.status_code == 409
    assert early.json()["current_status"] == "uploaded"

    assert client.post(f"/pipeline/exams/{exam_id}/extract").status_code == 202
    _wait_for(client, f"/pipeline/exams/{exam_id}/status", "extracted")

    invoker.queue(mcq_page(1, 2), mcq_page(3))
    accepted = client.post(f"/pipeline/exams/{exam_id}/process")
    assert accepted.status_code == 202
    assert accepted.json()["job_id"]

    # A second request while (or after) parsing is refused
    assert client.post(f"/pipeline/exams/{exam_id}/process").status_code == 409

    status = _wait_for(client, f"/pipeline/exams/{exam_id}/status", "completed", "partial", "error")
    assert status["status"] == "completed"
    assert status["questions"]["pending"] == 3

    detail = client.get(f"/pipeline/exams/{exam_id}").json()
    assert [p["status"] for p in detail["pages"]] == ["completed", "completed"]

    questions = client.get(f"/pipeline/exams/{exam_id}/questions", params={"status": "pending"}).json()
    assert len(questions) == 3
    first_id = questions[0]["id"]

    approved = client.post(f"/pipeline/questions/{first_id}/approve", json={"topic": "Transacciones"})
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"

    bulk = client.post(f"/pipeline/exams/{exam_id}/approve-all", json={"topic": "SQL"}).json()
    assert bulk == {"approved": 2, "skipped": 0, "total": 2, "skipped_ids": []}

    corpus = client.get("/subjects/bda/questions").json()
    assert len(corpus) == 3
    assert client.get("/subjects/bda/questions", params={"topic": "Transacciones"}).json()[0]["id"] == corpus[-1]["id"]


def test_failed_page_can_be_reprocessed(client, invoker) -> None:
    exam_id = _extracted_exam(client, pages=2)

    invoker.queue(mcq_page(1), InvocationTimeout("No output within 120s"))
    client.post(f"/pipeline/exams/{exam_id}/process")
    status = _wait_for(client, f"/pipeline/exams/{exam_id}/status", "completed", "partial", "error")
    assert status["status"] == "partial"
    assert status["error_message"] == "1 of 2 pages failed"
    failed_page = status["pages"][1]
    assert failed_page["status"] == "error"

    invoker.queue(mcq_page(2))
    queued = client.post(f"/pipeline/exams/{exam_id}/pages/{failed_page['id']}/process")
    assert queued.status_code == 202
    assert queued.json()["job_id"]
    status = _wait_for(client, f"/pipeline/exams/{exam_id}/status", "completed")
    assert status["counts"]["completed"] == 2

    again = client.post(f"/pipeline/exams/{exam_id}/pages/{failed_page['id']}/process").json()
    assert again["job_id"] is None
    assert again["message"] == "Page is already completed"


def test_process_next_page(client, invoker) -> None:
    exam_id = _extracted_exam(client, pages=1)

    invoker.queue(mcq_page(1))
    queued = client.post(f"/pipeline/exams/{exam_id}/process-next").json()
    assert queued["page_id"] == f"{exam_id}_page_1"
    _wait_for(client, f"/pipeline/exams/{exam_id}/status", "completed")

    nothing = client.post(f"/pipeline/exams/{exam_id}/process-next").json()
    assert nothing["job_id"] is None
    assert nothing["message"] == "No pending pages"


def test_review_errors_map_to_http(client, invoker) -> None:
    exam_id = _extracted_exam(client, pages=1)
    invoker.queue("## Pregunta 1\nSolo una opción\na) única\n\n## Pregunta 2\nDos\na) x\nb) y")
    client.post(f"/pipeline/exams/{exam_id}/process")
    _wait_for(client, f"/pipeline/exams/{exam_id}/status", "completed")

    one_option = f"{exam_id}_p1_q1"
    refused = client.post(f"/pipeline/questions/{one_option}/approve", json={"topic": "SQL"})
    assert refused.status_code == 422
    assert refused.json()["candidate_id"] == one_option

    fixed = client.put(f"/pipeline/questions/{one_option}", json={"options": {"a": "única", "b": "otra"}})
    assert fixed.status_code == 200
    assert fixed.json()["status"] == "pending"
    assert client.post(f"/pipeline/questions/{one_option}/approve", json={"topic": "SQL"}).status_code == 200

    rejected = client.post(f"/pipeline/questions/{exam_id}_p1_q2/reject", json={"notes": "repetida"})
    assert rejected.json()["status"] == "rejected"
    conflict = client.post(f"/pipeline/questions/{exam_id}_p1_q2/approve", json={"topic": "SQL"})
    assert conflict.status_code == 409
    assert conflict.json()["current_status"] == "rejected"

    missing = client.get("/pipeline/questions/nope")
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFound"


def test_delete_exam(client) -> None:
    exam_id = _upload(client, pages=1)["id"]
    assert client.delete(f"/pipeline/exams/{exam_id}").status_code == 204
    assert client.get(f"/pipeline/exams/{exam_id}").status_code == 404


def _seed_corpus(client, invoker) -> None:
    exam_id = _extracted_exam(client, pages=1)
    invoker.queue(mcq_page(1))
    client.post(f"/pipeline/exams/{exam_id}/process")
    _wait_for(client, f"/pipeline/exams/{exam_id}/status", "completed")
    client.post(f"/pipeline/exams/{exam_id}/approve-all", json={"topic": "Transacciones"})


def test_practice_session_flow(client, invoker) -> None:
    _seed_corpus(client, invoker)

    session = client.post("/generate/sessions", json={"subject_id": "bda", "question_count": 1}).json()
    assert session["status"] == "pending"
    assert session["counts"] == {"requested": 1, "generated": 0}
    session_id = session["id"]

    early = client.post(f"/generate/sessions/{session_id}/attempt", json={"question_id": "x", "user_answer": "a"})
    assert early.status_code == 409

    invoker.queue(json.dumps([{
        "content": "Cuál es recuperable?",
        "options": {"a": "S1", "b": "S2", "c": "S3", "d": "S4"},
        "correctAnswer": "b",
        "explanation": "S2 confirma primero.",
    }]))
    assert client.post(f"/generate/sessions/{session_id}/start").status_code == 202
    assert client.post(f"/generate/sessions/{session_id}/start").status_code == 409
    polled = _wait_for(client, f"/generate/sessions/{session_id}", "completed")
    assert polled["counts"] == {"requested": 1, "generated": 1}

    question = client.get(f"/generate/sessions/{session_id}/questions").json()[0]
    attempt = client.post(
        f"/generate/sessions/{session_id}/attempt", json={"question_id": question["id"], "user_answer": "B"}
    ).json()
    assert attempt["is_correct"] is True
    assert attempt["correct_answer"] == "b"

    stats = client.get(f"/generate/sessions/{session_id}/stats").json()
    assert stats["answered"] == 1
    assert stats["accuracy"] == 100.0
    assert [s["id"] for s in client.get("/generate/subjects/bda/sessions").json()] == [session_id]


def test_practice_session_without_corpus_errors(client, invoker) -> None:
    session_id = client.post("/generate/sessions", json={"subject_id": "bda"}).json()["id"]
    client.post(f"/generate/sessions/{session_id}/start")
    failed = _wait_for(client, f"/generate/sessions/{session_id}", "error", "completed")
    assert failed["status"] == "error"
    assert invoker.calls == []


def test_verification_session_flow(client, invoker) -> None:
    missing = client.post("/verification/sessions", json={"subject_id": "bda", "deliverable_id": "nope"})
    assert missing.status_code == 404

    session_id = client.post(
        "/verification/sessions", json={"subject_id": "bda", "student_name": "Ana", "question_count": 2}
    ).json()["id"]

    assert client.post(f"/verification/sessions/{session_id}/start").status_code == 409

    invoker.queue(json.dumps([
        {"content": "Por qué elegiste ese índice?", "expectedAnswer": "Consultas por rango", "criteria": ["technical_depth"]},
        {"content": "Qué alternativas consideraste?", "expectedAnswer": "Hash", "section": "índices"},
    ]))
    assert client.post(f"/verification/sessions/{session_id}/generate").status_code == 202
    detail = _wait_for(client, f"/verification/sessions/{session_id}", "ready", "error")
    assert detail["status"] == "ready"
    assert len(detail["questions"]) == 2
    assert detail["counts"] == {"requested": 2, "generated": 2, "scored": 0}

    assert client.post(f"/verification/sessions/{session_id}/start").json()["status"] == "in_progress"
    first, second = (q["id"] for q in detail["questions"])
    assert client.post(f"/verification/questions/{first}/score", json={"score": 9, "feedback": "Muy bien"}).status_code == 200
    assert client.post(f"/verification/questions/{second}/score", json={"score": 12}).status_code == 422
    client.post(f"/verification/questions/{second}/score", json={"score": 5})

    completed = client.post(f"/verification/sessions/{session_id}/complete", json={"notes": "ok"}).json()
    assert completed["status"] == "completed"
    assert completed["score"] == 7.0
    assert completed["counts"]["scored"] == 2


def test_solve_endpoint_caches(client, invoker) -> None:
    _seed_corpus(client, invoker)
    question_id = client.get("/subjects/bda/questions").json()[0]["id"]

    invoker.queue(json.dumps({"explanation": "Porque sí.", "wrongOptions": {}, "answer": "a"}))
    first = client.post(f"/solve/{question_id}").json()
    second = client.post(f"/solve/{question_id}").json()
    assert first["answer"] == "a"
    assert first["cached"] is False
    assert second["cached"] is True

    assert client.post("/solve/nope").status_code == 404
