import base64
import json
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import service_app
from card_pipeline.auth import StaticTokenAuthenticator
from card_pipeline.workflow.retry import RetryExecutor
from conftest import FakeAsyncRedis, FakeImageSource, FakeLLMClient, FakeQuotaGate, RecordingSleep

AUTH = {"Authorization": "Bearer secret-token"}


def _ocr_response(prompt, files):
    return json.dumps([{"pageNumber": int(f.uri.rsplit("-", 1)[1]), "extractedText": "scanned text"} for f in files])


@pytest.fixture
def deps():
    state = SimpleNamespace(
        llm=FakeLLMClient(generate_with_files=_ocr_response),
        quota_gate=FakeQuotaGate(),
        redis=FakeAsyncRedis(),
    )
    overrides = service_app.app.dependency_overrides
    overrides[service_app.get_llm_client] = lambda: state.llm
    overrides[service_app.get_quota_gate] = lambda: state.quota_gate
    overrides[service_app.get_image_source] = lambda: FakeImageSource()
    overrides[service_app.get_executor] = lambda: RetryExecutor(max_retries=2, base_delay_ms=1, sleep=RecordingSleep())
    overrides[service_app.get_authenticator] = lambda: StaticTokenAuthenticator(["secret-token"])
    overrides[service_app.get_progress_redis] = lambda: state.redis
    yield state
    overrides.clear()


@pytest.fixture
def client(deps):
    return TestClient(service_app.app)


def _ocr_payload(count=2, **extra):
    return {"pages": [{"pageNumber": idx, "imageUrl": f"https://files.example/{idx}.png"} for idx in range(1, count + 1)], **extra}


def test_health_needs_no_token(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_missing_or_wrong_token_is_401(client):
    assert client.post("/batch/image/ocr", json=_ocr_payload()).status_code == 401
    response = client.post("/batch/image/ocr", json=_ocr_payload(), headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"


def test_batch_ocr_success(client, deps):
    response = client.post("/batch/image/ocr", json=_ocr_payload(3, batchSize=2), headers=AUTH)

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert [page["pageNumber"] for page in body["extractedPages"]] == [1, 2, 3]
    assert body["processedCount"] == 3
    assert body["skippedCount"] == 0


def test_batch_size_over_limit_is_400_and_names_the_maximum(client):
    response = client.post("/batch/image/ocr", json=_ocr_payload(batchSize=11), headers=AUTH)

    assert response.status_code == 400
    assert "10" in response.json()["message"]


def test_malformed_page_is_400_not_422(client):
    response = client.post("/batch/image/ocr", json={"pages": [{"pageNumber": 1}]}, headers=AUTH)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_quota_denial_is_429_with_suggestion(client, deps):
    deps.quota_gate = FakeQuotaGate(can_process=False, message="Today's API quota has been used up.", suggestion="Retry tomorrow.")

    response = client.post("/batch/image/ocr", json=_ocr_payload(), headers=AUTH)

    assert response.status_code == 429
    assert response.json() == {"success": False, "message": "Today's API quota has been used up.", "suggestion": "Retry tomorrow."}


def test_client_without_file_support_is_503(client, deps):
    deps.llm = FakeLLMClient(supports_files=False)

    assert client.post("/batch/image/ocr", json=_ocr_payload(), headers=AUTH).status_code == 503
    dual = {"questionPages": [{"pageNumber": 1, "imageUrl": "https://files.example/q1.png"}]}
    assert client.post("/batch/pdf/dual-ocr", json=dual, headers=AUTH).status_code == 503


def test_dual_ocr_with_inline_blobs(client, deps):
    aligned = [{"pageNumber": 1, "questionText": "Q1", "answerText": "B", "explanationText": "B fits."}]
    deps.llm = FakeLLMClient(generate_with_files=lambda prompt, files: "```json\n" + json.dumps(aligned) + "\n```")
    blob = base64.b64encode(b"question-scan").decode()
    payload = {
        "questionPages": [{"pageNumber": 1, "imageBlob": blob}],
        "answerPages": [{"pageNumber": 1, "imageBlob": f"data:image/png;base64,{blob}"}],
    }

    response = client.post("/batch/pdf/dual-ocr", json=payload, headers=AUTH)

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["extractedText"] == [{"pageNumber": 1, "questionText": "Q1", "answerText": "B", "explanationText": "B fits."}]
    assert "processingTimeMs" in body


def test_dual_ocr_requires_question_pages(client):
    response = client.post("/batch/pdf/dual-ocr", json={"questionPages": [], "answerPages": []}, headers=AUTH)

    assert response.status_code == 400


def test_cards_from_aligned_entries(client):
    payload = {"sourceRef": "exam.pdf", "entries": [{"pageNumber": 2, "questionText": "Q", "answerText": "A"}]}

    response = client.post("/cards/from-aligned", json=payload, headers=AUTH)

    cards = response.json()["cards"]
    assert response.status_code == 200
    assert len(cards) == 1
    assert cards[0]["metadata"]["processing_type"] == "dual_pdf_ocr"
    assert cards[0]["source_page"] == 2


def test_cards_from_pages_enqueues_task(client, deps, monkeypatch):
    queued = {}

    def apply_async(args, task_id):
        queued["args"] = args
        return SimpleNamespace(id=task_id)

    monkeypatch.setattr(service_app.generate_cards_task, "apply_async", apply_async)
    payload = {"sourceRef": "notes.pdf", "jobId": "job-42", "pages": [{"pageNumber": 1, "text": "Q1"}], "options": {"extractionStrategy": "chunked"}}

    response = client.post("/cards/from-pages", json=payload, headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"jobId": "job-42", "taskId": "job-42", "status": "queued"}
    task_payload, settings = queued["args"]
    assert task_payload["pages"] == [{"page_number": 1, "text": "Q1"}]
    assert settings["extraction_strategy"] == "chunked"
    assert "openai_api_key" not in settings
    assert deps.redis.hashes["job:job-42"]["status"] == "QUEUED"


def test_cards_from_pages_rejects_empty_documents(client):
    response = client.post("/cards/from-pages", json={"sourceRef": "x", "pages": []}, headers=AUTH)

    assert response.status_code == 400


def test_job_status_combines_progress_and_task_state(client, deps, monkeypatch):
    deps.redis.hashes["job:job-7"] = {"status": "COMPLETED", "progress": "100"}
    fake_task = SimpleNamespace(state="SUCCESS", result={"cards": []}, successful=lambda: True, failed=lambda: False)
    monkeypatch.setattr(service_app, "get_task_result", lambda job_id: fake_task)

    response = client.get("/jobs/job-7", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"jobId": "job-7", "state": "SUCCESS", "progress": {"status": "COMPLETED", "progress": "100"}, "result": {"cards": []}}


def test_unknown_job_is_404(client, monkeypatch):
    fake_task = SimpleNamespace(state="PENDING", successful=lambda: False, failed=lambda: False)
    monkeypatch.setattr(service_app, "get_task_result", lambda job_id: fake_task)

    assert client.get("/jobs/missing", headers=AUTH).status_code == 404
