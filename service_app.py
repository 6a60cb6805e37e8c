from __future__ import annotations

import uuid
from types import SimpleNamespace
from typing import List, Optional

from celery.result import AsyncResult
from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from celery_app import celery_app
from card_pipeline.auth import AuthenticationError, Authenticator, StaticTokenAuthenticator, bearer_token
from card_pipeline.celery_tasks.cards import generate_cards_task
from card_pipeline.errors import FileUploadUnsupportedError, InvalidAPIKeyError, InvalidRequestError, QuotaExceededError
from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import AlignedEntry, PageImageRef
from card_pipeline.workflow.batch_ocr import BatchOcrOrchestrator
from card_pipeline.workflow.cards import CardGenerator
from card_pipeline.workflow.dual_ocr import DualSourceAligner
from card_pipeline.workflow.images import HttpImageSource, ImageSource, decode_image_blob
from card_pipeline.workflow.llm import LLMClient, build_llm_client
from card_pipeline.workflow.quota import QuotaGate, RedisQuotaGate
from card_pipeline.workflow.retry import RetryExecutor
from card_pipeline.workflow.utils.progress import get_progress_client, read_progress, set_progress
from card_pipeline.workflow.utils.settings import default_settings, settings_to_dict

logger = get_logger("card_pipeline.service")

_llm_client: LLMClient | None = None
_quota_gate: QuotaGate | None = None


class ImagePage(BaseModel):
    pageNumber: int = Field(..., description="1-based page number the image belongs to")
    imageUrl: str = Field(..., description="http(s) or data: URL of the page image")


class BatchOcrRequest(BaseModel):
    pages: List[ImagePage] = Field(default_factory=list)
    batchSize: int = Field(4, description="Images per LLM call")


class DualImagePage(BaseModel):
    pageNumber: int
    imageBlob: Optional[str] = Field(None, description="base64 image data or data: URL")
    imageUrl: Optional[str] = None
    mimeType: Optional[str] = None


class DualOcrRequest(BaseModel):
    questionPages: List[DualImagePage] = Field(default_factory=list)
    answerPages: List[DualImagePage] = Field(default_factory=list)


class TextPage(BaseModel):
    pageNumber: int
    text: str = ""


class PagesToCardsOptions(BaseModel):
    extractionStrategy: Optional[str] = Field(None, description="auto | bulk | chunked")
    maxTokensPerChunk: Optional[int] = None


class PagesToCardsRequest(BaseModel):
    pages: List[TextPage] = Field(default_factory=list)
    sourceRef: str = Field(..., description="Identifier of the source document, stored on each card")
    jobId: Optional[str] = None
    options: PagesToCardsOptions = Field(default_factory=PagesToCardsOptions)


class AlignedEntryPayload(BaseModel):
    pageNumber: int
    questionText: str
    answerText: str = ""
    explanationText: str = ""


class AlignedCardsRequest(BaseModel):
    entries: List[AlignedEntryPayload] = Field(default_factory=list)
    sourceRef: str


app = FastAPI(title="Card Pipeline Service")


def get_settings() -> SimpleNamespace:
    return default_settings()


def get_llm_client() -> LLMClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = build_llm_client(default_settings())
    return _llm_client


def get_quota_gate() -> QuotaGate:
    global _quota_gate
    if _quota_gate is None:
        settings = default_settings()
        _quota_gate = RedisQuotaGate.from_url(settings.quota_redis_url, daily_limit=settings.quota_daily_limit)
    return _quota_gate


def get_image_source() -> ImageSource:
    return HttpImageSource(timeout=default_settings().image_fetch_timeout_seconds)


def get_executor() -> RetryExecutor:
    settings = default_settings()
    return RetryExecutor(max_retries=settings.retry_max_attempts, base_delay_ms=settings.retry_base_delay_ms)


def get_authenticator() -> Authenticator:
    return StaticTokenAuthenticator.from_string(default_settings().service_api_tokens)


async def get_progress_redis() -> Redis:
    return await get_progress_client()


async def require_user(authorization: str | None = Header(None), authenticator: Authenticator = Depends(get_authenticator)) -> str:
    return authenticator.authenticate(bearer_token(authorization))


def _error(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse({"error": error, "message": message, **extra}, status_code=status_code)


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(_request: Request, exc: AuthenticationError) -> JSONResponse:
    return _error(401, "unauthorized", str(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}" for err in exc.errors())
    return _error(400, "invalid_request", details or "invalid request")


def _pipeline_error_response(exc: Exception, action: str) -> JSONResponse:
    if isinstance(exc, InvalidRequestError):
        return _error(400, "invalid_request", str(exc))
    if isinstance(exc, FileUploadUnsupportedError):
        return _error(503, "file_upload_unsupported", "The configured LLM client does not support file uploads.")
    if isinstance(exc, QuotaExceededError):
        return _error(429, "quota_exceeded", str(exc), suggestion="Wait for the quota to reset and retry.")
    if isinstance(exc, InvalidAPIKeyError):
        logger.error("LLM credentials rejected | action=%s error=%s", action, exc)
        return _error(500, "Internal server error", "LLM provider credentials are invalid.")
    logger.exception("Unexpected failure | action=%s", action)
    return _error(500, "Internal server error", f"{action} failed unexpectedly.")


@app.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@app.post("/batch/image/ocr")
async def batch_image_ocr(
    payload: BatchOcrRequest = Body(...),
    user: str = Depends(require_user),
    settings: SimpleNamespace = Depends(get_settings),
    llm: LLMClient = Depends(get_llm_client),
    quota_gate: QuotaGate = Depends(get_quota_gate),
    image_source: ImageSource = Depends(get_image_source),
    executor: RetryExecutor = Depends(get_executor),
) -> JSONResponse:
    """Extract text from page images in batches of ``batchSize`` images per LLM call."""
    orchestrator = BatchOcrOrchestrator(
        llm,
        quota_gate,
        image_source,
        executor,
        max_pages=settings.ocr_max_pages,
        max_batch_size=settings.ocr_max_batch_size,
        inter_batch_delay_ms=settings.inter_batch_delay_ms,
    )
    pages = [PageImageRef(page_number=page.pageNumber, image_url=page.imageUrl) for page in payload.pages]
    logger.info("Batch OCR request | user=%s pages=%s batch_size=%s", user, len(pages), payload.batchSize)
    try:
        result = await orchestrator.run(pages, batch_size=payload.batchSize)
    except Exception as exc:
        return _pipeline_error_response(exc, "batch OCR")
    return JSONResponse(result.to_dict(), status_code=429 if result.quota_denied else 200)


def _dual_page_ref(page: DualImagePage) -> PageImageRef:
    if page.imageBlob:
        return PageImageRef(page_number=page.pageNumber, image=decode_image_blob(page.imageBlob, page.mimeType))
    return PageImageRef(page_number=page.pageNumber, image_url=page.imageUrl)


@app.post("/batch/pdf/dual-ocr")
async def dual_pdf_ocr(
    payload: DualOcrRequest = Body(...),
    user: str = Depends(require_user),
    settings: SimpleNamespace = Depends(get_settings),
    llm: LLMClient = Depends(get_llm_client),
    quota_gate: QuotaGate = Depends(get_quota_gate),
    image_source: ImageSource = Depends(get_image_source),
    executor: RetryExecutor = Depends(get_executor),
) -> JSONResponse:
    """Align question pages with answer pages and return question/answer/explanation entries."""
    aligner = DualSourceAligner(llm, image_source, executor, quota_gate=quota_gate, max_pages=settings.dual_ocr_max_pages)
    logger.info("Dual OCR request | user=%s questions=%s answers=%s", user, len(payload.questionPages), len(payload.answerPages))
    try:
        question_pages = [_dual_page_ref(page) for page in payload.questionPages]
        answer_pages = [_dual_page_ref(page) for page in payload.answerPages]
        result = await aligner.align(question_pages, answer_pages)
    except Exception as exc:
        return _pipeline_error_response(exc, "dual OCR")
    return JSONResponse(result.to_dict())


@app.post("/cards/from-pages")
async def cards_from_pages(
    payload: PagesToCardsRequest = Body(...),
    user: str = Depends(require_user),
    progress_client: Redis = Depends(get_progress_redis),
) -> JSONResponse:
    """Queue the text pipeline for a paginated document; poll ``/jobs/{job_id}`` for the cards."""
    if not payload.pages:
        return _error(400, "invalid_request", "pages must contain at least one page")
    if payload.options.extractionStrategy and payload.options.extractionStrategy not in {"auto", "bulk", "chunked"}:
        return _error(400, "invalid_request", "extractionStrategy must be one of auto, bulk, chunked")

    job_id = payload.jobId or str(uuid.uuid4())
    settings = default_settings(
        {
            "job_id": job_id,
            "source_ref": payload.sourceRef,
            "extraction_strategy": payload.options.extractionStrategy,
            "max_tokens_per_chunk": payload.options.maxTokensPerChunk,
        }
    )
    task_payload = {
        "job_id": job_id,
        "source_ref": payload.sourceRef,
        "pages": [{"page_number": page.pageNumber, "text": page.text} for page in payload.pages],
    }
    task = generate_cards_task.apply_async(args=[task_payload, settings_to_dict(settings)], task_id=job_id)
    await set_progress(job_id, status="QUEUED", current_step="queued", extra={"task_id": task.id, "pages": len(payload.pages)}, client=progress_client)
    logger.info("Cards job queued | user=%s job=%s source=%s pages=%s", user, job_id, payload.sourceRef, len(payload.pages))
    return JSONResponse({"jobId": job_id, "taskId": task.id, "status": "queued"})


@app.post("/cards/from-aligned")
async def cards_from_aligned(
    payload: AlignedCardsRequest = Body(...),
    user: str = Depends(require_user),
    settings: SimpleNamespace = Depends(get_settings),
) -> JSONResponse:
    entries = [
        AlignedEntry(page_number=entry.pageNumber, question_text=entry.questionText, answer_text=entry.answerText, explanation_text=entry.explanationText)
        for entry in payload.entries
    ]
    cards = CardGenerator(processing_model=settings.openai_model).from_aligned(entries, payload.sourceRef)
    logger.info("Aligned cards built | user=%s source=%s cards=%s", user, payload.sourceRef, len(cards))
    return JSONResponse({"cards": [card.to_dict() for card in cards]})


def get_task_result(job_id: str) -> AsyncResult:
    return AsyncResult(job_id, app=celery_app)


@app.get("/jobs/{job_id}")
async def job_status(
    job_id: str,
    user: str = Depends(require_user),
    progress_client: Redis = Depends(get_progress_redis),
) -> JSONResponse:
    snapshot = await read_progress(job_id, client=progress_client)
    task = get_task_result(job_id)
    state = task.state
    if not snapshot and state == "PENDING":
        return _error(404, "not_found", f"unknown job {job_id}")

    body = {"jobId": job_id, "state": state, "progress": snapshot}
    if task.successful():
        body["result"] = task.result
    elif task.failed():
        body["error"] = str(task.result)
    return JSONResponse(body)
