from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence

from card_pipeline.errors import BatchUploadError, FileUploadUnsupportedError, InvalidAPIKeyError, InvalidRequestError, QuotaExceededError, is_quota_error
from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import BatchOcrResult, BatchUploadResult, ExtractedPage, PageImageRef, ParseFailure
from card_pipeline.workflow.images import ImageSource, upload_page
from card_pipeline.workflow.llm import LLMClient
from card_pipeline.workflow.quota import QuotaGate
from card_pipeline.workflow.retry import RetryExecutor, Sleep
from card_pipeline.workflow.utils.json_payload import parse_json_payload
from card_pipeline.workflow.utils.schemas import OcrPageItem, validate_items

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 4
MAX_BATCH_SIZE = 10
MAX_PAGES = 100
INTER_BATCH_DELAY_MS = 500

BATCH_OCR_PROMPT = (
    "You are an OCR engine. The attached images are document pages, in this order: {pages}.\n"
    "Transcribe all text on each page exactly as written, keeping line breaks. Do not summarize or translate.\n"
    "Respond with a JSON array only, one entry per image:\n"
    '[{{"pageNumber": 1, "extractedText": "..."}}]'
)

SINGLE_OCR_PROMPT = (
    "You are an OCR engine. Transcribe all text in the attached document page exactly as written, "
    "keeping line breaks. Respond with the text only, without commentary."
)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class BatchOcrOrchestrator:
    """Extracts text from page images in sequential multi-image batches.

    One batch = parallel uploads followed by one multi-image prompt. A batch
    whose response cannot be parsed falls back to one call per image. A quota
    error stops the run; every other batch error only skips that batch.
    """

    def __init__(
        self,
        llm: LLMClient,
        quota_gate: QuotaGate,
        image_source: ImageSource,
        executor: RetryExecutor,
        *,
        max_pages: int = MAX_PAGES,
        max_batch_size: int = MAX_BATCH_SIZE,
        inter_batch_delay_ms: int = INTER_BATCH_DELAY_MS,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.llm = llm
        self.quota_gate = quota_gate
        self.image_source = image_source
        self.executor = executor
        self.max_pages = max_pages
        self.max_batch_size = max_batch_size
        self.inter_batch_delay_ms = inter_batch_delay_ms
        self._sleep = sleep or asyncio.sleep

    def validate(self, pages: Sequence[PageImageRef], batch_size: int) -> None:
        if not pages:
            raise InvalidRequestError("pages must contain at least one page")
        if len(pages) > self.max_pages:
            raise InvalidRequestError(f"too many pages: {len(pages)} (maximum is {self.max_pages})")
        if not _is_int(batch_size) or not 1 <= batch_size <= self.max_batch_size:
            raise InvalidRequestError(f"batchSize must be between 1 and {self.max_batch_size}")
        for index, page in enumerate(pages):
            if not _is_int(page.page_number):
                raise InvalidRequestError(f"pages[{index}].pageNumber must be an integer")
            if page.image is None and not (isinstance(page.image_url, str) and page.image_url.strip()):
                raise InvalidRequestError(f"pages[{index}].imageUrl is required")

    async def _upload_batch(self, batch: Sequence[PageImageRef]) -> List[BatchUploadResult]:
        outcomes = await asyncio.gather(*(upload_page(self.llm, self.image_source, self.executor, page) for page in batch), return_exceptions=True)
        uploads: List[BatchUploadResult] = []
        errors: List[BaseException] = []
        for page, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Upload failed | page=%s error=%s", page.page_number, outcome)
                errors.append(outcome)
                continue
            uploads.append(outcome)
        if not uploads:
            for err in errors:
                if isinstance(err, InvalidAPIKeyError):
                    raise err
            if any(is_quota_error(err) for err in errors):
                raise QuotaExceededError(str(errors[0]))
            raise BatchUploadError(f"all {len(batch)} uploads failed: {errors[0] if errors else 'no images'}")
        return uploads

    async def _ocr_single(self, upload: BatchUploadResult) -> ExtractedPage:
        text = await self.executor.execute(
            lambda: self.llm.generate_with_files(SINGLE_OCR_PROMPT, [upload.file]),
            description=f"single-page ocr page={upload.page_number}",
        )
        return ExtractedPage(page_number=upload.page_number, text=(text or "").strip())

    async def _fallback(self, uploads: Sequence[BatchUploadResult]) -> List[ExtractedPage]:
        outcomes = await asyncio.gather(*(self._ocr_single(upload) for upload in uploads), return_exceptions=True)
        pages: List[ExtractedPage] = []
        errors: List[BaseException] = []
        for upload, outcome in zip(uploads, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Single-page OCR failed | page=%s error=%s", upload.page_number, outcome)
                errors.append(outcome)
            elif outcome.text:
                pages.append(outcome)
        if errors and len(errors) == len(uploads) and any(is_quota_error(err) for err in errors):
            raise QuotaExceededError(str(errors[0]))
        if len(errors) < len(uploads):
            self.quota_gate.record(len(uploads) - len(errors))
        return pages

    async def _process_batch(self, batch: Sequence[PageImageRef]) -> List[ExtractedPage]:
        uploads = await self._upload_batch(batch)
        prompt = BATCH_OCR_PROMPT.format(pages=", ".join(f"page {upload.page_number}" for upload in uploads))
        raw = await self.executor.execute(
            lambda: self.llm.generate_with_files(prompt, [upload.file for upload in uploads]),
            description=f"batch ocr pages={[upload.page_number for upload in uploads]}",
        )
        self.quota_gate.record(1)

        parsed = parse_json_payload(raw, container="array")
        if isinstance(parsed, ParseFailure):
            logger.warning("Batch OCR parse failed, falling back to single pages | pages=%s reason=%s", len(uploads), parsed.reason)
            return await self._fallback(uploads)

        allowed = {upload.page_number for upload in uploads}
        items, _rejected = validate_items(parsed.value, OcrPageItem, context="batch ocr")
        pages: List[ExtractedPage] = []
        for item in items:
            if item.pageNumber not in allowed:
                logger.warning("Batch OCR entry ignored (outside batch or duplicate) | page=%s allowed=%s", item.pageNumber, sorted(allowed))
                continue
            allowed.discard(item.pageNumber)
            pages.append(ExtractedPage(page_number=item.pageNumber, text=item.extractedText))
        return pages

    async def run(self, pages: Sequence[PageImageRef], batch_size: int = DEFAULT_BATCH_SIZE) -> BatchOcrResult:
        self.validate(pages, batch_size)
        if not self.llm.supports_files:
            raise FileUploadUnsupportedError("the configured LLM client cannot upload images")

        decision = self.quota_gate.validate(len(pages))
        if not decision.can_process:
            logger.warning("Batch OCR denied by quota | pages=%s message=%s", len(pages), decision.message)
            return BatchOcrResult(success=False, message=decision.message, suggestion=decision.suggestion, quota_denied=True)

        total = len(pages)
        batches = [list(pages[i : i + batch_size]) for i in range(0, total, batch_size)]
        extracted: List[ExtractedPage] = []
        quota_aborted = False
        logger.info("Batch OCR start | pages=%s batches=%s batch_size=%s", total, len(batches), batch_size)

        for index, batch in enumerate(batches, start=1):
            try:
                batch_pages = await self._process_batch(batch)
            except InvalidAPIKeyError:
                raise
            except Exception as exc:
                if is_quota_error(exc):
                    logger.warning("Batch OCR aborted on quota | batch=%s/%s error=%s", index, len(batches), exc)
                    quota_aborted = True
                    break
                logger.warning("Batch OCR batch failed | batch=%s/%s pages=%s error=%s", index, len(batches), [p.page_number for p in batch], exc)
                batch_pages = []
            extracted.extend(batch_pages)
            logger.info("Batch OCR batch done | batch=%s/%s extracted=%s", index, len(batches), len(batch_pages))
            if index < len(batches):
                await self._sleep(self.inter_batch_delay_ms / 1000.0)

        processed = len(extracted)
        skipped = total - processed
        logger.info("Batch OCR done | processed=%s skipped=%s quota_aborted=%s", processed, skipped, quota_aborted)

        if processed == 0:
            reason = "LLM quota exceeded" if quota_aborted else "no text could be extracted"
            return BatchOcrResult(success=False, message=f"OCR failed: {reason} (0 of {total} pages processed).", processed_count=0, skipped_count=skipped)

        message = f"Extracted text from {processed} of {total} pages."
        if quota_aborted:
            message += " Processing stopped early because the LLM quota was exceeded."
        return BatchOcrResult(success=True, message=message, extracted_pages=extracted, processed_count=processed, skipped_count=skipped)


__all__ = ["BatchOcrOrchestrator", "BATCH_OCR_PROMPT", "SINGLE_OCR_PROMPT"]
