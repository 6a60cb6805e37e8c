from __future__ import annotations

import asyncio
import time
from typing import List, Sequence, Tuple

from card_pipeline.errors import FileUploadUnsupportedError, InvalidAPIKeyError, InvalidRequestError, LLMError, is_quota_error
from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import AlignedEntry, BatchUploadResult, DualOcrResult, PageImageRef, ParseFailure
from card_pipeline.workflow.images import ImageSource, upload_page
from card_pipeline.workflow.llm import LLMClient
from card_pipeline.workflow.quota import QuotaGate
from card_pipeline.workflow.retry import RetryExecutor
from card_pipeline.workflow.utils.json_payload import parse_json_payload
from card_pipeline.workflow.utils.schemas import AlignedItem, validate_items

logger = get_logger(__name__)

MAX_PAGES_PER_SET = 50

DUAL_OCR_PROMPT = """You are given scanned pages from two documents.
The first {question_count} image(s) are the QUESTION set ({question_pages}).
The next {answer_count} image(s) are the ANSWER set ({answer_pages}).

Read every question in the question set and find its answer in the answer set, matching them by page number and question number.
For each question produce an entry with:
- pageNumber: the page number of the question page the question appears on
- questionText: the full question, including all answer choices
- answerText: the correct answer taken from the answer set
- explanationText: a detailed explanation covering why the answer is correct, why each other choice is wrong, and the related concepts a learner should review

If no answer can be found for a question, set answerText to "" but still explain the question.
Respond with one JSON array only:
```json
[{{"pageNumber": 1, "questionText": "...", "answerText": "...", "explanationText": "..."}}]
```"""


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class DualSourceAligner:
    """Aligns a question-page image set with an answer-page image set in one model call."""

    def __init__(
        self,
        llm: LLMClient,
        image_source: ImageSource,
        executor: RetryExecutor,
        quota_gate: QuotaGate | None = None,
        max_pages: int = MAX_PAGES_PER_SET,
    ) -> None:
        self.llm = llm
        self.image_source = image_source
        self.executor = executor
        self.quota_gate = quota_gate
        self.max_pages = max_pages

    def validate(self, question_pages: Sequence[PageImageRef], answer_pages: Sequence[PageImageRef]) -> None:
        if not question_pages:
            raise InvalidRequestError("questionPages must contain at least one page")
        if len(question_pages) > self.max_pages:
            raise InvalidRequestError(f"too many question pages: {len(question_pages)} (maximum is {self.max_pages})")
        if len(answer_pages) > self.max_pages:
            raise InvalidRequestError(f"too many answer pages: {len(answer_pages)} (maximum is {self.max_pages})")
        for label, pages in (("questionPages", question_pages), ("answerPages", answer_pages)):
            for index, page in enumerate(pages):
                if not isinstance(page.page_number, int) or isinstance(page.page_number, bool):
                    raise InvalidRequestError(f"{label}[{index}].pageNumber must be an integer")
                if page.image is None and not page.image_url:
                    raise InvalidRequestError(f"{label}[{index}] needs imageBlob or imageUrl")

    async def _upload_set(self, pages: Sequence[PageImageRef], label: str) -> Tuple[List[BatchUploadResult], List[BaseException]]:
        outcomes = await asyncio.gather(*(upload_page(self.llm, self.image_source, self.executor, page) for page in pages), return_exceptions=True)
        uploads: List[BatchUploadResult] = []
        errors: List[BaseException] = []
        for page, outcome in zip(pages, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Upload failed | set=%s page=%s error=%s", label, page.page_number, outcome)
                errors.append(outcome)
            else:
                uploads.append(outcome)
        return uploads, errors

    async def align(self, question_pages: Sequence[PageImageRef], answer_pages: Sequence[PageImageRef]) -> DualOcrResult:
        self.validate(question_pages, answer_pages)
        if not self.llm.supports_files:
            raise FileUploadUnsupportedError("the configured LLM client cannot upload images")

        started = time.perf_counter()
        (questions, question_errors), (answers, _answer_errors) = await asyncio.gather(
            self._upload_set(question_pages, "question"),
            self._upload_set(answer_pages, "answer"),
        )
        if not questions:
            for err in question_errors:
                if isinstance(err, InvalidAPIKeyError):
                    raise err
            error = "quota_exceeded" if any(is_quota_error(err) for err in question_errors) else "upload_failed"
            return DualOcrResult(success=False, message="Failed to upload the question pages.", processing_time_ms=_elapsed_ms(started), error=error)

        prompt = DUAL_OCR_PROMPT.format(
            question_count=len(questions),
            question_pages=", ".join(f"page {upload.page_number}" for upload in questions),
            answer_count=len(answers),
            answer_pages=", ".join(f"page {upload.page_number}" for upload in answers) or "none",
        )
        files = [upload.file for upload in questions] + [upload.file for upload in answers]
        try:
            raw = await self.executor.execute(lambda: self.llm.generate_with_files(prompt, files), description="dual ocr alignment")
        except InvalidAPIKeyError:
            raise
        except LLMError as exc:
            quota = is_quota_error(exc)
            logger.warning("Dual OCR call failed | quota=%s error=%s", quota, exc)
            message = "LLM quota exceeded. Wait before retrying." if quota else "Dual OCR extraction failed."
            return DualOcrResult(success=False, message=message, processing_time_ms=_elapsed_ms(started), error="quota_exceeded" if quota else str(exc))
        if self.quota_gate is not None:
            self.quota_gate.record(1)

        parsed = parse_json_payload(raw, container="array", prefer_longest=True, sanitize=True)
        if isinstance(parsed, ParseFailure):
            logger.warning("Dual OCR parse failed | reason=%s preview=%s", parsed.reason, parsed.preview)
            return DualOcrResult(success=True, message="No aligned questions could be extracted.", processing_time_ms=_elapsed_ms(started))

        items, rejected = validate_items(parsed.value, AlignedItem, context="dual ocr")
        entries = [
            AlignedEntry(
                page_number=item.pageNumber,
                question_text=item.questionText,
                answer_text=item.answerText or "",
                explanation_text=item.explanationText or "",
            )
            for item in items
        ]
        elapsed = _elapsed_ms(started)
        logger.info("Dual OCR done | questions=%s answers=%s entries=%s rejected=%s elapsed_ms=%s", len(questions), len(answers), len(entries), rejected, elapsed)
        return DualOcrResult(success=True, message=f"Aligned {len(entries)} question(s).", entries=entries, processing_time_ms=elapsed)


__all__ = ["DualSourceAligner", "DUAL_OCR_PROMPT"]
