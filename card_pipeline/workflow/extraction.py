from __future__ import annotations

from typing import List, Sequence

from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import CandidateProblem, Chunk, PageText, Parsed, ParseFailure, ParseResult, ProblemType
from card_pipeline.workflow.chunking import page_marker
from card_pipeline.workflow.llm import LLMClient
from card_pipeline.workflow.retry import RetryExecutor
from card_pipeline.workflow.utils.json_payload import parse_json_payload
from card_pipeline.workflow.utils.schemas import ProblemItem, validate_items

logger = get_logger(__name__)

BULK_CHUNK_ID = "bulk"

EXTRACTION_PROMPT = (
    "You are preparing study flashcards from a document. The pages below are separated by markers "
    "of the form '=== Page N ==='.\n"
    "Rules:\n"
    "1. Use only problems, questions and answers that appear in the source text. Never invent new problems.\n"
    "2. If the source contains the answer or explanation, copy it; otherwise set answerText to null.\n"
    "3. pageNumber must be the number from the page marker the problem appears under.\n"
    "4. problemType is one of: multiple_choice, descriptive, calculation, unknown.\n"
    "5. confidence is a number between 0 and 1 describing how sure you are the entry is a real problem from the text.\n"
    "Respond with a JSON array only, using this schema:\n"
    "[\n"
    '  {"problemText": "...", "answerText": "..." or null, "explanationText": "...", '
    '"problemType": "descriptive", "confidence": 0.9, "pageNumber": 1}\n'
    "]\n"
    "If the document contains no problems, respond with [].\n\n"
    "Document:\n"
)


def join_pages(pages: Sequence[PageText]) -> str:
    return "\n\n".join(f"{page_marker(page.page_number)}\n{page.text}" for page in pages)


class BulkProblemExtractor:
    """Asks the model for every problem in a document (or one chunk of it) in a single call."""

    def __init__(self, llm: LLMClient, executor: RetryExecutor) -> None:
        self.llm = llm
        self.executor = executor

    async def extract(self, pages: Sequence[PageText]) -> ParseResult[List[CandidateProblem]]:
        if not pages:
            return Parsed(value=[])
        return await self._extract_text(join_pages(pages), chunk_id=BULK_CHUNK_ID, max_confidence=1.0)

    async def extract_chunk(self, chunk: Chunk) -> ParseResult[List[CandidateProblem]]:
        return await self._extract_text(chunk.text, chunk_id=chunk.chunk_id, max_confidence=chunk.confidence)

    async def _extract_text(self, text: str, *, chunk_id: str, max_confidence: float) -> ParseResult[List[CandidateProblem]]:
        prompt = EXTRACTION_PROMPT + text
        raw = await self.executor.execute(lambda: self.llm.generate(prompt), description=f"problem extraction chunk={chunk_id}")

        parsed = parse_json_payload(raw, container="array")
        if isinstance(parsed, ParseFailure):
            logger.warning("Extraction parse failed | chunk=%s reason=%s", chunk_id, parsed.reason)
            return parsed

        items, rejected = validate_items(parsed.value, ProblemItem, context=f"extraction chunk={chunk_id}")
        problems = [
            CandidateProblem(
                id=f"{chunk_id}-{index}",
                problem_text=item.problemText,
                page_number=item.pageNumber,
                chunk_id=chunk_id,
                answer_text=item.answerText or None,
                explanation_text=item.explanationText or None,
                problem_type=ProblemType.from_value(item.problemType),
                confidence=min(item.confidence, max_confidence),
            )
            for index, item in enumerate(items)
        ]
        logger.info("Extraction done | chunk=%s problems=%s rejected=%s", chunk_id, len(problems), rejected)
        return Parsed(value=problems, rejected=rejected)


__all__ = ["BulkProblemExtractor", "EXTRACTION_PROMPT", "join_pages"]
