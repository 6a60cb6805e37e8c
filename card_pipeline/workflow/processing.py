from __future__ import annotations

import time
from typing import Callable, List, Optional, Sequence

from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import CandidateProblem, Chunk, PageText, ParseFailure, ProcessingResult
from card_pipeline.workflow.cards import CardGenerator
from card_pipeline.workflow.chunking import PageChunker, estimate_token_count
from card_pipeline.workflow.dedupe import remove_duplicate_problems
from card_pipeline.workflow.enrichment import AnswerEnricher
from card_pipeline.workflow.extraction import BulkProblemExtractor
from card_pipeline.workflow.llm import LLMClient
from card_pipeline.workflow.retry import RetryExecutor

logger = get_logger(__name__)

ProgressCallback = Callable[[str, float], None]

STRATEGIES = {"auto", "bulk", "chunked"}


def choose_strategy(pages: Sequence[PageText], strategy: str, bulk_token_limit: int) -> str:
    if strategy not in STRATEGIES:
        raise ValueError(f"unknown extraction strategy: {strategy}")
    if strategy != "auto":
        return strategy
    total_tokens = sum(estimate_token_count(page.text) for page in pages)
    return "bulk" if total_tokens <= bulk_token_limit else "chunked"


async def process_pages_to_cards(
    pages: Sequence[PageText],
    *,
    llm: LLMClient,
    executor: RetryExecutor,
    source_ref: str,
    settings,
    progress: Optional[ProgressCallback] = None,
) -> ProcessingResult:
    """Run extract -> dedupe -> enrich -> cards over paginated text."""
    started = time.perf_counter()
    report = progress or (lambda _step, _pct: None)
    ordered = sorted(pages, key=lambda page: page.page_number)

    extractor = BulkProblemExtractor(llm, executor)
    strategy = choose_strategy(ordered, settings.extraction_strategy, settings.bulk_token_limit)
    chunks: List[Chunk] = []
    candidates: List[CandidateProblem] = []
    rejected = 0
    parse_failures = 0

    report("extraction", 10)
    logger.info("Pipeline start | source=%s pages=%s strategy=%s", source_ref, len(ordered), strategy)
    if strategy == "bulk":
        result = await extractor.extract(ordered)
        if isinstance(result, ParseFailure):
            parse_failures += 1
        else:
            candidates.extend(result.value)
            rejected += result.rejected
    else:
        chunks = PageChunker(settings.max_tokens_per_chunk).create_chunks(ordered)
        for index, chunk in enumerate(chunks, start=1):
            result = await extractor.extract_chunk(chunk)
            if isinstance(result, ParseFailure):
                parse_failures += 1
            else:
                candidates.extend(result.value)
                rejected += result.rejected
            report("extraction", 10 + 40 * index / len(chunks))

    report("dedupe", 50)
    unique = remove_duplicate_problems(candidates)

    report("enrichment", 60)
    enriched = await AnswerEnricher(llm, executor, batch_size=settings.enrich_batch_size).enrich(unique)

    report("cards", 90)
    generator = CardGenerator(processing_model=llm.model, min_confidence=settings.card_min_confidence)
    cards = generator.from_problems(enriched, source_ref)

    elapsed = int((time.perf_counter() - started) * 1000)
    logger.info(
        "Pipeline done | source=%s candidates=%s unique=%s cards=%s rejected=%s parse_failures=%s elapsed_ms=%s",
        source_ref,
        len(candidates),
        len(unique),
        len(cards),
        rejected,
        parse_failures,
        elapsed,
    )
    return ProcessingResult(
        cards=cards,
        problems=enriched,
        total_pages=len(ordered),
        processing_time_ms=elapsed,
        chunks=chunks,
        rejected_entries=rejected,
        parse_failures=parse_failures,
    )


__all__ = ["process_pages_to_cards", "choose_strategy"]
