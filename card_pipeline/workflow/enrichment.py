from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from card_pipeline.errors import InvalidAPIKeyError, is_quota_error
from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import CandidateProblem, ParseFailure
from card_pipeline.workflow.llm import LLMClient
from card_pipeline.workflow.retry import RetryExecutor
from card_pipeline.workflow.utils.json_payload import parse_json_payload
from card_pipeline.workflow.utils.schemas import EnrichmentItem

logger = get_logger(__name__)

DEFAULT_ENRICH_BATCH_SIZE = 5
FAILED_ENRICHMENT_CONFIDENCE = 0.1

ENRICHMENT_PROMPT = (
    "Answer the following study problem.\n"
    "Give the correct answer and a short explanation of why it is correct.\n"
    "If you are not sure, do not guess: lower the confidence value instead of inventing an answer.\n"
    "Respond with a JSON object only:\n"
    '{"answerText": "...", "explanationText": "...", "confidence": 0.8}\n\n'
    "Problem:\n"
)


class AnswerEnricher:
    """Fills in missing answers and explanations, one model call per problem.

    Problems are processed in batches: batches run one after another, the
    problems inside a batch run concurrently. Confidence never increases.
    """

    def __init__(self, llm: LLMClient, executor: RetryExecutor, batch_size: int = DEFAULT_ENRICH_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.llm = llm
        self.executor = executor
        self.batch_size = batch_size

    async def _enrich_one(self, problem: CandidateProblem) -> EnrichmentItem:
        prompt = ENRICHMENT_PROMPT + problem.problem_text
        raw = await self.executor.execute(lambda: self.llm.generate(prompt), description=f"answer enrichment problem={problem.id}")
        parsed = parse_json_payload(raw, container="object")
        if isinstance(parsed, ParseFailure):
            raise ValueError(f"unparsable enrichment response: {parsed.reason}")
        return EnrichmentItem.model_validate(parsed.value)

    @staticmethod
    def _merge(problem: CandidateProblem, outcome: object) -> CandidateProblem:
        if isinstance(outcome, EnrichmentItem) and (outcome.answerText or "").strip():
            return replace(
                problem,
                answer_text=outcome.answerText,
                explanation_text=problem.explanation_text or outcome.explanationText or None,
                confidence=min(problem.confidence, outcome.confidence),
            )
        return replace(problem, confidence=min(problem.confidence, FAILED_ENRICHMENT_CONFIDENCE))

    async def enrich(self, problems: Sequence[CandidateProblem]) -> List[CandidateProblem]:
        pending = [problem for problem in problems if problem.needs_answer]
        if not pending:
            return list(problems)

        updates: Dict[str, CandidateProblem] = {}
        failed = 0
        quota_hit: Optional[BaseException] = None
        batches = [pending[i : i + self.batch_size] for i in range(0, len(pending), self.batch_size)]
        logger.info("Enrichment start | problems=%s batches=%s", len(pending), len(batches))

        for index, batch in enumerate(batches, start=1):
            if quota_hit is not None:
                for problem in batch:
                    updates[problem.id] = self._merge(problem, quota_hit)
                failed += len(batch)
                continue

            outcomes = await asyncio.gather(*(self._enrich_one(problem) for problem in batch), return_exceptions=True)
            for problem, outcome in zip(batch, outcomes):
                if isinstance(outcome, InvalidAPIKeyError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    failed += 1
                    logger.warning("Enrichment failed | problem=%s error=%s", problem.id, outcome)
                    if is_quota_error(outcome):
                        quota_hit = outcome
                updates[problem.id] = self._merge(problem, outcome)

            if quota_hit is not None:
                logger.warning("Enrichment aborted on quota | batch=%s/%s", index, len(batches))

        logger.info("Enrichment done | enriched=%s failed=%s", len(pending) - failed, failed)
        return [updates.get(problem.id, problem) for problem in problems]


__all__ = ["AnswerEnricher", "ENRICHMENT_PROMPT"]
