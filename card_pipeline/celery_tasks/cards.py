from __future__ import annotations

import asyncio
from typing import List

from celery_app import celery_app
from card_pipeline.utils.logging_config import get_logger
from card_pipeline.utils.types import PageText
from card_pipeline.workflow.llm import build_llm_client
from card_pipeline.workflow.processing import process_pages_to_cards
from card_pipeline.workflow.retry import RetryExecutor
from card_pipeline.workflow.utils.progress import emit_progress
from card_pipeline.workflow.utils.settings import default_settings

logger = get_logger(__name__)


def deserialize_pages(items: List[dict]) -> List[PageText]:
    return [
        PageText(page_number=int(item.get("page_number", item.get("pageNumber", 0))), text=str(item.get("text") or ""))
        for item in items or []
    ]


@celery_app.task(name="card_pipeline.cards.from_pages")
def generate_cards_task(payload: dict, settings: dict) -> dict:
    """Run the text pipeline (extract, dedupe, enrich, cards) for one document."""
    config = default_settings(settings or {})
    job_id = payload.get("job_id") or config.job_id
    source_ref = payload.get("source_ref") or getattr(config, "source_ref", None) or "unknown"
    pages = deserialize_pages(payload.get("pages") or [])
    logger.info("Cards task start | job=%s source=%s pages=%s", job_id, source_ref, len(pages))

    llm = build_llm_client(config)
    executor = RetryExecutor(max_retries=config.retry_max_attempts, base_delay_ms=config.retry_base_delay_ms)

    def report(step: str, progress: float) -> None:
        emit_progress(job_id, status="RUNNING", current_step=step, progress=progress)

    emit_progress(job_id, status="RUNNING", current_step="extraction", progress=0, extra={"pages": len(pages)})
    try:
        result = asyncio.run(process_pages_to_cards(pages, llm=llm, executor=executor, source_ref=source_ref, settings=config, progress=report))
    except Exception as exc:
        logger.exception("Cards task failed | job=%s source=%s", job_id, source_ref)
        emit_progress(job_id, status="FAILED", current_step="failed", progress=100, extra={"error": str(exc)})
        raise

    emit_progress(job_id, status="COMPLETED", current_step="done", progress=100, extra={"cards": len(result.cards), "problems": len(result.problems)})
    logger.info("Cards task done | job=%s cards=%s", job_id, len(result.cards))
    return {"job_id": job_id, "source_ref": source_ref, **result.to_dict()}


__all__ = ["generate_cards_task", "deserialize_pages"]
