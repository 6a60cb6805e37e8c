from __future__ import annotations

import os
from types import SimpleNamespace
from typing import Any, Dict

_ALIASES = {
    "batchSize": "ocr_batch_size",
    "maxTokensPerChunk": "max_tokens_per_chunk",
    "openaiModel": "openai_model",
    "jobId": "job_id",
    "jobid": "job_id",
    "sourceRef": "source_ref",
    "source_pdf_url": "source_ref",
}


def default_settings(override: Dict[str, Any] | None = None) -> SimpleNamespace:
    settings = SimpleNamespace(
        job_id=None,
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", 120)),
        ocr_batch_size=int(os.getenv("OCR_BATCH_SIZE", 4)),
        ocr_max_batch_size=int(os.getenv("OCR_MAX_BATCH_SIZE", 10)),
        ocr_max_pages=int(os.getenv("OCR_MAX_PAGES", 100)),
        dual_ocr_max_pages=int(os.getenv("DUAL_OCR_MAX_PAGES", 50)),
        inter_batch_delay_ms=int(os.getenv("OCR_INTER_BATCH_DELAY_MS", 500)),
        enrich_batch_size=int(os.getenv("ENRICH_BATCH_SIZE", 5)),
        max_tokens_per_chunk=int(os.getenv("MAX_TOKENS_PER_CHUNK", 4000)),
        bulk_token_limit=int(os.getenv("BULK_TOKEN_LIMIT", 100000)),
        extraction_strategy=os.getenv("EXTRACTION_STRATEGY", "auto"),
        card_min_confidence=float(os.getenv("CARD_MIN_CONFIDENCE", 0.3)),
        retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", 3)),
        retry_base_delay_ms=int(os.getenv("RETRY_BASE_DELAY_MS", 1000)),
        quota_daily_limit=int(os.getenv("QUOTA_DAILY_LIMIT", 240)),
        quota_redis_url=os.getenv("QUOTA_REDIS_URL", os.getenv("PROGRESS_REDIS_URL", "redis://localhost:6379/2")),
        image_fetch_timeout_seconds=float(os.getenv("IMAGE_FETCH_TIMEOUT_SECONDS", 30)),
        progress_redis_url=os.getenv("PROGRESS_REDIS_URL", "redis://localhost:6379/2"),
        service_api_tokens=os.getenv("SERVICE_API_TOKENS", ""),
    )
    if override:
        for key, val in normalize_settings(override).items():
            setattr(settings, key, val)
    return settings


def normalize_settings(settings: Dict[str, Any] | None) -> Dict[str, Any]:
    """Normalize common alias keys (camelCase from HTTP payloads) and drop empty values."""
    if settings is None:
        return {}
    normalized: Dict[str, Any] = {}
    for key, value in settings.items():
        if value is None:
            continue
        target = _ALIASES.get(key, key)
        # explicit snake_case keys win over aliases
        if target in normalized and target != key:
            continue
        normalized[target] = value
    return normalized


def settings_to_dict(settings: SimpleNamespace) -> Dict[str, Any]:
    """JSON/Celery safe copy of the settings; the API key is never serialized."""
    payload = dict(vars(settings))
    payload.pop("openai_api_key", None)
    return payload
