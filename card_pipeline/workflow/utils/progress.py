from __future__ import annotations

import json
import os
from typing import Any, Dict

from redis import Redis
from redis.asyncio import Redis as AsyncRedis

from card_pipeline.utils.logging_config import get_logger

logger = get_logger(__name__)

PROGRESS_REDIS_URL = os.getenv("PROGRESS_REDIS_URL", "redis://localhost:6379/2")
_sync_client: Redis | None = None
_async_client: AsyncRedis | None = None


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def progress_channel(job_id: str) -> str:
    return f"progress:{job_id}"


def _get_sync_client() -> Redis:
    global _sync_client
    if _sync_client is None:
        _sync_client = Redis.from_url(PROGRESS_REDIS_URL, decode_responses=True)
    return _sync_client


def emit_progress(job_id: str | None, status: str, current_step: str, progress: float | int = 0, extra: Dict[str, Any] | None = None, client: Redis | None = None) -> None:
    """Push a progress snapshot to the Redis hash + pubsub channel of the job."""
    if not job_id:
        return

    payload: Dict[str, Any] = {
        "job_id": job_id,
        "progress": round(float(progress), 1),
        "status": status,
        "current_step": current_step,
    }
    if extra:
        payload.update(extra)

    redis_client = client or _get_sync_client()
    try:
        redis_client.hset(job_key(job_id), mapping={k: str(v) for k, v in payload.items() if v is not None})
        redis_client.publish(progress_channel(job_id), json.dumps(payload))
    except Exception:
        logger.warning("Failed to emit progress | job=%s step=%s", job_id, current_step, exc_info=True)


async def get_progress_client() -> AsyncRedis:
    global _async_client
    if _async_client is None:
        _async_client = AsyncRedis.from_url(PROGRESS_REDIS_URL, decode_responses=True)
    return _async_client


async def set_progress(job_id: str, status: str, current_step: str, progress: float | int = 0, extra: Dict[str, Any] | None = None, client: AsyncRedis | None = None) -> None:
    redis_client = client or await get_progress_client()
    payload: Dict[str, Any] = {"job_id": job_id, "progress": progress, "status": status, "current_step": current_step}
    if extra:
        payload.update(extra)
    await redis_client.hset(job_key(job_id), mapping={k: str(v) for k, v in payload.items() if v is not None})
    await redis_client.publish(progress_channel(job_id), json.dumps(payload))


async def read_progress(job_id: str, client: AsyncRedis | None = None) -> dict:
    redis_client = client or await get_progress_client()
    raw = await redis_client.hgetall(job_key(job_id))
    return raw or {}


__all__ = ["emit_progress", "set_progress", "read_progress", "get_progress_client", "job_key", "progress_channel"]
