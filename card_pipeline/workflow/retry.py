from __future__ import annotations

import asyncio
import re
from typing import Awaitable, Callable, Optional, TypeVar

from card_pipeline.errors import InvalidAPIKeyError, QuotaExceededError, RateLimitError
from card_pipeline.utils.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_DELAY_MS = 5000
_RETRY_DELAY_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)([sm]?)$")

Sleep = Callable[[float], Awaitable[None]]


def parse_retry_delay(value: Optional[str]) -> int:
    """Convert a provider retry hint (``"12s"``, ``"1m"``, ``"30"``) to milliseconds."""
    match = _RETRY_DELAY_PATTERN.match((value or "").strip())
    if not match:
        return DEFAULT_RETRY_DELAY_MS
    amount = float(match.group(1))
    if match.group(2) == "m":
        return int(amount * 60 * 1000)
    return int(amount * 1000)


class RetryExecutor:
    """Runs one async provider call with quota-aware retries.

    Rate-limit errors that carry a retry hint wait exactly that long; once
    attempts run out (or no hint is given) a ``QuotaExceededError`` is raised so
    batch callers can stop instead of hammering the provider. Other errors use
    exponential backoff and the original exception is re-raised at the end.
    """

    def __init__(self, max_retries: int = 3, base_delay_ms: int = 1000, sleep: Optional[Sleep] = None) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep or asyncio.sleep

    async def _wait(self, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000.0)

    async def execute(self, call: Callable[[], Awaitable[T]], *, description: str = "llm call") -> T:
        for attempt in range(1, self.max_retries + 1):
            try:
                return await call()
            except InvalidAPIKeyError:
                raise
            except QuotaExceededError:
                raise
            except RateLimitError as exc:
                if exc.retry_delay and attempt < self.max_retries:
                    delay_ms = parse_retry_delay(exc.retry_delay)
                    logger.warning("Rate limited | call=%s attempt=%s/%s retry_in_ms=%s", description, attempt, self.max_retries, delay_ms)
                    await self._wait(delay_ms)
                    continue
                logger.warning("Quota exhausted | call=%s attempt=%s/%s", description, attempt, self.max_retries)
                raise QuotaExceededError(str(exc)) from exc
            except Exception as exc:
                if attempt < self.max_retries:
                    delay_ms = self.base_delay_ms * 2 ** (attempt - 1)
                    logger.warning("Retrying | call=%s attempt=%s/%s error=%s retry_in_ms=%s", description, attempt, self.max_retries, exc, delay_ms)
                    await self._wait(delay_ms)
                    continue
                logger.error("Giving up | call=%s attempts=%s error=%s", description, attempt, exc)
                raise
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover


__all__ = ["RetryExecutor", "parse_retry_delay", "DEFAULT_RETRY_DELAY_MS"]
