from __future__ import annotations

import datetime as dt
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from redis import Redis

from card_pipeline.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_DAILY_LIMIT = 240
PAGES_PER_REQUEST_ESTIMATE = 4
LOW_QUOTA_RATIO = 0.1


@dataclass(frozen=True)
class QuotaDecision:
    can_process: bool
    message: str
    suggestion: Optional[str] = None


class QuotaGate(ABC):
    """Yes/no gate consulted before a multi-item batch starts."""

    @abstractmethod
    def validate(self, item_count: int) -> QuotaDecision:
        ...

    def record(self, request_count: int = 1) -> None:
        """Account for provider requests that were actually made."""


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class RedisQuotaGate(QuotaGate):
    """Daily request counter shared across workers through Redis.

    The counter key is per UTC day and expires at the next midnight, so the
    quota resets without a background job.
    """

    def __init__(
        self,
        client: Redis,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        pages_per_request: int = PAGES_PER_REQUEST_ESTIMATE,
        key_prefix: str = "quota:llm",
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self.client = client
        self.daily_limit = daily_limit
        self.pages_per_request = max(1, pages_per_request)
        self.key_prefix = key_prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisQuotaGate":
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, now: dt.datetime) -> str:
        return f"{self.key_prefix}:{now.date().isoformat()}"

    def _reset_time(self, now: dt.datetime) -> dt.datetime:
        tomorrow = now.date() + dt.timedelta(days=1)
        return dt.datetime.combine(tomorrow, dt.time.min, tzinfo=dt.timezone.utc)

    def used_today(self) -> int:
        raw = self.client.get(self._key(self._clock()))
        try:
            return int(raw or 0)
        except (TypeError, ValueError):
            return 0

    def validate(self, item_count: int) -> QuotaDecision:
        now = self._clock()
        remaining = max(0, self.daily_limit - self.used_today())
        reset_at = self._reset_time(now)

        if remaining <= 0:
            hours = math.ceil((reset_at - now).total_seconds() / 3600)
            return QuotaDecision(
                can_process=False,
                message="Today's API quota has been used up.",
                suggestion=f"The quota resets in about {hours} hour(s) ({reset_at.isoformat()}).",
            )

        estimated = math.ceil(item_count / self.pages_per_request)
        if remaining < estimated:
            return QuotaDecision(
                can_process=False,
                message=f"Insufficient quota: {item_count} pages need about {estimated} requests ({remaining} remaining).",
                suggestion=f"Reduce the request to {remaining * self.pages_per_request} pages or fewer, or retry tomorrow.",
            )

        if remaining < self.daily_limit * LOW_QUOTA_RATIO:
            return QuotaDecision(
                can_process=True,
                message=f"Processing allowed, but quota is running low ({remaining} remaining).",
                suggestion="Consider deferring large jobs until the quota resets.",
            )

        return QuotaDecision(can_process=True, message=f"Processing allowed: {item_count} pages (~{estimated} requests, {remaining} remaining).")

    def record(self, request_count: int = 1) -> None:
        now = self._clock()
        key = self._key(now)
        used = self.client.incrby(key, request_count)
        self.client.expireat(key, self._reset_time(now))
        logger.info("Quota recorded | used=%s limit=%s", used, self.daily_limit)


__all__ = ["QuotaDecision", "QuotaGate", "RedisQuotaGate"]
