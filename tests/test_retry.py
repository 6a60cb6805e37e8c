import asyncio

import pytest

from card_pipeline.errors import InvalidAPIKeyError, LLMError, QuotaExceededError, RateLimitError
from card_pipeline.workflow.retry import parse_retry_delay


class FlakyCall:
    """Raises the scripted errors in order, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.mark.parametrize(
    "value, expected",
    [
        ("12s", 12000),
        ("1m", 60000),
        ("30", 30000),
        ("1.5s", 1500),
        ("soon", 5000),
        ("", 5000),
        (None, 5000),
    ],
)
def test_parse_retry_delay(value, expected):
    assert parse_retry_delay(value) == expected


def test_gives_up_after_max_retries_and_rethrows_original(executor, sleeper):
    call = FlakyCall([LLMError("boom")] * 5)

    with pytest.raises(LLMError, match="boom"):
        asyncio.run(executor.execute(call))

    assert call.attempts == 3
    assert sleeper.calls == [1.0, 2.0]


def test_returns_on_second_attempt_without_third(executor, sleeper):
    call = FlakyCall([LLMError("flaky")], result="done")

    assert asyncio.run(executor.execute(call)) == "done"
    assert call.attempts == 2
    assert sleeper.calls == [1.0]


def test_rate_limit_waits_for_provider_hint(executor, sleeper):
    call = FlakyCall([RateLimitError("slow down", retry_delay="12s")], result="done")

    assert asyncio.run(executor.execute(call)) == "done"
    assert sleeper.calls == [12.0]


def test_rate_limit_exhaustion_becomes_quota_error(executor, sleeper):
    call = FlakyCall([RateLimitError("slow down", retry_delay="1m")] * 3)

    with pytest.raises(QuotaExceededError) as excinfo:
        asyncio.run(executor.execute(call))

    assert "quota exceeded" in str(excinfo.value).lower()
    assert call.attempts == 3
    assert sleeper.calls == [60.0, 60.0]


def test_rate_limit_without_hint_fails_immediately(executor, sleeper):
    call = FlakyCall([RateLimitError("daily limit")])

    with pytest.raises(QuotaExceededError):
        asyncio.run(executor.execute(call))

    assert call.attempts == 1
    assert sleeper.calls == []


def test_invalid_key_is_not_retried(executor, sleeper):
    call = FlakyCall([InvalidAPIKeyError("bad key")])

    with pytest.raises(InvalidAPIKeyError):
        asyncio.run(executor.execute(call))

    assert call.attempts == 1
    assert sleeper.calls == []
