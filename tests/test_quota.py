import datetime as dt

from card_pipeline.workflow.quota import RedisQuotaGate

NOW = dt.datetime(2024, 5, 10, 18, 30, tzinfo=dt.timezone.utc)
TODAY_KEY = "quota:llm:2024-05-10"


class FakeRedis:
    def __init__(self, used=0):
        self.values = {TODAY_KEY: str(used)} if used else {}
        self.expiries = {}

    def get(self, key):
        return self.values.get(key)

    def incrby(self, key, amount):
        self.values[key] = str(int(self.values.get(key, 0)) + amount)
        return int(self.values[key])

    def expireat(self, key, when):
        self.expiries[key] = when


def _gate(used=0, daily_limit=240):
    return RedisQuotaGate(FakeRedis(used), daily_limit=daily_limit, clock=lambda: NOW)


def test_fresh_quota_allows_processing():
    decision = _gate().validate(40)

    assert decision.can_process is True
    assert decision.suggestion is None
    assert "40 pages" in decision.message


def test_exhausted_quota_is_denied_with_reset_hint():
    decision = _gate(used=240).validate(4)

    assert decision.can_process is False
    assert "6 hour" in decision.suggestion


def test_insufficient_quota_suggests_a_smaller_request():
    # 20 pages need ~5 requests, only 3 remain
    decision = _gate(used=237).validate(20)

    assert decision.can_process is False
    assert "12 pages" in decision.suggestion


def test_low_quota_still_allows_with_warning():
    decision = _gate(used=220).validate(4)

    assert decision.can_process is True
    assert decision.suggestion is not None
    assert "running low" in decision.message


def test_record_increments_todays_counter_and_expires_at_midnight():
    gate = _gate(used=5)

    gate.record(2)

    assert gate.used_today() == 7
    assert gate.client.expiries[TODAY_KEY] == dt.datetime(2024, 5, 11, tzinfo=dt.timezone.utc)
