from datetime import datetime, timedelta, timezone

import pytest

from campus_auth.security.auth.rate_limiter import (
    DEFAULT_CONFIG,
    ENDPOINT_CONFIGS,
    InMemoryRateLimitStore,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    client_identifier,
)

VERIFY = "/api/auth/2fa/verify"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class BrokenStore(InMemoryRateLimitStore):
    def get(self, identifier, endpoint):
        raise ConnectionError("store down")


def test_endpoint_configs() -> None:
    assert ENDPOINT_CONFIGS["/api/auth/login"] == RateLimitConfig(
        timedelta(minutes=15), 5, timedelta(minutes=30)
    )
    assert ENDPOINT_CONFIGS["/api/auth/register"].max_attempts == 3
    assert ENDPOINT_CONFIGS[VERIFY].block_duration == timedelta(minutes=30)
    limiter = RateLimiter()
    assert limiter.config_for("/api/courses") is DEFAULT_CONFIG


def test_counts_down_then_blocks() -> None:
    limiter = RateLimiter()
    remaining = [limiter.check("1.2.3.4", VERIFY, now=NOW).remaining for _ in range(5)]
    assert remaining == [4, 3, 2, 1, 0]

    blocked = limiter.check("1.2.3.4", VERIFY, now=NOW)
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.reset_at == NOW + timedelta(minutes=30)

    still = limiter.check("1.2.3.4", VERIFY, now=NOW + timedelta(minutes=10))
    assert still.allowed is False
    assert still.reset_at == blocked.reset_at


def test_block_expires() -> None:
    limiter = RateLimiter()
    for _ in range(6):
        limiter.check("1.2.3.4", VERIFY, now=NOW)
    after = limiter.check("1.2.3.4", VERIFY, now=NOW + timedelta(minutes=31))
    assert after.allowed is True
    assert after.remaining == 4


def test_window_rolls_over() -> None:
    limiter = RateLimiter()
    for _ in range(3):
        limiter.check("1.2.3.4", VERIFY, now=NOW)
    later = limiter.check("1.2.3.4", VERIFY, now=NOW + timedelta(minutes=16))
    assert later.allowed is True
    assert later.remaining == 4
    assert later.reset_at == NOW + timedelta(minutes=31)


def test_identifiers_and_endpoints_are_independent() -> None:
    limiter = RateLimiter()
    for _ in range(6):
        limiter.check("1.2.3.4", VERIFY, now=NOW)
    assert limiter.check("5.6.7.8", VERIFY, now=NOW).allowed is True
    assert limiter.check("1.2.3.4", "/api/auth/login", now=NOW).allowed is True
    assert limiter.check("1.2.3.4", "/api/courses", now=NOW).remaining == 99


def test_store_failure_allows_request(caplog: pytest.LogCaptureFixture) -> None:
    limiter = RateLimiter(store=BrokenStore())
    result = limiter.check("1.2.3.4", VERIFY, now=NOW)
    assert result == RateLimitResult(allowed=True, remaining=-1, reset_at=None)
    assert "Rate limit check failed" in caplog.text


def test_reset() -> None:
    limiter = RateLimiter()
    for _ in range(6):
        limiter.check("1.2.3.4", VERIFY, now=NOW)
    limiter.reset("1.2.3.4", VERIFY)
    assert limiter.check("1.2.3.4", VERIFY, now=NOW).allowed is True


def test_cleanup_removes_stale_and_expired_rows() -> None:
    store = InMemoryRateLimitStore()
    limiter = RateLimiter(store=store)
    limiter.check("old", VERIFY, now=NOW - timedelta(hours=25))
    for _ in range(6):
        limiter.check("blocked", VERIFY, now=NOW - timedelta(hours=1))
    limiter.check("fresh", VERIFY, now=NOW)

    assert limiter.cleanup(now=NOW) == 2
    assert store.get("fresh", VERIFY) is not None
    assert store.get("old", VERIFY) is None
    assert store.get("blocked", VERIFY) is None


def test_custom_configs() -> None:
    limiter = RateLimiter(configs={"/x": RateLimitConfig(timedelta(minutes=1), 1, timedelta(minutes=2))})
    assert limiter.check("a", "/x", now=NOW).allowed is True
    assert limiter.check("a", "/x", now=NOW).allowed is False


def test_retry_after() -> None:
    soon = datetime.now(timezone.utc) + timedelta(seconds=90)
    assert 89 <= RateLimitResult(False, 0, soon).retry_after <= 91
    assert RateLimitResult(True, 4, None).retry_after == 0


@pytest.mark.parametrize(
    "headers, expected",
    [
        ({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}, "203.0.113.7"),
        ({"x-forwarded-for": " 198.51.100.2 "}, "198.51.100.2"),
        ({"X-Forwarded-For": ""}, "unknown"),
        ({}, "unknown"),
    ],
)
def test_client_identifier(headers: dict, expected: str) -> None:
    assert client_identifier(headers) == expected
