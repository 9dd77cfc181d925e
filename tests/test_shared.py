"""
Shared helpers: input validators, the injectable clock and the in-memory rate limit path.
"""

import asyncio
import math
from datetime import datetime

import pytest
from fastapi import HTTPException, Request

from app import config, rate_limiter
from app.shared.clock import FrozenClock
from app.shared.validators import (
    validate_decision,
    validate_latitude,
    validate_longitude,
    validate_phone,
)


def test_coordinates() -> None:
    assert validate_latitude(12.97) == 12.97
    assert validate_longitude(-180) == -180.0
    assert validate_latitude(None) is None

    with pytest.raises(ValueError):
        validate_latitude(90.5)
    with pytest.raises(ValueError):
        validate_longitude(181)
    with pytest.raises(ValueError):
        validate_latitude(math.nan)


def test_phone_normalization() -> None:
    assert validate_phone("+91 98450-12345") == "+919845012345"
    assert validate_phone("080 4123 4567") == "08041234567"

    with pytest.raises(ValueError):
        validate_phone("12345")


def test_decision_normalization() -> None:
    assert validate_decision(" Accept ") == "accept"
    assert validate_decision("REJECT") == "reject"

    with pytest.raises(ValueError):
        validate_decision("later")
    with pytest.raises(ValueError):
        validate_decision(None)


def test_frozen_clock() -> None:
    clock = FrozenClock(datetime(2026, 3, 2, 9, 0, 0))

    assert clock.advance(90) == datetime(2026, 3, 2, 9, 1, 30)
    assert clock.set(datetime(2026, 3, 3)) == clock.now()


def test_rate_limit_counts_in_memory_without_redis() -> None:
    key = "test_limit:127.0.0.1"
    rate_limiter.memory_cache.pop(key, None)

    results = [rate_limiter.check_rate_limit(key, limit=2, window_seconds=60) for _ in range(3)]

    assert [allowed for allowed, _, _ in results] == [True, True, False]
    assert results[-1][1] == 2
    assert 0 < results[-1][2] <= 60


def _request(peer, forwarded_for=None):
    headers = [(b"x-forwarded-for", forwarded_for.encode())] if forwarded_for else []
    return Request({"type": "http", "headers": headers, "client": (peer, 50123)})


def test_forwarded_for_is_only_trusted_from_proxies(monkeypatch) -> None:
    monkeypatch.setattr(config, "TRUSTED_PROXY_IPS", {"10.0.0.2"})

    assert rate_limiter._client_ip(_request("198.51.100.7", "203.0.113.9")) == "198.51.100.7"
    assert rate_limiter._client_ip(_request("10.0.0.2", "203.0.113.9, 10.0.0.2")) == "203.0.113.9"
    assert rate_limiter._client_ip(_request("10.0.0.2")) == "10.0.0.2"


def test_rotating_forwarded_for_does_not_reset_the_limit(monkeypatch) -> None:
    def no_redis():
        raise ConnectionError("Redis unavailable")

    monkeypatch.setattr(rate_limiter, "get_redis_client", no_redis)
    monkeypatch.setattr(config, "TRUSTED_PROXY_IPS", set())
    rate_limiter.memory_cache.pop("test_rotate:198.51.100.7", None)
    limiter = rate_limiter.create_rate_limiter(limit=1, window_seconds=60, key_prefix="test_rotate")

    asyncio.run(limiter(_request("198.51.100.7", "203.0.113.1")))
    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(limiter(_request("198.51.100.7", "203.0.113.2")))
    assert exc_info.value.status_code == 429
