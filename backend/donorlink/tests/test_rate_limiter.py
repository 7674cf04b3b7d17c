"""Tests for the advisory per-organization rate limiter.

REFERENCES:
    - donorlink/services/rate_limiter.py (module under test)
"""

from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from donorlink.exceptions import OrganizationRateLimitError
from donorlink.services.rate_limiter import OrganizationRateLimiter


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.zcard.return_value = 0
    return client


def test_disabled_without_redis():
    OrganizationRateLimiter(None, limit_per_minute=1).check_and_record("org-1", "backfill")


def test_records_call_under_limit(redis_client):
    OrganizationRateLimiter(redis_client, limit_per_minute=3).check_and_record("org-1", "backfill")

    key = "engine_rate:org-1:backfill"
    redis_client.zremrangebyscore.assert_called_once()
    assert redis_client.zremrangebyscore.call_args.args[0] == key
    redis_client.zadd.assert_called_once()
    redis_client.expire.assert_called_once_with(key, 120)


@patch("donorlink.services.rate_limiter.time")
def test_raises_with_retry_after_at_limit(mock_time, redis_client):
    mock_time.time.return_value = 1000.0
    redis_client.zcard.return_value = 3
    redis_client.zrange.return_value = [(b"member", 970.0)]

    with pytest.raises(OrganizationRateLimitError) as exc_info:
        OrganizationRateLimiter(redis_client, limit_per_minute=3).check_and_record("org-1", "reconcile")

    assert exc_info.value.retry_after == 30
    assert exc_info.value.status_code == 429
    redis_client.zadd.assert_not_called()


def test_missing_organization_uses_shared_key(redis_client):
    OrganizationRateLimiter(redis_client).check_and_record(None, "auto_match")

    assert redis_client.zcard.call_args.args[0] == "engine_rate:all:auto_match"


def test_redis_errors_disable_the_limit(redis_client):
    redis_client.zremrangebyscore.side_effect = RedisConnectionError("down")

    OrganizationRateLimiter(redis_client, limit_per_minute=1).check_and_record("org-1", "backfill")

    redis_client.zadd.assert_not_called()
