"""
Organization Rate Limiter
=========================

Advisory per-organization throttling for expensive engine operations.

WHY THIS FILE EXISTS
--------------------
Backfills, reconciliation and attribution runs hit the processor export API
and scan large tables. A caller looping on an endpoint should not be able to
starve other organizations. This is a soft limit: hard limits belong at the
gateway, so when Redis is missing or erroring the limit is disabled.

RATE LIMITS
-----------
RATE_LIMIT_PER_MINUTE (default 10) calls per organization per operation,
over a one-minute sliding window.

RELATED FILES
-------------
- donorlink/exceptions.py: OrganizationRateLimitError
- donorlink/state.py: Shared Redis client
- donorlink/routers/*.py: check_and_record before doing work
"""

import logging
import time
import uuid
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from donorlink.exceptions import OrganizationRateLimitError

logger = logging.getLogger(__name__)

DEFAULT_LIMIT_PER_MINUTE = 10
WINDOW_SIZE_SECONDS = 60


class OrganizationRateLimiter:
    """
    Redis sorted-set sliding window, one key per (organization, operation).

    HOW:
        - Key format: "engine_rate:{organization_id}:{operation}"
        - Each call adds a member scored with its timestamp
        - Entries older than the window are dropped before counting

    USAGE:
        limiter = OrganizationRateLimiter(redis_client, limit_per_minute=10)
        limiter.check_and_record(organization_id, "backfill")
    """

    def __init__(self, redis_client: Optional[Redis], limit_per_minute: int = DEFAULT_LIMIT_PER_MINUTE):
        self.redis = redis_client
        self.limit = limit_per_minute

        if not self.redis:
            logger.warning("[RATE_LIMITER] No Redis client - rate limiting disabled")

    @staticmethod
    def _get_key(organization_id: str, operation: str) -> str:
        return f"engine_rate:{organization_id}:{operation}"

    def _count(self, key: str) -> int:
        self.redis.zremrangebyscore(key, "-inf", time.time() - WINDOW_SIZE_SECONDS)
        return self.redis.zcard(key)

    def get_retry_after(self, organization_id: str, operation: str) -> int:
        """Seconds until the oldest call in the window expires (at least 1)."""
        oldest = self.redis.zrange(self._get_key(organization_id, operation), 0, 0, withscores=True)
        if not oldest:
            return 0
        expires_at = oldest[0][1] + WINDOW_SIZE_SECONDS
        return max(1, int(expires_at - time.time()))

    def check_and_record(self, organization_id, operation: str) -> None:
        """
        Raise if the organization is over its limit, otherwise record the call.

        RAISES:
            OrganizationRateLimitError: limit exceeded
        """
        if not self.redis:
            return

        organization_id = str(organization_id or "all")
        key = self._get_key(organization_id, operation)
        try:
            current = self._count(key)
            if current >= self.limit:
                retry_after = self.get_retry_after(organization_id, operation)
                logger.warning(
                    "[RATE_LIMITER] Organization %s hit %s limit (%d/%d per minute)",
                    organization_id, operation, current, self.limit,
                )
                raise OrganizationRateLimitError(
                    retry_after=retry_after,
                    organization_id=organization_id,
                    operation=operation,
                )

            now = time.time()
            self.redis.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            self.redis.expire(key, WINDOW_SIZE_SECONDS * 2)
        except RedisError as e:
            logger.warning("[RATE_LIMITER] Redis unavailable, skipping limit for %s: %s", operation, e)
