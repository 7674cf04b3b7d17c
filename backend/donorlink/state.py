"""
Application State
=================

Process-wide Redis client shared across requests.

WHAT it stores:
- redis_pool: Shared Redis connection pool
- redis_client: Shared Redis client, used by the organization rate limiter

WHERE it's used:
- donorlink/routers/attribution.py, backfill.py: advisory rate limiting
- donorlink/workers/arq_worker.py: arq manages its own Redis connection

Design:
- Simple module-level singleton
- Redis being unavailable is not fatal: the rate limiter treats a missing
  client as "limit disabled"
"""

import logging
from typing import Optional

from redis import ConnectionPool, Redis

from donorlink.deps import get_settings

logger = logging.getLogger(__name__)

redis_pool: Optional[ConnectionPool] = None
redis_client: Optional[Redis] = None

try:
    settings = get_settings()
    redis_pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=20,
        decode_responses=False,
    )
    redis_client = Redis(connection_pool=redis_pool)
    logger.info("[STATE] Shared Redis connection pool initialized (max_connections=20)")
except Exception as e:
    logger.error("[STATE] Failed to initialize Redis: %s", e)
    logger.warning("[STATE] Rate limiting disabled until Redis is configured")
