"""Per end-customer daily allowance of metered operations.

Counters live in Redis, keyed by tenant, customer and UTC day. When Redis is
unreachable the counts are kept in process memory instead, which only holds
for a single API worker.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_local_counters: Dict[str, int] = {}
_local_lock = asyncio.Lock()

KEY_TTL_SECONDS = 2 * 86400


def day_key(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d")


class CustomerDailyLimit:
    """Counts granted reservations per (tenant, end customer, day).

    Only granted reservations are recorded; the cap itself is read from the
    tenant's account by the consumption gate.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self._redis_url = redis_url

    @staticmethod
    def _key(tenant_id: str, customer_id: str, day: str) -> str:
        return f"ledger:tries:{tenant_id}:{customer_id}:{day}"

    async def used(self, tenant_id: str, customer_id: str, day: str) -> int:
        key = self._key(tenant_id, customer_id, day)
        if self._redis_url:
            try:
                client = redis.from_url(self._redis_url, decode_responses=True)
                try:
                    value = await client.get(key)
                finally:
                    await client.aclose()
                return int(value or 0)
            except (RedisError, OSError) as exc:
                logger.warning("daily_limit_redis_unavailable op=get error=%s", exc)
        async with _local_lock:
            return _local_counters.get(key, 0)

    async def record(self, tenant_id: str, customer_id: str, day: str) -> int:
        key = self._key(tenant_id, customer_id, day)
        if self._redis_url:
            try:
                client = redis.from_url(self._redis_url, decode_responses=True)
                try:
                    current = await client.incr(key)
                    if current == 1:
                        await client.expire(key, KEY_TTL_SECONDS)
                finally:
                    await client.aclose()
                return int(current)
            except (RedisError, OSError) as exc:
                logger.warning("daily_limit_redis_unavailable op=incr error=%s", exc)
        async with _local_lock:
            _local_counters[key] = _local_counters.get(key, 0) + 1
            return _local_counters[key]
