"""Lifecycle events broadcast over Redis pub/sub for live dashboards."""
from __future__ import annotations

from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from autoapply.log import get_logger
from autoapply.models import EventType, LifecycleEvent

log = get_logger(__name__)


class EventPublisher:
    def __init__(self, redis: Redis, channel: str = "job-events") -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, job_id: str, type: EventType, message: str,
                      meta: dict[str, Any] | None = None) -> bool:
        """Best effort: a failed publish is logged and reported as False."""
        event = LifecycleEvent(job_id=job_id, type=type, message=message, meta=meta)
        try:
            await self.redis.publish(self.channel, event.to_json())
        except (RedisError, OSError) as e:
            log.warning("Could not publish %s for %s: %s", type.value, job_id, str(e)[:150])
            return False
        log.debug("[%s] %s: %s", job_id, type.value, message)
        return True
