"""Durable application queue on a Redis stream with a consumer group.

Delivery is at-least-once: a message is acknowledged only after its job has
been settled, and pending messages of a crashed consumer can be reclaimed.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from autoapply.config import MAX_ATTEMPTS
from autoapply.errors import QueueConnectionError
from autoapply.log import get_logger
from autoapply.models import ApplicationJob, ApplicationState, EventType, JobResult

if TYPE_CHECKING:
    from autoapply.events import EventPublisher
    from autoapply.repository import Repository

log = get_logger(__name__)

PAYLOAD_FIELD = "payload"


def connect(url: str) -> Redis:
    """Client used by the queue and the event publisher; responses decode to str."""
    return Redis.from_url(url, decode_responses=True)


@dataclass(frozen=True)
class Delivery:
    message_id: str
    job: ApplicationJob


@dataclass(frozen=True)
class RetryDecision:
    requeued: bool
    attempts: int
    message_id: str | None = None


class Dispatcher:
    def __init__(
        self,
        redis: Redis,
        repository: "Repository",
        publisher: "EventPublisher | None" = None,
        stream: str = "applications",
        group: str = "apply-workers",
        consumer: str | None = None,
    ) -> None:
        self.redis = redis
        self.repository = repository
        self.publisher = publisher
        self.stream = stream
        self.group = group
        self.consumer = consumer or f"worker-{os.getpid()}"

    async def ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            log.info("Created consumer group %s on %s", self.group, self.stream)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise QueueConnectionError(f"Redis unavailable: {str(e)[:150]}") from e

    async def enqueue(self, job: ApplicationJob) -> str:
        try:
            message_id = await self.redis.xadd(self.stream, {PAYLOAD_FIELD: job.to_json()})
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise QueueConnectionError(f"Redis unavailable: {str(e)[:150]}") from e
        log.info("Enqueued application %s (attempts=%d) as %s",
                 job.application_id, job.attempts, message_id)
        return message_id

    async def consume(self, block_ms: int | None = 5000) -> Delivery | None:
        """Next new message for this consumer, or None on timeout or a malformed message."""
        try:
            response = await self.redis.xreadgroup(
                self.group, self.consumer, {self.stream: ">"}, count=1, block=block_ms,
            )
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise QueueConnectionError(f"Redis unavailable: {str(e)[:150]}") from e
        if not response:
            return None
        _, messages = response[0]
        if not messages:
            return None
        message_id, fields = messages[0]
        return await self._to_delivery(message_id, fields)

    async def _to_delivery(self, message_id: str, fields: dict[str, Any] | None) -> Delivery | None:
        raw = (fields or {}).get(PAYLOAD_FIELD)
        if not raw:
            log.warning("Message %s has no payload, dropping", message_id)
            await self.acknowledge(message_id)
            return None
        try:
            job = ApplicationJob.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            log.warning("Message %s has an invalid payload (%s), dropping", message_id, e)
            await self.acknowledge(message_id)
            return None
        return Delivery(message_id=message_id, job=job)

    async def acknowledge(self, message_id: str) -> None:
        await self.redis.xack(self.stream, self.group, message_id)

    async def claim_stale(self, min_idle_ms: int, count: int = 10) -> list[Delivery]:
        """Take over messages another consumer read but never acknowledged."""
        try:
            result = await self.redis.xautoclaim(
                self.stream, self.group, self.consumer, min_idle_ms,
                start_id="0-0", count=count,
            )
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise QueueConnectionError(f"Redis unavailable: {str(e)[:150]}") from e
        claimed = result[1] if len(result) > 1 else []
        deliveries = []
        for message_id, fields in claimed:
            delivery = await self._to_delivery(message_id, fields)
            if delivery:
                deliveries.append(delivery)
        if deliveries:
            log.info("Reclaimed %d stale message(s)", len(deliveries))
        return deliveries

    async def settle_failure(self, delivery: Delivery, result: JobResult) -> RetryDecision:
        """Requeue with attempts + 1 while attempts remain, else mark FAILED. Always acks."""
        job = delivery.job
        attempts = min(job.attempts + 1, MAX_ATTEMPTS)
        message = result.message or "Job failed"
        decision = RetryDecision(requeued=False, attempts=attempts)
        try:
            if result.retryable and attempts < MAX_ATTEMPTS:
                new_id = await self.enqueue(job.requeued())
                self.repository.record_attempts(job.application_id, attempts)
                self.repository.set_status(job.application_id, ApplicationState.QUEUED, message)
                decision = RetryDecision(requeued=True, attempts=attempts, message_id=new_id)
                log.warning("Application %s failed (%s), retrying %d/%d",
                            job.application_id, message, attempts, MAX_ATTEMPTS)
                await self._publish(job, f"Job failed, retrying ({attempts}/{MAX_ATTEMPTS})")
            else:
                self.repository.record_attempts(job.application_id, attempts)
                self.repository.set_status(job.application_id, ApplicationState.FAILED, message)
                log.error("Application %s failed permanently after %d attempt(s): %s",
                          job.application_id, attempts, message)
                await self._publish(job, message)
        finally:
            await self.acknowledge(delivery.message_id)
        return decision

    async def _publish(self, job: ApplicationJob, message: str) -> None:
        if self.publisher:
            await self.publisher.publish(job.application_id, EventType.ERROR_OCCURRED, message)
