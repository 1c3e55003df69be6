from __future__ import annotations

import json

from redis.exceptions import ConnectionError as RedisConnectionError

from autoapply.events import EventPublisher
from autoapply.models import EventType


async def test_publish_broadcasts_json(redis):
    pubsub = redis.pubsub()
    await pubsub.subscribe("job-events")
    await pubsub.get_message(timeout=1)

    publisher = EventPublisher(redis, "job-events")
    assert await publisher.publish("app-1", EventType.JOB_STARTED, "Starting", {"attempt": 1})

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1)
    payload = json.loads(message["data"])
    assert payload["jobId"] == "app-1"
    assert payload["type"] == "JOB_STARTED"
    assert payload["message"] == "Starting"
    assert payload["meta"] == {"attempt": 1}
    assert payload["timestamp"].endswith("+00:00")
    await pubsub.unsubscribe("job-events")
    await pubsub.aclose()


class BrokenRedis:
    async def publish(self, channel, data):
        raise RedisConnectionError("down")


async def test_publish_failure_is_swallowed():
    publisher = EventPublisher(BrokenRedis())
    assert not await publisher.publish("app-1", EventType.ERROR_OCCURRED, "boom")
