from __future__ import annotations

import json
import os
from contextlib import suppress
from datetime import datetime
from typing import Any, AsyncIterator
from uuid import UUID

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
_redis = None


async def get_redis():
    global _redis
    if _redis is None:
        if os.getenv("TESTING") == "1":
            from fakeredis import aioredis
            _redis = aioredis.FakeRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
    return _redis


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def _serialize_event(event: dict[str, Any]) -> str:
    return json.dumps(event, default=_json_default)


def circle_channel(checker_id: str | UUID) -> str:
    return f"circle:{checker_id}"


async def publish_circle_event(checker_id: str | UUID, event: dict[str, Any]) -> None:
    """Publish an alert or check-in event to everyone watching a checker."""

    # purpose: let supporters' open sessions see resolutions without polling
    r = await get_redis()
    await r.publish(circle_channel(checker_id), _serialize_event(event))


async def iter_circle_events(checker_id: str | UUID) -> AsyncIterator[str]:
    r = await get_redis()
    channel = circle_channel(checker_id)
    pubsub = r.pubsub()
    await pubsub.subscribe(channel)
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                yield data.decode()
            else:
                yield str(data)
    finally:
        with suppress(Exception):
            await pubsub.unsubscribe(channel)
        with suppress(AttributeError):
            await pubsub.close()
