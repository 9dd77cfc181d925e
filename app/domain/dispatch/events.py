"""
Broadcast change feed over Redis pub/sub

Every committed transition publishes the new snapshot on `broadcast:{id}` so observers
can react without waiting for their next poll. Publishing is fail-open: polling still
converges when Redis is unavailable.
"""

import json
import logging
import os
from typing import AsyncIterator, Optional

import redis
import redis.asyncio as aioredis

from .state import BroadcastSnapshot

logger = logging.getLogger(__name__)


def channel_name(broadcast_id: int) -> str:
    return f"broadcast:{broadcast_id}"


def get_async_redis_client() -> aioredis.Redis:
    """Async Redis client built from the same environment as the rate limiter"""
    redis_url = os.getenv("REDIS_URL")
    if redis_url:
        return aioredis.from_url(redis_url, decode_responses=True, socket_connect_timeout=15)

    return aioredis.Redis(
        host=os.getenv("REDIS_HOST", "localhost"),
        port=int(os.getenv("REDIS_PORT", "6379")),
        password=os.getenv("REDIS_PASSWORD", None),
        db=int(os.getenv("REDIS_DB", "0")),
        ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
        decode_responses=True,
        socket_connect_timeout=15,
    )


class RedisChangeFeed:
    def __init__(self, client: Optional[redis.Redis] = None):
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            from ...rate_limiter import get_redis_client

            self._client = get_redis_client()
        return self._client

    def publish(self, snapshot: BroadcastSnapshot) -> None:
        try:
            self._get_client().publish(
                channel_name(snapshot.id), json.dumps(snapshot.model_dump(mode="json"))
            )
        except Exception as e:
            logger.warning(f"⚠️ Failed to publish change for broadcast {snapshot.id}: {e}")

    async def subscribe(self, broadcast_id: int) -> AsyncIterator[dict]:
        """Yield snapshot payloads published for one broadcast"""
        client = get_async_redis_client()
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(channel_name(broadcast_id))
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                yield json.loads(message["data"])
        finally:
            await pubsub.aclose()
            await client.aclose()


class NullChangeFeed:
    """Change feed for deployments without Redis; observers fall back to polling"""

    def publish(self, snapshot: BroadcastSnapshot) -> None:
        return None

    async def subscribe(self, broadcast_id: int) -> AsyncIterator[dict]:
        return
        yield
