import json
import logging
from typing import Any, Optional, Union

import redis.asyncio as aioredis
from pydantic import BaseModel

from recorder_manager.config import REDIS_URL

logger = logging.getLogger("recorder_manager.queues")


def _element(result: Any) -> Optional[str]:
    """Reduce a BLPOP reply to the popped element.

    Depending on the client, the reply is a ``(key, value)`` pair, a mapping
    with an ``element`` key, or the bare value.
    """
    if result is None:
        return None
    if isinstance(result, (list, tuple)):
        if len(result) < 2:
            return None
        result = result[1]
    elif isinstance(result, dict):
        result = result.get("element")
        if result is None:
            return None
    if isinstance(result, bytes):
        return result.decode("utf-8")
    return str(result)


class RedisQueue:
    """FIFO queues on Redis lists: producers RPUSH, consumers BLPOP."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def pop(self, queue: str, timeout: int = 0) -> Optional[str]:
        """Block until an element is available (or ``timeout`` seconds pass, 0 = forever)."""
        result = await self.client.blpop([queue], timeout=timeout)
        return _element(result)

    async def push(self, queue: str, payload: Union[BaseModel, dict]) -> None:
        if isinstance(payload, BaseModel):
            body = payload.model_dump_json(by_alias=True)
        else:
            body = json.dumps(payload)
        await self.client.rpush(queue, body)
        logger.debug(f"Pushed to {queue}: {body}")


async def create_redis_client(url: str = REDIS_URL) -> aioredis.Redis:
    client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
    await client.ping()
    return client
