"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import WorkflowEvent
from .base import BaseTransport, deadline_passed, listen_deadline

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis-list based transport for distributed consumers."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: WorkflowEvent) -> None:
        """Publish event to a Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()

        await self._redis.lpush(f"signroute:{topic}", event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, WorkflowEvent]]:
        """Subscribe to events from a Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = f"signroute:{topic}"
        deadline = listen_deadline(lifespan)
        while not deadline_passed(deadline):
            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue
            _, message_json = result
            try:
                event = WorkflowEvent.from_json(message_json)
            except ValidationError as e:
                logger.warning(f"Dropping malformed event on {queue_name}: {e}")
                continue
            yield message_json, event

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass
