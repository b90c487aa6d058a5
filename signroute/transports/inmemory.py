"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import WorkflowEvent
from .base import BaseTransport, deadline_passed, listen_deadline


class InMemoryTransport(BaseTransport[Tuple[str, WorkflowEvent]]):
    """Simple in-process queue for unit tests and single-process deployments."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, WorkflowEvent]]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, event: WorkflowEvent) -> None:
        """Publish event to in-memory queue."""
        raw = (event.to_json(), event)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, WorkflowEvent], WorkflowEvent]]:
        """Drain queued events on ``topic``, polling for new ones."""
        deadline = listen_deadline(lifespan)
        while not deadline_passed(deadline):
            async with self._lock:
                queue = self._queues[topic]
                raw = queue.popleft() if queue else None
            if raw is None:
                await asyncio.sleep(0.05)
                continue
            yield raw, raw[1]

    async def ack(self, raw_message: Tuple[str, WorkflowEvent]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    def pending(self, topic: str) -> list[WorkflowEvent]:
        """Events queued on ``topic`` and not yet consumed."""
        return [event for _, event in self._queues[topic]]
