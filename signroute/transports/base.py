"""Base transport interface for workflow event notifications."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import WorkflowEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for publishing workflow events."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: WorkflowEvent) -> None:
        """Send an event to a topic/queue."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, WorkflowEvent]]:
        """Yield raw message and event pairs published on ``topic``.

        Consumers such as ``signroute events tail`` stop after ``lifespan``
        seconds, or run until cancelled when it is ``None``.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError


def listen_deadline(lifespan: Optional[float]) -> Optional[float]:
    """Event-loop time at which a subscription with ``lifespan`` ends."""
    if not lifespan:
        return None
    return asyncio.get_running_loop().time() + lifespan


def deadline_passed(deadline: Optional[float]) -> bool:
    return deadline is not None and asyncio.get_running_loop().time() >= deadline

