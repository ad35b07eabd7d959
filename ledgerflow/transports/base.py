"""Transport contract the worker and dispatcher rely on.

Topics are the trigger event names (``workflow.run``, ``workflow.approved``,
``agent.run``). Delivery is at-least-once: a handler can see the same event
again after a crash or a redelivery, and the runners make that harmless.
"""

from __future__ import annotations

import abc
import logging
from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, Tuple, TypeVar

from ..contracts import EngineEvent

logger = logging.getLogger(__name__)

RawMessageT = TypeVar("RawMessageT")

EventHandler = Callable[[EngineEvent], Awaitable[object]]


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Queue per topic; drivers only need ``publish`` and ``subscribe``."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: EngineEvent) -> None:
        """Append ``event`` to the queue for ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, EngineEvent]]:
        """Yield ``(raw message, event)`` pairs from ``topic``.

        Args:
            topic: Event name to listen on
            lifespan: Seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError

    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivery as processed. Drivers that pop on receive need nothing."""

    async def redeliver(self, event: EngineEvent) -> EngineEvent:
        """Publish ``event`` again on its own topic with the attempt counter bumped."""
        retry = event.bump_attempt()
        await self.publish(event.name, retry)
        return retry

    async def consume(
        self,
        topic: str,
        handler: EventHandler,
        lifespan: Optional[float] = None,
    ) -> int:
        """Run ``handler`` on each event of ``topic``, acking after it returns.

        Returns the number of events handled before ``lifespan`` ran out.
        An exception from ``handler`` leaves the delivery unacked and stops
        the loop.
        """
        handled = 0
        async for raw_message, event in self.subscribe(topic, lifespan=lifespan):
            await handler(event)
            await self.ack(raw_message)
            handled += 1
        logger.debug(f"Stopped consuming {topic} after {handled} events")
        return handled
