"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import EngineEvent
from .base import BaseTransport

RawEvent = Tuple[str, EngineEvent]


class InMemoryTransport(BaseTransport[RawEvent]):
    """Per-topic FIFO queues held in process memory."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawEvent]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def publish(self, topic: str, event: EngineEvent) -> None:
        raw = (topic, event)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, EngineEvent]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            async with self._lock:
                raw = self._queues[topic].popleft() if self._queues[topic] else None
            if raw is not None:
                yield raw, raw[1]
                continue
            await asyncio.sleep(self._poll_interval)

    def pending(self, topic: str) -> int:
        """Number of events waiting on ``topic``."""
        return len(self._queues[topic])
