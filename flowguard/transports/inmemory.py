"""In-memory transport for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import ExecutionEvent
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, ExecutionEvent]]):
    """Simple in-process queue per topic."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, ExecutionEvent]]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, event: ExecutionEvent) -> None:
        """Publish event to in-memory queue."""
        raw = (event.to_json(), event)
        async with self._lock:
            self._queues[topic].append(raw)

    def pending(self, topic: str) -> List[ExecutionEvent]:
        """Events queued on ``topic`` that nobody has consumed yet."""
        return [event for _, event in self._queues[topic]]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, ExecutionEvent], ExecutionEvent]]:
        """Subscribe to events from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            async with self._lock:
                raw_message = (
                    self._queues[topic].popleft() if self._queues[topic] else None
                )
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: Tuple[str, ExecutionEvent]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
