"""
StreamGateway - in-process fan-out of chain events to external consumers

Each consumer (a dashboard stream, a CLI printer, a test) gets its own
bounded queue. A slow consumer only loses its own events.
"""
import asyncio
import itertools
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_CLOSED = object()


class StreamConsumer:
    """Async iterator over the events published to one subscriber"""

    def __init__(self, gateway: 'StreamGateway', consumer_id: int, max_queue: int):
        self.id = consumer_id
        self.dropped = 0
        self._gateway = gateway
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.closed = False

    def _offer(self, item) -> bool:
        try:
            self._queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    def _close(self):
        if self.closed:
            return
        self.closed = True
        # Make room for the sentinel so a waiting reader wakes up
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def get(self, timeout: Optional[float] = None) -> Any:
        """Next event; raises StopAsyncIteration once closed"""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self.get()

    def close(self):
        self._gateway.unsubscribe(self)


class StreamGateway:

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._consumers: Dict[int, StreamConsumer] = {}
        self._ids = itertools.count(1)
        self.closed = False

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    def subscribe(self) -> StreamConsumer:
        if self.closed:
            raise RuntimeError("Stream gateway is closed")
        consumer = StreamConsumer(self, next(self._ids), self.max_queue)
        self._consumers[consumer.id] = consumer
        logger.debug(f"🔗 Stream consumer {consumer.id} connected ({len(self._consumers)} total)")
        return consumer

    def unsubscribe(self, consumer: StreamConsumer):
        """Release a consumer; safe to call more than once"""
        if self._consumers.pop(consumer.id, None) is not None:
            logger.debug(f"🔌 Stream consumer {consumer.id} disconnected")
        consumer._close()

    def publish(self, event: Any) -> int:
        """Offer an event to every consumer; returns how many accepted it"""
        delivered = 0
        for consumer in list(self._consumers.values()):
            if consumer._offer(event):
                delivered += 1
            else:
                logger.warning(f"⚠️  Stream consumer {consumer.id} queue full, event dropped")
        return delivered

    def close(self):
        self.closed = True
        for consumer in list(self._consumers.values()):
            self.unsubscribe(consumer)
