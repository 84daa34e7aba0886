"""
Event sources: how a watcher receives live logs.

PollingEventSource asks for the block delta every few seconds, the way the
block feed always has. SubscriptionEventSource lets the node push matching
logs over an eth_subscribe channel. select_event_source() picks one when a
watcher starts, based on what the provider can do.

Both are gated: nothing live is delivered until go_live() is called, so a
watcher can finish its historical backfill first.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

LogBatchHandler = Callable[[List[Dict]], Awaitable[None]]

# Queued when the provider reports the push channel gone
_CHANNEL_CLOSED = object()


def log_sort_key(log: Dict) -> Tuple[int, int]:
    return (log.get('blockNumber', 0), log.get('logIndex', 0))


async def fetch_logs_in_range(provider, filters: List[Dict], from_block: int, to_block: int,
                              max_block_range: int = 2000) -> Tuple[List[Dict], bool]:
    """
    Query every filter over [from_block, to_block] in chunks of max_block_range.

    A failing chunk is logged and skipped; the logs of the chunks that did
    succeed are still returned. Returns (logs sorted by block/logIndex, complete).
    """
    logs: List[Dict] = []
    complete = True

    start = from_block
    while start <= to_block:
        end = min(to_block, start + max_block_range - 1)
        for log_filter in filters:
            query = dict(log_filter, fromBlock=start, toBlock=end)
            try:
                logs.extend(await provider.get_logs(query))
            except Exception as e:
                complete = False
                logger.warning(f"⚠️  Log query failed for blocks {start}-{end}: {e}")
        start = end + 1

    logs.sort(key=log_sort_key)
    return logs, complete


class EventSource(ABC):
    """Delivers batches of normalized logs to a handler"""

    mode = "base"

    def __init__(self, provider, name: str = "events"):
        self.provider = provider
        self.name = name
        self.is_running = False
        self._stopped = False
        self._live = asyncio.Event()

    @abstractmethod
    async def start(self, filters: List[Dict], after_block: int, handler: LogBatchHandler):
        """Begin collecting logs newer than after_block"""
        pass

    def go_live(self):
        """Release live delivery"""
        self._live.set()

    @abstractmethod
    async def stop(self):
        """Idempotent; never raises"""
        pass


class PollingEventSource(EventSource):
    """Polls eth_blockNumber and queries the delta range each tick"""

    mode = "poll"

    def __init__(self, provider, poll_interval: float = 5.0, max_block_range: int = 2000,
                 name: str = "events"):
        super().__init__(provider, name)
        self.poll_interval = poll_interval
        self.max_block_range = max_block_range
        self.last_checked_block = 0
        self._filters: List[Dict] = []
        self._handler: Optional[LogBatchHandler] = None
        self._task: Optional[asyncio.Task] = None
        self._in_tick = False

    async def start(self, filters: List[Dict], after_block: int, handler: LogBatchHandler):
        self._filters = list(filters)
        self._handler = handler
        self.last_checked_block = after_block
        self.is_running = True
        self._task = asyncio.create_task(self._poll_loop(), name=f"poll-{self.name}")
        logger.info(f"🔗 [{self.name.upper()}] Polling every {self.poll_interval}s from block {after_block + 1}")

    async def poll_once(self) -> int:
        """
        One tick: query [last_checked_block+1, current] and hand the batch over.

        last_checked_block only advances when every query in the range
        succeeded, so a failed range is asked for again next tick.
        Returns the number of logs delivered.
        """
        current = await self.provider.get_block_number()
        if current <= self.last_checked_block:
            return 0

        from_block = self.last_checked_block + 1
        to_block = min(current, from_block + self.max_block_range - 1)
        logs, complete = await fetch_logs_in_range(
            self.provider, self._filters, from_block, to_block, self.max_block_range
        )

        # Stopped while the query was in flight
        if self._stopped:
            return 0

        if logs and self._handler is not None:
            await self._handler(logs)

        if complete:
            self.last_checked_block = to_block
        return len(logs)

    async def _poll_loop(self):
        await self._live.wait()
        while self.is_running:
            await asyncio.sleep(self.poll_interval)
            if not self.is_running:
                break
            self._in_tick = True
            try:
                await self.poll_once()
            except Exception as e:
                logger.warning(f"⚠️  [{self.name.upper()}] Poll error: {e}")
            finally:
                self._in_tick = False

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.is_running = False
        self._live.set()
        task, self._task = self._task, None
        # A tick in progress finishes on its own and its results are dropped
        if task is not None and not self._in_tick:
            task.cancel()
        self._handler = None
        logger.info(f"🛑 [{self.name.upper()}] Polling stopped")


class SubscriptionEventSource(EventSource):
    """
    Receives logs pushed by the node; one subscription per filter.

    If the push channel dies, the source hands over to a PollingEventSource
    that re-queries from the last pushed block, so live delivery continues.
    """

    mode = "subscribe"

    def __init__(self, provider, poll_interval: float = 5.0, max_block_range: int = 2000,
                 name: str = "events"):
        super().__init__(provider, name)
        self.poll_interval = poll_interval
        self.max_block_range = max_block_range
        self._filters: List[Dict] = []
        self._handles = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._handler: Optional[LogBatchHandler] = None
        self._after_block = 0
        self._last_block = 0
        self._fallback: Optional[PollingEventSource] = None

    async def start(self, filters: List[Dict], after_block: int, handler: LogBatchHandler):
        self._filters = list(filters)
        self._handler = handler
        self._after_block = after_block
        self._last_block = after_block
        try:
            for log_filter in filters:
                live_filter = {k: v for k, v in log_filter.items() if k in ('address', 'topics')}
                handle = await self.provider.subscribe(live_filter, self._on_log, self._on_closed)
                self._handles.append(handle)
        except Exception:
            await self._release_handles()
            raise
        self.is_running = True
        self._consumer = asyncio.create_task(self._consume(), name=f"subscription-{self.name}")
        logger.info(f"📡 [{self.name.upper()}] Push subscription active ({len(self._handles)} filters)")

    def _on_log(self, log: Dict):
        if self._stopped:
            return
        self._queue.put_nowait(log)

    def _on_closed(self):
        if self._stopped:
            return
        self._queue.put_nowait(_CHANNEL_CLOSED)

    async def _consume(self):
        await self._live.wait()
        while not self._stopped:
            log = await self._queue.get()
            if log is None or self._stopped:
                break
            if log is _CHANNEL_CLOSED:
                await self._fall_back_to_polling()
                break
            block = log.get('blockNumber', 0)
            # Already covered by the historical range
            if block <= self._after_block:
                continue
            self._last_block = max(self._last_block, block)
            try:
                await self._handler([log])
            except Exception as e:
                logger.error(f"❌ [{self.name.upper()}] Handler error: {e}")

    async def _fall_back_to_polling(self):
        logger.warning(f"⚠️  [{self.name.upper()}] Push channel closed, falling back to polling")
        await self._release_handles()
        if self._stopped:
            return
        # The last pushed block may be incomplete; repeats are dropped downstream
        resume_after = max(self._after_block, self._last_block - 1)
        fallback = PollingEventSource(self.provider, self.poll_interval, self.max_block_range, self.name)
        await fallback.start(self._filters, resume_after, self._handler)
        fallback.go_live()
        self._fallback = fallback
        self.mode = fallback.mode

    async def _release_handles(self):
        handles, self._handles = self._handles, []
        for handle in handles:
            try:
                await handle.unsubscribe()
            except Exception as e:
                logger.debug(f"⚠️  [{self.name.upper()}] Unsubscribe failed: {e}")

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.is_running = False
        self._live.set()
        await self._release_handles()
        self._queue.put_nowait(None)
        self._consumer = None
        fallback, self._fallback = self._fallback, None
        if fallback is not None:
            await fallback.stop()
        self._handler = None
        logger.info(f"🛑 [{self.name.upper()}] Push subscription closed")


def select_event_source(provider, poll_interval: float = 5.0, max_block_range: int = 2000,
                        name: str = "events") -> EventSource:
    """Push when the provider can, poll otherwise"""
    if getattr(provider, 'supports_subscriptions', False):
        return SubscriptionEventSource(provider, poll_interval=poll_interval,
                                       max_block_range=max_block_range, name=name)
    return PollingEventSource(provider, poll_interval=poll_interval,
                              max_block_range=max_block_range, name=name)
