"""
EventWatcher - historical backfill + live tail of one kind of chain event

Subclasses say which logs to ask for (build_filters) and how to turn a log
into an event (parse_log). The base class owns the lifecycle:

    start_listening()  -> backfill [from_block or current-N, current]
                          in ascending block order, then go live
    stop_listening()   -> idempotent, never raises

Every event reaches the callback exactly once: identities are remembered
in a bounded window, so overlapping ranges and re-queried ranges are safe.
"""
import dataclasses
import inspect
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from modules.async_pool import with_retry
from modules.block_listener import (
    EventSource, PollingEventSource, SubscriptionEventSource,
    fetch_logs_in_range, log_sort_key, select_event_source,
)
from sniper_errors import AlreadyListening

logger = logging.getLogger(__name__)

EventCallback = Callable[[Any], Any]


class EventWatcher(ABC):
    """Base class for PairWatcher and MintWatcher"""

    name = "watcher"

    def __init__(self, provider, poll_interval: float = 5.0, history_blocks: int = 1000,
                 max_block_range: int = 2000, dedup_window: int = 5000):
        self.provider = provider
        self.poll_interval = poll_interval
        self.history_blocks = history_blocks
        self.max_block_range = max_block_range

        self.is_listening = False
        self.filter_target: Optional[str] = None
        self._callback: Optional[EventCallback] = None
        self._source: Optional[EventSource] = None
        # Events at or below this block came from the backfill
        self.live_after_block: Optional[int] = None

        self._seen_order = deque(maxlen=dedup_window)
        self._seen = set()

    @property
    def mode(self) -> Optional[str]:
        """'poll' or 'subscribe' while listening"""
        return self._source.mode if self._source else None

    def is_live_event(self, event) -> bool:
        """True for events mined after listening started"""
        return self.live_after_block is not None and event.block_number > self.live_after_block

    # ---- subclass hooks ----

    @abstractmethod
    def build_filters(self, filter_target: Optional[str] = None) -> List[Dict]:
        """Log filters (address/topics) for this event kind"""
        pass

    @abstractmethod
    def parse_log(self, log: Dict):
        """Normalized log -> event (timestamp 0), or None to ignore"""
        pass

    def accepts(self, event, filter_target: Optional[str]) -> bool:
        return True

    # ---- lifecycle ----

    async def start_listening(self, callback: EventCallback, from_block: Optional[int] = None,
                              include_historical: bool = True, filter_target: Optional[str] = None):
        """
        Deliver matching events to `callback` (sync or async).

        Raises AlreadyListening when called twice without stop_listening().
        A failed history fetch is logged and live mode still starts.
        """
        if self.is_listening:
            raise AlreadyListening(f"{self.name} watcher is already listening")

        self.is_listening = True
        self._callback = callback
        self.filter_target = filter_target
        filters = self.build_filters(filter_target)

        try:
            current = await self.provider.get_block_number()
            self.live_after_block = current
            self._source = await self._start_source(filters, current)
        except Exception:
            self.is_listening = False
            self._callback = None
            raise

        if include_historical:
            start = from_block if from_block is not None else max(0, current - self.history_blocks)
            try:
                logs, complete = await fetch_logs_in_range(
                    self.provider, filters, start, current, self.max_block_range
                )
                if not complete:
                    logger.warning(f"⚠️  [{self.name.upper()}] History partially unavailable")
                logger.info(f"📜 [{self.name.upper()}] {len(logs)} historical logs in blocks {start}-{current}")
                await self._handle_logs(logs)
            except Exception as e:
                logger.warning(f"⚠️  [{self.name.upper()}] History fetch failed, continuing live: {e}")

        if self._source is not None:
            self._source.go_live()
            logger.info(f"👀 [{self.name.upper()}] Listening ({self._source.mode}) after block {current}")

    async def _start_source(self, filters: List[Dict], current: int) -> EventSource:
        source = select_event_source(self.provider, self.poll_interval, self.max_block_range, self.name)
        try:
            await source.start(filters, current, self._handle_logs)
            return source
        except Exception as e:
            if not isinstance(source, SubscriptionEventSource):
                raise
            logger.warning(f"⚠️  [{self.name.upper()}] Push subscription failed ({e}), falling back to polling")

        source = PollingEventSource(self.provider, self.poll_interval, self.max_block_range, self.name)
        await source.start(filters, current, self._handle_logs)
        return source

    async def stop_listening(self):
        """Idempotent; safe mid-tick and on a degraded connection"""
        self.is_listening = False
        self._callback = None
        source, self._source = self._source, None
        if source is not None:
            try:
                await source.stop()
            except Exception as e:
                logger.debug(f"⚠️  [{self.name.upper()}] Source stop error: {e}")
            logger.info(f"🛑 [{self.name.upper()}] Stopped listening")
        self._seen.clear()
        self._seen_order.clear()

    # ---- delivery ----

    def _remember(self, identity):
        if len(self._seen_order) == self._seen_order.maxlen:
            self._seen.discard(self._seen_order[0])
        self._seen_order.append(identity)
        self._seen.add(identity)

    async def _block_timestamp(self, block_number: int, cache: Dict[int, int]) -> int:
        if block_number not in cache:
            block = await with_retry(lambda: self.provider.get_block(block_number),
                                     max_attempts=3, base_delay=0.25, name="get_block")
            cache[block_number] = int(block['timestamp'])
        return cache[block_number]

    async def _handle_logs(self, logs: List[Dict]):
        block_times: Dict[int, int] = {}
        for log in sorted(logs, key=log_sort_key):
            if not self.is_listening:
                return
            # Reorged out
            if log.get('removed'):
                continue
            try:
                event = self.parse_log(log)
                if event is None or not self.accepts(event, self.filter_target):
                    continue
                if event.identity in self._seen:
                    continue
                timestamp = await self._block_timestamp(event.block_number, block_times)
                event = dataclasses.replace(event, timestamp=timestamp)
                self._remember(event.identity)
                await self._emit(event)
            except Exception as e:
                logger.error(f"❌ [{self.name.upper()}] Failed to process log "
                             f"{log.get('transactionHash')}:{log.get('logIndex')}: {e}")

    async def _emit(self, event):
        callback = self._callback
        if callback is None:
            return
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"❌ [{self.name.upper()}] Callback error for {event.identity}: {e}")

    # ---- one-shot queries ----

    async def get_recent(self, block_range: Optional[int] = None,
                         filter_target: Optional[str] = None) -> List[Any]:
        """Events of the last `block_range` blocks, newest first"""
        block_range = block_range or self.history_blocks
        current = await self.provider.get_block_number()
        start = max(0, current - block_range)
        logs, _ = await fetch_logs_in_range(
            self.provider, self.build_filters(filter_target), start, current, self.max_block_range
        )

        events = []
        block_times: Dict[int, int] = {}
        for log in logs:
            if log.get('removed'):
                continue
            try:
                event = self.parse_log(log)
                if event is None or not self.accepts(event, filter_target):
                    continue
                timestamp = await self._block_timestamp(event.block_number, block_times)
                events.append(dataclasses.replace(event, timestamp=timestamp))
            except Exception as e:
                logger.error(f"❌ [{self.name.upper()}] Failed to parse log: {e}")

        events.sort(key=lambda ev: (ev.block_number, ev.log_index), reverse=True)
        return events
