"""
Push-capable chain provider: HTTP for reads and writes, eth_subscribe("logs") over WebSocket
"""
import asyncio
import inspect
import itertools
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

import websockets
from websockets.asyncio.client import connect
from websockets.protocol import State

from sniper_errors import TransientProviderError
from .base_adapter import SubscriptionHandle, normalize_log
from .evm_adapter import EVMAdapter

logger = logging.getLogger(__name__)


class WebSocketAdapter(EVMAdapter):
    """
    One shared WebSocket connection carries every log subscription.

    A reader task routes JSON-RPC responses to pending requests by id and
    eth_subscription notifications to handlers by subscription id.
    """

    def __init__(self, config: dict):
        super().__init__(config)
        self.ws_url = config.get('ws_url')
        self.ws_timeout = config.get('ws_timeout', 10)
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._handlers: Dict[str, Callable[[Dict], Any]] = {}
        # subscription id -> (socket it lives on, on_closed callback)
        self._subscribers: Dict[str, Tuple[Any, Optional[Callable[[], Any]]]] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    @property
    def supports_subscriptions(self) -> bool:
        return bool(self.ws_url)

    async def _ensure_socket(self):
        async with self._lock:
            if self._ws is not None and self._ws.state is State.OPEN:
                return self._ws
            try:
                self._ws = await asyncio.wait_for(connect(self.ws_url), timeout=self.ws_timeout)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.InvalidHandshake) as e:
                raise TransientProviderError(f"{self.get_chain_prefix()} WebSocket connect failed: {e}") from e
            logger.info(f"✅ {self.get_chain_prefix()} WebSocket connected: {self.ws_url}")
            self._reader_task = asyncio.create_task(self._read_loop(self._ws))
            return self._ws

    async def _read_loop(self, ws):
        try:
            async for message in ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"⚠️  {self.get_chain_prefix()} Unparseable WebSocket frame")
                    continue
                await self._dispatch(data)
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"❌ {self.get_chain_prefix()} WebSocket closed")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(TransientProviderError("WebSocket closed"))
            self._pending.clear()
            self._drop_subscriptions(ws)

    def _drop_subscriptions(self, ws):
        """Forget every subscription carried by `ws` and tell its owner"""
        dead = [sid for sid, (sock, _) in self._subscribers.items() if sock is ws]
        for subscription_id in dead:
            self._handlers.pop(subscription_id, None)
            _, on_closed = self._subscribers.pop(subscription_id)
            if on_closed is None:
                continue
            try:
                on_closed()
            except Exception as e:
                logger.error(f"❌ {self.get_chain_prefix()} Subscription close handler error: {e}")
        if dead:
            logger.warning(f"⚠️  {self.get_chain_prefix()} {len(dead)} log subscription(s) lost")

    async def _dispatch(self, data: Dict):
        if data.get('method') == 'eth_subscription':
            params = data.get('params', {})
            handler = self._handlers.get(params.get('subscription'))
            if handler is None:
                return
            try:
                result = handler(normalize_log(params['result']))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"❌ {self.get_chain_prefix()} Subscription handler error: {e}")
            return

        future = self._pending.pop(data.get('id'), None)
        if future is None or future.done():
            return
        if 'error' in data:
            future.set_exception(TransientProviderError(f"WebSocket RPC error: {data['error']}"))
        else:
            future.set_result(data.get('result'))

    async def _request(self, method: str, params: list):
        ws = await self._ensure_socket()
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        await ws.send(json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}))
        try:
            return await asyncio.wait_for(future, timeout=self.ws_timeout)
        except asyncio.TimeoutError:
            self._pending.pop(request_id, None)
            raise TransientProviderError(f"{self.get_chain_prefix()} {method} timed out")

    async def subscribe(self, log_filter: Dict, handler: Callable[[Dict], Any],
                        on_closed: Optional[Callable[[], Any]] = None) -> SubscriptionHandle:
        params = {k: v for k, v in log_filter.items() if k in ('address', 'topics')}
        subscription_id = await self._request("eth_subscribe", ["logs", params])
        self._handlers[subscription_id] = handler
        self._subscribers[subscription_id] = (self._ws, on_closed)
        logger.info(f"📡 {self.get_chain_prefix()} Subscribed to logs ({subscription_id})")
        return SubscriptionHandle(subscription_id, self._unsubscribe)

    async def _unsubscribe(self, subscription_id: str):
        self._handlers.pop(subscription_id, None)
        self._subscribers.pop(subscription_id, None)
        if self._ws is None or self._ws.state is not State.OPEN:
            return
        try:
            await self._request("eth_unsubscribe", [subscription_id])
        except TransientProviderError as e:
            logger.debug(f"⚠️  {self.get_chain_prefix()} eth_unsubscribe failed: {e}")

    async def close(self):
        self._handlers.clear()
        self._subscribers.clear()
        ws, self._ws = self._ws, None
        # Only close a socket that finished opening
        if ws is not None and ws.state is State.OPEN:
            await ws.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        await super().close()
