"""
Price Monitor
Fixed-interval loop that quotes every tracked token against WPLS and
hands pending limit orders whose target was crossed to a trigger handler.

    take_profit fires when price >= target
    stop_loss   fires when price <= target
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from web3 import Web3

from modules.token_info import TokenInfoService
from safe_math import to_decimal
from .models import LimitOrder, PriceSample
from .position_tracker import PositionTracker
from .swap_service import SwapService
from .trading_state_machine import OrderType

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 10  # seconds

TriggerHandler = Callable[[LimitOrder, str], Awaitable[Any]]


def should_fire(order: LimitOrder, price_base: str) -> bool:
    price = to_decimal(price_base)
    target = to_decimal(order.target_price_base)
    if order.order_type is OrderType.TAKE_PROFIT:
        return price >= target
    return price <= target


class PriceMonitor:
    def __init__(self, swap_service: SwapService, position_tracker: PositionTracker,
                 token_info: Optional[TokenInfoService] = None, interval: float = DEFAULT_INTERVAL):
        self.swap = swap_service
        self.pt = position_tracker
        self.token_info = token_info
        self.interval = interval

        self._tokens: Dict[str, str] = {}      # lowercase -> checksum
        self._prices: Dict[str, PriceSample] = {}
        self._decimals: Dict[str, int] = {}

        self._task: Optional[asyncio.Task] = None
        self._stopped = True
        self._in_tick = False

        self._on_price_update: Optional[Callable[[PriceSample], Any]] = None
        self._on_trigger: Optional[TriggerHandler] = None

    # ---- tracked set ----

    def add_token(self, token_address: str):
        key = token_address.lower()
        if key not in self._tokens:
            self._tokens[key] = Web3.to_checksum_address(token_address)
            logger.info(f"👀 Monitoring price of {self._tokens[key]}")

    def remove_token(self, token_address: str):
        """Stop evaluating the token. Its pending orders stay pending."""
        key = token_address.lower()
        if self._tokens.pop(key, None) is not None:
            logger.info(f"Stopped monitoring {token_address}")
        self._prices.pop(key, None)

    def is_tracking(self, token_address: str) -> bool:
        return token_address.lower() in self._tokens

    @property
    def tracked_tokens(self) -> List[str]:
        return list(self._tokens.values())

    # ---- callbacks ----

    def on_price_update(self, callback: Callable[[PriceSample], Any]):
        self._on_price_update = callback

    def on_trigger(self, handler: TriggerHandler):
        self._on_trigger = handler

    # ---- prices ----

    def get_cached_price(self, token_address: str) -> Optional[PriceSample]:
        return self._prices.get(token_address.lower())

    async def _decimals_for(self, token_address: str) -> int:
        key = token_address.lower()
        if key in self._decimals:
            return self._decimals[key]

        position = self.pt.get_position(token_address)
        if position is not None:
            decimals = position.decimals
        elif self.token_info is not None:
            decimals = (await self.token_info.get_metadata(token_address)).decimals
        else:
            decimals = 18
        self._decimals[key] = decimals
        return decimals

    async def get_price(self, token_address: str) -> str:
        """PLS per whole token from a fresh router quote. Raises QuoteUnavailable."""
        decimals = await self._decimals_for(token_address)
        return await self.swap.get_token_price(token_address, decimals)

    # ---- loop ----

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: Optional[float] = None):
        if interval is not None:
            self.interval = interval
        if self.is_running:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._loop(), name="price-monitor")
        logger.info(f"📈 Price monitor started ({self.interval}s interval, {len(self._tokens)} tokens)")

    async def stop(self):
        """Safe mid-tick: an in-flight tick finishes its quotes and fires nothing."""
        self._stopped = True
        task, self._task = self._task, None
        if task is None:
            return
        if not self._in_tick:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Price monitor stopped")

    async def _loop(self):
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self._stopped:
                break
            self._in_tick = True
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"❌ Price monitor tick failed: {e}")
            finally:
                self._in_tick = False

    async def tick(self) -> int:
        """
        One evaluation of every tracked token. Returns the number of orders fired.

        All tokens are quoted and evaluated first; triggered orders are then
        handed to the trigger handler together.
        """
        triggered: List[Tuple[LimitOrder, str]] = []

        for key, token in list(self._tokens.items()):
            try:
                price = await self.get_price(token)
            except Exception as e:
                logger.warning(f"⚠️  Price check failed for {token}: {e}")
                continue

            if key not in self._tokens:
                continue

            sample = PriceSample(token_address=token, price_base=price, timestamp=time.time())
            self._prices[key] = sample
            await self._notify_price(sample)

            for order in self.pt.get_pending_orders(token):
                if should_fire(order, price):
                    logger.info(f"🔔 {order.order_type.value} triggered for {token}: "
                                f"price {price} vs target {order.target_price_base}")
                    triggered.append((order, price))

        if self._stopped or not triggered or self._on_trigger is None:
            return 0

        results = await asyncio.gather(
            *(self._on_trigger(order, price) for order, price in triggered),
            return_exceptions=True,
        )
        for (order, _), result in zip(triggered, results):
            if isinstance(result, Exception):
                logger.error(f"❌ Trigger handler failed for order {order.id}: {result}")
        return len(triggered)

    async def _notify_price(self, sample: PriceSample):
        if self._on_price_update is None:
            return
        try:
            result = self._on_price_update(sample)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"❌ Price update callback error: {e}")
