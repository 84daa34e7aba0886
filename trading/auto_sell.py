"""
Auto Sell (exit engine)
Take-profit / stop-loss orders over held positions.

An order only becomes executed after its sell is confirmed on chain. A
failed sell marks the order failed and leaves the position holding; it is
never retried automatically.
"""

import asyncio
import inspect
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from safe_math import decimal_to_str, to_decimal
from sniper_errors import InvalidConfig, PositionNotFound
from .config_manager import ConfigManager
from .models import LimitOrder, SellResult, TokenPosition, now_ms
from .position_tracker import PositionTracker
from .price_monitor import PriceMonitor
from .trade_executor import ExecutionEngine
from .trading_state_machine import OrderStatus, OrderType, PositionStatus

logger = logging.getLogger(__name__)


def take_profit_target(buy_price_base: str, percent) -> str:
    """buy * (1 + percent / 100)"""
    return decimal_to_str(to_decimal(buy_price_base) * (1 + to_decimal(percent) / 100))


def stop_loss_target(buy_price_base: str, percent) -> str:
    """buy * (1 - percent / 100)"""
    return decimal_to_str(to_decimal(buy_price_base) * (1 - to_decimal(percent) / 100))


class ExitEngine:
    def __init__(self, engine: ExecutionEngine, position_tracker: PositionTracker,
                 price_monitor: PriceMonitor, config_manager: ConfigManager):
        self.engine = engine
        self.pt = position_tracker
        self.monitor = price_monitor
        self.config_manager = config_manager
        self.monitor.on_trigger(self.execute_limit_order)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._on_sell: Optional[Callable[[TokenPosition, LimitOrder], Any]] = None

    def on_sell(self, callback: Callable[[TokenPosition, LimitOrder], Any]):
        self._on_sell = callback

    @property
    def running(self) -> bool:
        return self.monitor.is_running

    def start(self, interval: Optional[float] = None):
        for position in self.pt.get_holding_positions():
            self.monitor.add_token(position.token_address)
        self.monitor.start(interval)

    async def stop(self):
        await self.monitor.stop()

    # ---- orders ----

    def _order_id(self, token_address: str, order_type: OrderType) -> str:
        base = f"{token_address.lower()}-{order_type.value}-{now_ms()}"
        order_id, n = base, 1
        while self.pt.has_order(order_id):
            order_id = f"{base}-{n}"
            n += 1
        return order_id

    def create_limit_order(self, token_address: str, order_type: OrderType, target_price_base,
                           amount_tokens: Optional[str] = None,
                           slippage_percent: Optional[float] = None) -> LimitOrder:
        """Register a pending order on a held position and track its price"""
        position = self.pt.get_position(token_address)
        if position is None or position.status is not PositionStatus.HOLDING:
            raise PositionNotFound(f"No holding position for {token_address}")

        order_type = OrderType(order_type)
        target = to_decimal(target_price_base, Decimal(0))
        if target <= 0:
            raise InvalidConfig(f"Target price must be positive: {target_price_base}")

        config = self.config_manager.get()
        order = LimitOrder(
            id=self._order_id(position.token_address, order_type),
            token_address=position.token_address,
            order_type=order_type,
            target_price_base=decimal_to_str(target),
            amount_tokens=amount_tokens or position.amount_tokens,
            slippage_percent=slippage_percent if slippage_percent is not None else config.slippage_percent,
            created_at=int(time.time()),
        )
        self.pt.add_order(order)
        self.monitor.add_token(position.token_address)
        logger.info(f"📋 {order_type.value} order {order.id} @ {order.target_price_base} PLS")
        return order

    def create_auto_limit_orders(self, position: TokenPosition) -> List[LimitOrder]:
        """One take-profit and one stop-loss from the configured percentages"""
        config = self.config_manager.get()
        if not config.auto_sell_enabled:
            return []

        orders = []
        if config.take_profit_percent:
            orders.append(self.create_limit_order(
                position.token_address, OrderType.TAKE_PROFIT,
                take_profit_target(position.buy_price_base, config.take_profit_percent),
            ))
        if config.stop_loss_percent:
            orders.append(self.create_limit_order(
                position.token_address, OrderType.STOP_LOSS,
                stop_loss_target(position.buy_price_base, config.stop_loss_percent),
            ))
        return orders

    def cancel_limit_order(self, order_id: str) -> LimitOrder:
        order = self.pt.cancel_order(order_id)
        logger.info(f"🚫 Limit order {order_id} cancelled")
        return order

    def get_orders(self, token_address: Optional[str] = None,
                   status: Optional[OrderStatus] = None) -> List[LimitOrder]:
        return self.pt.get_orders(token_address, status)

    # ---- execution ----

    def _lock(self, token_address: str) -> asyncio.Lock:
        key = token_address.lower()
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def execute_limit_order(self, order: LimitOrder, current_price: str) -> Optional[SellResult]:
        """
        Sell for a triggered order. Orders on the same token run one at a
        time; an order that is no longer pending by then is skipped.
        """
        async with self._lock(order.token_address):
            order = self.pt.get_order(order.id)
            if order is None or order.status is not OrderStatus.PENDING:
                return None

            if not self.pt.is_holding(order.token_address):
                logger.info(f"Position {order.token_address} no longer held, cancelling order {order.id}")
                self.pt.cancel_order(order.id)
                return None

            logger.info(f"⚡ Executing {order.order_type.value} order {order.id} at {current_price} PLS")
            try:
                result = await self.engine.sell_token(
                    order.token_address,
                    amount=order.amount_tokens,
                    price_hint=current_price,
                    slippage_percent=order.slippage_percent,
                )
            except Exception as e:
                result = SellResult(success=False, token_address=order.token_address, error=str(e))

            if not result.success:
                self.pt.mark_order_failed(order.id, result.error)
                logger.error(f"❌ Limit order {order.id} failed: {result.error}")
                return result

            executed = self.pt.mark_order_executed(order.id, result.tx_hash)
            for sibling in self.pt.cancel_pending_orders(order.token_address):
                logger.info(f"🚫 Cancelled sibling order {sibling.id}")
            self.monitor.remove_token(order.token_address)

            position = result.position or self.pt.get_position(order.token_address)
            logger.info(f"✅ Limit order {order.id} executed: {result.tx_hash} "
                        f"(P/L: {result.profit_loss_percent}%)")
            await self._notify_sell(position, executed)
            return result

    async def _notify_sell(self, position, order):
        if self._on_sell is None:
            return
        try:
            res = self._on_sell(position, order)
            if inspect.isawaitable(res):
                await res
        except Exception as e:
            logger.error(f"❌ Sell callback error: {e}")
