"""
Position Tracker
Sole owner of TokenPosition and LimitOrder records.

State lives in memory and is written through to TradingDB on every
committed change. Callers get frozen records back; the only way to change
one is through the methods here, which check the transition first.
"""

import json
import logging
import time
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional

from safe_math import decimal_to_str, safe_div_percentage, to_decimal
from sniper_errors import IllegalTransition, OrderNotFound, PositionNotFound
from .db_handler import TradingDB
from .models import LimitOrder, TokenPosition
from .trading_state_machine import OrderStatus, PositionStatus, check_transition

logger = logging.getLogger(__name__)


class PositionTracker:
    def __init__(self, db: Optional[TradingDB] = None):
        self.db = db
        self._positions: Dict[str, TokenPosition] = {}
        self._orders: Dict[str, LimitOrder] = {}
        self._load()

    def _load(self):
        if self.db is None:
            return
        for row in self.db.get_positions():
            position = TokenPosition.from_dict(row)
            self._positions[position.key] = position
        for row in self.db.get_orders():
            order = LimitOrder.from_dict(row)
            self._orders[order.id] = order
        if self._positions or self._orders:
            logger.info(f"Loaded {len(self._positions)} positions and {len(self._orders)} limit orders")

    def _commit_position(self, position: TokenPosition) -> TokenPosition:
        self._positions[position.key] = position
        if self.db is not None:
            self.db.save_position(position.to_dict())
        return position

    def _commit_order(self, order: LimitOrder) -> LimitOrder:
        self._orders[order.id] = order
        if self.db is not None:
            self.db.save_order(order.to_dict())
        return order

    # ---- positions ----

    def record_buy(self, position: TokenPosition) -> TokenPosition:
        """
        Record a confirmed buy.

        A token can only have one holding position; a previous sold/failed
        record for the same token is replaced.
        """
        existing = self._positions.get(position.key)
        if existing is not None and existing.status is PositionStatus.HOLDING:
            raise IllegalTransition(f"Already holding {position.token_address}")
        if position.status is not PositionStatus.HOLDING:
            raise IllegalTransition(f"New position for {position.token_address} must be holding")

        self._commit_position(position)
        logger.info(f"Recorded BUY for {position.symbol} {position.token_address} "
                    f"({position.amount_tokens} @ {position.buy_price_base} PLS)")
        return position

    def get_position(self, token_address: str) -> Optional[TokenPosition]:
        return self._positions.get(token_address.lower())

    def get_positions(self, status: Optional[PositionStatus] = None) -> List[TokenPosition]:
        positions = list(self._positions.values())
        if status is not None:
            positions = [p for p in positions if p.status is status]
        return positions

    def get_holding_positions(self) -> List[TokenPosition]:
        return self.get_positions(PositionStatus.HOLDING)

    def is_holding(self, token_address: str) -> bool:
        position = self.get_position(token_address)
        return position is not None and position.status is PositionStatus.HOLDING

    def _require_position(self, token_address: str) -> TokenPosition:
        position = self.get_position(token_address)
        if position is None:
            raise PositionNotFound(f"No position for {token_address}")
        return position

    def mark_sold(self, token_address: str, sell_tx_hash: str, sell_price_base: str,
                  profit_loss_percent: Optional[str] = None) -> TokenPosition:
        position = self._require_position(token_address)
        check_transition(position.status, PositionStatus.SOLD, token_address)

        if profit_loss_percent is None:
            profit_loss_percent = calculate_profit_loss(position.buy_price_base, sell_price_base)

        updated = replace(
            position,
            status=PositionStatus.SOLD,
            sell_tx_hash=sell_tx_hash,
            sell_timestamp=int(time.time()),
            sell_price_base=sell_price_base,
            profit_loss_percent=profit_loss_percent,
        )
        self._commit_position(updated)
        logger.info(f"Recorded SELL for {position.symbol} {token_address}. P/L: {profit_loss_percent}%")
        return updated

    def mark_failed(self, token_address: str, error: Optional[str] = None) -> TokenPosition:
        position = self._require_position(token_address)
        check_transition(position.status, PositionStatus.FAILED, token_address)
        updated = replace(position, status=PositionStatus.FAILED, error=error)
        self._commit_position(updated)
        logger.warning(f"Position {token_address} marked FAILED: {error}")
        return updated

    # ---- limit orders ----

    def add_order(self, order: LimitOrder) -> LimitOrder:
        if order.id in self._orders:
            raise IllegalTransition(f"Order {order.id} already exists")
        if order.status is not OrderStatus.PENDING:
            raise IllegalTransition(f"New order {order.id} must be pending")
        return self._commit_order(order)

    def get_order(self, order_id: str) -> Optional[LimitOrder]:
        return self._orders.get(order_id)

    def has_order(self, order_id: str) -> bool:
        return order_id in self._orders

    def get_orders(self, token_address: Optional[str] = None,
                   status: Optional[OrderStatus] = None) -> List[LimitOrder]:
        orders = list(self._orders.values())
        if token_address is not None:
            orders = [o for o in orders if o.token_address.lower() == token_address.lower()]
        if status is not None:
            orders = [o for o in orders if o.status is status]
        return orders

    def get_pending_orders(self, token_address: Optional[str] = None) -> List[LimitOrder]:
        return self.get_orders(token_address, OrderStatus.PENDING)

    def _transition_order(self, order_id: str, status: OrderStatus, **changes) -> LimitOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"No limit order {order_id}")
        check_transition(order.status, status, order_id)
        return self._commit_order(replace(order, status=status, **changes))

    def mark_order_executed(self, order_id: str, tx_hash: str) -> LimitOrder:
        return self._transition_order(order_id, OrderStatus.EXECUTED,
                                      tx_hash=tx_hash, executed_at=int(time.time()))

    def mark_order_failed(self, order_id: str, error: Optional[str] = None) -> LimitOrder:
        return self._transition_order(order_id, OrderStatus.FAILED, error=error)

    def cancel_order(self, order_id: str) -> LimitOrder:
        return self._transition_order(order_id, OrderStatus.CANCELLED)

    def cancel_pending_orders(self, token_address: str) -> List[LimitOrder]:
        return [self.cancel_order(o.id) for o in self.get_pending_orders(token_address)]

    # ---- portfolio ----

    def get_stats(self) -> Dict:
        positions = list(self._positions.values())
        holding = [p for p in positions if p.status is PositionStatus.HOLDING]
        sold = [p for p in positions if p.status is PositionStatus.SOLD]

        invested = sum((to_decimal(p.amount_spent_base, Decimal(0)) for p in positions), Decimal(0))
        realized = Decimal(0)
        for p in sold:
            sell_value = to_decimal(p.sell_price_base, Decimal(0)) * to_decimal(p.amount_tokens, Decimal(0))
            realized += sell_value - to_decimal(p.amount_spent_base, Decimal(0))

        return {
            'total_positions': len(positions),
            'holding_positions': len(holding),
            'sold_positions': len(sold),
            'failed_positions': len(positions) - len(holding) - len(sold),
            'pending_orders': len(self.get_pending_orders()),
            'total_invested_base': decimal_to_str(invested),
            'total_realized_base': decimal_to_str(realized),
        }

    def export_json(self) -> str:
        return json.dumps({
            'positions': [p.to_dict() for p in self._positions.values()],
            'limit_orders': [o.to_dict() for o in self._orders.values()],
        }, indent=2)

    def import_json(self, payload: str) -> int:
        """Replace records from an export; returns the number of positions loaded"""
        data = json.loads(payload)
        positions = [TokenPosition.from_dict(p) for p in data.get('positions', [])]
        orders = [LimitOrder.from_dict(o) for o in data.get('limit_orders', [])]
        for position in positions:
            self._commit_position(position)
        for order in orders:
            self._commit_order(order)
        logger.info(f"Imported {len(positions)} positions and {len(orders)} limit orders")
        return len(positions)


def calculate_profit_loss(buy_price_base: str, sell_price_base: str) -> Optional[str]:
    """(sell - buy) / buy * 100 as a decimal string; None when buy price is zero"""
    change = safe_div_percentage(sell_price_base, buy_price_base)
    if change is None:
        return None
    return decimal_to_str(change.quantize(Decimal("0.01")))
