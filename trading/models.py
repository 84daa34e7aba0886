"""
Trading records

Prices and amounts are decimal strings end to end. Records are frozen;
PositionTracker produces new versions with dataclasses.replace().
"""
import time
from dataclasses import dataclass, asdict, fields
from typing import Dict, List, Optional

from .trading_state_machine import OrderStatus, OrderType, PositionStatus


@dataclass(frozen=True)
class TokenPosition:
    token_address: str
    symbol: str
    name: str
    buy_tx_hash: str
    buy_timestamp: int
    buy_price_base: str          # PLS per whole token
    amount_tokens: str           # whole tokens
    amount_spent_base: str = "0"
    decimals: int = 18
    sell_tx_hash: Optional[str] = None
    sell_timestamp: Optional[int] = None
    sell_price_base: Optional[str] = None
    profit_loss_percent: Optional[str] = None
    status: PositionStatus = PositionStatus.HOLDING
    error: Optional[str] = None

    @property
    def key(self) -> str:
        return self.token_address.lower()

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "TokenPosition":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = PositionStatus(values.get("status", PositionStatus.HOLDING.value))
        return cls(**values)


@dataclass(frozen=True)
class LimitOrder:
    id: str
    token_address: str
    order_type: OrderType
    target_price_base: str
    amount_tokens: str
    slippage_percent: float
    created_at: int
    executed_at: Optional[int] = None
    tx_hash: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["order_type"] = self.order_type.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "LimitOrder":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["order_type"] = OrderType(values["order_type"])
        values["status"] = OrderStatus(values.get("status", OrderStatus.PENDING.value))
        return cls(**values)


@dataclass(frozen=True)
class PriceSample:
    """Latest quote for a tracked token; never persisted"""
    token_address: str
    price_base: str
    timestamp: float

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class SwapSubmission:
    """A submitted (not yet confirmed) swap; raw integer units"""
    tx_hash: str
    amount_in: int
    expected_out: int
    min_out: int
    path: List[str]


@dataclass(frozen=True)
class SnipeResult:
    success: bool
    token_address: str
    timestamp: float = 0
    tx_hash: Optional[str] = None
    amount_spent_base: Optional[str] = None
    amount_tokens: Optional[str] = None
    buy_price_base: Optional[str] = None
    position: Optional[TokenPosition] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["position"] = self.position.to_dict() if self.position else None
        return data


@dataclass(frozen=True)
class SellResult:
    success: bool
    token_address: str
    timestamp: float = 0
    tx_hash: Optional[str] = None
    amount_tokens: Optional[str] = None
    received_base: Optional[str] = None
    sell_price_base: Optional[str] = None
    profit_loss_percent: Optional[str] = None
    position: Optional[TokenPosition] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["position"] = self.position.to_dict() if self.position else None
        return data


def now_ms() -> int:
    return int(time.time() * 1000)
