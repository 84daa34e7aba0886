"""
Trading State Machine
Lifecycle states for the engine, positions and limit orders, and the
transitions each one allows:

    Engine:    UNINITIALIZED -> INITIALIZED -> RUNNING <-> STOPPED
    Position:  HOLDING -> SOLD | FAILED
    Order:     PENDING -> EXECUTED | CANCELLED | FAILED

Every status change in the bot goes through check_transition().
"""

import logging
from enum import Enum
from typing import Dict, Set

from sniper_errors import IllegalTransition

logger = logging.getLogger(__name__)


class EngineState(Enum):
    UNINITIALIZED = "uninitialized"  # No signing key
    INITIALIZED = "initialized"      # Key loaded, not reacting to events
    RUNNING = "running"              # Reacting to events
    STOPPED = "stopped"


class PositionStatus(Enum):
    HOLDING = "holding"
    SOLD = "sold"
    FAILED = "failed"


class OrderType(Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"


class OrderStatus(Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    FAILED = "failed"


ENGINE_TRANSITIONS: Dict[EngineState, Set[EngineState]] = {
    EngineState.UNINITIALIZED: {EngineState.INITIALIZED},
    EngineState.INITIALIZED: {EngineState.INITIALIZED, EngineState.RUNNING},
    EngineState.RUNNING: {EngineState.STOPPED},
    EngineState.STOPPED: {EngineState.RUNNING, EngineState.INITIALIZED},
}

POSITION_TRANSITIONS: Dict[PositionStatus, Set[PositionStatus]] = {
    PositionStatus.HOLDING: {PositionStatus.SOLD, PositionStatus.FAILED},
    PositionStatus.SOLD: set(),
    PositionStatus.FAILED: set(),
}

ORDER_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.EXECUTED, OrderStatus.CANCELLED, OrderStatus.FAILED},
    OrderStatus.EXECUTED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.FAILED: set(),
}

_TRANSITIONS = {
    EngineState: ENGINE_TRANSITIONS,
    PositionStatus: POSITION_TRANSITIONS,
    OrderStatus: ORDER_TRANSITIONS,
}


def can_transition(current: Enum, new: Enum) -> bool:
    table = _TRANSITIONS.get(type(current))
    if table is None or type(new) is not type(current):
        return False
    return new in table[current]


def check_transition(current: Enum, new: Enum, subject: str = ""):
    """Raise IllegalTransition unless current -> new is allowed"""
    if not can_transition(current, new):
        label = f" for {subject}" if subject else ""
        raise IllegalTransition(
            f"{type(current).__name__} {current.value} -> {new.value} not allowed{label}"
        )


def is_terminal(status: Enum) -> bool:
    table = _TRANSITIONS.get(type(status), {})
    return not table.get(status)
