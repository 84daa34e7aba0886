"""
Configuration Manager
Validated, runtime-updatable sniper configuration (one instance per bot).
"""

import logging
from dataclasses import dataclass, asdict, fields, replace
from decimal import Decimal
from typing import Dict, Optional

from safe_math import decimal_to_str, to_decimal
from sniper_errors import InvalidConfig
from trading_config import get_sniper_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SniperConfig:
    auto_buy_enabled: bool = False
    buy_amount_base: str = "100"
    slippage_percent: float = 10
    gas_limit_multiplier: float = 1.2
    gas_price_gwei: Optional[str] = None
    auto_sell_enabled: bool = False
    take_profit_percent: Optional[float] = 100
    stop_loss_percent: Optional[float] = 50
    snipe_new_pairs: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


CONFIG_KEYS = {f.name for f in fields(SniperConfig)}


def _decimal(name: str, value) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError:
        raise InvalidConfig(f"{name} must be a number, got {value!r}")


def validate_config(config: SniperConfig) -> SniperConfig:
    """Check invariants; returns the config with decimal strings normalized"""
    slippage = _decimal("slippage_percent", config.slippage_percent)
    if not (Decimal(0) <= slippage < Decimal(100)):
        raise InvalidConfig(f"slippage_percent must be in [0, 100), got {config.slippage_percent}")

    if _decimal("gas_limit_multiplier", config.gas_limit_multiplier) < 1:
        raise InvalidConfig(f"gas_limit_multiplier must be >= 1, got {config.gas_limit_multiplier}")

    buy_amount = _decimal("buy_amount_base", config.buy_amount_base)
    if buy_amount <= 0:
        raise InvalidConfig(f"buy_amount_base must be positive, got {config.buy_amount_base}")

    if config.take_profit_percent is not None:
        if _decimal("take_profit_percent", config.take_profit_percent) <= 0:
            raise InvalidConfig(f"take_profit_percent must be > 0, got {config.take_profit_percent}")

    if config.stop_loss_percent is not None:
        stop_loss = _decimal("stop_loss_percent", config.stop_loss_percent)
        if not (Decimal(0) < stop_loss <= Decimal(100)):
            raise InvalidConfig(f"stop_loss_percent must be in (0, 100], got {config.stop_loss_percent}")

    gas_price = None
    if config.gas_price_gwei not in (None, ""):
        gas_price_value = _decimal("gas_price_gwei", config.gas_price_gwei)
        if gas_price_value <= 0:
            raise InvalidConfig(f"gas_price_gwei must be positive, got {config.gas_price_gwei}")
        gas_price = decimal_to_str(gas_price_value)

    return replace(config, buy_amount_base=decimal_to_str(buy_amount), gas_price_gwei=gas_price)


class ConfigManager:
    """
    Holds the active SniperConfig.

    Updates are validated as a whole; an invalid update raises InvalidConfig
    and the previous config stays active.
    """

    def __init__(self, initial: Optional[Dict] = None):
        values = get_sniper_config()
        values.update(initial or {})
        self._config = self._build(values)

    @staticmethod
    def _build(values: Dict) -> SniperConfig:
        unknown = set(values) - CONFIG_KEYS
        if unknown:
            raise InvalidConfig(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return validate_config(SniperConfig(**values))

    def get(self) -> SniperConfig:
        """Current config (immutable, safe to keep)"""
        return self._config

    def get_config(self) -> Dict:
        return self._config.to_dict()

    def update(self, **changes) -> SniperConfig:
        values = self._config.to_dict()
        values.update(changes)
        self._config = self._build(values)
        logger.info(f"Config updated: {', '.join(f'{k}={v}' for k, v in changes.items())}")
        return self._config

    def is_auto_buy_enabled(self) -> bool:
        return self._config.auto_buy_enabled

    def enable_auto_buy(self):
        self.update(auto_buy_enabled=True)
        logger.info("Auto-buy ENABLED")

    def set_buy_amount(self, amount: str) -> bool:
        try:
            self.update(buy_amount_base=amount)
            return True
        except InvalidConfig as e:
            logger.warning(f"Buy amount rejected: {e}")
            return False
