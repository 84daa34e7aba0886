"""
Trade Executor
Orchestrates the snipe flow: Detect -> Quote -> Sign -> Broadcast -> Confirm -> Record

    UNINITIALIZED --initialize(key)--> INITIALIZED --start()--> RUNNING <--> STOPPED

execute_snipe() and sell_token() need a loaded key. handle_chain_event()
only acts while RUNNING with auto-buy on. A trade failure never raises
past this class: it comes back as a result with success=False, and no
record is written for it.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from web3 import Web3

from modules.events import MintEvent, PairCreatedEvent
from modules.token_info import TokenInfoService, placeholder_metadata
from safe_math import decimal_to_str, format_units, parse_units, to_decimal
from sniper_errors import ConfirmationFailed, IllegalTransition, NotInitialized
from .config_manager import ConfigManager, SniperConfig
from .models import SellResult, SnipeResult, TokenPosition
from .position_tracker import PositionTracker
from .swap_service import SwapService
from .trading_state_machine import EngineState, PositionStatus, check_transition
from .wallet_manager import WalletManager

logger = logging.getLogger(__name__)


class ExecutionEngine:
    def __init__(
        self,
        wallet_manager: WalletManager,
        swap_service: SwapService,
        token_info: TokenInfoService,
        position_tracker: PositionTracker,
        config_manager: ConfigManager,
        launch_contract: str,
        wrapped_native: str,
        confirmations: int = 1,
    ):
        self.wm = wallet_manager
        self.swap = swap_service
        self.token_info = token_info
        self.pt = position_tracker
        self.config_manager = config_manager
        self.launch_contract = Web3.to_checksum_address(launch_contract)
        self.wrapped_native = Web3.to_checksum_address(wrapped_native)
        self.confirmations = confirmations

        self.state = EngineState.UNINITIALIZED
        self._in_flight: Set[str] = set()
        self._sell_locks: Dict[str, asyncio.Lock] = {}

        # Callbacks
        self._on_snipe: Optional[Callable[[SnipeResult], Any]] = None
        self._on_position_update: Optional[Callable[[TokenPosition], Any]] = None

    # ---- lifecycle ----

    def _set_state(self, new_state: EngineState):
        check_transition(self.state, new_state, "execution engine")
        self.state = new_state

    def initialize(self, private_key: str):
        """Load the signing key. Raises NotInitialized on an invalid key."""
        if self.state is EngineState.RUNNING:
            raise IllegalTransition("Stop the engine before loading a new key")
        if not self.wm.import_wallet(private_key):
            raise NotInitialized("Invalid private key")
        self._set_state(EngineState.INITIALIZED)
        logger.info(f"🔑 Sniper initialized with wallet {self.wm.address}")

    def start(self):
        if self.state is EngineState.UNINITIALIZED:
            raise NotInitialized("Wallet not initialized. Call initialize() first.")
        if self.state is EngineState.RUNNING:
            return
        self._set_state(EngineState.RUNNING)
        config = self.config_manager.get()
        logger.info(f"🟢 Sniper engine started (auto-buy: {config.auto_buy_enabled}, "
                    f"buy: {config.buy_amount_base} PLS, slippage: {config.slippage_percent}%)")

    def stop(self):
        if self.state is not EngineState.RUNNING:
            return
        self._set_state(EngineState.STOPPED)
        logger.info("🔴 Sniper engine stopped")

    @property
    def running(self) -> bool:
        return self.state is EngineState.RUNNING

    @property
    def initialized(self) -> bool:
        return self.state is not EngineState.UNINITIALIZED and self.wm.is_loaded

    @property
    def wallet_address(self) -> Optional[str]:
        return self.wm.address

    def _require_initialized(self):
        if not self.initialized:
            raise NotInitialized("Wallet not initialized. Call initialize() first.")

    async def get_balance(self) -> str:
        """Native balance as a PLS decimal string"""
        self._require_initialized()
        return format_units(await self.wm.get_balance(), 18)

    # ---- config ----

    def get_config(self) -> SniperConfig:
        return self.config_manager.get()

    def update_config(self, **changes) -> SniperConfig:
        return self.config_manager.update(**changes)

    # ---- callbacks ----

    def on_snipe(self, callback: Callable[[SnipeResult], Any]):
        self._on_snipe = callback

    def on_position_update(self, callback: Callable[[TokenPosition], Any]):
        self._on_position_update = callback

    @staticmethod
    async def _notify(callback, payload):
        if callback is None:
            return
        try:
            result = callback(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"❌ Callback error: {e}")

    # ---- detection ----

    def snipe_target(self, event) -> Optional[str]:
        """Token to buy for this event, or None when the event does not qualify"""
        if isinstance(event, MintEvent):
            if event.recipient.lower() != self.launch_contract.lower():
                return None
            return event.token_address

        if isinstance(event, PairCreatedEvent):
            if not self.config_manager.get().snipe_new_pairs:
                return None
            wpls = self.wrapped_native.lower()
            if event.token0.lower() == wpls:
                return event.token1
            if event.token1.lower() == wpls:
                return event.token0
        return None

    async def handle_chain_event(self, event) -> Optional[SnipeResult]:
        token = self.snipe_target(event)
        if token is None:
            return None

        logger.info(f"🎯 Launch detected: {token} (block {event.block_number}, tx {event.tx_hash})")

        if not self.running or not self.config_manager.get().auto_buy_enabled:
            logger.info("Auto-buy disabled, skipping...")
            return None

        return await self.execute_snipe(token)

    # ---- buy ----

    async def execute_snipe(self, token_address: str) -> SnipeResult:
        """
        Buy `token_address` with the configured amount.

        Raises NotInitialized without a key; every other failure is
        returned as SnipeResult(success=False) with nothing recorded.
        """
        self._require_initialized()
        timestamp = time.time()
        key = token_address.lower()

        if key in self._in_flight or self.pt.is_holding(token_address):
            logger.warning(f"⏭️  Already holding or sniping {token_address}, skipping")
            result = SnipeResult(success=False, token_address=token_address, timestamp=timestamp,
                                 error="Token already held or snipe in progress")
            await self._notify(self._on_snipe, result)
            return result

        self._in_flight.add(key)
        try:
            result = await self._snipe(token_address, timestamp)
        except Exception as e:
            logger.error(f"❌ Snipe failed for {token_address}: {e}")
            result = SnipeResult(success=False, token_address=token_address, timestamp=timestamp, error=str(e))
        finally:
            self._in_flight.discard(key)

        await self._notify(self._on_snipe, result)
        return result

    async def _snipe(self, token_address: str, timestamp: float) -> SnipeResult:
        config = self.config_manager.get()
        logger.info(f"🚀 Executing snipe: {token_address} ({config.buy_amount_base} PLS, "
                    f"{config.slippage_percent}% slippage)")

        try:
            metadata = await self.token_info.get_metadata(token_address)
        except Exception as e:
            logger.warning(f"⚠️  Could not fetch token info, proceeding anyway: {e}")
            metadata = placeholder_metadata(token_address)

        submission = await self.swap.buy(
            token_address,
            config.buy_amount_base,
            config.slippage_percent,
            config.gas_limit_multiplier,
            config.gas_price_gwei,
        )
        logger.info(f"✅ Snipe transaction sent: {submission.tx_hash}")

        await self.wm.wait_for_confirmation(submission.tx_hash, self.confirmations)

        try:
            balance_raw = await self.token_info.get_balance(token_address, self.wm.address)
        except Exception as e:
            logger.warning(f"⚠️  Balance read failed after buy, using quoted amount: {e}")
            balance_raw = submission.expected_out

        if balance_raw <= 0:
            raise ConfirmationFailed(f"Buy {submission.tx_hash} confirmed but no tokens received")

        amount_tokens = format_units(balance_raw, metadata.decimals)
        buy_price = decimal_to_str(to_decimal(config.buy_amount_base) / to_decimal(amount_tokens))

        position = self.pt.record_buy(TokenPosition(
            token_address=Web3.to_checksum_address(token_address),
            symbol=metadata.symbol,
            name=metadata.name,
            buy_tx_hash=submission.tx_hash,
            buy_timestamp=int(timestamp),
            buy_price_base=buy_price,
            amount_tokens=amount_tokens,
            amount_spent_base=config.buy_amount_base,
            decimals=metadata.decimals,
        ))
        await self._notify(self._on_position_update, position)

        logger.info(f"💰 Snipe successful: {amount_tokens} {metadata.symbol} for "
                    f"{config.buy_amount_base} PLS ({buy_price} PLS/token)")
        return SnipeResult(
            success=True,
            token_address=position.token_address,
            timestamp=timestamp,
            tx_hash=submission.tx_hash,
            amount_spent_base=config.buy_amount_base,
            amount_tokens=amount_tokens,
            buy_price_base=buy_price,
            position=position,
        )

    # ---- sell ----

    def _sell_lock(self, token_address: str) -> asyncio.Lock:
        key = token_address.lower()
        if key not in self._sell_locks:
            self._sell_locks[key] = asyncio.Lock()
        return self._sell_locks[key]

    async def sell_token(self, token_address: str, amount: Optional[str] = None,
                         price_hint: Optional[str] = None, slippage_percent=None) -> SellResult:
        """
        Sell the held position (or an explicit `amount` of whole tokens).

        On a confirmed sell of a held position the position becomes sold
        with P/L = (sell - buy) / buy * 100. `price_hint` overrides the
        recorded sell price (the exit engine passes its trigger quote).
        """
        self._require_initialized()
        async with self._sell_lock(token_address):
            return await self._sell(token_address, amount, price_hint, slippage_percent)

    async def _sell(self, token_address, amount, price_hint, slippage_percent) -> SellResult:
        timestamp = time.time()
        config = self.config_manager.get()
        position = self.pt.get_position(token_address)
        holding = position is not None and position.status is PositionStatus.HOLDING

        if amount is None:
            if not holding:
                return SellResult(success=False, token_address=token_address, timestamp=timestamp,
                                  error="No position found for token")
            amount = position.amount_tokens

        try:
            if position is not None:
                decimals = position.decimals
            else:
                decimals = (await self.token_info.get_metadata(token_address)).decimals
            amount_raw = parse_units(amount, decimals)

            logger.info(f"💸 Selling {amount} of {token_address}")
            submission = await self.swap.sell(
                token_address,
                amount_raw,
                slippage_percent if slippage_percent is not None else config.slippage_percent,
                config.gas_limit_multiplier,
                config.gas_price_gwei,
            )
            await self.wm.wait_for_confirmation(submission.tx_hash, self.confirmations)
        except Exception as e:
            logger.error(f"❌ Sell failed for {token_address}: {e}")
            return SellResult(success=False, token_address=token_address, timestamp=timestamp,
                              amount_tokens=str(amount), error=str(e))

        received = format_units(submission.expected_out, 18)
        sell_price = price_hint or decimal_to_str(to_decimal(received) / to_decimal(amount))

        updated = None
        profit_loss = None
        if holding:
            try:
                updated = self.pt.mark_sold(token_address, submission.tx_hash, sell_price)
                profit_loss = updated.profit_loss_percent
                await self._notify(self._on_position_update, updated)
            except IllegalTransition as e:
                logger.warning(f"⚠️  Sold {token_address} but position changed meanwhile: {e}")

        logger.info(f"✅ Sold {amount} of {token_address} for ~{received} PLS "
                    f"(P/L: {profit_loss if profit_loss is not None else 'n/a'}%)")
        return SellResult(
            success=True,
            token_address=token_address,
            timestamp=timestamp,
            tx_hash=submission.tx_hash,
            amount_tokens=str(amount),
            received_base=received,
            sell_price_base=sell_price,
            profit_loss_percent=profit_loss,
            position=updated,
        )
