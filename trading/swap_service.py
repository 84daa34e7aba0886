"""
Swap Service
Buys and sells tokens against PLS through the PulseX router.

    quote -> min_out (integer basis points) -> gas estimate * multiplier
          -> [approve, sell side only] -> submit

Returns as soon as the swap is submitted; confirmation is the caller's job.
Nothing here retries: a failed step raises its own error type.
"""

import logging
import time
from decimal import Decimal
from typing import Dict, List, Optional, Union

from web3 import Web3

from chain_adapters.abis import ERC20_ABI, MAX_UINT256, ROUTER_ABI, encode_function_call
from safe_math import format_units, round_half_up, to_decimal
from sniper_errors import (
    ConfirmationFailed, GasEstimationFailed, InsufficientAllowance, InsufficientFunds,
    NotInitialized, QuoteUnavailable, SniperError, SubmissionFailed,
)
from .models import SwapSubmission
from .wallet_manager import WalletManager

logger = logging.getLogger(__name__)

DEADLINE_BUFFER = 300  # seconds


def slippage_to_bps(slippage_percent: Union[int, float, str, Decimal]) -> int:
    """10.5 -> 1050"""
    return round_half_up(to_decimal(slippage_percent) * 100)


def min_amount_out(expected_out: int, slippage_percent: Union[int, float, str, Decimal]) -> int:
    """expected_out * (10000 - bps) // 10000, integer math only"""
    bps = slippage_to_bps(slippage_percent)
    if not 0 <= bps < 10000:
        raise ValueError(f"Slippage out of range: {slippage_percent}")
    return expected_out * (10000 - bps) // 10000


def gas_limit(estimated_gas: int, multiplier: Union[int, float, str, Decimal]) -> int:
    """floor(estimated_gas * multiplier)"""
    return int(Decimal(estimated_gas) * to_decimal(multiplier))


class SwapService:
    def __init__(self, provider, wallet: WalletManager, router_address: str, wrapped_native: str,
                 deadline_buffer: int = DEADLINE_BUFFER):
        self.provider = provider
        self.wallet = wallet
        self.router_address = Web3.to_checksum_address(router_address)
        self.wrapped_native = Web3.to_checksum_address(wrapped_native)
        self.deadline_buffer = deadline_buffer

    def _recipient(self) -> str:
        if not self.wallet.is_loaded:
            raise NotInitialized("Wallet not initialized")
        return self.wallet.address

    def _deadline(self) -> int:
        return int(time.time()) + self.deadline_buffer

    async def quote(self, amount_in: int, path: List[str]) -> int:
        """Router getAmountsOut; the last hop's amount"""
        try:
            amounts = await self.provider.call(self.router_address, ROUTER_ABI, 'getAmountsOut', amount_in, path)
        except Exception as e:
            raise QuoteUnavailable(f"No quote for {path[0]} -> {path[-1]}: {e}") from e
        if not amounts or int(amounts[-1]) <= 0:
            raise QuoteUnavailable(f"Zero quote for {path[0]} -> {path[-1]}")
        return int(amounts[-1])

    async def _estimate_gas(self, tx: Dict, multiplier) -> int:
        try:
            estimated = await self.provider.estimate_gas(tx)
        except Exception as e:
            if 'insufficient funds' in str(e).lower():
                raise InsufficientFunds(str(e)) from e
            raise GasEstimationFailed(str(e)) from e
        return gas_limit(estimated, multiplier)

    @staticmethod
    def _apply_gas_price(tx: Dict, gas_price_gwei: Optional[str]):
        if gas_price_gwei:
            tx['gasPrice'] = Web3.to_wei(to_decimal(gas_price_gwei), 'gwei')

    async def buy(self, token_address: str, amount_base: str, slippage_percent,
                  gas_multiplier=1.2, gas_price_gwei: Optional[str] = None) -> SwapSubmission:
        """Spend `amount_base` PLS on `token_address` (swapExactETHForTokens)"""
        recipient = self._recipient()
        token = Web3.to_checksum_address(token_address)
        amount_in = Web3.to_wei(to_decimal(amount_base), 'ether')
        path = [self.wrapped_native, token]

        expected_out = await self.quote(amount_in, path)
        min_out = min_amount_out(expected_out, slippage_percent)
        logger.info(f"🛒 Buy quote {token}: {amount_base} PLS -> {expected_out} raw "
                    f"(min {min_out} @ {slippage_percent}% slippage)")

        tx = {
            'from': recipient,
            'to': self.router_address,
            'data': encode_function_call(ROUTER_ABI, 'swapExactETHForTokens',
                                         min_out, path, recipient, self._deadline()),
            'value': amount_in,
        }
        tx['gas'] = await self._estimate_gas(tx, gas_multiplier)
        self._apply_gas_price(tx, gas_price_gwei)

        tx_hash = await self.wallet.send_transaction(tx)
        return SwapSubmission(tx_hash=tx_hash, amount_in=amount_in, expected_out=expected_out,
                              min_out=min_out, path=path)

    async def ensure_allowance(self, token_address: str, amount: int,
                               gas_multiplier=1.2, gas_price_gwei: Optional[str] = None) -> Optional[str]:
        """
        Approve the router for MAX_UINT256 if the allowance is below `amount`.
        Waits for the approval to confirm. Returns the approval tx hash, or None.
        """
        owner = self._recipient()
        token = Web3.to_checksum_address(token_address)
        try:
            allowance = int(await self.provider.call(token, ERC20_ABI, 'allowance', owner, self.router_address))
        except Exception as e:
            raise InsufficientAllowance(f"Allowance check failed for {token}: {e}") from e

        if allowance >= amount:
            return None

        logger.info(f"🔓 Approving router for {token}")
        tx = {
            'from': owner,
            'to': token,
            'data': encode_function_call(ERC20_ABI, 'approve', self.router_address, MAX_UINT256),
            'value': 0,
        }
        try:
            tx['gas'] = await self._estimate_gas(tx, gas_multiplier)
            self._apply_gas_price(tx, gas_price_gwei)
            tx_hash = await self.wallet.send_transaction(tx)
            await self.wallet.wait_for_confirmation(tx_hash)
        except (GasEstimationFailed, SubmissionFailed, InsufficientFunds, ConfirmationFailed) as e:
            raise InsufficientAllowance(f"Approval failed for {token}: {e}") from e

        logger.info(f"✅ Router approved for {token}: {tx_hash}")
        return tx_hash

    async def sell(self, token_address: str, amount_raw: int, slippage_percent,
                   gas_multiplier=1.2, gas_price_gwei: Optional[str] = None) -> SwapSubmission:
        """Sell `amount_raw` token units for PLS (swapExactTokensForETH)"""
        recipient = self._recipient()
        token = Web3.to_checksum_address(token_address)
        if amount_raw <= 0:
            raise SniperError(f"Nothing to sell for {token}")
        path = [token, self.wrapped_native]

        expected_out = await self.quote(amount_raw, path)
        min_out = min_amount_out(expected_out, slippage_percent)
        logger.info(f"💸 Sell quote {token}: {amount_raw} raw -> {format_units(expected_out)} PLS "
                    f"(min {format_units(min_out)} @ {slippage_percent}% slippage)")

        await self.ensure_allowance(token, amount_raw, gas_multiplier, gas_price_gwei)

        tx = {
            'from': recipient,
            'to': self.router_address,
            'data': encode_function_call(ROUTER_ABI, 'swapExactTokensForETH',
                                         amount_raw, min_out, path, recipient, self._deadline()),
            'value': 0,
        }
        tx['gas'] = await self._estimate_gas(tx, gas_multiplier)
        self._apply_gas_price(tx, gas_price_gwei)

        tx_hash = await self.wallet.send_transaction(tx)
        return SwapSubmission(tx_hash=tx_hash, amount_in=amount_raw, expected_out=expected_out,
                              min_out=min_out, path=path)

    async def get_token_price(self, token_address: str, decimals: int = 18) -> str:
        """PLS received for one whole token, as a decimal string. Raises QuoteUnavailable."""
        token = Web3.to_checksum_address(token_address)
        out = await self.quote(10 ** decimals, [token, self.wrapped_native])
        return format_units(out, 18)
