"""
Wallet Management
Holds the sniper's signing key, signs and submits transactions.

The key never leaves this object: callers hand over an unsigned tx dict
and get a transaction hash back.
"""

import asyncio
import logging
from typing import Dict, Optional

from eth_account import Account
from web3 import Web3

from sniper_errors import (
    ConfirmationFailed, InsufficientFunds, NotInitialized, SubmissionFailed,
)

logger = logging.getLogger(__name__)


class WalletManager:
    """Single EVM wallet bound to one chain provider."""

    def __init__(self, provider, chain_id: int = 369, confirmation_timeout: float = 120):
        self.provider = provider
        self.chain_id = chain_id
        self.confirmation_timeout = confirmation_timeout
        self._account = None
        # Nonce fetch + send must not interleave
        self._send_lock = asyncio.Lock()

    def import_wallet(self, private_key: str) -> bool:
        """
        Import wallet from a hex private key (with or without 0x).

        Returns:
            True if successful, False otherwise
        """
        try:
            if not private_key.startswith('0x'):
                private_key = '0x' + private_key

            self._account = Account.from_key(private_key)
            logger.info(f"[PULSECHAIN] Wallet imported: {self._account.address}")
            return True
        except Exception as e:
            # The key itself is never logged
            logger.error(f"Failed to import wallet: {type(e).__name__}")
            return False

    @property
    def is_loaded(self) -> bool:
        return self._account is not None

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def _require_account(self):
        if self._account is None:
            raise NotInitialized("Wallet not initialized. Import a private key first.")
        return self._account

    async def get_balance(self) -> int:
        """Native PLS balance in wei"""
        account = self._require_account()
        return await self.provider.get_balance(account.address)

    async def send_transaction(self, tx: Dict) -> str:
        """
        Sign and submit a transaction.

        Fills nonce ('pending'), chainId and gasPrice when missing.

        Raises:
            InsufficientFunds: node reports the balance cannot cover value + gas
            SubmissionFailed: any other rejection
        """
        account = self._require_account()
        tx_to_sign = {k: v for k, v in tx.items() if k != 'from'}
        if tx_to_sign.get('to'):
            tx_to_sign['to'] = Web3.to_checksum_address(tx_to_sign['to'])
        tx_to_sign.setdefault('value', 0)
        tx_to_sign.setdefault('chainId', self.chain_id)

        async with self._send_lock:
            try:
                if 'nonce' not in tx_to_sign:
                    tx_to_sign['nonce'] = await self.provider.get_transaction_count(account.address, 'pending')
                if 'gasPrice' not in tx_to_sign and 'maxFeePerGas' not in tx_to_sign:
                    tx_to_sign['gasPrice'] = await self.provider.get_gas_price()

                signed_tx = account.sign_transaction(tx_to_sign)
                tx_hash = await self.provider.send_raw_transaction(signed_tx.raw_transaction)
            except Exception as e:
                if 'insufficient funds' in str(e).lower():
                    raise InsufficientFunds(str(e)) from e
                raise SubmissionFailed(str(e)) from e

        logger.info(f"📤 Transaction sent: {tx_hash} (to {tx_to_sign.get('to')}, "
                    f"value {tx_to_sign['value']}, nonce {tx_to_sign['nonce']})")
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1) -> Dict:
        """
        Wait for the receipt; raises ConfirmationFailed if it reverted or never came.
        """
        logger.info(f"⏳ Waiting for {confirmations} confirmation(s) for {tx_hash}")
        receipt = await self.provider.wait_for_confirmation(
            tx_hash, confirmations=confirmations, timeout=self.confirmation_timeout
        )
        if not receipt or receipt.get('status') != 1:
            raise ConfirmationFailed(f"Transaction {tx_hash} reverted")

        logger.info(f"✅ Transaction confirmed: {tx_hash} (block {receipt.get('blockNumber')}, "
                    f"gas used {receipt.get('gasUsed')})")
        return receipt

    def disconnect(self):
        self._account = None
        logger.info("Wallet disconnected")
