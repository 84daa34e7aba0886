"""
HTTP chain provider for PulseChain (poll-only) on web3.py
"""
import asyncio
import logging
from typing import Any, Dict, List

import requests
from web3 import Web3
from web3.exceptions import TransactionNotFound

from modules.async_pool import retry_with_backoff
from sniper_errors import ConfirmationFailed, TransientProviderError
from .base_adapter import ChainProvider, normalize_log, normalize_receipt

logger = logging.getLogger(__name__)


class EVMAdapter(ChainProvider):
    """Pull-only provider: every call is an HTTP JSON-RPC request"""

    def __init__(self, config: dict):
        super().__init__(config)
        self.w3 = None
        self.rpc_urls = [u for u in (config.get('rpc_url'), config.get('fallback_rpc_url')) if u]
        self.rpc_timeout = config.get('rpc_timeout', 10)
        self.receipt_poll_interval = config.get('receipt_poll_interval', 2)

        # HTTP keep-alive
        self.session = requests.Session()

    async def connect(self) -> bool:
        """Connect to the first responsive RPC endpoint"""
        for url in self.rpc_urls:
            w3 = Web3(Web3.HTTPProvider(url, request_kwargs={'timeout': self.rpc_timeout},
                                        session=self.session))
            try:
                connected = await asyncio.wait_for(asyncio.to_thread(w3.is_connected),
                                                   timeout=self.rpc_timeout)
            except asyncio.TimeoutError:
                connected = False

            if connected:
                self.w3 = w3
                logger.info(f"✅ {self.get_chain_prefix()} Connected to {url}")
                return True
            logger.warning(f"❌ {self.get_chain_prefix()} Could not connect to RPC {url}")

        return False

    def _require_connection(self):
        if self.w3 is None:
            raise TransientProviderError(f"{self.get_chain_prefix()} provider not connected")

    async def _run_with_timeout(self, func, *args, timeout=None):
        """Run blocking call in thread with timeout"""
        self._require_connection()
        timeout = timeout or self.rpc_timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
        except asyncio.TimeoutError:
            raise TransientProviderError(f"{self.get_chain_prefix()} RPC timeout ({timeout}s)")
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientProviderError(f"{self.get_chain_prefix()} RPC error: {e}") from e

    @retry_with_backoff(max_retries=3, base_delay=0.5)
    async def get_block_number(self) -> int:
        return await self._run_with_timeout(lambda: self.w3.eth.block_number)

    @retry_with_backoff(max_retries=3, base_delay=0.5)
    async def get_block(self, number: int) -> Dict:
        block = await self._run_with_timeout(lambda: self.w3.eth.get_block(number))
        return {
            'number': block['number'],
            'timestamp': block['timestamp'],
            'hash': Web3.to_hex(block['hash']) if block.get('hash') else None,
        }

    @retry_with_backoff(max_retries=3, base_delay=0.5)
    async def get_logs(self, log_filter: Dict) -> List[Dict]:
        raw_logs = await self._run_with_timeout(lambda: self.w3.eth.get_logs(log_filter))
        return [normalize_log(dict(log)) for log in raw_logs]

    async def call(self, address: str, abi: list, fn_name: str, *args) -> Any:
        self._require_connection()
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        fn = contract.get_function_by_name(fn_name)(*args)
        return await self._run_with_timeout(fn.call)

    async def estimate_gas(self, tx: Dict) -> int:
        return await self._run_with_timeout(lambda: self.w3.eth.estimate_gas(tx))

    @retry_with_backoff(max_retries=3, base_delay=0.5)
    async def get_transaction_count(self, address: str, block: str = 'pending') -> int:
        checksum = Web3.to_checksum_address(address)
        return await self._run_with_timeout(lambda: self.w3.eth.get_transaction_count(checksum, block))

    @retry_with_backoff(max_retries=3, base_delay=0.5)
    async def get_gas_price(self) -> int:
        return await self._run_with_timeout(lambda: self.w3.eth.gas_price)

    @retry_with_backoff(max_retries=3, base_delay=0.5)
    async def get_balance(self, address: str) -> int:
        checksum = Web3.to_checksum_address(address)
        return await self._run_with_timeout(lambda: self.w3.eth.get_balance(checksum))

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        tx_hash = await self._run_with_timeout(lambda: self.w3.eth.send_raw_transaction(raw_tx))
        return Web3.to_hex(tx_hash)

    async def _get_receipt(self, tx_hash: str):
        def fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None
        return await self._run_with_timeout(fetch)

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1,
                                    timeout: float = 120) -> Dict:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                receipt = await self._get_receipt(tx_hash)
                if receipt is not None:
                    receipt = normalize_receipt(dict(receipt))
                    current = await self.get_block_number()
                    if current - receipt['blockNumber'] + 1 >= confirmations:
                        return receipt
            except TransientProviderError as e:
                logger.debug(f"⚠️  {self.get_chain_prefix()} Receipt poll failed for {tx_hash}: {e}")

            if loop.time() >= deadline:
                raise ConfirmationFailed(f"No confirmation for {tx_hash} after {timeout}s")
            await asyncio.sleep(self.receipt_poll_interval)

    async def close(self):
        self.session.close()
