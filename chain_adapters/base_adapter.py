"""
Chain provider base interface for PulseChain access
"""
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

from web3 import Web3


def _to_bytes(value) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return Web3.to_bytes(hexstr=value)


def _to_int(value) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16) if str(value).startswith("0x") else int(value)


def _to_hex(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.lower()
    return Web3.to_hex(value)


def normalize_log(raw: Dict) -> Dict:
    """
    Normalize a log from web3.py (HexBytes/AttributeDict) or raw JSON-RPC (hex strings).

    Returns: {'address', 'topics' (bytes), 'data' (bytes), 'blockNumber',
              'transactionHash', 'logIndex', 'removed'}
    """
    return {
        'address': Web3.to_checksum_address(raw['address']),
        'topics': [_to_bytes(t) for t in raw.get('topics', [])],
        'data': _to_bytes(raw.get('data')),
        'blockNumber': _to_int(raw.get('blockNumber')),
        'transactionHash': _to_hex(raw.get('transactionHash')),
        'logIndex': _to_int(raw.get('logIndex')),
        'removed': bool(raw.get('removed', False)),
    }


def normalize_receipt(raw: Dict) -> Dict:
    return {
        'transactionHash': _to_hex(raw.get('transactionHash')),
        'status': _to_int(raw.get('status')),
        'blockNumber': _to_int(raw.get('blockNumber')),
        'gasUsed': _to_int(raw.get('gasUsed')),
    }


class SubscriptionHandle:
    """Live push subscription; unsubscribe() is idempotent"""

    def __init__(self, subscription_id: str, unsubscribe: Callable[[str], Awaitable[Any]]):
        self.id = subscription_id
        self._unsubscribe = unsubscribe
        self.active = True

    async def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        await self._unsubscribe(self.id)


class ChainProvider(ABC):
    """Base interface for chain access used by watchers and the trading core"""

    def __init__(self, config: dict):
        self.config = config
        self.chain_name = config.get('name', 'pulsechain')
        self.chain_id = config.get('chain_id')

    @property
    def supports_subscriptions(self) -> bool:
        """True when subscribe() delivers logs by push"""
        return False

    @abstractmethod
    async def connect(self) -> bool:
        """Connect to the chain and verify connectivity"""
        pass

    @abstractmethod
    async def get_block_number(self) -> int:
        pass

    @abstractmethod
    async def get_block(self, number: int) -> Dict:
        """
        Fetch a block header.
        Returns: {'number': int, 'timestamp': int, 'hash': str}
        """
        pass

    @abstractmethod
    async def get_logs(self, log_filter: Dict) -> List[Dict]:
        """
        Query logs for a filter {'fromBlock', 'toBlock', 'address', 'topics'}.
        Returns normalized logs (see normalize_log).
        """
        pass

    @abstractmethod
    async def call(self, address: str, abi: list, fn_name: str, *args) -> Any:
        """Call a contract read method"""
        pass

    @abstractmethod
    async def estimate_gas(self, tx: Dict) -> int:
        pass

    @abstractmethod
    async def get_transaction_count(self, address: str, block: str = 'pending') -> int:
        pass

    @abstractmethod
    async def get_gas_price(self) -> int:
        pass

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Native balance in wei"""
        pass

    @abstractmethod
    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        """Submit a signed transaction, returns the tx hash"""
        pass

    @abstractmethod
    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1,
                                    timeout: float = 120) -> Dict:
        """
        Wait until the transaction has `confirmations` blocks on top.
        Returns the normalized receipt; raises ConfirmationFailed on timeout.
        """
        pass

    async def subscribe(self, log_filter: Dict, handler: Callable[[Dict], Any],
                        on_closed: Optional[Callable[[], Any]] = None) -> Optional[SubscriptionHandle]:
        """
        Register a push subscription for logs matching the filter.

        on_closed is called once if the channel dies under the subscription;
        nothing is pushed after that.
        """
        raise NotImplementedError(f"{self.chain_name} provider has no push subscriptions")

    async def close(self):
        """Release connections"""
        pass

    def get_chain_prefix(self) -> str:
        """Return chain prefix for log lines"""
        return f"[{self.chain_name.upper()}]"
