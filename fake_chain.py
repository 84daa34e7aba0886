"""
In-memory ChainProvider for tests

Blocks, logs, contract reads, gas estimates and receipts are all scripted;
nothing touches the network. Logs are stored normalized (see normalize_log)
and matched against filters the way a node would: address, topic
positions and block range.
"""
import itertools
from typing import Any, Callable, Dict, List, Optional

from web3 import Web3

from chain_adapters.abis import PAIR_CREATED_TOPIC, TRANSFER_TOPIC, ZERO_ADDRESS
from chain_adapters.base_adapter import ChainProvider, SubscriptionHandle
from sniper_errors import ConfirmationFailed, TransientProviderError

TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

LAUNCH_CONTRACT = "0x6538A83a81d855B965983161AF6a83e616D16fD5"
WPLS = "0xA1077a294dDE1B09bB078844df40758a5D0f9a27"
ROUTER = "0x98bf93ebf5c380C0e6Ae8e192A7e2AE08edAcc02"
FACTORY_V1 = "0x1715a3E4A142d8b698131108995174F37aEBA10D"
FACTORY_V2 = "0x29eA7545DEf87022BAdc76323F373EA1e707C523"

BASE_TIMESTAMP = 1_700_000_000


def token_address(n: int) -> str:
    return Web3.to_checksum_address("0x" + f"{n:040x}")


def _address_topic_bytes(address: str) -> bytes:
    return bytes(12) + Web3.to_bytes(hexstr=address)


def mint_log(token: str, recipient: str, amount: int, block: int, log_index: int = 0,
             tx_hash: Optional[str] = None, sender: str = ZERO_ADDRESS) -> Dict:
    return {
        'address': Web3.to_checksum_address(token),
        'topics': [
            Web3.to_bytes(hexstr=TRANSFER_TOPIC),
            _address_topic_bytes(sender),
            _address_topic_bytes(recipient),
        ],
        'data': amount.to_bytes(32, 'big'),
        'blockNumber': block,
        'transactionHash': tx_hash or f"0x{block:032x}{log_index:032x}",
        'logIndex': log_index,
        'removed': False,
    }


def pair_log(factory: str, token0: str, token1: str, pair: str, block: int, log_index: int = 0,
             tx_hash: Optional[str] = None, data: Optional[bytes] = None) -> Dict:
    if data is None:
        data = _address_topic_bytes(pair) + (1).to_bytes(32, 'big')
    return {
        'address': Web3.to_checksum_address(factory),
        'topics': [
            Web3.to_bytes(hexstr=PAIR_CREATED_TOPIC),
            _address_topic_bytes(token0),
            _address_topic_bytes(token1),
        ],
        'data': data,
        'blockNumber': block,
        'transactionHash': tx_hash or f"0x{block:032x}{log_index:032x}",
        'logIndex': log_index,
        'removed': False,
    }


def _matches(log_filter: Dict, log: Dict) -> bool:
    address = log_filter.get('address')
    if address:
        allowed = address if isinstance(address, list) else [address]
        if log['address'].lower() not in {a.lower() for a in allowed}:
            return False

    for position, wanted in enumerate(log_filter.get('topics', [])):
        if wanted is None:
            continue
        if position >= len(log['topics']):
            return False
        options = wanted if isinstance(wanted, list) else [wanted]
        if Web3.to_hex(log['topics'][position]).lower() not in {o.lower() for o in options}:
            return False

    block = log['blockNumber']
    if 'fromBlock' in log_filter and block < log_filter['fromBlock']:
        return False
    if 'toBlock' in log_filter and block > log_filter['toBlock']:
        return False
    return True


class FakeChainProvider(ChainProvider):

    def __init__(self, block_number: int = 100, push: bool = False):
        super().__init__({'name': 'fakechain', 'chain_id': 369})
        self.block_number = block_number
        self.push = push
        self.connected = False

        self.logs: List[Dict] = []
        self.timestamps: Dict[int, int] = {}
        self.calls: Dict[tuple, Any] = {}
        self.call_log: List[tuple] = []
        self.get_logs_calls: List[Dict] = []
        self.get_block_calls: List[int] = []

        # Failure scripting: number of upcoming calls that raise
        self.fail_get_logs = 0
        self.fail_get_block = 0
        self.subscribe_error: Optional[Exception] = None

        self.gas_estimate = 200_000
        self.gas_error: Optional[Exception] = None
        self.gas_price = 1_000_000_000
        self.native_balance = 10 ** 22
        self.nonce = 0
        self.send_error: Optional[Exception] = None
        self.sent: List[bytes] = []
        self.receipt_status = 1
        self.receipt_statuses: Dict[str, int] = {}
        self.confirmation_error: Optional[Exception] = None
        self.confirmed: List[str] = []

        self._subscriptions: Dict[str, tuple] = {}
        self._sub_ids = itertools.count(1)
        self.unsubscribed: List[str] = []
        self.closed = False

    @property
    def supports_subscriptions(self) -> bool:
        return self.push

    # ---- scripting ----

    def add_log(self, log: Dict):
        """Store a log and push it to matching subscriptions"""
        self.logs.append(log)
        for log_filter, handler, _ in list(self._subscriptions.values()):
            if _matches(log_filter, log):
                handler(log)

    def set_call(self, address: str, fn_name: str, result: Any):
        """result: a value, an Exception to raise, or a callable(*args)"""
        self.calls[(address.lower(), fn_name)] = result

    def set_token(self, address: str, name: str = "Test Token", symbol: str = "TEST",
                  decimals: int = 18, total_supply: int = 10 ** 27, balance: int = 0):
        self.set_call(address, 'name', name)
        self.set_call(address, 'symbol', symbol)
        self.set_call(address, 'decimals', decimals)
        self.set_call(address, 'totalSupply', total_supply)
        self.set_call(address, 'balanceOf', balance)
        self.set_call(address, 'allowance', 0)

    def set_quote(self, rate: Callable[[int, List[str]], int], router: str = ROUTER):
        """getAmountsOut -> [amount_in, rate(amount_in, path)]"""
        self.set_call(router, 'getAmountsOut', lambda amount_in, path: [amount_in, rate(amount_in, path)])

    def drop_push_channel(self):
        """Lose every subscription the way a dropped WebSocket does"""
        subscriptions, self._subscriptions = self._subscriptions, {}
        for _, _, on_closed in subscriptions.values():
            if on_closed is not None:
                on_closed()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # ---- ChainProvider ----

    async def connect(self) -> bool:
        self.connected = True
        return True

    async def get_block_number(self) -> int:
        return self.block_number

    async def get_block(self, number: int) -> Dict:
        self.get_block_calls.append(number)
        if self.fail_get_block > 0:
            self.fail_get_block -= 1
            raise TransientProviderError("get_block timeout")
        return {
            'number': number,
            'timestamp': self.timestamps.get(number, BASE_TIMESTAMP + number * 10),
            'hash': f"0x{number:064x}",
        }

    async def get_logs(self, log_filter: Dict) -> List[Dict]:
        self.get_logs_calls.append(log_filter)
        if self.fail_get_logs > 0:
            self.fail_get_logs -= 1
            raise TransientProviderError("get_logs rate limited")
        return [dict(log) for log in self.logs if _matches(log_filter, log)]

    async def call(self, address: str, abi: list, fn_name: str, *args) -> Any:
        self.call_log.append((address, fn_name, args))
        key = (address.lower(), fn_name)
        if key not in self.calls:
            raise ValueError(f"execution reverted: {fn_name}")
        result = self.calls[key]
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(*args)
        return result

    async def estimate_gas(self, tx: Dict) -> int:
        if self.gas_error is not None:
            raise self.gas_error
        return self.gas_estimate

    async def get_transaction_count(self, address: str, block: str = 'pending') -> int:
        return self.nonce

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def get_balance(self, address: str) -> int:
        return self.native_balance

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw_tx)
        self.nonce += 1
        return Web3.to_hex(Web3.keccak(raw_tx))

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1,
                                    timeout: float = 120) -> Dict:
        if self.confirmation_error is not None:
            raise self.confirmation_error
        self.block_number += 1
        self.confirmed.append(tx_hash)
        return {
            'transactionHash': tx_hash,
            'status': self.receipt_statuses.get(tx_hash, self.receipt_status),
            'blockNumber': self.block_number,
            'gasUsed': 150_000,
        }

    async def subscribe(self, log_filter: Dict, handler, on_closed=None) -> SubscriptionHandle:
        if not self.push:
            return await super().subscribe(log_filter, handler, on_closed)
        if self.subscribe_error is not None:
            raise self.subscribe_error
        sub_id = f"0x{next(self._sub_ids):x}"
        self._subscriptions[sub_id] = (log_filter, handler, on_closed)
        return SubscriptionHandle(sub_id, self._unsubscribe)

    async def _unsubscribe(self, sub_id: str):
        self.unsubscribed.append(sub_id)
        self._subscriptions.pop(sub_id, None)

    async def close(self):
        self.closed = True


class TradingStack:
    """Every trading component wired over one FakeChainProvider and an in-memory DB"""

    def __init__(self, provider: Optional[FakeChainProvider] = None, sniper_config: Optional[Dict] = None):
        from modules.token_info import TokenInfoService
        from trading import (
            ConfigManager, ExecutionEngine, ExitEngine, PositionTracker, PriceMonitor,
            SwapService, TradingDB, WalletManager,
        )

        self.provider = provider or FakeChainProvider()
        self.db = TradingDB(':memory:')
        self.config = ConfigManager(sniper_config)
        self.tracker = PositionTracker(self.db)
        self.wallet = WalletManager(self.provider)
        self.swap = SwapService(self.provider, self.wallet, ROUTER, WPLS)
        self.token_info = TokenInfoService(self.provider, watched_address=LAUNCH_CONTRACT, base_delay=0)
        self.engine = ExecutionEngine(self.wallet, self.swap, self.token_info, self.tracker, self.config,
                                      launch_contract=LAUNCH_CONTRACT, wrapped_native=WPLS)
        self.monitor = PriceMonitor(self.swap, self.tracker, self.token_info, interval=0.01)
        self.exits = ExitEngine(self.engine, self.tracker, self.monitor, self.config)

    def close(self):
        self.db.close()
