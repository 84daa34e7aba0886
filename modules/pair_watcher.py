"""
PairWatcher - PairCreated events from the PulseX v1 and v2 factories
"""
import logging
from typing import Dict, List, Optional

from web3 import Web3

from chain_adapters.abis import PAIR_CREATED_TOPIC, topic_to_address
from modules.base_watcher import EventWatcher
from modules.events import PairCreatedEvent

logger = logging.getLogger(__name__)

PAIR_CREATED_TOPIC_BYTES = Web3.to_bytes(hexstr=PAIR_CREATED_TOPIC)


class PairWatcher(EventWatcher):
    """
    Detects new liquidity pairs.

    Args:
        provider: ChainProvider
        factories: {'v1': address, 'v2': address}
    """

    name = "pairs"

    def __init__(self, provider, factories: Dict[str, str], **kwargs):
        super().__init__(provider, **kwargs)
        self.factories = {version: Web3.to_checksum_address(addr) for version, addr in factories.items()}
        self._versions = {addr.lower(): version for version, addr in self.factories.items()}

    def build_filters(self, filter_target: Optional[str] = None) -> List[Dict]:
        # Indexed token0/token1 cannot be OR-ed in one filter; the target is matched in accepts()
        return [{
            'address': list(self.factories.values()),
            'topics': [PAIR_CREATED_TOPIC],
        }]

    def parse_log(self, log: Dict) -> Optional[PairCreatedEvent]:
        version = self._versions.get(log['address'].lower())
        topics = log.get('topics', [])
        if version is None or len(topics) < 3 or topics[0] != PAIR_CREATED_TOPIC_BYTES:
            return None

        data = log.get('data', b'')
        if len(data) < 32:
            raise ValueError(f"PairCreated data too short ({len(data)} bytes)")

        return PairCreatedEvent(
            token0=topic_to_address(topics[1]),
            token1=topic_to_address(topics[2]),
            pair_address=Web3.to_checksum_address(data[12:32]),
            block_number=log['blockNumber'],
            tx_hash=log['transactionHash'],
            timestamp=0,
            factory_version=version,
            log_index=log.get('logIndex', 0),
        )

    def accepts(self, event: PairCreatedEvent, filter_target: Optional[str]) -> bool:
        if not filter_target:
            return True
        return event.involves(filter_target)

    async def get_recent_pairs(self, block_range: Optional[int] = None,
                               filter_target: Optional[str] = None) -> List[PairCreatedEvent]:
        """Pairs created in the last `block_range` blocks, newest first"""
        return await self.get_recent(block_range, filter_target)
