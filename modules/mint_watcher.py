"""
MintWatcher - ERC-20 mints to the launch contract

A launch shows up as Transfer(from=0x0, to=<launch contract>) on the new
token's contract. Without a filter target every token is watched; with
one, only that token contract.
"""
import logging
from typing import Dict, List, Optional

from web3 import Web3

from chain_adapters.abis import TRANSFER_TOPIC, ZERO_ADDRESS, address_topic, topic_to_address
from modules.base_watcher import EventWatcher
from modules.events import MintEvent

logger = logging.getLogger(__name__)

TRANSFER_TOPIC_BYTES = Web3.to_bytes(hexstr=TRANSFER_TOPIC)


class MintWatcher(EventWatcher):

    name = "mints"

    def __init__(self, provider, watched_address: str, **kwargs):
        kwargs.setdefault('poll_interval', 3.0)
        super().__init__(provider, **kwargs)
        self.watched_address = Web3.to_checksum_address(watched_address)

    def build_filters(self, filter_target: Optional[str] = None) -> List[Dict]:
        log_filter = {
            'topics': [TRANSFER_TOPIC, address_topic(ZERO_ADDRESS), address_topic(self.watched_address)],
        }
        if filter_target:
            log_filter['address'] = Web3.to_checksum_address(filter_target)
        return [log_filter]

    def parse_log(self, log: Dict) -> Optional[MintEvent]:
        topics = log.get('topics', [])
        # ERC-721 Transfer carries a 4th indexed topic
        if len(topics) != 3 or topics[0] != TRANSFER_TOPIC_BYTES:
            return None

        recipient = topic_to_address(topics[2])
        if int.from_bytes(topics[1], 'big') != 0 or recipient.lower() != self.watched_address.lower():
            return None

        data = log.get('data', b'')
        amount = int.from_bytes(data[:32], 'big') if data else 0

        return MintEvent(
            token_address=Web3.to_checksum_address(log['address']),
            recipient=recipient,
            amount=amount,
            block_number=log['blockNumber'],
            tx_hash=log['transactionHash'],
            timestamp=0,
            log_index=log.get('logIndex', 0),
        )

    def accepts(self, event: MintEvent, filter_target: Optional[str]) -> bool:
        if not filter_target:
            return True
        return event.token_address.lower() == filter_target.lower()

    async def get_recent_mints(self, block_range: Optional[int] = None,
                               filter_target: Optional[str] = None) -> List[MintEvent]:
        """Mints to the launch contract in the last `block_range` blocks, newest first"""
        return await self.get_recent(block_range, filter_target)
