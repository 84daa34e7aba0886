"""
Normalized chain events emitted by the watchers
"""
from dataclasses import dataclass, asdict
from typing import ClassVar, Dict, Tuple, Union


@dataclass(frozen=True)
class PairCreatedEvent:
    """PairCreated log from a PulseX factory"""
    token0: str
    token1: str
    pair_address: str
    block_number: int
    tx_hash: str
    timestamp: int
    factory_version: str
    log_index: int = 0

    kind: ClassVar[str] = "pair"

    @property
    def identity(self) -> Tuple[str, int]:
        return (self.pair_address.lower(), self.block_number)

    def involves(self, address: str) -> bool:
        address = address.lower()
        return address in (self.token0.lower(), self.token1.lower())

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["type"] = self.kind
        return data


@dataclass(frozen=True)
class MintEvent:
    """ERC-20 Transfer from the zero address to the watched address"""
    token_address: str
    recipient: str
    amount: int
    block_number: int
    tx_hash: str
    timestamp: int
    log_index: int

    kind: ClassVar[str] = "mint"

    @property
    def identity(self) -> Tuple[str, int]:
        return (self.tx_hash.lower(), self.log_index)

    def to_dict(self) -> Dict:
        data = asdict(self)
        # uint256 does not fit JSON numbers
        data["amount"] = str(self.amount)
        data["type"] = self.kind
        return data


ChainEvent = Union[PairCreatedEvent, MintEvent]
