"""
Token metadata, balances and batch enrichment of detected events
"""
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from web3 import Web3

from chain_adapters.abis import ERC20_ABI
from modules.async_pool import async_pool, with_retry
from modules.events import MintEvent, PairCreatedEvent
from safe_math import format_units

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown Token"
UNKNOWN_SYMBOL = "UNKNOWN"
DEFAULT_DECIMALS = 18


@dataclass(frozen=True)
class TokenMetadata:
    """ERC-20 metadata; `resolved` is False when every field is a placeholder"""
    address: str
    name: str = UNKNOWN_NAME
    symbol: str = UNKNOWN_SYMBOL
    decimals: int = DEFAULT_DECIMALS
    total_supply: int = 0
    resolved: bool = False

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["total_supply"] = str(self.total_supply)
        return data


def placeholder_metadata(address: str) -> TokenMetadata:
    return TokenMetadata(address=address)


class TokenInfoService:
    """
    Cached ERC-20 lookups.

    Each field falls back on its own, so a token with a broken name()
    still reports its real decimals. Fully resolved metadata is cached
    forever; partial results are asked for again next time.
    """

    def __init__(self, provider, watched_address: Optional[str] = None, concurrency: int = 3,
                 retries: int = 2, base_delay: float = 0.25, max_mints: int = 30, max_pairs: int = 20):
        self.provider = provider
        self.watched_address = watched_address
        self.concurrency = concurrency
        self.retries = retries
        self.base_delay = base_delay
        self.max_mints = max_mints
        self.max_pairs = max_pairs

        # METADATA CACHE
        self.metadata_cache: Dict[str, TokenMetadata] = {}

    async def _read(self, token: str, fn_name: str, *args):
        return await with_retry(
            lambda: self.provider.call(token, ERC20_ABI, fn_name, *args),
            max_attempts=self.retries + 1,
            base_delay=self.base_delay,
            name=fn_name,
        )

    async def get_metadata(self, token_address: str) -> TokenMetadata:
        """Never raises; unknown fields carry placeholder values"""
        key = token_address.lower()
        if key in self.metadata_cache:
            return self.metadata_cache[key]

        results = await asyncio.gather(
            self._read(token_address, 'name'),
            self._read(token_address, 'symbol'),
            self._read(token_address, 'decimals'),
            self._read(token_address, 'totalSupply'),
            return_exceptions=True,
        )
        name, symbol, decimals, total_supply = results
        failed = [r for r in results if isinstance(r, BaseException)]

        metadata = TokenMetadata(
            address=Web3.to_checksum_address(token_address),
            name=name if isinstance(name, str) and name else UNKNOWN_NAME,
            symbol=symbol if isinstance(symbol, str) and symbol else UNKNOWN_SYMBOL,
            decimals=int(decimals) if isinstance(decimals, int) else DEFAULT_DECIMALS,
            total_supply=int(total_supply) if isinstance(total_supply, int) else 0,
            resolved=len(failed) < len(results),
        )

        if failed:
            logger.warning(f"⚠️  Metadata incomplete for {token_address}: {failed[0]}")
        else:
            self.metadata_cache[key] = metadata
        return metadata

    async def get_balance(self, token_address: str, holder: str) -> int:
        """Raw ERC-20 balance of `holder`"""
        return int(await self._read(token_address, 'balanceOf', Web3.to_checksum_address(holder)))

    async def _safe_balance(self, token_address: str, holder: str) -> int:
        try:
            return await self.get_balance(token_address, holder)
        except Exception as e:
            logger.debug(f"⚠️  Balance lookup failed for {token_address}: {e}")
            return 0

    async def enrich_mints(self, mints: List[MintEvent]) -> List[Dict]:
        """Attach token metadata and a human amount to the newest mints"""
        async def enrich(mint: MintEvent) -> Dict:
            info = await self.get_metadata(mint.token_address)
            data = mint.to_dict()
            data['token_info'] = info.to_dict()
            data['formatted_amount'] = format_units(mint.amount, info.decimals)
            return data

        return await async_pool(self.concurrency, mints[:self.max_mints], enrich)

    async def enrich_pairs(self, pairs: List[PairCreatedEvent]) -> List[Dict]:
        """Attach metadata of both tokens and the watched address's balances"""
        async def enrich(pair: PairCreatedEvent) -> Dict:
            info0, info1 = await asyncio.gather(
                self.get_metadata(pair.token0), self.get_metadata(pair.token1)
            )
            data = pair.to_dict()
            data['token0_info'] = info0.to_dict()
            data['token1_info'] = info1.to_dict()

            if self.watched_address:
                balance0, balance1 = await asyncio.gather(
                    self._safe_balance(pair.token0, self.watched_address),
                    self._safe_balance(pair.token1, self.watched_address),
                )
                data['watched_address_involvement'] = {
                    'has_token0': balance0 > 0,
                    'has_token1': balance1 > 0,
                    'token0_balance': str(balance0),
                    'token1_balance': str(balance1),
                }
            return data

        return await async_pool(self.concurrency, pairs[:self.max_pairs], enrich)
