import unittest

from fake_chain import LAUNCH_CONTRACT, WPLS, FakeChainProvider, token_address
from modules.events import MintEvent, PairCreatedEvent
from modules.token_info import TokenInfoService
from sniper_errors import TransientProviderError

TOKEN = token_address(0x70C3)


def mint(token=TOKEN, amount=1_500_000_000, block=200):
    return MintEvent(token_address=token, recipient=LAUNCH_CONTRACT, amount=amount, block_number=block,
                     tx_hash=f"0x{block:064x}", timestamp=1_700_000_000, log_index=0)


class TestTokenInfo(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.provider = FakeChainProvider()
        self.provider.set_token(TOKEN, name="Launch", symbol="LNCH", decimals=9, total_supply=10 ** 18)
        self.info = TokenInfoService(self.provider, watched_address=LAUNCH_CONTRACT, base_delay=0)

    def reads(self, fn_name):
        return len([c for c in self.provider.call_log if c[1] == fn_name])

    async def test_metadata_cached_once_resolved(self):
        metadata = await self.info.get_metadata(TOKEN)
        await self.info.get_metadata(TOKEN.lower())

        self.assertEqual((metadata.name, metadata.symbol, metadata.decimals), ("Launch", "LNCH", 9))
        self.assertEqual(metadata.to_dict()['total_supply'], str(10 ** 18))
        self.assertEqual(self.reads('symbol'), 1)

    async def test_each_field_falls_back_on_its_own(self):
        self.provider.set_call(TOKEN, 'name', ValueError("execution reverted"))

        metadata = await self.info.get_metadata(TOKEN)

        self.assertEqual(metadata.name, "Unknown Token")
        self.assertEqual(metadata.decimals, 9)
        self.assertTrue(metadata.resolved)
        # partial results are asked for again
        await self.info.get_metadata(TOKEN)
        self.assertEqual(self.reads('decimals'), 2)

    async def test_nothing_resolved(self):
        metadata = await self.info.get_metadata(token_address(0xDEAD))
        self.assertFalse(metadata.resolved)
        self.assertEqual((metadata.symbol, metadata.decimals, metadata.total_supply), ("UNKNOWN", 18, 0))

    async def test_transient_reads_are_retried(self):
        self.provider.set_call(TOKEN, 'symbol', TransientProviderError("429"))
        await self.info.get_metadata(TOKEN)
        self.assertEqual(self.reads('symbol'), 3)

    async def test_enrich_mints(self):
        enriched = await self.info.enrich_mints([mint()])

        self.assertEqual(enriched[0]['formatted_amount'], "1.5")
        self.assertEqual(enriched[0]['token_info']['symbol'], "LNCH")
        self.assertEqual(enriched[0]['amount'], "1500000000")

    async def test_enrich_caps_the_batch(self):
        self.info.max_mints = 2
        enriched = await self.info.enrich_mints([mint(block=b) for b in (203, 202, 201)])
        self.assertEqual([e['block_number'] for e in enriched], [203, 202])

    async def test_enrich_pairs_reports_watched_balances(self):
        self.provider.set_call(TOKEN, 'balanceOf', 5)
        pair = PairCreatedEvent(token0=TOKEN, token1=WPLS, pair_address=token_address(0xBA1),
                                block_number=201, tx_hash="0x" + "ab" * 32, timestamp=1_700_000_000,
                                factory_version="v1")

        enriched = (await self.info.enrich_pairs([pair]))[0]

        self.assertEqual(enriched['token0_info']['symbol'], "LNCH")
        self.assertEqual(enriched['token1_info']['symbol'], "UNKNOWN")
        self.assertEqual(enriched['watched_address_involvement'], {
            'has_token0': True, 'has_token1': False, 'token0_balance': "5", 'token1_balance': "0",
        })


if __name__ == "__main__":
    unittest.main()
