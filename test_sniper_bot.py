import asyncio
import unittest

from chain_adapters.abis import MAX_UINT256
from fake_chain import (
    FACTORY_V1, FACTORY_V2, LAUNCH_CONTRACT, ROUTER, TEST_PRIVATE_KEY, WPLS,
    FakeChainProvider, mint_log, token_address,
)
from sniper_bot import BotRegistry, SniperBot
from sniper_errors import NotInitialized
from trading import OrderStatus, OrderType, PositionStatus, TradingDB

TOKEN = token_address(0x1A7C)

CHAIN_CONFIG = {
    'chain': {'name': 'fakechain', 'chain_id': 369},
    'dex': {
        'factories': {'v1': FACTORY_V1, 'v2': FACTORY_V2},
        'routers': {'v2': ROUTER},
        'router': 'v2',
        'wrapped_native': WPLS,
    },
    'launch': {'contract': LAUNCH_CONTRACT},
    'watcher': {'pair_poll_interval': 0.01, 'mint_poll_interval': 0.01, 'history_blocks': 50},
    'trading': {'price_check_interval': 60},
    'enrichment': {'retries': 0, 'base_delay': 0},
}


def quote(amount_in, path):
    if path[0].lower() == WPLS.lower():
        return amount_in * 2
    return amount_in


class BotTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.provider = FakeChainProvider()
        self.provider.set_quote(quote)
        self.provider.set_token(TOKEN, symbol="LAUNCH", balance=200 * 10 ** 18)
        self.provider.set_call(TOKEN, 'allowance', MAX_UINT256)
        self.bot = SniperBot(CHAIN_CONFIG, bot_id="test", provider=self.provider, db=TradingDB(':memory:'),
                             sniper_config={'auto_buy_enabled': True, 'auto_sell_enabled': True})
        self.events = self.bot.subscribe()

    async def asyncTearDown(self):
        await self.bot.close()

    async def next_event(self, kind, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            event = await self.events.get(timeout=max(deadline - loop.time(), 0.01))
            if event['type'] == kind:
                return event

    def launch(self, block=101):
        self.provider.add_log(mint_log(TOKEN, LAUNCH_CONTRACT, 10 ** 24, block))
        self.provider.block_number = block


class TestLaunchToExit(BotTestCase):

    async def test_launch_is_sniped_and_protected(self):
        self.bot.initialize(TEST_PRIVATE_KEY)
        await self.bot.start(include_historical=False)
        self.launch()

        mint = await self.next_event('mint')
        snipe = await self.next_event('snipe')

        self.assertEqual(mint['token_address'], TOKEN)
        self.assertTrue(snipe['success'])
        self.assertEqual(snipe['amount_tokens'], "200")
        position = self.bot.get_positions(PositionStatus.HOLDING)[0]
        self.assertEqual(position.symbol, "LAUNCH")

        orders = {o.order_type: o for o in self.bot.get_orders(TOKEN, OrderStatus.PENDING)}
        self.assertEqual(orders[OrderType.TAKE_PROFIT].target_price_base, "1")
        self.assertEqual(orders[OrderType.STOP_LOSS].target_price_base, "0.25")
        self.assertIn(TOKEN, self.bot.status()['monitored_tokens'])

    async def test_backfilled_launch_is_reported_not_bought(self):
        old = token_address(0x01D)
        self.provider.add_log(mint_log(old, LAUNCH_CONTRACT, 10 ** 24, 60))
        self.bot.initialize(TEST_PRIVATE_KEY)
        await self.bot.start()

        backfilled = await self.next_event('mint')
        self.assertEqual(backfilled['token_address'], old)
        self.assertTrue(backfilled['historical'])

        self.launch()
        live = await self.next_event('mint')
        snipe = await self.next_event('snipe')
        await self.bot.stop()

        self.assertFalse(live['historical'])
        self.assertEqual(snipe['token_address'].lower(), TOKEN.lower())
        self.assertEqual([p.token_address.lower() for p in self.bot.get_positions()], [TOKEN.lower()])

    async def test_history_only_start_buys_nothing(self):
        self.provider.add_log(mint_log(TOKEN, LAUNCH_CONTRACT, 10 ** 24, 60))
        self.bot.initialize(TEST_PRIVATE_KEY)
        await self.bot.start()
        await self.next_event('mint')
        await self.bot.stop()

        self.assertEqual(self.bot.get_positions(), [])
        self.assertEqual(self.provider.sent, [])

    async def test_manual_sell_closes_orders(self):
        self.bot.initialize(TEST_PRIVATE_KEY)
        await self.bot.start(include_historical=False)
        await self.bot.execute_snipe(TOKEN)

        result = await self.bot.sell_token(TOKEN)

        self.assertTrue(result.success)
        self.assertEqual(result.profit_loss_percent, "100")
        self.assertEqual(self.bot.get_orders(TOKEN, OrderStatus.PENDING), [])
        self.assertNotIn(TOKEN, self.bot.status()['monitored_tokens'])

    async def test_mark_position_failed(self):
        self.bot.initialize(TEST_PRIVATE_KEY)
        self.bot.engine.start()
        await self.bot.execute_snipe(TOKEN)

        self.bot.mark_position_failed(TOKEN, "honeypot")

        self.assertEqual(self.bot.get_positions(PositionStatus.FAILED)[0].error, "honeypot")
        self.assertEqual(self.bot.get_orders(TOKEN, OrderStatus.PENDING), [])


class TestWatchOnly(BotTestCase):

    async def test_without_wallet_events_still_flow(self):
        await self.bot.start(include_historical=False)
        self.launch()

        mint = await self.next_event('mint')

        self.assertEqual(mint['recipient'], LAUNCH_CONTRACT)
        status = self.bot.status()
        self.assertTrue(status['running'])
        self.assertFalse(status['engine_running'])
        self.assertEqual(status['mint_mode'], 'poll')
        await self.bot.stop()
        self.assertEqual(self.provider.sent, [])
        self.assertEqual(self.bot.get_positions(), [])

    def test_initialize_needs_a_key(self):
        with self.assertRaises(NotInitialized):
            self.bot.initialize("not-a-key")

    async def test_config_updates_are_validated(self):
        self.assertEqual(self.bot.update_config(buy_amount_base="5.0")['buy_amount_base'], "5")
        with self.assertRaises(ValueError):
            self.bot.update_config(slippage_percent=250)
        self.assertEqual(self.bot.status()['config']['buy_amount_base'], "5")


class TestRegistry(unittest.IsolatedAsyncioTestCase):

    async def test_create_get_remove(self):
        registry = BotRegistry()
        provider = FakeChainProvider()
        bot = registry.create("alpha", CHAIN_CONFIG, provider=provider, db=TradingDB(':memory:'))

        self.assertIs(registry.get("alpha"), bot)
        with self.assertRaises(ValueError):
            registry.create("alpha", CHAIN_CONFIG, provider=FakeChainProvider(), db=TradingDB(':memory:'))

        await registry.remove("alpha")
        self.assertIsNone(registry.get("alpha"))
        self.assertTrue(provider.closed)

    async def test_bots_are_isolated(self):
        registry = BotRegistry()
        a = registry.create("a", CHAIN_CONFIG, provider=FakeChainProvider(), db=TradingDB(':memory:'))
        b = registry.create("b", CHAIN_CONFIG, provider=FakeChainProvider(), db=TradingDB(':memory:'))

        a.update_config(auto_buy_enabled=True)

        self.assertFalse(b.config_manager.get().auto_buy_enabled)
        self.assertEqual(registry.ids(), ["a", "b"])
        await registry.close_all()
        self.assertEqual(registry.ids(), [])


if __name__ == "__main__":
    unittest.main()
