import asyncio
import unittest

from chain_adapters.abis import MAX_UINT256
from fake_chain import (
    LAUNCH_CONTRACT, ROUTER, TEST_PRIVATE_KEY, WPLS, FakeChainProvider, TradingStack, token_address,
)
from modules.events import MintEvent, PairCreatedEvent
from sniper_errors import IllegalTransition, NotInitialized
from trading import EngineState, PositionStatus

TOKEN = token_address(0xC0FFEE)
OTHER = token_address(0xD00D)


def mint_event(token=TOKEN, recipient=LAUNCH_CONTRACT, block=101):
    return MintEvent(token_address=token, recipient=recipient, amount=10 ** 24, block_number=block,
                     tx_hash=f"0x{block:064x}", timestamp=1_700_000_000, log_index=0)


def pair_event(token0, token1, block=101):
    return PairCreatedEvent(token0=token0, token1=token1, pair_address=token_address(0xFA17),
                            block_number=block, tx_hash=f"0x{block:064x}", timestamp=1_700_000_000,
                            factory_version="v2")


def quote(amount_in, path):
    # 2 tokens per PLS on the way in, 0.75 PLS per token on the way out
    if path[0].lower() == WPLS.lower():
        return amount_in * 2
    return amount_in * 3 // 4


class EngineTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.provider = FakeChainProvider()
        self.provider.set_quote(quote)
        self.provider.set_token(TOKEN, symbol="PEPE", balance=200 * 10 ** 18)
        self.provider.set_call(TOKEN, 'allowance', MAX_UINT256)
        self.stack = TradingStack(self.provider, {'auto_buy_enabled': True, 'buy_amount_base': '100'})
        self.engine = self.stack.engine
        self.tracker = self.stack.tracker

    def tearDown(self):
        self.stack.close()

    def start_engine(self):
        self.engine.initialize(TEST_PRIVATE_KEY)
        self.engine.start()


class TestLifecycle(EngineTestCase):

    def test_start_requires_key(self):
        with self.assertRaises(NotInitialized):
            self.engine.start()

    def test_invalid_key_leaves_engine_uninitialized(self):
        with self.assertRaises(NotInitialized):
            self.engine.initialize("0x1234")
        self.assertIs(self.engine.state, EngineState.UNINITIALIZED)

    def test_initialize_start_stop(self):
        self.engine.initialize(TEST_PRIVATE_KEY)
        self.assertTrue(self.engine.initialized)
        self.assertFalse(self.engine.running)

        self.engine.start()
        self.engine.start()
        self.assertIs(self.engine.state, EngineState.RUNNING)

        self.engine.stop()
        self.assertIs(self.engine.state, EngineState.STOPPED)
        self.engine.start()
        self.assertTrue(self.engine.running)

    def test_cannot_swap_key_while_running(self):
        self.start_engine()
        with self.assertRaises(IllegalTransition):
            self.engine.initialize(TEST_PRIVATE_KEY)

    async def test_snipe_without_key(self):
        with self.assertRaises(NotInitialized):
            await self.engine.execute_snipe(TOKEN)

    async def test_balance_in_pls(self):
        self.engine.initialize(TEST_PRIVATE_KEY)
        self.assertEqual(await self.engine.get_balance(), "10000")


class TestEventGating(EngineTestCase):

    async def test_ignored_until_running(self):
        self.engine.initialize(TEST_PRIVATE_KEY)
        self.assertIsNone(await self.engine.handle_chain_event(mint_event()))
        self.assertEqual(self.provider.sent, [])

    async def test_ignored_with_auto_buy_off(self):
        self.start_engine()
        self.engine.update_config(auto_buy_enabled=False)
        self.assertIsNone(await self.engine.handle_chain_event(mint_event()))
        self.assertEqual(self.provider.sent, [])

    async def test_mint_to_other_recipient_does_not_qualify(self):
        self.start_engine()
        self.assertIsNone(await self.engine.handle_chain_event(mint_event(recipient=OTHER)))
        self.assertEqual(self.provider.sent, [])

    async def test_mint_to_launch_contract_snipes(self):
        self.start_engine()
        result = await self.engine.handle_chain_event(mint_event())
        self.assertTrue(result.success)
        self.assertEqual(result.token_address, TOKEN)

    def test_pairs_only_with_snipe_new_pairs(self):
        event = pair_event(WPLS, TOKEN)
        self.assertIsNone(self.engine.snipe_target(event))

        self.engine.update_config(snipe_new_pairs=True)
        self.assertEqual(self.engine.snipe_target(event), TOKEN)
        self.assertEqual(self.engine.snipe_target(pair_event(TOKEN, WPLS)), TOKEN)
        self.assertIsNone(self.engine.snipe_target(pair_event(TOKEN, OTHER)))


class TestSnipe(EngineTestCase):

    async def test_confirmed_buy_records_holding_position(self):
        self.start_engine()
        updates = []
        self.engine.on_position_update(updates.append)

        result = await self.engine.execute_snipe(TOKEN)

        self.assertTrue(result.success)
        self.assertEqual(result.amount_tokens, "200")
        self.assertEqual(result.buy_price_base, "0.5")
        position = self.tracker.get_position(TOKEN)
        self.assertIs(position.status, PositionStatus.HOLDING)
        self.assertEqual(position.symbol, "PEPE")
        self.assertEqual(position.amount_spent_base, "100")
        self.assertEqual(position.buy_tx_hash, result.tx_hash)
        self.assertEqual(updates, [position])
        self.assertEqual(len(self.stack.db.get_positions()), 1)

    async def test_reverted_buy_records_nothing(self):
        self.start_engine()
        self.provider.receipt_status = 0

        result = await self.engine.execute_snipe(TOKEN)

        self.assertFalse(result.success)
        self.assertIsNotNone(result.error)
        self.assertEqual(self.tracker.get_positions(), [])
        self.assertEqual(self.stack.db.get_positions(), [])

    async def test_no_route_is_a_failed_result(self):
        self.start_engine()
        self.provider.set_call(ROUTER, 'getAmountsOut', ValueError("execution reverted: INSUFFICIENT_LIQUIDITY"))

        result = await self.engine.execute_snipe(TOKEN)

        self.assertFalse(result.success)
        self.assertEqual(self.provider.sent, [])
        self.assertEqual(self.tracker.get_positions(), [])

    async def test_zero_balance_after_buy_fails(self):
        self.start_engine()
        self.provider.set_call(TOKEN, 'balanceOf', 0)
        result = await self.engine.execute_snipe(TOKEN)
        self.assertFalse(result.success)
        self.assertEqual(self.tracker.get_positions(), [])

    async def test_metadata_failure_still_buys(self):
        self.start_engine()
        self.provider.set_call(TOKEN, 'symbol', ValueError("execution reverted"))
        self.stack.token_info.retries = 0

        result = await self.engine.execute_snipe(TOKEN)

        self.assertTrue(result.success)
        self.assertEqual(self.tracker.get_position(TOKEN).symbol, "UNKNOWN")

    async def test_held_token_is_not_bought_twice(self):
        self.start_engine()
        await self.engine.execute_snipe(TOKEN)
        sent = len(self.provider.sent)

        result = await self.engine.execute_snipe(TOKEN)

        self.assertFalse(result.success)
        self.assertEqual(len(self.provider.sent), sent)

    async def test_concurrent_snipes_of_one_token(self):
        self.start_engine()
        results = await asyncio.gather(self.engine.execute_snipe(TOKEN), self.engine.execute_snipe(TOKEN))
        self.assertEqual(sorted(r.success for r in results), [False, True])
        self.assertEqual(len(self.tracker.get_positions()), 1)

    async def test_on_snipe_sees_failures_too(self):
        self.start_engine()
        seen = []

        async def on_snipe(result):
            seen.append(result.success)

        self.engine.on_snipe(on_snipe)
        self.provider.receipt_status = 0
        await self.engine.execute_snipe(TOKEN)
        self.provider.receipt_status = 1
        await self.engine.execute_snipe(TOKEN)
        self.assertEqual(seen, [False, True])

    async def test_callback_error_does_not_fail_snipe(self):
        self.start_engine()

        def broken(result):
            raise RuntimeError("dashboard down")

        self.engine.on_snipe(broken)
        result = await self.engine.execute_snipe(TOKEN)
        self.assertTrue(result.success)


class TestSell(EngineTestCase):

    async def asyncSetUp(self):
        self.start_engine()
        await self.engine.execute_snipe(TOKEN)

    async def test_sell_marks_position_sold_with_profit(self):
        result = await self.engine.sell_token(TOKEN)

        self.assertTrue(result.success)
        self.assertEqual(result.received_base, "150")
        self.assertEqual(result.sell_price_base, "0.75")
        self.assertEqual(result.profit_loss_percent, "50")
        position = self.tracker.get_position(TOKEN)
        self.assertIs(position.status, PositionStatus.SOLD)
        self.assertEqual(position.sell_tx_hash, result.tx_hash)

    async def test_price_hint_overrides_sell_price(self):
        result = await self.engine.sell_token(TOKEN, price_hint="0.25")
        self.assertEqual(result.profit_loss_percent, "-50")

    async def test_failed_sell_keeps_position_holding(self):
        self.provider.receipt_status = 0

        result = await self.engine.sell_token(TOKEN)

        self.assertFalse(result.success)
        self.assertIs(self.tracker.get_position(TOKEN).status, PositionStatus.HOLDING)

    async def test_nothing_to_sell(self):
        result = await self.engine.sell_token(OTHER)
        self.assertFalse(result.success)
        self.assertIn("No position", result.error)

    async def test_explicit_amount_without_position(self):
        self.provider.set_token(OTHER, decimals=9)
        self.provider.set_call(OTHER, 'allowance', MAX_UINT256)

        result = await self.engine.sell_token(OTHER, amount="4")

        self.assertTrue(result.success)
        # 4 * 10**9 raw units in, three quarters of that back in wei
        self.assertEqual(result.received_base, "0.000000003")
        self.assertIsNone(result.profit_loss_percent)
        self.assertIsNone(self.tracker.get_position(OTHER))


if __name__ == "__main__":
    unittest.main()
