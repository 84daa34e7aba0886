import asyncio
import time
import unittest

from fake_chain import FakeChainProvider, TradingStack, WPLS, token_address
from trading import LimitOrder, OrderStatus, OrderType, TokenPosition
from trading.price_monitor import should_fire

TOKEN = token_address(0xAAA1)
TOKEN_B = token_address(0xBBB2)


def position(token, buy_price="100", amount="10"):
    return TokenPosition(token_address=token, symbol="TKN", name="Token", buy_tx_hash="0x" + "01" * 32,
                         buy_timestamp=int(time.time()), buy_price_base=buy_price, amount_tokens=amount,
                         amount_spent_base="1000")


def order(token, order_type, target, order_id=None):
    return LimitOrder(id=order_id or f"{token.lower()}-{order_type.value}", token_address=token,
                      order_type=order_type, target_price_base=target, amount_tokens="10",
                      slippage_percent=10, created_at=int(time.time()))


class Prices:
    """Router quote for TOKEN -> WPLS driven by a per-token price in PLS"""

    def __init__(self):
        self.prices = {}
        self.broken = set()

    def set(self, token, price):
        self.prices[token.lower()] = price

    def __call__(self, amount_in, path):
        token = path[0].lower()
        if path[-1].lower() != WPLS.lower():
            return amount_in
        if token in self.broken:
            raise ValueError("execution reverted: INSUFFICIENT_LIQUIDITY")
        return amount_in * self.prices[token]


class MonitorTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.prices = Prices()
        self.provider = FakeChainProvider()
        self.provider.set_quote(self.prices)
        self.stack = TradingStack(self.provider)
        self.tracker = self.stack.tracker
        self.monitor = self.stack.monitor

        self.fired = []

        async def record(fired_order, price):
            self.fired.append((fired_order.order_type, price))

        self.monitor.on_trigger(record)

    def tearDown(self):
        self.stack.close()

    def hold(self, token, *orders):
        self.tracker.record_buy(position(token))
        for o in orders:
            self.tracker.add_order(o)
        self.monitor.add_token(token)


class TestShouldFire(unittest.TestCase):

    def test_take_profit_at_or_above_target(self):
        tp = order(TOKEN, OrderType.TAKE_PROFIT, "200")
        self.assertFalse(should_fire(tp, "199.99"))
        self.assertTrue(should_fire(tp, "200"))
        self.assertTrue(should_fire(tp, "250"))

    def test_stop_loss_at_or_below_target(self):
        sl = order(TOKEN, OrderType.STOP_LOSS, "50")
        self.assertFalse(should_fire(sl, "51"))
        self.assertTrue(should_fire(sl, "50"))
        self.assertTrue(should_fire(sl, "30"))


class TestTick(MonitorTestCase):

    async def test_take_profit_fires_at_target(self):
        self.hold(TOKEN, order(TOKEN, OrderType.TAKE_PROFIT, "200"))

        self.prices.set(TOKEN, 199)
        self.assertEqual(await self.monitor.tick(), 0)
        self.prices.set(TOKEN, 200)
        self.assertEqual(await self.monitor.tick(), 1)
        self.assertEqual(self.fired, [(OrderType.TAKE_PROFIT, "200")])

    async def test_stop_loss_fires_at_or_below_target(self):
        self.hold(TOKEN, order(TOKEN, OrderType.STOP_LOSS, "50"))

        self.prices.set(TOKEN, 51)
        await self.monitor.tick()
        self.prices.set(TOKEN, 50)
        await self.monitor.tick()
        self.prices.set(TOKEN, 30)
        await self.monitor.tick()
        self.assertEqual(self.fired, [(OrderType.STOP_LOSS, "50"), (OrderType.STOP_LOSS, "30")])

    async def test_crash_fires_only_the_stop_loss(self):
        tp = order(TOKEN, OrderType.TAKE_PROFIT, "200")
        sl = order(TOKEN, OrderType.STOP_LOSS, "50")
        self.hold(TOKEN, tp, sl)

        self.prices.set(TOKEN, 30)
        await self.monitor.tick()

        self.assertEqual(self.fired, [(OrderType.STOP_LOSS, "30")])
        self.assertIs(self.tracker.get_order(tp.id).status, OrderStatus.PENDING)

    async def test_removed_token_is_not_evaluated(self):
        tp = order(TOKEN, OrderType.TAKE_PROFIT, "200")
        self.hold(TOKEN, tp)
        self.prices.set(TOKEN, 500)

        self.monitor.remove_token(TOKEN)
        self.monitor.remove_token(TOKEN)

        self.assertEqual(await self.monitor.tick(), 0)
        self.assertEqual(self.fired, [])
        self.assertIs(self.tracker.get_order(tp.id).status, OrderStatus.PENDING)
        self.assertIsNone(self.monitor.get_cached_price(TOKEN))

    async def test_failed_quote_skips_only_that_token(self):
        self.hold(TOKEN, order(TOKEN, OrderType.TAKE_PROFIT, "200"))
        self.hold(TOKEN_B, order(TOKEN_B, OrderType.TAKE_PROFIT, "200"))
        self.prices.broken.add(TOKEN.lower())
        self.prices.set(TOKEN_B, 300)

        self.assertEqual(await self.monitor.tick(), 1)
        self.assertEqual(self.fired, [(OrderType.TAKE_PROFIT, "300")])
        self.assertIsNone(self.monitor.get_cached_price(TOKEN))
        self.assertEqual(self.monitor.get_cached_price(TOKEN_B).price_base, "300")

    async def test_price_updates_are_published(self):
        samples = []
        self.monitor.on_price_update(samples.append)
        self.hold(TOKEN)
        self.prices.set(TOKEN, 7)

        await self.monitor.tick()

        self.assertEqual([(s.token_address, s.price_base) for s in samples], [(TOKEN, "7")])

    async def test_non_pending_orders_are_ignored(self):
        tp = order(TOKEN, OrderType.TAKE_PROFIT, "200")
        self.hold(TOKEN, tp)
        self.tracker.cancel_order(tp.id)
        self.prices.set(TOKEN, 500)
        self.assertEqual(await self.monitor.tick(), 0)

    def test_add_token_is_idempotent(self):
        self.monitor.add_token(TOKEN)
        self.monitor.add_token(TOKEN.lower())
        self.assertEqual(self.monitor.tracked_tokens, [TOKEN])
        self.assertTrue(self.monitor.is_tracking(TOKEN.lower()))


class TestLoop(MonitorTestCase):

    async def test_loop_ticks_until_stopped(self):
        self.hold(TOKEN, order(TOKEN, OrderType.TAKE_PROFIT, "200"))
        self.prices.set(TOKEN, 250)

        self.monitor.start(interval=0.01)
        self.monitor.start()
        self.assertTrue(self.monitor.is_running)
        for _ in range(100):
            if self.fired:
                break
            await asyncio.sleep(0.01)
        await self.monitor.stop()
        await self.monitor.stop()

        self.assertFalse(self.monitor.is_running)
        self.assertTrue(self.fired)
        count = len(self.fired)
        await asyncio.sleep(0.05)
        self.assertEqual(len(self.fired), count)

    async def test_stop_before_start(self):
        await self.monitor.stop()
        self.assertFalse(self.monitor.is_running)

    async def test_stop_mid_tick_fires_nothing(self):
        self.hold(TOKEN, order(TOKEN, OrderType.TAKE_PROFIT, "200"))
        self.prices.set(TOKEN, 250)
        gate = asyncio.Event()
        real_get_price = self.monitor.get_price

        async def slow_price(token):
            await gate.wait()
            return await real_get_price(token)

        self.monitor.get_price = slow_price
        self.monitor.start(interval=0)
        for _ in range(100):
            if self.monitor._in_tick:
                break
            await asyncio.sleep(0)

        stopping = asyncio.create_task(self.monitor.stop())
        await asyncio.sleep(0)
        gate.set()
        await stopping

        self.assertEqual(self.fired, [])


if __name__ == "__main__":
    unittest.main()
