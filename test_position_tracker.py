import json
import os
import tempfile
import unittest

from sniper_errors import IllegalTransition, OrderNotFound, PositionNotFound
from trading import (
    LimitOrder, OrderStatus, OrderType, PositionStatus, PositionTracker, TokenPosition, TradingDB,
)
from trading.position_tracker import calculate_profit_loss

TOKEN = "0x000000000000000000000000000000000000A11c"
TOKEN_B = "0x000000000000000000000000000000000000b0B0"


def make_position(token=TOKEN, buy_price="0.000123", amount="812345.678901234567890123", spent="100"):
    return TokenPosition(token_address=token, symbol="PEPE", name="Pepe", buy_tx_hash="0x" + "11" * 32,
                         buy_timestamp=1_700_000_000, buy_price_base=buy_price, amount_tokens=amount,
                         amount_spent_base=spent, decimals=18)


def make_order(order_id="o1", token=TOKEN, order_type=OrderType.TAKE_PROFIT, target="0.000246"):
    return LimitOrder(id=order_id, token_address=token, order_type=order_type, target_price_base=target,
                      amount_tokens="812345.678901234567890123", slippage_percent=12.5,
                      created_at=1_700_000_100)


class TestProfitLoss(unittest.TestCase):

    def test_percent_change(self):
        self.assertEqual(calculate_profit_loss("100", "200"), "100")
        self.assertEqual(calculate_profit_loss("100", "30"), "-70")
        self.assertEqual(calculate_profit_loss("3", "4"), "33.33")

    def test_zero_buy_price(self):
        self.assertIsNone(calculate_profit_loss("0", "1"))


class TestPositions(unittest.TestCase):

    def setUp(self):
        self.tracker = PositionTracker()

    def test_record_and_lookup_case_insensitive(self):
        self.tracker.record_buy(make_position())
        self.assertTrue(self.tracker.is_holding(TOKEN.lower()))
        self.assertEqual(self.tracker.get_position(TOKEN.upper().replace("0X", "0x")).symbol, "PEPE")

    def test_one_holding_position_per_token(self):
        self.tracker.record_buy(make_position())
        with self.assertRaises(IllegalTransition):
            self.tracker.record_buy(make_position())

    def test_rebuy_after_sell_replaces_record(self):
        self.tracker.record_buy(make_position())
        self.tracker.mark_sold(TOKEN, "0x" + "22" * 32, "0.0002")
        self.tracker.record_buy(make_position(buy_price="0.0003"))
        self.assertEqual(self.tracker.get_position(TOKEN).buy_price_base, "0.0003")
        self.assertEqual(len(self.tracker.get_positions()), 1)

    def test_sold_is_terminal(self):
        self.tracker.record_buy(make_position())
        sold = self.tracker.mark_sold(TOKEN, "0x" + "22" * 32, "0.000246")
        self.assertIs(sold.status, PositionStatus.SOLD)
        self.assertEqual(sold.profit_loss_percent, "100")

        with self.assertRaises(IllegalTransition):
            self.tracker.mark_sold(TOKEN, "0x" + "33" * 32, "1")
        with self.assertRaises(IllegalTransition):
            self.tracker.mark_failed(TOKEN)

    def test_failed_is_terminal(self):
        self.tracker.record_buy(make_position())
        self.tracker.mark_failed(TOKEN, "honeypot")
        self.assertEqual(self.tracker.get_position(TOKEN).error, "honeypot")
        with self.assertRaises(IllegalTransition):
            self.tracker.mark_sold(TOKEN, "0x" + "22" * 32, "1")

    def test_unknown_position(self):
        with self.assertRaises(PositionNotFound):
            self.tracker.mark_sold(TOKEN, "0x" + "22" * 32, "1")

    def test_filter_by_status(self):
        self.tracker.record_buy(make_position())
        self.tracker.record_buy(make_position(TOKEN_B))
        self.tracker.mark_failed(TOKEN_B)
        self.assertEqual([p.token_address for p in self.tracker.get_holding_positions()], [TOKEN])
        self.assertEqual(len(self.tracker.get_positions(PositionStatus.FAILED)), 1)


class TestOrders(unittest.TestCase):

    def setUp(self):
        self.tracker = PositionTracker()
        self.tracker.record_buy(make_position())

    def test_order_lifecycle(self):
        self.tracker.add_order(make_order())
        executed = self.tracker.mark_order_executed("o1", "0x" + "44" * 32)
        self.assertIs(executed.status, OrderStatus.EXECUTED)
        self.assertIsNotNone(executed.executed_at)
        with self.assertRaises(IllegalTransition):
            self.tracker.cancel_order("o1")

    def test_duplicate_order_id(self):
        self.tracker.add_order(make_order())
        with self.assertRaises(IllegalTransition):
            self.tracker.add_order(make_order())

    def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            self.tracker.cancel_order("missing")

    def test_cancel_pending_orders_only_touches_pending(self):
        self.tracker.add_order(make_order("tp"))
        self.tracker.add_order(make_order("sl", order_type=OrderType.STOP_LOSS, target="0.00006"))
        self.tracker.add_order(make_order("old"))
        self.tracker.mark_order_failed("old", "reverted")

        cancelled = self.tracker.cancel_pending_orders(TOKEN)

        self.assertEqual(sorted(o.id for o in cancelled), ["sl", "tp"])
        self.assertIs(self.tracker.get_order("old").status, OrderStatus.FAILED)
        self.assertEqual(self.tracker.get_pending_orders(), [])


class TestPersistence(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "data", "sniper.db")

    def tearDown(self):
        self.tmp.cleanup()

    def test_records_survive_restart(self):
        db = TradingDB(self.path)
        tracker = PositionTracker(db)
        tracker.record_buy(make_position())
        tracker.add_order(make_order())
        tracker.add_order(make_order("o2", order_type=OrderType.STOP_LOSS, target="0.0000615"))
        tracker.cancel_order("o2")
        db.close()

        db = TradingDB(self.path)
        reloaded = PositionTracker(db)
        try:
            self.assertEqual(reloaded.get_position(TOKEN), make_position())
            self.assertEqual(reloaded.get_order("o1"), make_order())
            self.assertIs(reloaded.get_order("o2").status, OrderStatus.CANCELLED)
            # decimal strings round-trip unchanged
            self.assertEqual(reloaded.get_position(TOKEN).amount_tokens, "812345.678901234567890123")
        finally:
            db.close()

    def test_terminal_status_persisted(self):
        db = TradingDB(self.path)
        tracker = PositionTracker(db)
        tracker.record_buy(make_position())
        tracker.mark_sold(TOKEN, "0x" + "22" * 32, "0.000369")
        db.close()

        db = TradingDB(self.path)
        try:
            position = PositionTracker(db).get_position(TOKEN)
            self.assertIs(position.status, PositionStatus.SOLD)
            self.assertEqual(position.profit_loss_percent, "200")
        finally:
            db.close()


class TestPortfolio(unittest.TestCase):

    def setUp(self):
        self.tracker = PositionTracker()
        self.tracker.record_buy(make_position(buy_price="1", amount="100", spent="100"))
        self.tracker.record_buy(make_position(TOKEN_B, buy_price="2", amount="50", spent="100"))
        self.tracker.mark_sold(TOKEN, "0x" + "22" * 32, "1.5")
        self.tracker.add_order(make_order(token=TOKEN_B))

    def test_stats(self):
        stats = self.tracker.get_stats()
        self.assertEqual(stats['total_positions'], 2)
        self.assertEqual(stats['holding_positions'], 1)
        self.assertEqual(stats['sold_positions'], 1)
        self.assertEqual(stats['failed_positions'], 0)
        self.assertEqual(stats['pending_orders'], 1)
        self.assertEqual(stats['total_invested_base'], "200")
        self.assertEqual(stats['total_realized_base'], "50")

    def test_export_import(self):
        payload = self.tracker.export_json()
        self.assertEqual(len(json.loads(payload)['positions']), 2)

        copy = PositionTracker()
        self.assertEqual(copy.import_json(payload), 2)
        self.assertEqual(copy.get_positions(), self.tracker.get_positions())
        self.assertEqual(copy.get_orders(), self.tracker.get_orders())


if __name__ == "__main__":
    unittest.main()
