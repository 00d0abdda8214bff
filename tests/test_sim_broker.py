import logging
import unittest

from mt5_orchestrator.broker.base import RETCODE_DONE, RETCODE_INVALID, RETCODE_INVALID_PRICE, RETCODE_REJECT
from mt5_orchestrator.broker.sim import RETCODE_INVALID_STOPS, RETCODE_INVALID_VOLUME, RandomWalkFeed, SimBroker
from mt5_orchestrator.errors import TerminalConnectionError, TerminalError
from mt5_orchestrator.types import OrderKind, Side

logging.disable(logging.CRITICAL)


class TestSimBroker(unittest.TestCase):
    def setUp(self):
        self.sim = SimBroker(balance=10_000.0)
        self.sim.connect()
        self.sim.set_tick("EURUSD", 1.10000, 1.10002)

    def tearDown(self):
        self.sim.disconnect()

    def test_pending_fill_keeps_ticket(self):
        res = self.sim.place_conditional_order("EURUSD", OrderKind.BUY_STOP, 1.10010, 0.1)
        self.assertTrue(res.ok)
        self.assertEqual(res.ticket, 1001)
        self.assertTrue(self.sim.list_tickets().is_pending(1001))

        self.sim.set_tick("EURUSD", 1.10010, 1.10012)
        snap = self.sim.list_tickets()
        self.assertFalse(snap.is_pending(1001))
        self.assertTrue(snap.has_position(1001))
        (pos,) = self.sim.get_positions("EURUSD")
        self.assertEqual(pos.side, Side.BUY)
        self.assertAlmostEqual(pos.open_price, 1.10010, places=8)

    def test_stop_loss_realizes_into_balance(self):
        res = self.sim.place_market_order("EURUSD", Side.BUY, 1.0, stop_loss=1.09992)
        self.assertTrue(res.ok)
        self.assertAlmostEqual(res.price, 1.10002, places=8)

        self.sim.set_tick("EURUSD", 1.09990, 1.09992)
        self.assertEqual(self.sim.get_positions(), [])
        self.assertAlmostEqual(self.sim.get_balance(), 9990.0, places=2)
        self.assertEqual(self.sim.closed[-1][0], res.ticket)

    def test_take_profit_on_short(self):
        res = self.sim.place_market_order("EURUSD", Side.SELL, 0.5, take_profit=1.09980)
        self.assertTrue(res.ok)
        self.sim.set_tick("EURUSD", 1.09976, 1.09978)
        self.assertEqual(self.sim.get_positions(), [])
        self.assertAlmostEqual(self.sim.get_balance(), 10_010.0, places=2)

    def test_invalid_requests(self):
        res = self.sim.place_conditional_order("EURUSD", OrderKind.BUY_STOP, 1.09990, 0.1)
        self.assertEqual(res.retcode, RETCODE_INVALID_PRICE)
        self.assertEqual(res.ticket, 0)

        res = self.sim.place_market_order("EURUSD", Side.BUY, 0.1, stop_loss=1.10010)
        self.assertEqual(res.retcode, RETCODE_INVALID_STOPS)

        res = self.sim.place_market_order("EURUSD", Side.BUY, 0.001)
        self.assertEqual(res.retcode, RETCODE_INVALID_VOLUME)

        self.assertEqual(self.sim.cancel_or_close(99), RETCODE_INVALID)
        # Rejected requests still reach the terminal.
        self.assertEqual(len(self.sim.orders), 3)

    def test_unknown_symbol_and_missing_quotes(self):
        with self.assertRaises(TerminalError):
            self.sim.get_symbol_metadata("GBPUSD")
        empty = SimBroker()
        with self.assertRaises(TerminalError):
            empty.get_tick("EURUSD")

    def test_forced_retcodes(self):
        self.sim.queue_retcodes(RETCODE_DONE, RETCODE_REJECT)
        first = self.sim.place_market_order("EURUSD", Side.BUY, 0.1)
        second = self.sim.place_market_order("EURUSD", Side.BUY, 0.1)
        self.assertTrue(first.ok)
        self.assertFalse(second.ok)
        self.assertEqual(second.retcode, RETCODE_REJECT)
        self.assertEqual(len(self.sim.get_positions()), 1)

    def test_poll_failures(self):
        self.sim.fail_next_polls(2)
        for _ in range(2):
            with self.assertRaises(TerminalConnectionError):
                self.sim.list_tickets()
        self.sim.list_tickets()

    def test_partial_close(self):
        res = self.sim.place_market_order("EURUSD", Side.BUY, 1.0)
        self.assertEqual(self.sim.cancel_or_close(res.ticket, 0.4), RETCODE_DONE)
        (pos,) = self.sim.get_positions()
        self.assertAlmostEqual(pos.volume, 0.6)

    def test_close_all_for_symbol(self):
        self.sim.place_market_order("EURUSD", Side.SELL, 0.1)
        self.sim.place_conditional_order("EURUSD", OrderKind.SELL_LIMIT, 1.10050, 0.1)
        self.assertEqual(self.sim.close_all_for_symbol("EURUSD"), 2)
        self.assertEqual(self.sim.get_positions(), [])
        self.assertEqual(self.sim.get_pending_orders(), [])
        self.assertEqual(self.sim.close_all_for_symbol("EURUSD"), 0)

    def test_floating_pnl_and_equity(self):
        self.sim.place_market_order("EURUSD", Side.BUY, 1.0)
        self.sim.set_tick("EURUSD", 1.10012, 1.10014)
        self.assertAlmostEqual(self.sim.floating_pnl(), 10.0, places=2)
        self.assertAlmostEqual(self.sim.equity(), 10_010.0, places=2)


class TestRandomWalkFeed(unittest.TestCase):
    def test_seeded_walk_is_reproducible(self):
        quotes = []
        for _ in range(2):
            sim = SimBroker()
            feed = RandomWalkFeed(sim, "EURUSD", start_mid=1.1, spread_points=2.0, seed=7)
            for t in (5.0, 10.0, 30.0):
                feed(t)
            tick = sim.get_tick("EURUSD")
            self.assertLessEqual(tick.bid, tick.ask)
            quotes.append((tick.bid, tick.ask))
        self.assertEqual(quotes[0], quotes[1])

    def test_publishes_initial_quote(self):
        sim = SimBroker()
        RandomWalkFeed(sim, "EURUSD", start_mid=1.2, spread_points=2.0, seed=1)
        tick = sim.get_tick("EURUSD")
        self.assertAlmostEqual(tick.mid, 1.2, places=5)


if __name__ == "__main__":
    unittest.main()
