import logging
import unittest

from mt5_orchestrator.broker.base import RETCODE_REJECT
from mt5_orchestrator.broker.sim import SimBroker
from mt5_orchestrator.engines.grid import GridLadder, GridPreset
from mt5_orchestrator.errors import ConfigurationError
from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.monitor import VirtualPacing
from mt5_orchestrator.types import OrderKind, Outcome

logging.disable(logging.CRITICAL)


class _Progress(OrchestratorObserver):
    def __init__(self):
        self.reports = []

    def on_progress(self, engine, running_pnl):
        self.reports.append((engine, running_pnl))


class TestGridLadder(unittest.TestCase):
    def setUp(self):
        self.sim = SimBroker(balance=10_000.0)
        self.sim.set_tick("EURUSD", 1.10000, 1.10002)
        self.pacing = VirtualPacing()
        self.observer = _Progress()
        self.preset = GridPreset(run_seconds=30.0, report_interval=5.0)

    def ladder(self, preset=None):
        return GridLadder(self.sim, "EURUSD", preset or self.preset, pacing=self.pacing, observer=self.observer)

    def test_levels_are_spaced_away_from_the_touch(self):
        tick = self.sim.get_tick("EURUSD")
        plan = self.ladder().levels(tick, 0.00001, 5)
        self.assertEqual([i.kind for i in plan], [OrderKind.BUY_LIMIT] * 3 + [OrderKind.SELL_LIMIT] * 3)
        for intent, expected in zip(plan, (1.09982, 1.09962, 1.09942, 1.10020, 1.10040, 1.10060)):
            self.assertAlmostEqual(intent.price, expected, places=8)
        first_buy, first_sell = plan[0], plan[3]
        self.assertAlmostEqual(first_buy.stop_loss, 1.09952, places=8)
        self.assertAlmostEqual(first_buy.take_profit, 1.10032, places=8)
        self.assertAlmostEqual(first_sell.stop_loss, 1.10050, places=8)
        self.assertAlmostEqual(first_sell.take_profit, 1.09970, places=8)

    def test_quiet_run_reports_and_flattens(self):
        res = self.ladder().run()
        self.assertEqual(res.outcome, Outcome.COMPLETED)
        self.assertEqual(len(res.tickets), 6)
        self.assertEqual(len(self.observer.reports), 6)
        self.assertEqual(res.realized_pnl, 0.0)
        self.assertEqual(self.sim.get_pending_orders(), [])
        self.assertEqual(self.sim.get_positions(), [])
        self.assertEqual(self.pacing.now(), 30.0)

    def test_filled_level_closed_at_end(self):
        def dip(t):
            if t >= 10:
                self.sim.set_tick("EURUSD", 1.09980, 1.09982)

        self.pacing.on_pause(dip)
        res = self.ladder().run()
        self.assertEqual(res.outcome, Outcome.COMPLETED)
        self.assertAlmostEqual(res.realized_pnl, -0.02, places=2)
        self.assertEqual(self.sim.get_positions(), [])

    def test_partial_rejection_still_runs(self):
        self.sim.queue_retcodes(RETCODE_REJECT)
        res = self.ladder().run()
        self.assertEqual(res.outcome, Outcome.COMPLETED)
        self.assertEqual(len(res.tickets), 5)
        self.assertIn("1 level", res.reason)

    def test_all_rejected_fails_without_waiting(self):
        self.sim.queue_retcodes(*([RETCODE_REJECT] * 6))
        res = self.ladder().run()
        self.assertEqual(res.outcome, Outcome.FAILED)
        self.assertEqual(res.realized_pnl, 0.0)
        self.assertEqual(self.pacing.now(), 0.0)

    def test_cancel_mid_run(self):
        def stop(t):
            if t >= 10:
                self.pacing.cancel.cancel()

        self.pacing.on_pause(stop)
        res = self.ladder().run()
        self.assertEqual(res.outcome, Outcome.CANCELLED)
        self.assertEqual(self.sim.get_pending_orders(), [])

    def test_invalid_preset(self):
        tick = self.sim.get_tick("EURUSD")
        with self.assertRaises(ConfigurationError):
            self.ladder(GridPreset(levels=0)).levels(tick, 0.00001)
        with self.assertRaises(ConfigurationError):
            self.ladder(GridPreset(spacing_points=0)).run()
        self.assertEqual(self.sim.orders, [])


if __name__ == "__main__":
    unittest.main()
