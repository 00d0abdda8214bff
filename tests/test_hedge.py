import logging
import unittest

from mt5_orchestrator.broker.base import RETCODE_REJECT
from mt5_orchestrator.broker.sim import SimBroker
from mt5_orchestrator.engines.hedge import (
    AdverseMovementMonitor,
    HedgeParams,
    PrimaryPosition,
    QuickHedgeEngine,
    QuickHedgePreset,
    adverse_points,
    check_trigger,
)
from mt5_orchestrator.errors import ConfigurationError, TerminalConnectionError
from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.monitor import VirtualPacing
from mt5_orchestrator.types import OrderKind, Outcome, Side, Tick

logging.disable(logging.CRITICAL)


class _Hedges(OrchestratorObserver):
    def __init__(self):
        self.hedges = []

    def on_hedge_placed(self, primary_ticket, hedge_ticket, movement_points):
        self.hedges.append((primary_ticket, hedge_ticket, movement_points))


class _HedgeCase(unittest.TestCase):
    def setUp(self):
        self.sim = SimBroker(balance=10_000.0)
        self.sim.set_tick("EURUSD", 1.10000, 1.10002)
        self.pacing = VirtualPacing()
        self.observer = _Hedges()

    def move_once(self, t0, bid, ask):
        done = []

        def listener(t):
            if t >= t0 and not done:
                done.append(t)
                self.sim.set_tick("EURUSD", bid, ask)

        self.pacing.on_pause(listener)

    def open_primary(self, side, volume=1.0, stop_loss_points=50):
        res = self.sim.place_market_order("EURUSD", side, volume)
        return PrimaryPosition(res.ticket, side, volume, res.price, stop_loss_points)

    def monitor(self, params=HedgeParams(15.0, 2.0, 20.0)):
        return AdverseMovementMonitor(self.sim, "EURUSD", params, pacing=self.pacing, observer=self.observer)


class TestAdverseMovementMonitor(_HedgeCase):
    def test_hedge_freezes_combined_pnl(self):
        primary = self.open_primary(Side.BUY)
        self.move_once(4, 1.09985, 1.09987)
        res = self.monitor().watch(primary)

        self.assertEqual(res.outcome, Outcome.HEDGED)
        self.assertAlmostEqual(res.movement_points, 17.0, places=6)
        self.assertEqual(res.polls, 2)
        self.assertEqual(self.sim.orders[-1]["kind"], OrderKind.MARKET_SELL)
        self.assertEqual(self.sim.orders[-1]["volume"], 1.0)
        self.assertIsNone(self.sim.orders[-1]["stop_loss"])
        self.assertEqual(self.observer.hedges[0][:2], (primary.ticket, res.hedge_ticket))

        frozen = self.sim.floating_pnl("EURUSD")
        self.assertAlmostEqual(frozen, -19.0, places=2)
        for bid, ask in ((1.09960, 1.09962), (1.10050, 1.10052), (1.09970, 1.09972)):
            self.sim.set_tick("EURUSD", bid, ask)
            self.assertAlmostEqual(self.sim.floating_pnl("EURUSD"), frozen, places=2)

    def test_no_trigger_within_window(self):
        primary = self.open_primary(Side.BUY)
        res = self.monitor().watch(primary)
        self.assertEqual(res.outcome, Outcome.NOT_HEDGED)
        self.assertIsNone(res.hedge_ticket)
        self.assertEqual(res.polls, 10)
        self.assertEqual(len(self.sim.get_positions()), 1)

    def test_favorable_move_does_not_hedge(self):
        primary = self.open_primary(Side.BUY)
        self.move_once(2, 1.10030, 1.10032)
        res = self.monitor().watch(primary)
        self.assertEqual(res.outcome, Outcome.NOT_HEDGED)
        self.assertEqual(len(self.sim.orders), 1)

    def test_short_primary_hedged_with_buy(self):
        primary = self.open_primary(Side.SELL)
        self.move_once(2, 1.10016, 1.10018)
        res = self.monitor().watch(primary)
        self.assertEqual(res.outcome, Outcome.HEDGED)
        self.assertAlmostEqual(res.movement_points, 18.0, places=6)
        self.assertEqual(self.sim.orders[-1]["kind"], OrderKind.MARKET_BUY)

    def test_rejected_hedge_retried_next_poll(self):
        primary = self.open_primary(Side.BUY)
        self.sim.queue_retcodes(RETCODE_REJECT)
        self.move_once(2, 1.09985, 1.09987)
        res = self.monitor().watch(primary)
        self.assertEqual(res.outcome, Outcome.HEDGED)
        self.assertEqual(res.failed_placements, 1)
        self.assertEqual(res.polls, 2)

    def test_failed_tick_reads_counted(self):
        primary = self.open_primary(Side.BUY)
        calls = {"n": 0}
        real_get_tick = self.sim.get_tick

        def flaky(symbol):
            calls["n"] += 1
            if calls["n"] == 1:
                raise TerminalConnectionError("boom")
            return real_get_tick(symbol)

        self.sim.get_tick = flaky
        res = self.monitor().watch(primary)
        self.assertEqual(res.failed_polls, 1)
        self.assertEqual(res.outcome, Outcome.NOT_HEDGED)

    def test_primary_closed_on_take_profit_is_not_hedged(self):
        res = self.sim.place_market_order("EURUSD", Side.BUY, 1.0, stop_loss=1.09977, take_profit=1.10042)
        primary = PrimaryPosition(res.ticket, Side.BUY, 1.0, res.price, 25)
        # TP hit, then price reverses well past the trigger.
        self.move_once(4, 1.10050, 1.10052)
        self.move_once(8, 1.09980, 1.09982)
        out = self.monitor().watch(primary)

        self.assertEqual(out.outcome, Outcome.PRIMARY_CLOSED)
        self.assertIsNone(out.hedge_ticket)
        self.assertEqual(out.polls, 2)
        self.assertEqual(len(self.sim.orders), 1)
        self.assertEqual(self.sim.get_positions(), [])
        self.assertEqual(self.observer.hedges, [])

    def test_failed_ticket_reads_counted(self):
        primary = self.open_primary(Side.BUY)
        self.sim.fail_next_polls(2)
        res = self.monitor().watch(primary)
        self.assertEqual(res.failed_polls, 2)
        self.assertEqual(res.outcome, Outcome.NOT_HEDGED)

    def test_cancel_stops_watching(self):
        primary = self.open_primary(Side.BUY)
        self.pacing.cancel.cancel()
        res = self.monitor().watch(primary)
        self.assertEqual(res.outcome, Outcome.CANCELLED)
        self.assertEqual(len(self.sim.orders), 1)

    def test_trigger_must_sit_inside_stop(self):
        with self.assertRaises(ConfigurationError):
            check_trigger(15.0, 15)
        with self.assertRaises(ConfigurationError):
            check_trigger(0.0, None)
        check_trigger(15.0, None)
        primary = self.open_primary(Side.BUY, stop_loss_points=10)
        with self.assertRaises(ConfigurationError):
            self.monitor().watch(primary)

    def test_adverse_points_sign(self):
        tick = Tick(bid=1.09990, ask=1.09992, timestamp=0.0)
        long_ = PrimaryPosition(1, Side.BUY, 1.0, 1.10000)
        short = PrimaryPosition(2, Side.SELL, 1.0, 1.10000)
        self.assertAlmostEqual(adverse_points(long_, tick, 0.00001), 10.0, places=6)
        self.assertAlmostEqual(adverse_points(short, tick, 0.00001), -8.0, places=6)


class TestQuickHedgeEngine(_HedgeCase):
    def test_full_run_hedges_holds_and_flattens(self):
        self.move_once(2, 1.09985, 1.09987)
        engine = QuickHedgeEngine(
            self.sim,
            "EURUSD",
            20.0,
            QuickHedgePreset(),
            pacing=self.pacing,
            observer=self.observer,
            side_picker=lambda now: Side.BUY,
        )
        res = engine.run()
        self.assertEqual(self.sim.orders[0]["volume"], 0.56)
        self.assertEqual(res.outcome, Outcome.HEDGED)
        self.assertEqual(len(res.tickets), 2)
        self.assertAlmostEqual(res.realized_pnl, -10.64, places=2)
        self.assertEqual(self.sim.get_positions(), [])
        # 2s to trigger plus 30s hold.
        self.assertEqual(self.pacing.now(), 32.0)

    def test_unhedged_run_still_flattens(self):
        preset = QuickHedgePreset(window=10.0)
        engine = QuickHedgeEngine(
            self.sim, "EURUSD", 20.0, preset, pacing=self.pacing, side_picker=lambda now: Side.SELL
        )
        res = engine.run()
        self.assertEqual(res.outcome, Outcome.NOT_HEDGED)
        self.assertEqual(len(res.tickets), 1)
        self.assertEqual(self.sim.get_positions(), [])
        # 10s window plus 30s hold.
        self.assertEqual(self.pacing.now(), 40.0)

    def test_primary_closed_by_terminal_holds_then_flattens(self):
        self.move_once(2, 1.10050, 1.10052)
        self.move_once(6, 1.09980, 1.09982)
        engine = QuickHedgeEngine(
            self.sim, "EURUSD", 20.0, QuickHedgePreset(), pacing=self.pacing, side_picker=lambda now: Side.BUY
        )
        res = engine.run()
        self.assertEqual(res.outcome, Outcome.PRIMARY_CLOSED)
        self.assertEqual(len(self.sim.orders), 1)
        self.assertAlmostEqual(res.realized_pnl, 22.40, places=2)
        self.assertEqual(self.sim.get_positions(), [])
        self.assertEqual(self.pacing.now(), 32.0)

    def test_oversized_risk_rejected_before_placing(self):
        engine = QuickHedgeEngine(self.sim, "EURUSD", 1_000_000.0, pacing=self.pacing)
        with self.assertRaises(ConfigurationError):
            engine.run()
        self.assertEqual(self.sim.orders, [])


if __name__ == "__main__":
    unittest.main()
