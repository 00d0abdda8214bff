import datetime as dt
import logging
import unittest

from mt5_orchestrator.broker.sim import SimBroker
from mt5_orchestrator.config import OrchestratorConfig
from mt5_orchestrator.engines.grid import GridLadder, GridPreset
from mt5_orchestrator.engines.hedge import QuickHedgeEngine
from mt5_orchestrator.engines.oco import StraddleEngine
from mt5_orchestrator.engines.scalp import ScalpEngine
from mt5_orchestrator.errors import ConfigurationError
from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.monitor import VirtualPacing
from mt5_orchestrator.runner import CycleRunner, EnginePresets
from mt5_orchestrator.types import Condition, EngineResult, Outcome, Side

logging.disable(logging.CRITICAL)


class _Fixed:
    def __init__(self, pnl):
        self.pnl = pnl

    def run(self):
        return EngineResult("fixed", Outcome.COMPLETED, self.pnl)


class _Recorder(OrchestratorObserver):
    def __init__(self):
        self.cycles = []
        self.started = []
        self.errors = []
        self.breaker = []

    def on_cycle_started(self, cycle, assessment):
        self.started.append((cycle, assessment.condition))

    def on_cycle_complete(self, result, total_pnl):
        self.cycles.append((result.cycle, result.outcome, total_pnl))

    def on_error(self, where, exc):
        self.errors.append(where)

    def on_circuit_breaker(self, total_pnl, limit):
        self.breaker.append((total_pnl, limit))


class TestCycleRunner(unittest.TestCase):
    def setUp(self):
        self.sim = SimBroker(balance=10_000.0)
        # One-point spread classifies as GRID outside news windows.
        self.sim.set_tick("EURUSD", 1.10000, 1.10001)
        self.pacing = VirtualPacing()
        self.observer = _Recorder()

    def runner(self, grid_engine, **kwargs):
        kwargs.setdefault("max_cycles", 3)
        kwargs.setdefault("inter_cycle_seconds", 30.0)
        return CycleRunner(
            self.sim,
            "EURUSD",
            pacing=self.pacing,
            observer=self.observer,
            engine_overrides={Condition.GRID: grid_engine},
            **kwargs,
        )

    def test_stops_after_max_cycles(self):
        summary = self.runner(lambda: _Fixed(1.5)).run()
        self.assertEqual(summary.stop_reason, "max_cycles")
        self.assertEqual(summary.cycles_completed, 3)
        self.assertAlmostEqual(summary.total_pnl, 4.5)
        # No pause after the last cycle.
        self.assertEqual(self.pacing.now(), 60.0)
        self.assertEqual([c for c, _ in self.observer.started], [1, 2, 3])
        self.assertEqual(self.observer.cycles[-1], (3, Outcome.COMPLETED, 4.5))

    def test_circuit_breaker(self):
        summary = self.runner(lambda: _Fixed(-40.0), max_cycles=10).run()
        self.assertEqual(summary.stop_reason, "circuit_breaker")
        self.assertEqual(summary.cycles_completed, 3)
        self.assertAlmostEqual(summary.total_pnl, -120.0)
        self.assertEqual(self.observer.breaker, [(-120.0, -100.0)])

    def test_loss_exactly_at_limit_keeps_running(self):
        summary = self.runner(lambda: _Fixed(-50.0), max_cycles=2).run()
        self.assertEqual(summary.stop_reason, "max_cycles")
        self.assertAlmostEqual(summary.total_pnl, -100.0)

    def test_engine_exception_flattens_and_continues(self):
        calls = []
        sim = self.sim

        class _Boom:
            def run(self):
                calls.append(1)
                if len(calls) == 1:
                    sim.place_market_order("EURUSD", Side.BUY, 1.0)
                    raise RuntimeError("terminal went away")
                return EngineResult("fixed", Outcome.COMPLETED, 0.0)

        summary = self.runner(_Boom, max_cycles=2).run()
        first, second = summary.results
        self.assertEqual(first.outcome, Outcome.ERROR)
        self.assertIn("RuntimeError", first.reason)
        self.assertAlmostEqual(first.realized_pnl, -1.0, places=2)
        self.assertEqual(second.outcome, Outcome.COMPLETED)
        self.assertEqual(self.sim.get_positions(), [])
        self.assertEqual(self.observer.errors, ["cycle 1"])

    def test_configuration_error_recorded_and_flattened(self):
        sim = self.sim

        class _BadConfig:
            def run(self):
                sim.place_market_order("EURUSD", Side.BUY, 0.1)
                raise ConfigurationError("trigger beyond stop")

        summary = self.runner(_BadConfig, max_cycles=1).run()
        (result,) = summary.results
        self.assertEqual(result.outcome, Outcome.CONFIG_ERROR)
        self.assertEqual(result.condition, Condition.GRID)
        # 0.1 lot opened at the ask, closed at the bid one point lower.
        self.assertAlmostEqual(result.realized_pnl, -0.1, places=2)
        self.assertEqual(self.sim.get_positions(), [])
        self.assertEqual(self.observer.errors, ["cycle 1"])

    def test_cancel_between_cycles(self):
        pacing = self.pacing

        class _CancelOnSecond:
            n = 0

            def run(self):
                _CancelOnSecond.n += 1
                if _CancelOnSecond.n == 2:
                    pacing.cancel.cancel()
                return EngineResult("fixed", Outcome.COMPLETED, 0.0)

        summary = self.runner(_CancelOnSecond, max_cycles=0).run()
        self.assertEqual(summary.stop_reason, "cancelled")
        self.assertEqual(summary.cycles_completed, 2)

    def test_cancelled_before_start(self):
        self.pacing.cancel.cancel()
        summary = self.runner(lambda: _Fixed(1.0)).run()
        self.assertEqual(summary.stop_reason, "cancelled")
        self.assertEqual(summary.cycles_completed, 0)

    def test_build_engine_dispatch(self):
        runner = CycleRunner(self.sim, "EURUSD", pacing=self.pacing)
        self.assertIsInstance(runner.build_engine(Condition.GRID), GridLadder)
        self.assertIsInstance(runner.build_engine(Condition.SCALP), ScalpEngine)
        hedge = runner.build_engine(Condition.HIGH_VOLATILITY)
        self.assertIsInstance(hedge, QuickHedgeEngine)
        self.assertAlmostEqual(hedge.preset.risk_multiplier, 0.7)
        news = runner.build_engine(Condition.NEWS)
        breakout = runner.build_engine(Condition.BREAKOUT)
        self.assertIsInstance(news, StraddleEngine)
        self.assertEqual(news.preset.name, "news")
        self.assertEqual(breakout.preset.name, "breakout")
        self.assertEqual(runner.loss_limit, -100.0)

    def test_invalid_arguments(self):
        with self.assertRaises(ConfigurationError):
            CycleRunner(self.sim, "EURUSD", base_risk=0.0)
        with self.assertRaises(ConfigurationError):
            CycleRunner(self.sim, "EURUSD", max_cycles=-1)

    def test_real_grid_cycles_on_sim(self):
        runner = CycleRunner(
            self.sim,
            "EURUSD",
            max_cycles=2,
            inter_cycle_seconds=5.0,
            presets=EnginePresets(grid=GridPreset(run_seconds=10.0, report_interval=5.0)),
            pacing=self.pacing,
            observer=self.observer,
        )
        summary = runner.run()
        self.assertEqual([r.condition for r in summary.results], [Condition.GRID, Condition.GRID])
        self.assertEqual([r.outcome for r in summary.results], [Outcome.COMPLETED, Outcome.COMPLETED])
        self.assertEqual(len(self.sim.orders), 12)
        self.assertEqual(self.sim.get_pending_orders(), [])
        self.assertEqual(summary.balance_change, 0.0)


class TestFromConfig(unittest.TestCase):
    def test_news_times_and_thresholds(self):
        cfg = OrchestratorConfig(
            base_risk=10.0,
            low_volatility_threshold=8.0,
            high_volatility_threshold=30.0,
            news_times=("09:15",),
            minutes_before_news=2,
            loss_limit_multiple=3.0,
        )
        runner = CycleRunner.from_config(cfg, SimBroker())
        self.assertEqual(runner.classifier.news.times, (dt.time(9, 15),))
        self.assertEqual(runner.classifier.news.minutes_before, 2)
        self.assertEqual(runner.classifier.low_threshold, 8.0)
        self.assertEqual(runner.loss_limit, -30.0)

    def test_news_mode_off(self):
        runner = CycleRunner.from_config(OrchestratorConfig(enable_news_mode=False), SimBroker())
        self.assertIsNone(runner.classifier.news)


if __name__ == "__main__":
    unittest.main()
