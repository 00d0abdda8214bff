import logging
import unittest

from mt5_orchestrator.errors import ConfigurationError
from mt5_orchestrator.instruments import SymbolMetadata
from mt5_orchestrator.sizing import require_within_limits, size_for_symbol, size_position

logging.disable(logging.CRITICAL)


class TestSizing(unittest.TestCase):
    def test_twenty_dollars_over_ten_points_at_ten_per_point(self):
        res = size_position(20.0, 10, 10.0, 0.01, 100.0, 0.01)
        self.assertAlmostEqual(res.volume, 0.20, places=8)
        self.assertFalse(res.clamped)
        self.assertAlmostEqual(res.realized_risk, 20.0, places=6)

    def test_realized_risk_within_one_step(self):
        step = 0.01
        for risk in (5.0, 20.0, 37.5, 100.0, 250.0):
            for stop in (5, 10, 25, 60):
                for pv in (0.87, 1.0, 10.0):
                    res = size_position(risk, stop, pv, 0.01, 100.0, step)
                    if res.clamped:
                        continue
                    tolerance = step * stop * pv + 1e-9
                    self.assertLessEqual(
                        abs(res.realized_risk - risk), tolerance, msg=f"risk={risk} stop={stop} pv={pv}"
                    )

    def test_rounds_to_nearest_step_not_down(self):
        # 20 / (3 * 1.0) = 6.666.. lots -> 6.67, truncation would give 6.66
        res = size_position(20.0, 3, 1.0, 0.01, 100.0, 0.01)
        self.assertAlmostEqual(res.volume, 6.67, places=8)

    def test_clamping_is_flagged(self):
        res = size_position(10_000.0, 1, 10.0, 0.01, 5.0, 0.01)
        self.assertTrue(res.clamped)
        self.assertAlmostEqual(res.volume, 5.0)
        self.assertAlmostEqual(res.snapped_volume, 1000.0)
        with self.assertRaises(ConfigurationError):
            require_within_limits(res)

    def test_tiny_risk_clamped_up_to_minimum(self):
        res = size_position(0.01, 100, 10.0, 0.01, 100.0, 0.01)
        self.assertTrue(res.clamped)
        self.assertAlmostEqual(res.volume, 0.01)

    def test_invalid_inputs_rejected(self):
        with self.assertRaises(ConfigurationError):
            size_position(0.0, 10, 10.0, 0.01, 100.0, 0.01)
        with self.assertRaises(ConfigurationError):
            size_position(20.0, 0, 10.0, 0.01, 100.0, 0.01)
        with self.assertRaises(ConfigurationError):
            size_position(20.0, 10, -1.0, 0.01, 100.0, 0.01)
        with self.assertRaises(ConfigurationError):
            size_position(20.0, 10, 10.0, 0.01, 100.0, 0.0)
        with self.assertRaises(ConfigurationError):
            size_position(20.0, 10, 10.0, 5.0, 1.0, 0.01)

    def test_size_for_symbol_uses_point_value(self):
        meta = SymbolMetadata(symbol="EURUSD", point=0.00001, digits=5, tick_value=10.0, tick_size=0.00001)
        res = size_for_symbol(20.0, 10, meta)
        self.assertAlmostEqual(res.point_value, 10.0)
        self.assertAlmostEqual(res.volume, 0.20, places=8)


if __name__ == "__main__":
    unittest.main()
