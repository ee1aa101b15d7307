import itertools
import unittest

from confidence import ConfidenceCalculator, ConfidenceInputs, confidence_level, horizon_decay
from engine_fixtures import JUNE_NOON
from models import ConfidenceLevel, HeightSource, WeatherMode, WeatherSlice
from settings import EngineSettings


def _slice(certainty=1.0, is_forecast=False):
    return WeatherSlice(
        timestamp=JUNE_NOON,
        cloud_cover=0.2,
        certainty=certainty,
        source="mock",
        is_forecast=is_forecast,
        fetched_at=JUNE_NOON,
    )


class ConfidenceTests(unittest.TestCase):
    def setUp(self):
        self.calc = ConfidenceCalculator(EngineSettings())

    def test_perfect_inputs_score_full(self):
        result = self.calc.calculate(ConfidenceInputs(1.0, HeightSource.SURVEYED, _slice()))
        self.assertEqual(result.score, 100.0)
        self.assertEqual(result.level, ConfidenceLevel.HIGH)
        self.assertEqual(result.weather_mode, WeatherMode.OBSERVED)
        self.assertEqual(result.caps_applied, ())

    def test_blend_weights(self):
        result = self.calc.calculate(ConfidenceInputs(0.5, HeightSource.SURVEYED, _slice(certainty=1.0)))
        # 100 * (0.6 * 0.5 + 0.4 * 1.0)
        self.assertEqual(result.score, 70.0)

    def test_forecast_is_capped_at_90(self):
        result = self.calc.calculate(ConfidenceInputs(1.0, HeightSource.SURVEYED, _slice(is_forecast=True)))
        self.assertEqual(result.score, 90.0)
        self.assertIn("forecast_only", result.caps_applied)

    def test_heuristic_heights_are_capped_at_60(self):
        result = self.calc.calculate(ConfidenceInputs(1.0, HeightSource.HEURISTIC, _slice()))
        self.assertLessEqual(result.score, 60.0)
        self.assertIn("heuristic_height", result.caps_applied)
        self.assertTrue(result.suggestions)

    def test_missing_weather_is_estimated_and_capped(self):
        result = self.calc.calculate(ConfidenceInputs(1.0, HeightSource.SURVEYED, None))
        self.assertEqual(result.weather_mode, WeatherMode.ESTIMATED)
        self.assertLessEqual(result.score, 60.0)
        self.assertEqual(result.cloud_certainty, 0.5)

    def test_no_nearby_buildings_keeps_full_geometry_weight(self):
        self.assertEqual(self.calc.geometry_quality(ConfidenceInputs(0.8, None, _slice())), 0.8)

    def test_sun_not_visible_geometry_is_certain(self):
        inputs = ConfidenceInputs(0.1, HeightSource.OSM, _slice(), sun_visible=False)
        self.assertEqual(self.calc.geometry_quality(inputs), 1.0)

    def test_score_always_within_bounds(self):
        sources = [None, HeightSource.SURVEYED, HeightSource.OSM, HeightSource.HEURISTIC]
        weathers = [None, _slice(0.0), _slice(0.7), _slice(1.5, is_forecast=True)]
        for quality, source, weather, lead in itertools.product(
            (-1.0, 0.0, 0.3, 1.0, 2.0), sources, weathers, (0.0, 5.0, 100.0, 500.0)
        ):
            score = self.calc.score(ConfidenceInputs(quality, source, weather, lead_hours=lead))
            self.assertGreaterEqual(score, 0.0)
            self.assertLessEqual(score, 100.0)

    def test_horizon_decay_steps_down(self):
        self.assertEqual(horizon_decay(1.0, 2.0), 1.0)
        self.assertEqual(horizon_decay(12.0, 2.0), 0.9)
        self.assertEqual(horizon_decay(36.0, 2.0), 0.8)
        self.assertEqual(horizon_decay(200.0, 2.0), 0.5)

    def test_levels(self):
        self.assertEqual(confidence_level(70.0), ConfidenceLevel.HIGH)
        self.assertEqual(confidence_level(69.9), ConfidenceLevel.MEDIUM)
        self.assertEqual(confidence_level(40.0), ConfidenceLevel.MEDIUM)
        self.assertEqual(confidence_level(39.9), ConfidenceLevel.LOW)

    def test_pure_function_of_inputs(self):
        inputs = ConfidenceInputs(0.7, HeightSource.OSM, _slice(0.8), lead_hours=6.0)
        self.assertEqual(self.calc.calculate(inputs), self.calc.calculate(inputs))


if __name__ == "__main__":
    unittest.main()
