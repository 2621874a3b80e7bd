import unittest

import pytest

from mindwell.core.app import recommendation
from mindwell.core.app.baseline_engine import compute

ALL_IDS = [intervention.id for intervention in recommendation.INTERVENTIONS]


class RegimeTests(unittest.TestCase):
    def test_strong_decline_is_high_grounding(self):
        result = recommendation.select({"zScore": -2.0}, [], 14)
        self.assertEqual(result.priority, "high")
        self.assertEqual(result.reason, "significant mood decline")
        chosen = recommendation.get_intervention(result.intervention_id)
        self.assertIn(chosen.kind, {"grounding", "breathing"})
        self.assertEqual(result.intervention_id, "grounding_54321")

    def test_boundary_minus_one_and_a_half_is_high(self):
        self.assertEqual(recommendation.select({"z_score": -1.5}, [], 14).priority, "high")

    def test_mild_decline_is_medium(self):
        result = recommendation.select({"z_score": -1.2}, [], 14)
        self.assertEqual(result.priority, "medium")
        self.assertIn(result.intervention_id, {"breathing_478", "mindful_moment"})

    def test_change_point_with_negative_z_is_medium(self):
        result = recommendation.select({"z_score": -0.4, "change_point_detected": True}, [], 14)
        self.assertEqual(result.priority, "medium")
        self.assertEqual(result.reason, "mood change point detected")

    def test_positive_spike_reinforces(self):
        result = recommendation.select({"z_score": 2.0, "change_point_detected": True}, [], 14)
        self.assertEqual(result.priority, "low")
        self.assertEqual(result.intervention_id, "positive_affirmation")

    def test_stable_is_maintenance(self):
        result = recommendation.select({"z_score": 0.2}, [], 14)
        self.assertEqual(result.priority, "low")
        self.assertEqual(result.intervention_id, "mindful_moment")

    def test_accepts_baseline_dataclass(self):
        result = recommendation.select(compute([3] * 20 + [1]), [], 10)
        self.assertEqual(result.priority, "high")
        self.assertEqual(result.confidence, 1.0)


class FilteringTests(unittest.TestCase):
    def test_cooldown_excludes_recent(self):
        result = recommendation.select({"z_score": -2.0}, ["grounding_54321"], 14)
        self.assertEqual(result.intervention_id, "breathing_478")
        self.assertFalse(result.is_fallback)

    def test_every_candidate_recent_returns_fallback(self):
        for z_score in (-2.0, -1.2, 0.0, 2.0):
            result = recommendation.select({"z_score": z_score}, ALL_IDS, 14)
            self.assertEqual(result.intervention_id, recommendation.FALLBACK_INTERVENTION_ID)
            self.assertTrue(result.is_fallback)
            self.assertGreater(result.duration_minutes, 0)

    def test_time_of_day_window(self):
        recent = ["mindful_moment"]
        self.assertEqual(recommendation.select({"z_score": 0.0}, recent, 14).intervention_id, "vr_forest")
        self.assertEqual(recommendation.select({"z_score": 0.0}, recent, 23).intervention_id, "progressive_relaxation")
        night = recommendation.select({"z_score": 0.0}, recent, 3)
        self.assertTrue(night.is_fallback)

    def test_tie_break_keeps_catalog_order(self):
        result = recommendation.select({"z_score": -1.2}, [], 9)
        self.assertEqual(result.intervention_id, "breathing_478")


def test_deterministic_for_identical_inputs():
    inputs = ({"z_score": -1.1, "confidence": 0.4}, ["breathing_478"], 20)
    results = {recommendation.select(*inputs) == recommendation.select(*inputs) for _ in range(20)}
    assert results == {True}


@pytest.mark.parametrize("baseline", [None, {}, {"z_score": "n/a"}, {"z_score": float("nan")}, object()])
def test_malformed_baseline_is_read_as_neutral(baseline):
    result = recommendation.select(baseline, None, 12)
    assert result.priority == "low"
    assert result.reason == "maintaining wellness"


@pytest.mark.parametrize("time_of_day", [None, -1, 24, "noon", 12.5])
def test_odd_time_of_day_never_raises(time_of_day):
    result = recommendation.select({"z_score": -2.0}, [], time_of_day)
    assert result.priority == "high"


if __name__ == "__main__":
    unittest.main()
