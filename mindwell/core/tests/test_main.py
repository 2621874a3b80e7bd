import unittest

from mindwell.core.app import main
from mindwell.core.app.database import BaselineSnapshot, CrisisEvent, InterventionRun, MoodEntry
from mindwell.core.app.errors import (
    AuthenticationError,
    ConsentError,
    LockedOutError,
    SessionLockedError,
    ValidationError,
)
from mindwell.core.app.settings import Settings

PASSWORD = "Sunrise2024"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_app(clock=None):
    settings = Settings(database_url="sqlite:///:memory:", pbkdf2_iterations=1000)
    if clock is None:
        return main.MindWell(settings=settings)
    return main.MindWell(settings=settings, clock=clock)


class MoodPipelineTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.app = make_app(self.clock)
        self.user_id = self.app.create_account(PASSWORD)

    def tearDown(self):
        self.app.database.dispose()

    def count(self, table):
        session = self.app.database.session()
        try:
            return session.query(table).count()
        finally:
            session.close()

    def test_end_to_end_first_entry(self):
        result = self.app.log_mood(2, "feeling awful", ["work"], time_of_day=14)
        self.assertEqual(result.status, "saved")
        self.assertFalse(result.crisis.detected)
        self.assertGreater(result.baseline.confidence, 0)
        self.assertIn(result.recommendation.priority, {"medium", "high"})

        entries = self.app.get_recent_entries(5)
        self.assertEqual(entries[0].note, "feeling awful")
        self.assertEqual(entries[0].mood_label, "Sad")
        self.assertEqual(self.count(BaselineSnapshot), 1)

    def test_note_survives_lock_and_unlock(self):
        self.app.log_mood(2, "feeling awful", [])
        self.app.lock()
        with self.assertRaises(SessionLockedError):
            self.app.get_recent_entries(5)
        self.app.unlock(PASSWORD)
        self.assertEqual(self.app.get_recent_entries(5)[0].note, "feeling awful")

    def test_drop_after_stable_history_is_high_priority(self):
        for _ in range(10):
            self.app.log_mood(4, "steady", [])
        result = self.app.log_mood(1, "rough", [], time_of_day=14)
        self.assertTrue(result.baseline.change_point_detected)
        self.assertEqual(result.recommendation.priority, "high")

    def test_critical_note_short_circuits(self):
        result = self.app.log_mood(1, "I want to kill myself", [])
        self.assertEqual(result.status, "crisis")
        self.assertTrue(result.crisis.is_critical)
        self.assertIsNotNone(result.crisis_response)
        self.assertIsNone(result.entry_id)
        self.assertIsNone(result.baseline)
        self.assertIsNone(result.recommendation)
        self.assertEqual(self.count(MoodEntry), 0)
        self.assertEqual(self.count(BaselineSnapshot), 0)
        self.assertEqual(self.count(CrisisEvent), 1)

    def test_critical_note_answers_even_when_locked(self):
        self.app.lock()
        result = self.app.log_mood(1, "better off dead", [])
        self.assertEqual(result.status, "crisis")
        self.assertEqual(self.count(CrisisEvent), 0)

    def test_high_severity_note_is_saved_and_audited(self):
        result = self.app.log_mood(2, "I feel hopeless", [])
        self.assertEqual(result.status, "saved")
        self.assertEqual(result.crisis.severity, "high")
        self.assertEqual(self.count(CrisisEvent), 1)

    def test_invalid_intensity(self):
        with self.assertRaises(ValidationError):
            self.app.log_mood(7, "fine", [])

    def test_scan_text_for_chat(self):
        self.assertEqual(self.app.scan_text("I want to die").severity, "critical")
        self.assertFalse(self.app.scan_text("hello there").detected)
        self.assertEqual(self.count(CrisisEvent), 1)

    def test_recommendation_respects_cooldown(self):
        self.app.log_mood(4, "", [])
        first = self.app.get_recommendation(time_of_day=14)
        run_id = self.app.record_intervention_start(first.intervention_id)
        second = self.app.get_recommendation(time_of_day=14)
        self.assertNotEqual(first.intervention_id, second.intervention_id)
        result = self.app.record_intervention_end(run_id, effectiveness=4, outcome="helped")
        self.assertEqual(result.status, "saved")
        self.assertEqual(result.run.outcome, "helped")
        self.assertIsNone(result.crisis_response)

    def test_critical_intervention_outcome_is_not_stored(self):
        run_id = self.app.record_intervention_start("breathing_478")
        result = self.app.record_intervention_end(run_id, effectiveness=2, outcome="I want to kill myself")
        self.assertEqual(result.status, "crisis")
        self.assertTrue(result.crisis.is_critical)
        self.assertIsNotNone(result.crisis_response)
        self.assertIsNone(result.run.outcome)
        self.assertIsNotNone(result.run.end_time)
        self.assertEqual(result.run.effectiveness, 2)

        session = self.app.database.session()
        try:
            row = session.query(InterventionRun).filter(InterventionRun.id == run_id).one()
            self.assertIsNone(row.outcome_encrypted)
        finally:
            session.close()
        self.assertEqual(self.count(CrisisEvent), 1)

    def test_unknown_intervention_rejected(self):
        with self.assertRaises(ValidationError):
            self.app.record_intervention_start("juggling")

    def test_consent_off_blocks_logging(self):
        self.app.update_consent(mood_data_consent=False)
        with self.assertRaises(ConsentError):
            self.app.log_mood(3, "", [])
        self.assertFalse(self.app.get_consent().mood_data_consent)

    def test_export_all(self):
        self.app.log_mood(3, "okay day", ["walk"])
        payload = self.app.export_all()
        self.assertEqual(payload.user_id, self.user_id)
        self.assertEqual(payload.mood_entries[0].note, "okay day")
        self.assertEqual(len(payload.baselines), 1)

    def test_stats(self):
        self.app.log_mood(2, "", [])
        self.app.log_mood(4, "", [])
        stats = self.app.get_stats()
        self.assertEqual(stats.total_mood_entries, 2)
        self.assertEqual(stats.average_mood, 3.0)
        self.assertEqual(stats.current_streak_days, 1)
        self.assertEqual(stats.trend.trend, "improving")

    def test_get_baseline_without_entries_is_neutral(self):
        baseline = self.app.get_baseline()
        self.assertEqual(baseline.rolling_mean, 3.0)
        self.assertEqual(baseline.confidence, 0)


class WipeAndLockoutTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.app = make_app(self.clock)
        self.app.create_account(PASSWORD)
        self.app.log_mood(3, "note", [])

    def tearDown(self):
        self.app.database.dispose()

    def test_wipe_requires_exact_confirmation(self):
        for attempt in ["", "yes", "delete all my data", "DELETE ALL MY DATA "]:
            with self.assertRaises(ValidationError):
                self.app.wipe_all(attempt)
        self.assertTrue(self.app.has_account)

    def test_wipe_leaves_nothing(self):
        deleted = self.app.wipe_all(main.WIPE_CONFIRMATION)
        self.assertEqual(deleted["mood_entries"], 1)
        self.assertFalse(self.app.is_unlocked)
        self.assertFalse(self.app.has_account)
        with self.assertRaises(AuthenticationError):
            self.app.unlock(PASSWORD)

    def test_forgotten_password_reset_works_while_locked(self):
        self.app.lock()
        self.app.wipe_all(main.WIPE_CONFIRMATION)
        self.assertFalse(self.app.has_account)
        self.app.create_account("BrandNew2025")
        self.assertEqual(self.app.get_recent_entries(5), [])

    def test_lockout_through_facade(self):
        self.app.lock()
        for _ in range(3):
            with self.assertRaises(AuthenticationError):
                self.app.unlock("WrongPass1")
        with self.assertRaises(LockedOutError):
            self.app.unlock(PASSWORD)
        self.clock.now += 31
        self.app.unlock(PASSWORD)
        self.assertTrue(self.app.is_unlocked)

    def test_health(self):
        status = self.app.health()
        self.assertEqual(status["database"], "ok")
        self.assertTrue(status["unlocked"])


if __name__ == "__main__":
    unittest.main()
