from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from . import baseline_engine, crisis_detector, recommendation
from .baseline_engine import Baseline, MoodTrend
from .crisis_detector import CrisisScan
from .database import Database, utcnow
from .errors import StorageError, ValidationError
from .key_manager import KeyManager
from .recommendation import Recommendation
from .schemas import (
    ConsentView,
    ExportPayload,
    InterventionOutcomeResult,
    MoodEntryView,
    MoodSubmissionResult,
    WellnessStats,
)
from .settings import APP_VERSION, Settings, load_settings
from .store import EncryptedStore, validate_intensity

logger = logging.getLogger(__name__)

WIPE_CONFIRMATION = "DELETE ALL MY DATA"
AUDITED_SEVERITIES = {"critical", "high"}
MOOD_LABELS = {
    1: "Very Sad",
    2: "Sad",
    3: "Neutral",
    4: "Happy",
    5: "Very Happy",
}


class MindWell:
    """The surface the UI talks to.

    One instance per device. It owns the session key lifecycle through its
    ``KeyManager`` and runs the mood pipeline: crisis scan, encrypt and
    persist, baseline, recommendation.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        database: Optional[Database] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or load_settings()
        self.database = database or Database(self.settings.database_url)
        self.database.create_all()
        self.key_manager = KeyManager(
            self.database,
            iterations=self.settings.pbkdf2_iterations,
            max_attempts=self.settings.max_unlock_attempts,
            lockout_seconds=self.settings.lockout_seconds,
            clock=clock,
        )
        self.store = EncryptedStore(self.database, self.key_manager)

    # session lifecycle

    @property
    def is_unlocked(self) -> bool:
        return self.key_manager.is_unlocked

    @property
    def has_account(self) -> bool:
        return self.key_manager.has_stored_key()

    def create_account(self, password: str) -> str:
        self.key_manager.create_new_key(password)
        user_id = self.key_manager.user_id
        self.store.save_consent(user_id)
        return user_id

    def unlock(self, password: str) -> str:
        self.key_manager.unlock(password)
        user_id = self.key_manager.user_id
        self.store.purge_expired(user_id)
        return user_id

    def lock(self) -> None:
        self.key_manager.lock()

    def _require_user_id(self) -> str:
        self.key_manager.require_key()
        return self.key_manager.user_id

    # mood pipeline

    def log_mood(
        self,
        intensity: int,
        note: str = "",
        tags: Optional[Sequence[str]] = None,
        mood_label: Optional[str] = None,
        voice_note_ref: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        time_of_day: Optional[int] = None,
    ) -> MoodSubmissionResult:
        scan = crisis_detector.scan(note)
        if scan.is_critical:
            logger.warning(
                "Critical crisis language detected (%d keywords); mood pipeline skipped",
                len(scan.matched_keywords),
            )
            self._audit_crisis(scan, "mood_note")
            return MoodSubmissionResult(
                status="crisis",
                crisis=scan,
                crisis_response=crisis_detector.build_crisis_response(scan),
            )

        user_id = self._require_user_id()
        validate_intensity(intensity)
        entry_id = self.store.put_mood_entry(
            user_id,
            intensity=intensity,
            note=note or "",
            mood_label=mood_label or MOOD_LABELS[intensity],
            tags=tags,
            voice_note_ref=voice_note_ref,
            timestamp=timestamp,
        )
        self._audit_crisis(scan, "mood_note")

        baseline = self._compute_baseline(user_id)
        self.store.put_baseline(user_id, baseline)
        choice = self._recommend(user_id, baseline, time_of_day)
        logger.info(
            "Logged mood entry %s (z=%.2f, priority=%s)",
            entry_id,
            baseline.z_score,
            choice.priority,
        )
        return MoodSubmissionResult(
            status="saved",
            entry_id=entry_id,
            crisis=scan,
            baseline=baseline,
            recommendation=choice,
        )

    def scan_text(self, text: str, source: str = "chat") -> CrisisScan:
        scan = crisis_detector.scan(text)
        self._audit_crisis(scan, source)
        return scan

    def get_recent_entries(self, n: int = 50) -> List[MoodEntryView]:
        user_id = self._require_user_id()
        return self.store.list_mood_entries(user_id, limit=max(n, 0))

    def delete_entry(self, entry_id: int) -> bool:
        self._require_user_id()
        return self.store.delete_mood_entry(entry_id)

    def get_baseline(self) -> Baseline:
        user_id = self._require_user_id()
        return self._compute_baseline(user_id)

    def get_recommendation(self, time_of_day: Optional[int] = None) -> Recommendation:
        user_id = self._require_user_id()
        return self._recommend(user_id, self._compute_baseline(user_id), time_of_day)

    def get_trend(self, period_days: int = 7) -> MoodTrend:
        user_id = self._require_user_id()
        since = utcnow() - timedelta(days=period_days)
        history = [
            (entry.timestamp, entry.intensity)
            for entry in self.store.list_mood_entries(user_id, since=since)
        ]
        return baseline_engine.compute_trend(history, period_days=period_days)

    def get_stats(self) -> WellnessStats:
        user_id = self._require_user_id()
        dates = sorted({stamp.date() for stamp in self.store.mood_entry_dates(user_id)})
        average = self.store.average_intensity(user_id)
        return WellnessStats(
            total_mood_entries=self.store.count_mood_entries(user_id),
            total_interventions=self.store.count_intervention_runs(user_id),
            average_mood=round(average, 2) if average is not None else baseline_engine.NEUTRAL_MEAN,
            current_streak_days=baseline_engine.compute_current_streak(dates, utcnow().date()),
            best_streak_days=baseline_engine.compute_best_streak(dates),
            trend=self.get_trend(),
        )

    # interventions

    def record_intervention_start(self, intervention_id: str) -> int:
        user_id = self._require_user_id()
        if recommendation.get_intervention(intervention_id) is None:
            raise ValidationError(f"Unknown intervention: {intervention_id}")
        return self.store.start_intervention_run(user_id, intervention_id)

    def record_intervention_end(
        self,
        run_id: int,
        effectiveness: Optional[int] = None,
        outcome: Optional[str] = None,
    ) -> InterventionOutcomeResult:
        self._require_user_id()
        scan = self.scan_text(outcome or "", source="intervention_outcome")
        if scan.is_critical:
            logger.warning(
                "Critical crisis language in intervention outcome (%d keywords); outcome not stored",
                len(scan.matched_keywords),
            )
            run = self.store.finish_intervention_run(run_id, effectiveness=effectiveness)
            return InterventionOutcomeResult(
                status="crisis",
                run=run,
                crisis=scan,
                crisis_response=crisis_detector.build_crisis_response(scan),
            )
        run = self.store.finish_intervention_run(run_id, effectiveness=effectiveness, outcome=outcome)
        return InterventionOutcomeResult(status="saved", run=run, crisis=scan)

    # consent

    def get_consent(self) -> Optional[ConsentView]:
        return self.store.get_consent(self._require_user_id())

    def update_consent(self, **gates) -> ConsentView:
        return self.store.save_consent(self._require_user_id(), **gates)

    # data ownership

    def export_all(self) -> ExportPayload:
        user_id = self._require_user_id()
        logger.info("Exporting all records for user %s", user_id)
        return self.store.export(user_id)

    def wipe_all(self, confirmation: str) -> Dict[str, int]:
        """Destroy every record on this device. Works while locked."""
        if confirmation != WIPE_CONFIRMATION:
            raise ValidationError(f"Type '{WIPE_CONFIRMATION}' exactly to confirm a full wipe")
        user_id = self.key_manager.user_id
        if user_id is None:
            user = self.key_manager.stored_user()
            user_id = user.user_id if user else None
        if user_id is None:
            return {}
        deleted = self.store.secure_wipe_all(user_id)
        self.key_manager.lock()
        return deleted

    def health(self) -> dict:
        db_status = "ok"
        try:
            self.database.ping()
        except SQLAlchemyError:
            db_status = "error"
        return {
            "status": "ok" if db_status == "ok" else "degraded",
            "version": APP_VERSION,
            "database": db_status,
            "unlocked": self.is_unlocked,
        }

    # helpers

    def _compute_baseline(self, user_id: str) -> Baseline:
        window = self.settings.window_days
        history = self.store.recent_intensities(user_id, limit=window)
        return baseline_engine.compute(history, window_size_days=window)

    def _recommend(self, user_id: str, baseline: Baseline, time_of_day: Optional[int]) -> Recommendation:
        since = utcnow() - timedelta(hours=self.settings.cooldown_hours)
        recent = self.store.recent_intervention_ids(user_id, since)
        return recommendation.select(baseline_engine.against_neutral_prior(baseline), recent, time_of_day)

    def _audit_crisis(self, scan: CrisisScan, source: str) -> None:
        if not scan.detected or scan.severity not in AUDITED_SEVERITIES:
            return
        if not self.is_unlocked:
            return
        try:
            self.store.record_crisis_event(
                self.key_manager.user_id,
                source=source,
                severity=scan.severity,
                matched_keywords=scan.matched_keywords,
            )
        except StorageError:
            # the safety response must still reach the user
            logger.exception("Failed to record crisis event")
