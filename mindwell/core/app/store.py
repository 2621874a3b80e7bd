from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .baseline_engine import Baseline
from .database import (
    USER_TABLES,
    BaselineSnapshot,
    ConsentSettings,
    CrisisEvent,
    Database,
    InterventionRun,
    MoodEntry,
    User,
    as_naive_utc,
    utcnow,
)
from .errors import ConsentError, DecryptionError, StorageError, ValidationError
from .key_manager import KeyManager
from .schemas import (
    BaselineView,
    ConsentView,
    CrisisEventView,
    ExportPayload,
    InterventionRunView,
    MoodEntryView,
    UserView,
)
from .settings import DEFAULT_RETENTION_DAYS, EXPORT_VERSION

logger = logging.getLogger(__name__)

MIN_INTENSITY = 1
MAX_INTENSITY = 5
CONSENT_FIELDS = (
    "mood_data_consent",
    "behavioral_data_consent",
    "analytics_consent",
    "crash_reporting_consent",
    "local_storage_only",
    "data_retention_days",
)


def validate_intensity(value, field_name: str = "intensity") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer between {MIN_INTENSITY} and {MAX_INTENSITY}")
    if not MIN_INTENSITY <= value <= MAX_INTENSITY:
        raise ValidationError(f"{field_name} must be between {MIN_INTENSITY} and {MAX_INTENSITY}, got {value}")
    return value


def normalize_tags(tags: Optional[Sequence[str]]) -> List[str]:
    cleaned = {str(tag).strip() for tag in (tags or []) if str(tag).strip()}
    return sorted(cleaned)


def escape_like(value: str) -> str:
    """Make ``value`` match literally inside a LIKE pattern escaped with ``\\``."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class EncryptedStore:
    """All persisted records, with free-text fields sealed under the session key.

    Plaintext columns (timestamps, intensity, labels, tags) stay queryable.
    The note of a mood entry and the outcome of an intervention run are stored
    only in the encrypted-field wire format.
    """

    def __init__(self, database: Database, key_manager: KeyManager) -> None:
        self.database = database
        self.key_manager = key_manager

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        session = self.database.session()
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Storage failure while trying to %s: %s", action, exc.__class__.__name__)
            raise StorageError(f"Failed to {action}: {exc}") from exc
        finally:
            session.close()

    # consent

    def save_consent(self, user_id: str, **gates) -> ConsentView:
        unknown = set(gates) - set(CONSENT_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown consent settings: {', '.join(sorted(unknown))}")
        retention = gates.get("data_retention_days")
        if retention is not None and (isinstance(retention, bool) or not isinstance(retention, int) or retention < 1):
            raise ValidationError("data_retention_days must be a positive integer")
        with self._session("save consent settings") as session:
            row = session.query(ConsentSettings).filter(ConsentSettings.user_id == user_id).first()
            if row is None:
                row = ConsentSettings(user_id=user_id, data_retention_days=DEFAULT_RETENTION_DAYS)
                session.add(row)
            for name, value in gates.items():
                setattr(row, name, value)
            row.updated_at = utcnow()
            session.commit()
            session.refresh(row)
            return self._consent_view(row)

    def get_consent(self, user_id: str) -> Optional[ConsentView]:
        with self._session("read consent settings") as session:
            row = session.query(ConsentSettings).filter(ConsentSettings.user_id == user_id).first()
            return self._consent_view(row) if row else None

    def _require_consent(self, session: Session, user_id: str, gate: str) -> None:
        row = session.query(ConsentSettings).filter(ConsentSettings.user_id == user_id).first()
        allowed = getattr(row, gate) if row is not None else getattr(ConsentView(), gate)
        if not allowed:
            raise ConsentError(f"Writing this record is not permitted: {gate} is off")

    # mood entries

    def put_mood_entry(
        self,
        user_id: str,
        intensity: int,
        note: str,
        mood_label: str,
        tags: Optional[Sequence[str]] = None,
        voice_note_ref: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> int:
        validate_intensity(intensity)
        if not mood_label or not mood_label.strip():
            raise ValidationError("mood_label must not be empty")
        with self._session("save mood entry") as session:
            self._require_consent(session, user_id, "mood_data_consent")
            entry = MoodEntry(
                user_id=user_id,
                timestamp=as_naive_utc(timestamp) if timestamp else utcnow(),
                mood_label=mood_label.strip(),
                intensity=intensity,
                note_encrypted=self.key_manager.encrypt(note or ""),
                tags_json=json.dumps(normalize_tags(tags)),
                voice_note_ref=voice_note_ref,
            )
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry.id

    def get_mood_entry(self, entry_id: int) -> Optional[MoodEntryView]:
        self.key_manager.require_key()
        with self._session("read mood entry") as session:
            entry = session.query(MoodEntry).filter(MoodEntry.id == entry_id).first()
            return self._mood_view(entry) if entry else None

    def list_mood_entries(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        since: Optional[datetime] = None,
        min_intensity: Optional[int] = None,
        max_intensity: Optional[int] = None,
        tag: Optional[str] = None,
    ) -> List[MoodEntryView]:
        self.key_manager.require_key()
        with self._session("list mood entries") as session:
            query = session.query(MoodEntry).filter(MoodEntry.user_id == user_id)
            if since is not None:
                query = query.filter(MoodEntry.timestamp >= since)
            if min_intensity is not None:
                query = query.filter(MoodEntry.intensity >= min_intensity)
            if max_intensity is not None:
                query = query.filter(MoodEntry.intensity <= max_intensity)
            if tag:
                query = query.filter(MoodEntry.tags_json.like(f"%{escape_like(json.dumps(tag.strip()))}%", escape="\\"))
            query = query.order_by(MoodEntry.timestamp.desc(), MoodEntry.id.desc())
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [self._mood_view(entry) for entry in query.all()]

    def delete_mood_entry(self, entry_id: int) -> bool:
        with self._session("delete mood entry") as session:
            deleted = session.query(MoodEntry).filter(MoodEntry.id == entry_id).delete()
            session.commit()
            return bool(deleted)

    def recent_intensities(self, user_id: str, limit: int) -> List[Tuple[datetime, int]]:
        with self._session("read mood history") as session:
            rows = (
                session.query(MoodEntry.timestamp, MoodEntry.intensity)
                .filter(MoodEntry.user_id == user_id)
                .order_by(MoodEntry.timestamp.desc(), MoodEntry.id.desc())
                .limit(limit)
                .all()
            )
        return [(timestamp, intensity) for timestamp, intensity in reversed(rows)]

    def mood_entry_dates(self, user_id: str) -> List[datetime]:
        with self._session("read mood dates") as session:
            rows = session.query(MoodEntry.timestamp).filter(MoodEntry.user_id == user_id).all()
        return [row[0] for row in rows]

    def count_mood_entries(self, user_id: str) -> int:
        with self._session("count mood entries") as session:
            return session.query(MoodEntry).filter(MoodEntry.user_id == user_id).count()

    def average_intensity(self, user_id: str) -> Optional[float]:
        with self._session("average mood intensity") as session:
            rows = session.query(MoodEntry.intensity).filter(MoodEntry.user_id == user_id).all()
        if not rows:
            return None
        return sum(row[0] for row in rows) / len(rows)

    def _mood_view(self, entry: MoodEntry) -> MoodEntryView:
        view = MoodEntryView(
            id=entry.id,
            timestamp=entry.timestamp,
            mood_label=entry.mood_label,
            intensity=entry.intensity,
            tags=json.loads(entry.tags_json or "[]"),
            voice_note_ref=entry.voice_note_ref,
        )
        try:
            view.note = self.key_manager.decrypt(entry.note_encrypted)
        except DecryptionError as exc:
            logger.warning("Mood entry %s could not be decrypted", entry.id)
            view.is_corrupt = True
            view.decryption_error = str(exc)
        return view

    # baselines

    def put_baseline(self, user_id: str, baseline: Baseline) -> int:
        with self._session("save baseline") as session:
            self._require_consent(session, user_id, "mood_data_consent")
            row = BaselineSnapshot(
                user_id=user_id,
                computed_at=baseline.computed_at,
                window_days=baseline.window_size_days,
                sample_count=baseline.sample_count,
                rolling_mean=baseline.rolling_mean,
                rolling_std=baseline.rolling_std,
                z_score=baseline.z_score,
                change_point_detected=baseline.change_point_detected,
                confidence=baseline.confidence,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.id

    def latest_baseline(self, user_id: str) -> Optional[BaselineView]:
        baselines = self.list_baselines(user_id, limit=1)
        return baselines[0] if baselines else None

    def list_baselines(self, user_id: str, limit: Optional[int] = None) -> List[BaselineView]:
        with self._session("list baselines") as session:
            query = (
                session.query(BaselineSnapshot)
                .filter(BaselineSnapshot.user_id == user_id)
                .order_by(BaselineSnapshot.computed_at.desc(), BaselineSnapshot.id.desc())
            )
            if limit is not None:
                query = query.limit(limit)
            return [
                BaselineView(
                    id=row.id,
                    computed_at=row.computed_at,
                    window_days=row.window_days,
                    sample_count=row.sample_count,
                    rolling_mean=row.rolling_mean,
                    rolling_std=row.rolling_std,
                    z_score=row.z_score,
                    change_point_detected=row.change_point_detected,
                    confidence=row.confidence,
                )
                for row in query.all()
            ]

    # intervention runs

    def start_intervention_run(self, user_id: str, intervention_id: str, start_time: Optional[datetime] = None) -> int:
        with self._session("start intervention run") as session:
            self._require_consent(session, user_id, "behavioral_data_consent")
            run = InterventionRun(
                user_id=user_id,
                intervention_id=intervention_id,
                start_time=as_naive_utc(start_time) if start_time else utcnow(),
            )
            session.add(run)
            session.commit()
            session.refresh(run)
            return run.id

    def finish_intervention_run(
        self,
        run_id: int,
        effectiveness: Optional[int] = None,
        outcome: Optional[str] = None,
        end_time: Optional[datetime] = None,
    ) -> InterventionRunView:
        if effectiveness is not None:
            validate_intensity(effectiveness, "effectiveness")
        with self._session("finish intervention run") as session:
            run = session.query(InterventionRun).filter(InterventionRun.id == run_id).first()
            if run is None:
                raise ValidationError(f"Intervention run {run_id} does not exist")
            if run.end_time is not None:
                raise ValidationError(f"Intervention run {run_id} is already completed")
            run.end_time = as_naive_utc(end_time) if end_time else utcnow()
            run.effectiveness = effectiveness
            if outcome:
                run.outcome_encrypted = self.key_manager.encrypt(outcome)
            session.commit()
            session.refresh(run)
            return self._run_view(run)

    def list_intervention_runs(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[InterventionRunView]:
        with self._session("list intervention runs") as session:
            query = session.query(InterventionRun).filter(InterventionRun.user_id == user_id)
            if since is not None:
                query = query.filter(InterventionRun.start_time >= since)
            query = query.order_by(InterventionRun.start_time.desc(), InterventionRun.id.desc())
            if limit is not None:
                query = query.limit(limit)
            return [self._run_view(run) for run in query.all()]

    def recent_intervention_ids(self, user_id: str, since: datetime) -> List[str]:
        with self._session("read recent interventions") as session:
            rows = (
                session.query(InterventionRun.intervention_id)
                .filter(InterventionRun.user_id == user_id, InterventionRun.start_time >= since)
                .distinct()
                .all()
            )
        return sorted(row[0] for row in rows)

    def count_intervention_runs(self, user_id: str) -> int:
        with self._session("count intervention runs") as session:
            return session.query(InterventionRun).filter(InterventionRun.user_id == user_id).count()

    def _run_view(self, run: InterventionRun) -> InterventionRunView:
        view = InterventionRunView(
            id=run.id,
            intervention_id=run.intervention_id,
            start_time=run.start_time,
            end_time=run.end_time,
            effectiveness=run.effectiveness,
        )
        if run.outcome_encrypted:
            try:
                view.outcome = self.key_manager.decrypt(run.outcome_encrypted)
            except DecryptionError as exc:
                logger.warning("Intervention run %s outcome could not be decrypted", run.id)
                view.is_corrupt = True
                view.decryption_error = str(exc)
        return view

    # crisis audit trail

    def record_crisis_event(self, user_id: str, source: str, severity: str, matched_keywords: List[str]) -> int:
        with self._session("record crisis event") as session:
            event = CrisisEvent(
                user_id=user_id,
                created_at=utcnow(),
                source=source,
                severity=severity,
                matched_keywords_json=json.dumps(matched_keywords),
            )
            session.add(event)
            session.commit()
            session.refresh(event)
            return event.id

    def list_crisis_events(self, user_id: str) -> List[CrisisEventView]:
        with self._session("list crisis events") as session:
            rows = (
                session.query(CrisisEvent)
                .filter(CrisisEvent.user_id == user_id)
                .order_by(CrisisEvent.created_at.desc(), CrisisEvent.id.desc())
                .all()
            )
            return [
                CrisisEventView(
                    id=row.id,
                    created_at=row.created_at,
                    source=row.source,
                    severity=row.severity,
                    matched_keywords=json.loads(row.matched_keywords_json or "[]"),
                )
                for row in rows
            ]

    # whole-user operations

    def secure_wipe_all(self, user_id: str) -> dict:
        """Delete every row owned by ``user_id`` in one transaction."""
        deleted = {}
        with self._session("wipe user data") as session:
            with session.begin():
                for table in USER_TABLES:
                    deleted[table.__tablename__] = (
                        session.query(table)
                        .filter(table.user_id == user_id)
                        .delete(synchronize_session=False)
                    )
        logger.info("Wiped all records for user %s", user_id)
        return deleted

    def export(self, user_id: str) -> ExportPayload:
        self.key_manager.require_key()
        with self._session("read user record") as session:
            user = session.query(User).filter(User.user_id == user_id).first()
            user_view = UserView(user_id=user.user_id, created_at=user.created_at) if user else None
        return ExportPayload(
            version=EXPORT_VERSION,
            export_date=utcnow(),
            user_id=user_id,
            user=user_view,
            mood_entries=self.list_mood_entries(user_id),
            baselines=self.list_baselines(user_id),
            interventions=self.list_intervention_runs(user_id),
            consent=self.get_consent(user_id),
            crisis_events=self.list_crisis_events(user_id),
        )

    def purge_expired(self, user_id: str, now: Optional[datetime] = None) -> dict:
        consent = self.get_consent(user_id)
        retention_days = consent.data_retention_days if consent else DEFAULT_RETENTION_DAYS
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        purged = {}
        with self._session("purge expired records") as session:
            with session.begin():
                purged[MoodEntry.__tablename__] = (
                    session.query(MoodEntry)
                    .filter(MoodEntry.user_id == user_id, MoodEntry.timestamp < cutoff)
                    .delete(synchronize_session=False)
                )
                purged[BaselineSnapshot.__tablename__] = (
                    session.query(BaselineSnapshot)
                    .filter(BaselineSnapshot.user_id == user_id, BaselineSnapshot.computed_at < cutoff)
                    .delete(synchronize_session=False)
                )
                purged[InterventionRun.__tablename__] = (
                    session.query(InterventionRun)
                    .filter(InterventionRun.user_id == user_id, InterventionRun.start_time < cutoff)
                    .delete(synchronize_session=False)
                )
                purged[CrisisEvent.__tablename__] = (
                    session.query(CrisisEvent)
                    .filter(CrisisEvent.user_id == user_id, CrisisEvent.created_at < cutoff)
                    .delete(synchronize_session=False)
                )
        if any(purged.values()):
            logger.info("Purged records older than %d days for user %s", retention_days, user_id)
        return purged

    @staticmethod
    def _consent_view(row: ConsentSettings) -> ConsentView:
        return ConsentView(
            mood_data_consent=row.mood_data_consent,
            behavioral_data_consent=row.behavioral_data_consent,
            analytics_consent=row.analytics_consent,
            crash_reporting_consent=row.crash_reporting_consent,
            local_storage_only=row.local_storage_only,
            data_retention_days=row.data_retention_days,
            updated_at=row.updated_at,
        )
