from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, create_engine, text
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, index=True, nullable=False)
    salt = Column(String, nullable=False)
    key_verifier = Column(String, nullable=False)
    kdf_iterations = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class MoodEntry(Base):
    __tablename__ = "mood_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    mood_label = Column(String, nullable=False)
    intensity = Column(Integer, index=True, nullable=False)
    note_encrypted = Column(String, nullable=False)
    tags_json = Column(String, nullable=False, default="[]")
    voice_note_ref = Column(String, nullable=True)


class BaselineSnapshot(Base):
    __tablename__ = "baselines"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    computed_at = Column(DateTime, default=utcnow, index=True, nullable=False)
    window_days = Column(Integer, nullable=False, default=21)
    sample_count = Column(Integer, nullable=False, default=0)
    rolling_mean = Column(Float, nullable=False)
    rolling_std = Column(Float, nullable=False)
    z_score = Column(Float, nullable=False)
    change_point_detected = Column(Boolean, nullable=False, default=False)
    confidence = Column(Float, nullable=False, default=0.0)


class InterventionRun(Base):
    __tablename__ = "intervention_runs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    intervention_id = Column(String, index=True, nullable=False)
    start_time = Column(DateTime, default=utcnow, index=True, nullable=False)
    end_time = Column(DateTime, nullable=True)
    outcome_encrypted = Column(String, nullable=True)
    effectiveness = Column(Integer, nullable=True)


class ConsentSettings(Base):
    __tablename__ = "consent_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, index=True, nullable=False)
    mood_data_consent = Column(Boolean, nullable=False, default=True)
    behavioral_data_consent = Column(Boolean, nullable=False, default=True)
    analytics_consent = Column(Boolean, nullable=False, default=False)
    crash_reporting_consent = Column(Boolean, nullable=False, default=False)
    local_storage_only = Column(Boolean, nullable=False, default=True)
    data_retention_days = Column(Integer, nullable=False, default=365)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class CrisisEvent(Base):
    __tablename__ = "crisis_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    source = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    matched_keywords_json = Column(String, nullable=False, default="[]")


USER_TABLES = [MoodEntry, BaselineSnapshot, InterventionRun, ConsentSettings, CrisisEvent, User]


class Database:
    """Owns the engine and hands out short-lived sessions."""

    def __init__(self, url: str) -> None:
        self.url = url
        if url.startswith("sqlite") and ":memory:" in url:
            self.engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        elif url.startswith("sqlite"):
            self.engine = create_engine(url, connect_args={"check_same_thread": False})
        else:
            self.engine = create_engine(url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def ping(self) -> bool:
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True

    def dispose(self) -> None:
        self.engine.dispose()
