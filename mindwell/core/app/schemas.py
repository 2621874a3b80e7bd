from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .baseline_engine import Baseline, MoodTrend
from .crisis_detector import CrisisResponse, CrisisScan
from .recommendation import Recommendation


class MoodEntryView(BaseModel):
    id: int
    timestamp: datetime
    mood_label: str
    intensity: int
    tags: List[str] = Field(default_factory=list)
    voice_note_ref: Optional[str] = None
    note: Optional[str] = None
    is_corrupt: bool = False
    decryption_error: Optional[str] = None


class BaselineView(BaseModel):
    id: int
    computed_at: datetime
    window_days: int
    sample_count: int
    rolling_mean: float
    rolling_std: float
    z_score: float
    change_point_detected: bool
    confidence: float


class InterventionRunView(BaseModel):
    id: int
    intervention_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    outcome: Optional[str] = None
    effectiveness: Optional[int] = None
    is_corrupt: bool = False
    decryption_error: Optional[str] = None


class ConsentView(BaseModel):
    mood_data_consent: bool = True
    behavioral_data_consent: bool = True
    analytics_consent: bool = False
    crash_reporting_consent: bool = False
    local_storage_only: bool = True
    data_retention_days: int = Field(default=365, ge=1)
    updated_at: Optional[datetime] = None


class CrisisEventView(BaseModel):
    id: int
    created_at: datetime
    source: str
    severity: str
    matched_keywords: List[str] = Field(default_factory=list)


class UserView(BaseModel):
    user_id: str
    created_at: datetime


class ExportPayload(BaseModel):
    version: str
    export_date: datetime
    user_id: str
    user: Optional[UserView] = None
    mood_entries: List[MoodEntryView] = Field(default_factory=list)
    baselines: List[BaselineView] = Field(default_factory=list)
    interventions: List[InterventionRunView] = Field(default_factory=list)
    consent: Optional[ConsentView] = None
    crisis_events: List[CrisisEventView] = Field(default_factory=list)


class MoodSubmissionResult(BaseModel):
    status: str
    entry_id: Optional[int] = None
    crisis: CrisisScan
    crisis_response: Optional[CrisisResponse] = None
    baseline: Optional[Baseline] = None
    recommendation: Optional[Recommendation] = None


class InterventionOutcomeResult(BaseModel):
    status: str
    run: InterventionRunView
    crisis: CrisisScan
    crisis_response: Optional[CrisisResponse] = None


class WellnessStats(BaseModel):
    total_mood_entries: int
    total_interventions: int
    average_mood: float
    current_streak_days: int
    best_streak_days: int
    trend: MoodTrend
