from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

FALLBACK_INTERVENTION_ID = "breathing_478"

HIGH_DECLINE_Z = -1.5
MILD_DECLINE_Z = -1.0
POSITIVE_Z = 1.5


@dataclass(frozen=True)
class Intervention:
    id: str
    name: str
    kind: str
    duration_minutes: int
    regimes: Tuple[str, ...]
    hours: Optional[Tuple[int, int]] = None

    def available_at(self, hour: Optional[int]) -> bool:
        if self.hours is None or hour is None:
            return True
        start, end = self.hours
        return start <= hour <= end


INTERVENTIONS: Tuple[Intervention, ...] = (
    Intervention("breathing_478", "4-7-8 Breathing", "breathing", 5, ("grounding", "regulation")),
    Intervention("grounding_54321", "5-4-3-2-1 Grounding", "grounding", 3, ("grounding",)),
    Intervention("positive_affirmation", "Positive Affirmations", "affirmation", 2, ("reinforcement",)),
    Intervention("gratitude_reflection", "Gratitude Reflection", "affirmation", 4, ("reinforcement",)),
    Intervention("mindful_moment", "Mindful Moment", "mindful", 5, ("regulation", "maintenance")),
    Intervention("vr_forest", "VR Forest Scene", "vr", 10, ("maintenance",), hours=(6, 22)),
    Intervention(
        "progressive_relaxation",
        "Progressive Muscle Relaxation",
        "relaxation",
        15,
        ("regulation", "maintenance"),
        hours=(18, 23),
    ),
)


@dataclass
class Recommendation:
    intervention_id: str
    priority: str
    reason: str
    duration_minutes: int
    confidence: float = 0.0
    is_fallback: bool = False


def get_intervention(intervention_id: str) -> Optional[Intervention]:
    for intervention in INTERVENTIONS:
        if intervention.id == intervention_id:
            return intervention
    return None


def _read_number(baseline, *names: str) -> Optional[float]:
    for name in names:
        if isinstance(baseline, dict):
            value = baseline.get(name)
        else:
            value = getattr(baseline, name, None)
        if value is None or isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            return number
    return None


def _read_flag(baseline, *names: str) -> bool:
    for name in names:
        value = baseline.get(name) if isinstance(baseline, dict) else getattr(baseline, name, None)
        if isinstance(value, bool):
            return value
    return False


def classify_regime(z_score: float, change_point: bool) -> Tuple[str, str, str]:
    """Return (regime, priority, reason) for a z-score."""
    if z_score <= HIGH_DECLINE_Z:
        return "grounding", "high", "significant mood decline"
    if z_score <= MILD_DECLINE_Z:
        return "regulation", "medium", "mood below baseline"
    if change_point and z_score < 0:
        return "regulation", "medium", "mood change point detected"
    if z_score >= POSITIVE_Z:
        return "reinforcement", "low", "reinforcing positive state"
    return "maintenance", "low", "maintaining wellness"


def _normalize_hour(time_of_day) -> Optional[int]:
    if time_of_day is None:
        return datetime.now().hour
    if isinstance(time_of_day, datetime):
        return time_of_day.hour
    if isinstance(time_of_day, bool) or not isinstance(time_of_day, int):
        return None
    if 0 <= time_of_day <= 23:
        return time_of_day
    return None


def eligible_candidates(
    regime: str,
    recent_intervention_ids: Iterable[str],
    hour: Optional[int],
) -> List[Intervention]:
    recent = set(recent_intervention_ids or [])
    candidates = [
        intervention
        for intervention in INTERVENTIONS
        if regime in intervention.regimes
        and intervention.id not in recent
        and intervention.available_at(hour)
    ]
    # sorted() is stable, so equal durations keep catalog order
    return sorted(candidates, key=lambda intervention: intervention.duration_minutes)


def select(baseline, recent_intervention_ids: Optional[Iterable[str]] = None, time_of_day=None) -> Recommendation:
    """Pick one intervention for the current baseline. Never returns nothing."""
    z_score = _read_number(baseline, "z_score", "zScore")
    if z_score is None:
        z_score = 0.0
    change_point = _read_flag(baseline, "change_point_detected", "changePointDetected")
    confidence = _read_number(baseline, "confidence")
    confidence = max(0.0, min(1.0, confidence)) if confidence is not None else 0.0

    regime, priority, reason = classify_regime(z_score, change_point)
    try:
        recent = [str(item) for item in (recent_intervention_ids or [])]
    except TypeError:
        recent = []
    candidates = eligible_candidates(regime, recent, _normalize_hour(time_of_day))

    if candidates:
        chosen = candidates[0]
        is_fallback = False
    else:
        chosen = get_intervention(FALLBACK_INTERVENTION_ID)
        is_fallback = True

    return Recommendation(
        intervention_id=chosen.id,
        priority=priority,
        reason=reason,
        duration_minutes=chosen.duration_minutes,
        confidence=confidence,
        is_fallback=is_fallback,
    )
