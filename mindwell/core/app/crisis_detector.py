"""Keyword-tier crisis scanner.

Matching is case-insensitive substring search over four disjoint keyword
tiers. It is a heuristic safety net, not a clinical tool: paraphrased or
misspelled crisis language will not match, and short words in the lower tiers
also match inside longer words ("down" in "downtown"). Only the tables below
decide what matches.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

SEVERITY_ORDER = ("critical", "high", "medium", "low")

CRISIS_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "critical": (
        "suicide",
        "suicidal",
        "kill myself",
        "end my life",
        "end it all",
        "want to die",
        "better off dead",
        "no point living",
        "hurt myself",
        "self harm",
        "self-harm",
        "overdose",
        "jump off",
        "hang myself",
    ),
    "high": (
        "hopeless",
        "worthless",
        "can't go on",
        "cant go on",
        "no point",
        "give up",
        "no way out",
    ),
    "medium": (
        "depressed",
        "anxious",
        "overwhelmed",
        "stressed",
        "worried",
    ),
    "low": (
        "sad",
        "down",
        "upset",
        "frustrated",
        "tired",
    ),
}

CRISIS_MESSAGE = (
    "I'm concerned about what you've shared. Your safety and wellbeing are important. "
    "Please reach out to a crisis helpline immediately. "
    "You don't have to go through this alone. Professional help is available 24/7."
)


@dataclass(frozen=True)
class CrisisResource:
    name: str
    country_code: str
    available_24h: bool = True
    phone: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None


@dataclass
class CrisisScan:
    detected: bool
    severity: str
    matched_keywords: List[str] = field(default_factory=list)

    @property
    def is_critical(self) -> bool:
        return self.detected and self.severity == "critical"


@dataclass
class CrisisResponse:
    message: str
    resources: List[CrisisResource]
    scan: CrisisScan


def _find_matches(text: str, keywords: Tuple[str, ...]) -> List[str]:
    return [keyword for keyword in keywords if keyword in text]


def scan(text: Optional[str]) -> CrisisScan:
    lowered = (text or "").lower().replace("’", "'")
    matched: List[str] = []
    severity: Optional[str] = None
    for tier in SEVERITY_ORDER:
        tier_matches = _find_matches(lowered, CRISIS_KEYWORDS[tier])
        if tier_matches and severity is None:
            severity = tier
        matched.extend(tier_matches)
    return CrisisScan(
        detected=bool(matched),
        severity=severity or "low",
        matched_keywords=list(dict.fromkeys(matched)),
    )


def crisis_resources() -> List[CrisisResource]:
    return [
        CrisisResource(name="988 Suicide & Crisis Lifeline", country_code="US", phone="988", text="988"),
        CrisisResource(name="AASRA", country_code="IN", phone="+91-22-27546669"),
        CrisisResource(name="Befrienders Worldwide", country_code="INTL", url="https://befrienders.org"),
        CrisisResource(name="Local emergency services", country_code="INTL"),
    ]


def build_crisis_response(result: CrisisScan) -> CrisisResponse:
    return CrisisResponse(message=CRISIS_MESSAGE, resources=crisis_resources(), scan=result)
