"""Keyword Classifier configuration and keyword lists.

Detection is lexical: every keyword is matched as a case-insensitive
substring. Lists are ordered so matched keywords come back in a stable
order for the audit trail. Review quarterly with the pastoral team.
"""
from dataclasses import dataclass
from typing import Dict, Tuple

from keepwatch.shared.models import SignalCategory


@dataclass(frozen=True)
class SafetyConfig:
    """Configuration for classification behavior."""
    
    # Version tracking for audit trail
    pattern_version: str = "2025.11.02"
    
    # Flag reports from community members before a prayer request is queued
    flag_threshold: int = 3


CRISIS_KEYWORDS: Tuple[str, ...] = (
    # Suicide / self-harm
    "suicide",
    "suicidal",
    "kill myself",
    "end my life",
    "want to die",
    "no reason to live",
    "better off dead",
    "hurt myself",
    "self harm",
    "self-harm",
    "cut myself",
)

ABUSE_KEYWORDS: Tuple[str, ...] = (
    # Abuse disclosure / physical danger
    "abuse",
    "abused",
    "abusing",
    "hitting me",
    "hurting me",
    "being hurt",
    "touches me",
    "molest",
    "assault",
    "afraid",
    "scared for my life",
    "threatened",
    "violence",
)

ADDICTION_KEYWORDS: Tuple[str, ...] = (
    "overdose",
    "relapsed",
    "using again",
    "can't stop drinking",
)

DISTRESS_KEYWORDS: Tuple[str, ...] = (
    "hopeless",
    "no hope",
    "can't go on",
    "go on anymore",
    "give up",
    "nothing matters",
    "can't take it",
    "desperate",
    "urgent help",
    "emergency",
    "crisis",
)

CATEGORY_KEYWORDS: Dict[SignalCategory, Tuple[str, ...]] = {
    SignalCategory.CRISIS: CRISIS_KEYWORDS,
    SignalCategory.ABUSE: ABUSE_KEYWORDS,
    SignalCategory.ADDICTION: ADDICTION_KEYWORDS,
    SignalCategory.DISTRESS: DISTRESS_KEYWORDS,
}

# Commercial spam heuristics; a match routes the item to the moderation queue
SPAM_KEYWORDS: Tuple[str, ...] = (
    "buy now",
    "click here",
    "viagra",
    "casino",
    "lottery",
    "crypto",
    "investment opportunity",
    "make money",
    "free gift",
)

# Typographic apostrophes that phones substitute for "'"
APOSTROPHE_VARIANTS: Tuple[str, ...] = ("’", "‘", "ʼ")
