"""Safety Service: lexical signal detection.

Every free-text submission passes through the Keyword Classifier before
anything is stored or routed. Detection is substring matching against
fixed per-category lists; it is a best-effort trigger for human follow-up,
not language understanding.

Components:
- classifier.py: KeywordClassifier and the module-level classify()
- config.py: Keyword lists and SafetyConfig

Usage:
    from keepwatch.services.safety_service import classify
    categories = classify("I don't think I can go on anymore")
"""

from .classifier import KeywordClassifier, classify, normalize_text
from .config import (
    SafetyConfig,
    CATEGORY_KEYWORDS,
    CRISIS_KEYWORDS,
    ABUSE_KEYWORDS,
    ADDICTION_KEYWORDS,
    DISTRESS_KEYWORDS,
    SPAM_KEYWORDS,
)

__all__ = [
    "KeywordClassifier",
    "classify",
    "normalize_text",
    "SafetyConfig",
    "CATEGORY_KEYWORDS",
    "CRISIS_KEYWORDS",
    "ABUSE_KEYWORDS",
    "ADDICTION_KEYWORDS",
    "DISTRESS_KEYWORDS",
    "SPAM_KEYWORDS",
]
