"""Keyword Classifier.

Pure and deterministic: text in, CategorySet out. No I/O, no external
calls. Every matching keyword of every category is collected (there is no
first-match-wins), so the audit trail shows exactly what fired.
"""
import logging
from typing import Dict, List, Optional, Tuple

from keepwatch.shared.models import CategorySet, SignalCategory
from .config import (
    APOSTROPHE_VARIANTS,
    CATEGORY_KEYWORDS,
    SPAM_KEYWORDS,
    SafetyConfig,
)

logger = logging.getLogger(__name__)


def normalize_text(text: str) -> str:
    """Lowercase and fold typographic apostrophes to ASCII."""
    normalized = (text or "").lower()
    for variant in APOSTROPHE_VARIANTS:
        normalized = normalized.replace(variant, "'")
    return normalized


class KeywordClassifier:
    """Case-insensitive substring matcher over fixed keyword lists.
    
    Keyword lists are lowered once at construction; classification is
    O(len(text) x keyword count).
    """
    
    def __init__(
        self,
        config: Optional[SafetyConfig] = None,
        keywords: Optional[Dict[SignalCategory, Tuple[str, ...]]] = None,
        spam_keywords: Optional[Tuple[str, ...]] = None,
    ):
        self.config = config or SafetyConfig()
        source = keywords if keywords is not None else CATEGORY_KEYWORDS
        self._keywords = {
            category: tuple((word, word.lower()) for word in words)
            for category, words in source.items()
        }
        spam = spam_keywords if spam_keywords is not None else SPAM_KEYWORDS
        self._spam = tuple((word, word.lower()) for word in spam)
        
        logger.info(
            "KEYWORD_CLASSIFIER_INITIALIZED",
            extra={
                "pattern_version": self.config.pattern_version,
                "keyword_count": sum(len(w) for w in self._keywords.values()),
                "spam_pattern_count": len(self._spam),
            }
        )
    
    @property
    def pattern_version(self) -> str:
        return self.config.pattern_version
    
    def classify(self, text: str) -> CategorySet:
        """Return every matched category with its triggering keywords.
        
        Args:
            text: Raw submitted text
            
        Returns:
            CategorySet, empty when nothing matched
        """
        normalized = normalize_text(text)
        if not normalized:
            return CategorySet()
        
        matches = {}
        for category, words in self._keywords.items():
            found = tuple(original for original, lowered in words if lowered in normalized)
            if found:
                matches[category] = found
        
        return CategorySet(matches=matches)
    
    def detect_spam(self, text: str) -> List[str]:
        """Return the spam phrases present in text."""
        normalized = normalize_text(text)
        return [original for original, lowered in self._spam if lowered in normalized]


_default_classifier: Optional[KeywordClassifier] = None


def classify(text: str) -> CategorySet:
    """Classify text with the default keyword lists."""
    global _default_classifier
    if _default_classifier is None:
        _default_classifier = KeywordClassifier()
    return _default_classifier.classify(text)
