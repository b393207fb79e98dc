"""Signal categories and safety event domain models.

A SafetyEvent is created once per submission inside the request path and
discarded after routing; it is never persisted verbatim. Each channel that
fires persists only what it needs.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple


class SignalCategory(Enum):
    """Lexical signal categories detected in free text."""
    CRISIS = "crisis"           # Self-harm or suicidal ideation
    ABUSE = "abuse"             # Abuse disclosure or physical danger
    ADDICTION = "addiction"     # Relapse or overdose language
    DISTRESS = "distress"       # Severe hopelessness without explicit intent


class SubmissionSource(Enum):
    """Where the text entered the system."""
    PRAYER_REQUEST = "prayer_request"   # Community prayer wall (moderated)
    PRAYER_JOURNAL = "prayer_journal"   # Private journal entry
    GUIDANCE = "guidance"               # Pastoral-guidance conversation


@dataclass(frozen=True)
class CategorySet:
    """Matched categories, each with the literal keywords that triggered it.

    Immutable so a classification cannot change between routing and
    dispatch. Keywords are kept in list order for auditability.
    """
    matches: Dict[SignalCategory, Tuple[str, ...]] = field(default_factory=dict)

    def __contains__(self, category: object) -> bool:
        return category in self.matches

    def __iter__(self) -> Iterator[SignalCategory]:
        return iter(self.matches)

    def __len__(self) -> int:
        return len(self.matches)

    @property
    def is_empty(self) -> bool:
        return not self.matches

    @property
    def categories(self) -> FrozenSet[SignalCategory]:
        return frozenset(self.matches)

    @property
    def keywords(self) -> List[str]:
        """All matched keywords across categories, without duplicates."""
        seen: List[str] = []
        for words in self.matches.values():
            for word in words:
                if word not in seen:
                    seen.append(word)
        return seen

    def keywords_for(self, category: SignalCategory) -> Tuple[str, ...]:
        return self.matches.get(category, ())

    def to_dict(self) -> Dict[str, List[str]]:
        """Convert to a JSON-friendly mapping of category value to keywords."""
        return {
            category.value: list(words)
            for category, words in self.matches.items()
        }


@dataclass(frozen=True)
class SubjectContact:
    """Optional contact details the submitter chose to share."""
    name: Optional[str] = None
    email: Optional[str] = None
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "name": self.name,
            "email": self.email,
            "location": self.location,
        }


@dataclass(frozen=True)
class SafetyEvent:
    """Ephemeral event describing one classified submission.

    `record_id` points at what the submission produced (the stored prayer
    request id, or the guidance session id) so responders can look it up.
    `subject_is_minor` only comes from the guided age question, never from
    keyword matching.
    """
    event_id: str
    subject_id: str
    raw_text: str
    categories: CategorySet
    source: SubmissionSource
    record_id: str = ""
    subject_is_minor: bool = False
    contact: SubjectContact = field(default_factory=SubjectContact)
    flag_count: int = 0
    spam_detected: bool = False
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def has_signal(self) -> bool:
        return not self.categories.is_empty

    def to_dict(self) -> Dict[str, Any]:
        """Summary without raw text, suitable for logs and audit details."""
        return {
            "event_id": self.event_id,
            "source": self.source.value,
            "record_id": self.record_id,
            "categories": self.categories.to_dict(),
            "subject_is_minor": self.subject_is_minor,
            "flag_count": self.flag_count,
            "spam_detected": self.spam_detected,
            "timestamp": self.timestamp.isoformat(),
        }
