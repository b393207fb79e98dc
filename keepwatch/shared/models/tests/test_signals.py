"""Tests for signal and event models."""
from datetime import datetime

from keepwatch.shared.models import (
    CategorySet,
    SafetyEvent,
    SignalCategory,
    SubmissionSource,
)


class TestCategorySet:
    def test_empty(self):
        assert CategorySet().is_empty
        assert len(CategorySet()) == 0
    
    def test_keywords_deduplicated_in_order(self):
        categories = CategorySet({
            SignalCategory.CRISIS: ("want to die", "suicide"),
            SignalCategory.DISTRESS: ("crisis", "want to die"),
        })
        
        assert categories.keywords == ["want to die", "suicide", "crisis"]
        assert SignalCategory.CRISIS in categories
        assert categories.keywords_for(SignalCategory.ABUSE) == ()
        assert categories.to_dict() == {
            "crisis": ["want to die", "suicide"],
            "distress": ["crisis", "want to die"],
        }


class TestSafetyEvent:
    def test_summary_excludes_raw_text(self):
        event = SafetyEvent(
            event_id="evt_1",
            subject_id="user-1",
            raw_text="private words",
            categories=CategorySet({SignalCategory.ABUSE: ("abuse",)}),
            source=SubmissionSource.GUIDANCE,
            record_id="sess-1",
            subject_is_minor=True,
            timestamp=datetime(2025, 6, 1, 12, 0, 0),
        )
        
        data = event.to_dict()
        
        assert event.has_signal
        assert "private words" not in str(data)
        assert "user-1" not in str(data)
        assert data["source"] == "guidance"
        assert data["timestamp"] == "2025-06-01T12:00:00"
