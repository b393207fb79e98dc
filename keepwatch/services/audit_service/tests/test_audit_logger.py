"""Tests for AuditLogger - hash-chained audit trail."""
import threading
import uuid
from dataclasses import replace
from unittest.mock import patch

import pytest

from keepwatch.shared.database import RepositoryError
from keepwatch.shared.models import CategorySet, SafetyEvent, SignalCategory, SubmissionSource
from keepwatch.shared.utils import configure_pii_salt, hash_pii, hash_text_for_audit
from keepwatch.services.audit_service.audit_logger import (
    AuditLogger,
    AuditAction,
    AuditEntity,
    GENESIS_HASH,
)
from keepwatch.services.audit_service.audit_repository import AuditRepository


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def audit():
    return AuditLogger()


def make_event(**overrides):
    defaults = dict(
        event_id=str(uuid.uuid4()),
        subject_id="U1",
        raw_text="I feel hopeless",
        categories=CategorySet({SignalCategory.DISTRESS: ("hopeless",)}),
        source=SubmissionSource.PRAYER_REQUEST,
        record_id="prayer_001",
    )
    defaults.update(overrides)
    return SafetyEvent(**defaults)


class TestAuditEntryCreation:
    def test_log_creates_entry(self, audit):
        entry = audit.log(
            action=AuditAction.ITEM_HIDDEN,
            entity_type=AuditEntity.PRAYER_REQUEST,
            entity_id="prayer_001",
            actor_id="moderator_1",
            actor_role="moderator",
        )
        
        assert entry.entry_id.startswith("audit_")
        assert entry.action == AuditAction.ITEM_HIDDEN
        assert entry.entity_id == "prayer_001"
        assert len(entry.entry_hash) == 64  # SHA-256 hex
    
    def test_defaults_to_system_actor(self, audit):
        entry = audit.log(
            action=AuditAction.ITEM_AUTO_HIDDEN,
            entity_type=AuditEntity.PRAYER_REQUEST,
            entity_id="prayer_001",
        )
        
        assert entry.actor_role == "system"
    
    def test_entry_is_immutable(self, audit):
        entry = audit.log(
            action=AuditAction.ITEM_DELETED,
            entity_type=AuditEntity.PRAYER_REQUEST,
            entity_id="prayer_001",
        )
        
        with pytest.raises(Exception):  # FrozenInstanceError
            entry.action = AuditAction.ITEM_EDITED
    
    def test_entries_are_stored_in_repository(self):
        repo = AuditRepository()
        audit = AuditLogger(repo)
        
        audit.log_report(AuditAction.REPORT_SKIPPED, "S9")
        
        assert len(repo.all_entries()) == 1
        assert repo.all_entries()[0].entity_type == AuditEntity.MANDATORY_REPORT


class TestSafetyEventEntries:
    def test_allowed_alert_logged_as_signal_detected(self, audit):
        entry = audit.log_safety_event(make_event(), alert_allowed=True, channels=["email", "push"])
        
        assert entry.action == AuditAction.SIGNAL_DETECTED
        assert entry.entity_type == AuditEntity.PRAYER_REQUEST
        assert entry.entity_id == "prayer_001"
        assert entry.details["categories"] == {"distress": ["hopeless"]}
        assert entry.details["channels"] == ["email", "push"]
    
    def test_suppressed_alert_still_logged(self, audit):
        entry = audit.log_safety_event(make_event(), alert_allowed=False, channels=["audit_log"])
        
        assert entry.action == AuditAction.ALERT_SUPPRESSED
    
    def test_subject_is_hashed_and_text_excluded(self, audit):
        entry = audit.log_safety_event(make_event(), alert_allowed=True, channels=[])
        
        assert entry.actor_id == hash_pii("U1")
        assert "I feel hopeless" not in str(entry.details)
        assert entry.details["text_sha256"] == hash_text_for_audit("I feel hopeless")
    
    def test_guidance_source_maps_to_session(self, audit):
        event = make_event(source=SubmissionSource.GUIDANCE, record_id="S9")
        
        entry = audit.log_safety_event(event, alert_allowed=True, channels=[])
        
        assert entry.entity_type == AuditEntity.GUIDANCE_SESSION
        assert entry.entity_id == "S9"


class TestHashChain:
    def test_first_entry_chains_to_genesis(self, audit):
        entry = audit.log_report(AuditAction.REPORT_TRIGGERED, "S1")
        
        assert entry.previous_hash == GENESIS_HASH
    
    def test_entries_form_chain(self, audit):
        first = audit.log_report(AuditAction.REPORT_TRIGGERED, "S1")
        second = audit.log_report(AuditAction.REPORT_SUBMITTED, "S1")
        
        assert second.previous_hash == first.entry_hash
        assert audit.verify_chain() is True
    
    def test_chain_resumes_from_repository(self):
        repo = AuditRepository()
        first = AuditLogger(repo).log_report(AuditAction.REPORT_TRIGGERED, "S1")
        
        second = AuditLogger(repo).log_report(AuditAction.REPORT_SKIPPED, "S1")
        
        assert second.previous_hash == first.entry_hash
    
    def test_tampered_entry_detected(self):
        repo = AuditRepository()
        audit = AuditLogger(repo)
        audit.log_report(AuditAction.REPORT_TRIGGERED, "S1")
        audit.log_report(AuditAction.REPORT_SUBMITTED, "S1")
        
        repo._memory_store[0] = replace(repo._memory_store[0], entity_id="S2")
        
        assert audit.verify_chain() is False
    
    def test_concurrent_logging_keeps_chain_intact(self, audit):
        def worker(n):
            audit.log_moderation(AuditAction.ITEM_EDITED, f"prayer_{n}", "moderator_1")
        
        threads = [threading.Thread(target=worker, args=(i,)) for i in range(25)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        
        assert len(audit.repository.all_entries()) == 25
        assert audit.verify_chain() is True
    
    def test_loggers_sharing_a_store_extend_one_chain(self):
        repo = AuditRepository()
        first, second = AuditLogger(repo), AuditLogger(repo)
        
        first.log_report(AuditAction.REPORT_TRIGGERED, "S1")
        second.log_moderation(AuditAction.ITEM_HIDDEN, "prayer_1", "moderator_1")
        entry = first.log_report(AuditAction.REPORT_SUBMITTED, "S1")
        
        assert entry.previous_hash == repo.all_entries()[1].entry_hash
        assert first.verify_chain() is True
    
    def test_failed_append_does_not_advance_chain(self):
        repo = AuditRepository()
        audit = AuditLogger(repo)
        
        with patch.object(repo, "_append_memory", side_effect=RepositoryError("disk full")):
            with pytest.raises(RepositoryError):
                audit.log_report(AuditAction.REPORT_TRIGGERED, "S1")
        entry = audit.log_report(AuditAction.REPORT_TRIGGERED, "S1")
        
        assert entry.previous_hash == GENESIS_HASH


class TestQuery:
    def test_query_filters_newest_first(self, audit):
        audit.log_report(AuditAction.REPORT_TRIGGERED, "S1")
        audit.log_moderation(AuditAction.ITEM_HIDDEN, "prayer_1", "moderator_1")
        audit.log_report(AuditAction.REPORT_SKIPPED, "S1")
        
        results = audit.query(entity_id="S1")
        
        assert [e.action for e in results] == [
            AuditAction.REPORT_SKIPPED,
            AuditAction.REPORT_TRIGGERED,
        ]
    
    def test_query_by_action(self, audit):
        audit.log_moderation(AuditAction.ITEM_HIDDEN, "prayer_1", "moderator_1")
        audit.log_moderation(AuditAction.ITEM_UNHIDDEN, "prayer_1", "moderator_1")
        
        results = audit.query(action=AuditAction.ITEM_HIDDEN)
        
        assert len(results) == 1
