"""Tests for the mandatory-report capture flow."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from keepwatch.shared.database import RepositoryError
from keepwatch.shared.utils import configure_pii_salt, hash_pii
from keepwatch.services.audit_service import AuditAction, AuditLogger
from keepwatch.services.mandatory_report import (
    InMemoryReportRepository,
    MandatoryReportFlow,
    ReportFields,
    ReportResolution,
)
from keepwatch.services.mandatory_report.capture import (
    ALREADY_RESOLVED_MESSAGE,
    FAILED_MESSAGE,
    SKIPPED_MESSAGE,
    SUBMITTED_MESSAGE,
)


NOW = datetime(2025, 6, 1, 12, 0, 0)
REPORT_SUBJECT = "URGENT: MANDATORY REPORT - Child Abuse (Under 18)"


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class Clock:
    def __init__(self, now):
        self.now = now
    
    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def email_sender():
    sender = MagicMock()
    sender.send_message.return_value = "ses-msg-1"
    return sender


@pytest.fixture
def audit_logger():
    return AuditLogger()


@pytest.fixture
def flow(email_sender, audit_logger, clock):
    return MandatoryReportFlow(
        repository=InMemoryReportRepository(),
        email_sender=email_sender,
        ops_email="ops@example.org",
        admin_base_url="https://church.example.org",
        audit_logger=audit_logger,
        clock=clock,
    )


class TestReportFields:
    
    def test_blank_strings_become_none(self):
        fields = ReportFields.from_mapping({
            "full_name": "",
            "age": "  ",
            "phone": None,
            "address": " 12 Elm St ",
        })
        
        assert fields == ReportFields(address="12 Elm St")
        assert fields.provided == 1
    
    def test_numbers_are_kept_as_text(self):
        assert ReportFields.from_mapping({"age": 15}).age == "15"


class TestBeginCapture:
    
    def test_records_trigger_and_pauses(self, flow, audit_logger):
        guard = flow.begin_capture("sess-1")
        
        assert guard.expires_at == NOW + timedelta(minutes=30)
        assert flow.active_guard("sess-1") == guard
        record = flow.repository.get("sess-1")
        assert record.triggered_at == NOW
        assert record.resolution == ReportResolution.PENDING
        assert record.guard_expires_at == NOW + timedelta(minutes=30)
        assert record.resolved is False
        assert audit_logger.query(action=AuditAction.REPORT_TRIGGERED)[0].entity_id == "sess-1"
    
    def test_guard_expires(self, flow, clock):
        flow.begin_capture("sess-1")
        
        clock.now = NOW + timedelta(minutes=31)
        
        assert flow.active_guard("sess-1") is None
    
    def test_repeat_trigger_keeps_first_timestamp_and_extends_guard(self, flow, clock):
        flow.begin_capture("sess-1")
        clock.now = NOW + timedelta(minutes=20)
        guard = flow.begin_capture("sess-1")
        
        assert flow.repository.get("sess-1").triggered_at == NOW
        assert guard.expires_at == NOW + timedelta(minutes=50)
        
        clock.now = NOW + timedelta(minutes=40)
        assert flow.active_guard("sess-1") == guard
    
    def test_trigger_after_resolution_does_not_pause(self, flow, audit_logger, clock):
        flow.begin_capture("sess-1")
        flow.skip("sess-1")
        clock.now = NOW + timedelta(minutes=5)
        
        assert flow.begin_capture("sess-1") is None
        assert flow.active_guard("sess-1") is None
        assert flow.capture_required("sess-1", triggered=True) is False
        latest = audit_logger.query(action=AuditAction.REPORT_TRIGGERED)[0]
        assert latest.details["already_resolved"] is True
    
    def test_session_ids_are_hashed_in_logs(self, flow, caplog):
        with caplog.at_level("INFO"):
            flow.begin_capture("sess-1")
            flow.submit("sess-1", ReportFields(full_name="Jamie"))
        
        triggered = [r for r in caplog.records if r.getMessage() == "MANDATORY_REPORT_TRIGGERED"]
        assert triggered[0].session_id_hash == hash_pii("sess-1")
        assert all(getattr(r, "session_id", None) is None for r in caplog.records)
    
    def test_storage_failure_propagates(self, email_sender):
        repository = MagicMock()
        repository.record_trigger.side_effect = RepositoryError("db down")
        repository.get.return_value = None
        flow = MandatoryReportFlow(repository=repository, email_sender=email_sender)
        
        with pytest.raises(RepositoryError):
            flow.begin_capture("sess-1")
        assert flow.active_guard("sess-1") is None


class TestSharedRepository:
    
    def test_flows_over_one_store_agree_on_the_pause(self, email_sender, clock):
        repository = InMemoryReportRepository()
        inbound = MandatoryReportFlow(repository=repository, clock=clock)
        reports = MandatoryReportFlow(repository=repository, email_sender=email_sender, clock=clock)
        
        inbound.begin_capture("sess-1")
        assert reports.active_guard("sess-1") is not None
        
        reports.submit("sess-1", ReportFields(phone="555-0100"))
        
        assert inbound.active_guard("sess-1") is None
        assert inbound.capture_required("sess-1") is False
    
    def test_fresh_trigger_pauses_before_the_row_exists(self, flow):
        assert flow.capture_required("sess-1", triggered=True) is True
        assert flow.capture_required("sess-1") is False
    
    def test_status_read_failure_falls_back_to_trigger(self, clock):
        repository = MagicMock()
        repository.get.side_effect = RepositoryError("db down")
        flow = MandatoryReportFlow(repository=repository, clock=clock)
        
        assert flow.capture_required("sess-1", triggered=True) is True
        assert flow.capture_required("sess-1") is False


class TestSubmit:
    
    def test_submit_with_details(self, flow, email_sender):
        flow.begin_capture("sess-1")
        
        result = flow.submit("sess-1", ReportFields(full_name="Jamie", age="14", phone="555-0100"))
        
        assert result.success is True
        assert result.message == SUBMITTED_MESSAGE
        assert result.email_sent is True
        assert result.record.full_name == "Jamie"
        assert result.record.report_timestamp == NOW
        assert result.record.resolution == ReportResolution.SUBMITTED
        assert result.record.email_sent is True
        assert flow.active_guard("sess-1") is None
        
        message = email_sender.send_message.call_args[0][0]
        assert message.subject == REPORT_SUBJECT
        assert "Full Name: Jamie" in message.text
        assert "Address: not provided" in message.text
        assert "https://church.example.org/admin/guidance-logs?session=sess-1" in message.text
    
    def test_submit_with_no_details(self, flow, email_sender):
        flow.begin_capture("sess-1")
        
        result = flow.submit("sess-1", ReportFields.from_mapping({"full_name": "", "phone": ""}))
        
        assert result.success is True
        assert result.record.report_timestamp == NOW
        assert result.record.full_name is None
        assert result.record.phone is None
        assert email_sender.send_message.call_count == 1
    
    def test_submit_without_trigger_creates_record(self, flow):
        result = flow.submit("sess-9", ReportFields(full_name="Jamie"))
        
        assert result.success is True
        assert flow.repository.get("sess-9").full_name == "Jamie"
    
    def test_second_submit_keeps_first_details(self, flow, email_sender, clock):
        flow.begin_capture("sess-1")
        flow.submit("sess-1", ReportFields(full_name="Jamie"))
        
        clock.now = NOW + timedelta(minutes=2)
        result = flow.submit("sess-1", ReportFields(full_name="Someone Else", phone="555-0199"))
        
        assert result.success is True
        assert result.message == ALREADY_RESOLVED_MESSAGE
        assert result.record.full_name == "Jamie"
        assert result.record.phone is None
        assert result.record.report_timestamp == NOW
        assert email_sender.send_message.call_count == 1
    
    def test_email_failure_keeps_record(self, flow, email_sender):
        email_sender.send_message.side_effect = RuntimeError("SES 500")
        flow.begin_capture("sess-1")
        
        result = flow.submit("sess-1", ReportFields(full_name="Jamie"))
        
        assert result.success is True
        assert result.email_sent is False
        stored = flow.repository.get("sess-1")
        assert stored.report_timestamp == NOW
        assert stored.email_sent is False
    
    def test_without_email_sender(self, audit_logger, clock):
        flow = MandatoryReportFlow(audit_logger=audit_logger, clock=clock)
        
        result = flow.submit("sess-1", ReportFields(full_name="Jamie"))
        
        assert result.success is True
        assert result.email_sent is False
    
    def test_resolution_is_audited(self, flow, audit_logger):
        flow.begin_capture("sess-1")
        flow.submit("sess-1", ReportFields(full_name="Jamie"))
        
        entry = audit_logger.query(action=AuditAction.REPORT_SUBMITTED)[0]
        assert entry.details["fields_provided"] == 1
        assert "Jamie" not in str(entry.details)


class TestSkip:
    
    def test_skip_records_timestamp_without_email(self, flow, email_sender):
        flow.begin_capture("sess-1")
        
        result = flow.skip("sess-1")
        
        assert result.success is True
        assert result.message == SKIPPED_MESSAGE
        assert result.record.report_timestamp == NOW
        assert result.record.resolution == ReportResolution.SKIPPED
        email_sender.send_message.assert_not_called()
        assert flow.active_guard("sess-1") is None
    
    def test_submit_after_skip_changes_nothing(self, flow, email_sender, clock):
        flow.begin_capture("sess-1")
        flow.skip("sess-1")
        clock.now = NOW + timedelta(minutes=1)
        
        result = flow.submit("sess-1", ReportFields(full_name="Jamie"))
        
        assert result.record.resolution == ReportResolution.SKIPPED
        assert result.message == ALREADY_RESOLVED_MESSAGE
        assert result.record.full_name is None
        email_sender.send_message.assert_not_called()


class TestWriteFailure:
    
    @pytest.fixture
    def broken_flow(self, email_sender, clock):
        repository = MagicMock()
        repository.resolve.side_effect = RepositoryError("connection refused")
        return MandatoryReportFlow(
            repository=repository,
            email_sender=email_sender,
            ops_email="ops@example.org",
            clock=clock,
        )
    
    def test_submit_still_emails_pastor_and_alerts_ops(self, broken_flow, email_sender):
        result = broken_flow.submit("sess-1", ReportFields(full_name="Jamie"))
        
        assert result.success is False
        assert result.message == FAILED_MESSAGE
        assert result.email_sent is True
        
        calls = email_sender.send_message.call_args_list
        assert len(calls) == 2
        assert calls[0][1] == {"to": ["ops@example.org"]}
        assert "sess-1" in calls[0][0][0].text
        assert calls[1][0][0].subject == REPORT_SUBJECT
    
    def test_skip_only_alerts_ops(self, broken_flow, email_sender):
        result = broken_flow.skip("sess-1")
        
        assert result.success is False
        email_sender.send_message.assert_called_once()
        assert email_sender.send_message.call_args[1] == {"to": ["ops@example.org"]}
    
    def test_ops_email_failure_is_contained(self, broken_flow, email_sender):
        email_sender.send_message.side_effect = RuntimeError("SES 500")
        
        result = broken_flow.skip("sess-1")
        
        assert result.success is False
