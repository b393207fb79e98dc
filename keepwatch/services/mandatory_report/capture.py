"""Mandatory-Report Capture Flow.

When a minor discloses abuse in a guided conversation the trigger is
recorded immediately, the conversation pauses, and the subject is offered
a form for optional contact details. Submitting or skipping both leave a
record with a report timestamp; the record proves the escalation
happened whether or not any details were given.
The pause is kept on the stored record, so every service reading the
same repository agrees on whether a session is waiting for the form.

The report email and the database write are attempted independently: a
failure in one never prevents the other.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional

from keepwatch.shared.utils import hash_pii
from keepwatch.services.audit_service import AuditAction, AuditLogger
from keepwatch.services.notification_service.templates import (
    render_mandatory_report,
    render_ops_alert,
)

if TYPE_CHECKING:
    from keepwatch.services.notification_service.dispatchers import EmailDispatcher
    from .report_repository import ReportRepository

logger = logging.getLogger(__name__)

CAPTURE_TTL = timedelta(minutes=30)

SUBMITTED_MESSAGE = "Mandatory report submitted. Pastor will contact you immediately."
SKIPPED_MESSAGE = "Thank you. The pastor has been notified and has what he needs."
FAILED_MESSAGE = (
    "We could not save your report. Please contact the pastor directly "
    "or call Child Protective Services."
)
ALREADY_RESOLVED_MESSAGE = (
    "A report for this conversation was already received. Please contact "
    "the pastor directly with anything new."
)


class ReportResolution(Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ReportFields:
    """Optional details offered by the subject."""
    full_name: Optional[str] = None
    age: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    contact_email: Optional[str] = None
    
    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ReportFields":
        """Build from request fields; blanks become None."""
        def clean(key: str) -> Optional[str]:
            value = data.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None
        
        return cls(
            full_name=clean("full_name"),
            age=clean("age"),
            phone=clean("phone"),
            address=clean("address"),
            contact_email=clean("contact_email"),
        )
    
    @property
    def provided(self) -> int:
        return sum(
            1 for v in (self.full_name, self.age, self.phone, self.address, self.contact_email)
            if v is not None
        )


@dataclass(frozen=True)
class MandatoryReportRecord:
    """Persisted record of a minor-abuse disclosure, keyed by session."""
    session_id: str
    triggered_at: datetime
    full_name: Optional[str] = None
    age: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    contact_email: Optional[str] = None
    report_timestamp: Optional[datetime] = None
    resolution: ReportResolution = ReportResolution.PENDING
    email_sent: bool = False
    guard_expires_at: Optional[datetime] = None
    
    @property
    def resolved(self) -> bool:
        return self.report_timestamp is not None


@dataclass(frozen=True)
class CaptureGuard:
    """Short-lived marker that the conversation is paused for capture."""
    session_id: str
    issued_at: datetime
    expires_at: datetime
    
    def active(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) < self.expires_at


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of submit or skip, as shown to the subject."""
    success: bool
    message: str
    record: Optional[MandatoryReportRecord] = None
    email_sent: bool = False
    
    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message}


class MandatoryReportFlow:
    """Coordinates trigger, capture and resolution of mandatory reports."""
    
    def __init__(
        self,
        repository: Optional["ReportRepository"] = None,
        email_sender: Optional["EmailDispatcher"] = None,
        ops_email: Optional[str] = None,
        admin_base_url: str = "http://localhost:3000",
        audit_logger: Optional[AuditLogger] = None,
        guard_ttl: timedelta = CAPTURE_TTL,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize the flow.
        
        Args:
            repository: Report storage (in-memory if omitted)
            email_sender: SES sender for the report and ops emails
            ops_email: Address alerted when a report cannot be stored
            admin_base_url: Base URL for the conversation link
            audit_logger: Audit trail for trigger and resolution
            guard_ttl: How long a capture guard pauses the conversation
            clock: Time source
        """
        if repository is None:
            from .report_repository import InMemoryReportRepository
            repository = InMemoryReportRepository()
        
        self.repository = repository
        self.email_sender = email_sender
        self.ops_email = ops_email
        self.admin_base_url = admin_base_url
        self.audit_logger = audit_logger
        self.guard_ttl = guard_ttl
        self._clock = clock
        
        logger.info(
            "MANDATORY_REPORT_FLOW_INITIALIZED",
            extra={
                "email_configured": email_sender is not None,
                "ops_email_configured": bool(ops_email),
                "guard_ttl_seconds": int(guard_ttl.total_seconds()),
            }
        )
    
    def begin_capture(self, session_id: str) -> Optional[CaptureGuard]:
        """Durably record the trigger and pause the conversation.
        
        The guard is stored on the report row, so every service reading
        the same repository sees the pause. A session whose report is
        already resolved is not paused again.
        
        Returns:
            The guard, or None if the report was already resolved
        
        Raises:
            RepositoryError: If the trigger could not be stored; the
                dispatcher retries once and logs the final failure
        """
        now = self._clock()
        record = self.repository.record_trigger(session_id, now, now + self.guard_ttl)
        
        if record.resolved:
            logger.warning(
                "MANDATORY_REPORT_RETRIGGERED",
                extra={
                    "session_id_hash": hash_pii(session_id),
                    "existing_resolution": record.resolution.value,
                }
            )
            self._audit(AuditAction.REPORT_TRIGGERED, session_id, {
                "triggered_at": now.isoformat(),
                "already_resolved": True,
            })
            return None
        
        guard = self._guard_for(record, now)
        logger.critical(
            "MANDATORY_REPORT_TRIGGERED",
            extra={
                "session_id_hash": hash_pii(session_id),
                "expires_at": record.guard_expires_at.isoformat(),
            }
        )
        self._audit(AuditAction.REPORT_TRIGGERED, session_id, {"triggered_at": now.isoformat()})
        
        return guard
    
    def _guard_for(
        self,
        record: Optional[MandatoryReportRecord],
        now: datetime,
    ) -> Optional[CaptureGuard]:
        if record is None or record.resolved or record.guard_expires_at is None:
            return None
        guard = CaptureGuard(
            session_id=record.session_id,
            issued_at=record.triggered_at,
            expires_at=record.guard_expires_at,
        )
        return guard if guard.active(now) else None
    
    def active_guard(self, session_id: str) -> Optional[CaptureGuard]:
        """The session's unexpired guard, if the conversation is paused."""
        return self._guard_for(self.repository.get(session_id), self._clock())
    
    def capture_required(self, session_id: str, triggered: bool = False) -> bool:
        """Whether the conversation should show the report form.
        
        `triggered` is set when the current message routed to a mandatory
        report; its guard is written by a dispatch worker and may not be
        stored yet. A resolved report never pauses the session again.
        """
        try:
            record = self.repository.get(session_id)
        except Exception as e:
            logger.error(
                "CAPTURE_STATUS_READ_FAILED",
                extra={"session_id_hash": hash_pii(session_id), "error": str(e)}
            )
            return triggered
        
        if record is None:
            return triggered
        if record.resolved:
            return False
        return triggered or self._guard_for(record, self._clock()) is not None
    
    def submit(self, session_id: str, fields: ReportFields) -> CaptureResult:
        """Store the subject's details and send the report email.
        
        Works with zero fields. A session already resolved keeps its
        earlier details.
        """
        return self._resolve(session_id, fields, ReportResolution.SUBMITTED)
    
    def skip(self, session_id: str) -> CaptureResult:
        """Record that the subject declined to give details."""
        return self._resolve(session_id, ReportFields(), ReportResolution.SKIPPED)
    
    def _resolve(
        self,
        session_id: str,
        fields: ReportFields,
        resolution: ReportResolution,
    ) -> CaptureResult:
        now = self._clock()
        record: Optional[MandatoryReportRecord] = None
        
        try:
            record = self.repository.resolve(session_id, fields, resolution, now)
        except Exception as e:
            logger.critical(
                "REPORT_WRITE_FAILED",
                extra={
                    "session_id_hash": hash_pii(session_id),
                    "resolution": resolution.value,
                    "error": str(e),
                    "action": "MANUAL_RECORDING_REQUIRED",
                }
            )
            self._alert_ops(session_id, str(e))
        
        applied = record is None or record.report_timestamp == now
        if record is not None and not applied:
            logger.warning(
                "REPORT_ALREADY_RESOLVED",
                extra={
                    "session_id_hash": hash_pii(session_id),
                    "existing_resolution": record.resolution.value,
                    "fields_provided": fields.provided,
                }
            )
        
        email_sent = False
        if resolution == ReportResolution.SUBMITTED and applied:
            email_record = record or MandatoryReportRecord(
                session_id=session_id,
                triggered_at=now,
                full_name=fields.full_name,
                age=fields.age,
                phone=fields.phone,
                address=fields.address,
                contact_email=fields.contact_email,
                report_timestamp=now,
                resolution=resolution,
            )
            email_sent = self._send_report_email(email_record)
            if email_sent and record is not None:
                record = self._mark_email_sent(record)
        
        if record is None:
            return CaptureResult(success=False, message=FAILED_MESSAGE, email_sent=email_sent)
        
        if applied:
            logger.info(
                "MANDATORY_REPORT_RESOLVED",
                extra={
                    "session_id_hash": hash_pii(session_id),
                    "resolution": resolution.value,
                    "fields_provided": fields.provided,
                    "email_sent": email_sent,
                }
            )
            action = (
                AuditAction.REPORT_SUBMITTED
                if resolution == ReportResolution.SUBMITTED
                else AuditAction.REPORT_SKIPPED
            )
            self._audit(action, session_id, {
                "fields_provided": fields.provided,
                "email_sent": email_sent,
                "report_timestamp": now.isoformat(),
            })
        
        if not applied:
            message = ALREADY_RESOLVED_MESSAGE
        elif resolution == ReportResolution.SUBMITTED:
            message = SUBMITTED_MESSAGE
        else:
            message = SKIPPED_MESSAGE
        return CaptureResult(success=True, message=message, record=record, email_sent=email_sent)
    
    def _send_report_email(self, record: MandatoryReportRecord) -> bool:
        if self.email_sender is None:
            logger.critical(
                "MANDATORY_REPORT_EMAIL_NOT_CONFIGURED",
                extra={"session_id_hash": hash_pii(record.session_id), "action": "MANUAL_FOLLOWUP_REQUIRED"}
            )
            return False
        
        try:
            message_id = self.email_sender.send_message(
                render_mandatory_report(record, self.admin_base_url)
            )
        except Exception as e:
            logger.critical(
                "MANDATORY_REPORT_EMAIL_FAILED",
                extra={"session_id_hash": hash_pii(record.session_id), "error": str(e)}
            )
            return False
        
        logger.critical(
            "MANDATORY_REPORT_EMAIL_SENT",
            extra={"session_id_hash": hash_pii(record.session_id), "message_id": message_id}
        )
        return True
    
    def _mark_email_sent(self, record: MandatoryReportRecord) -> MandatoryReportRecord:
        try:
            return self.repository.mark_email_sent(record.session_id)
        except Exception as e:
            logger.error(
                "REPORT_EMAIL_FLAG_WRITE_FAILED",
                extra={"session_id_hash": hash_pii(record.session_id), "error": str(e)}
            )
            return record
    
    def _alert_ops(self, session_id: str, error: str) -> None:
        """Best-effort ops email; failures are only logged."""
        if self.email_sender is None or not self.ops_email:
            return
        
        try:
            self.email_sender.send_message(render_ops_alert(session_id, error), to=[self.ops_email])
        except Exception as e:
            logger.critical(
                "OPS_ALERT_FAILED",
                extra={"session_id_hash": hash_pii(session_id), "error": str(e)}
            )
    
    def _audit(self, action: AuditAction, session_id: str, details: Dict[str, Any]) -> None:
        if self.audit_logger is None:
            return
        try:
            self.audit_logger.log_report(action, session_id, details)
        except Exception as e:
            logger.error(
                "REPORT_AUDIT_FAILED",
                extra={"session_id_hash": hash_pii(session_id), "action": action.value, "error": str(e)}
            )
