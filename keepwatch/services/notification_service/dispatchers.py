"""Per-channel dispatchers.

Every dispatcher turns a DispatchJob into a DispatchResult and never
raises: a failing email provider must not stop the audit write, the push
or the content submission that produced the event.

External calls go through boto3 with bounded botocore timeouts and
botocore's own retries switched off; the executor owns the single retry.
"""
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence

from keepwatch.shared.models import Channel, DispatchJob, SubmissionSource
from keepwatch.shared.utils import hash_pii
from keepwatch.services.audit_service import AuditAction, AuditEntity, AuditLogger
from keepwatch.services.moderation_service.store import ItemStatus, ModerationStore
from .templates import RenderedMessage, render_pastor_alert, render_push

if TYPE_CHECKING:
    from keepwatch.services.mandatory_report.capture import MandatoryReportFlow

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class DispatchResult(ABC):
    """Outcome of one dispatch attempt; either an Ack or a DispatchError."""
    job_id: str
    channel: Channel
    attempts: int = 1
    
    @property
    @abstractmethod
    def ok(self) -> bool:
        pass


@dataclass(frozen=True)
class Ack(DispatchResult):
    """Channel accepted the job. `detail` is a provider id or note."""
    detail: str = ""
    
    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class DispatchError(DispatchResult):
    """Channel failed. Timeouts land here too."""
    error: str = ""
    retryable: bool = True
    
    @property
    def ok(self) -> bool:
        return False


class ChannelUnavailable(Exception):
    """The channel is not configured in this environment."""
    pass


def aws_client_config(timeout_seconds: float):
    """botocore Config with bounded timeouts and a single attempt."""
    from botocore.config import Config
    
    return Config(
        connect_timeout=timeout_seconds,
        read_timeout=timeout_seconds,
        retries={"max_attempts": 1, "mode": "standard"},
    )


class Dispatcher(ABC):
    """Base class: subclasses implement _send and may raise freely."""
    
    channel: Channel
    
    def dispatch(self, job: DispatchJob, attempt: int = 1) -> DispatchResult:
        """Run the job, converting any exception into a DispatchError."""
        try:
            detail = self._send(job)
        except ChannelUnavailable as e:
            return DispatchError(
                job_id=job.job_id,
                channel=self.channel,
                attempts=attempt,
                error=str(e),
                retryable=False,
            )
        except Exception as e:
            logger.warning(
                "DISPATCH_ATTEMPT_FAILED",
                extra={
                    "job_id": job.job_id,
                    "channel": self.channel.value,
                    "attempt": attempt,
                    "error_type": type(e).__name__,
                    "error": str(e),
                }
            )
            return DispatchError(
                job_id=job.job_id,
                channel=self.channel,
                attempts=attempt,
                error=f"{type(e).__name__}: {e}",
            )
        
        return Ack(job_id=job.job_id, channel=self.channel, attempts=attempt, detail=detail or "")
    
    @abstractmethod
    def _send(self, job: DispatchJob) -> Optional[str]:
        """Deliver the job; return a provider id or note."""
        pass


class EmailDispatcher(Dispatcher):
    """Pastor alert email through Amazon SES."""
    
    channel = Channel.EMAIL
    
    def __init__(
        self,
        sender: Optional[str],
        recipients: Sequence[str],
        admin_base_url: str = "http://localhost:3000",
        region: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """Initialize email dispatcher.
        
        Args:
            sender: Verified SES source address
            recipients: Pastor addresses
            admin_base_url: Base URL for record links
            region: AWS region (defaults to AWS_REGION env var)
            timeout_seconds: Connect and read timeout per call
        """
        self.sender = sender
        self.recipients: List[str] = [r for r in recipients if r]
        self.admin_base_url = admin_base_url
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self.timeout_seconds = timeout_seconds
        self._ses_client = None
        
        logger.info(
            "EMAIL_DISPATCHER_INITIALIZED",
            extra={
                "configured": self.configured,
                "recipient_count": len(self.recipients),
                "region": self.region,
            }
        )
    
    @property
    def configured(self) -> bool:
        return bool(self.sender and self.recipients)
    
    @property
    def ses_client(self):
        """Lazy initialization of SES client."""
        if self._ses_client is None:
            import boto3
            self._ses_client = boto3.client(
                "ses",
                region_name=self.region,
                config=aws_client_config(self.timeout_seconds),
            )
        return self._ses_client
    
    def send_message(self, message: RenderedMessage, to: Optional[Sequence[str]] = None) -> str:
        """Send a rendered message; raises on any failure.
        
        Returns:
            SES MessageId
        """
        recipients = [r for r in (to or self.recipients) if r]
        if not self.sender or not recipients:
            raise ChannelUnavailable("email sender or recipients not configured")
        
        body = {"Text": {"Data": message.text, "Charset": "UTF-8"}}
        if message.html:
            body["Html"] = {"Data": message.html, "Charset": "UTF-8"}
        
        response = self.ses_client.send_email(
            Source=self.sender,
            Destination={"ToAddresses": recipients},
            Message={
                "Subject": {"Data": message.subject, "Charset": "UTF-8"},
                "Body": body,
            },
        )
        return response["MessageId"]
    
    def _send(self, job: DispatchJob) -> Optional[str]:
        if not self.configured:
            logger.critical(
                "ALERT_EMAIL_FALLBACK_LOG",
                extra={
                    "job_id": job.job_id,
                    "event": job.event.to_dict(),
                    "reason": "email_not_configured",
                    "action": "MANUAL_FOLLOWUP_REQUIRED",
                }
            )
            raise ChannelUnavailable("email sender or recipients not configured")
        
        message_id = self.send_message(render_pastor_alert(job.event, self.admin_base_url))
        
        logger.info(
            "ALERT_EMAIL_SENT",
            extra={
                "job_id": job.job_id,
                "subject_id_hash": hash_pii(job.event.subject_id),
                "message_id": message_id,
            }
        )
        return message_id


class PushDispatcher(Dispatcher):
    """Pastor push notification through an Amazon SNS topic."""
    
    channel = Channel.PUSH
    
    def __init__(
        self,
        topic_arn: Optional[str],
        admin_base_url: str = "http://localhost:3000",
        region: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.topic_arn = topic_arn
        self.admin_base_url = admin_base_url
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self.timeout_seconds = timeout_seconds
        self._sns_client = None
        
        logger.info(
            "PUSH_DISPATCHER_INITIALIZED",
            extra={"configured": bool(topic_arn), "region": self.region}
        )
    
    @property
    def sns_client(self):
        """Lazy initialization of SNS client."""
        if self._sns_client is None:
            import boto3
            self._sns_client = boto3.client(
                "sns",
                region_name=self.region,
                config=aws_client_config(self.timeout_seconds),
            )
        return self._sns_client
    
    def _send(self, job: DispatchJob) -> Optional[str]:
        if not self.topic_arn:
            raise ChannelUnavailable("push topic not configured")
        
        message = render_push(job.event, self.admin_base_url)
        response = self.sns_client.publish(
            TopicArn=self.topic_arn,
            Subject=message.subject,
            Message=message.text,
        )
        
        logger.info(
            "ALERT_PUSH_SENT",
            extra={"job_id": job.job_id, "message_id": response["MessageId"]}
        )
        return response["MessageId"]


class AuditLogDispatcher(Dispatcher):
    """Chains an audit entry for every classified event."""
    
    channel = Channel.AUDIT_LOG
    
    def __init__(self, audit_logger: AuditLogger):
        self.audit_logger = audit_logger
    
    def _send(self, job: DispatchJob) -> Optional[str]:
        entry = self.audit_logger.log_safety_event(
            job.event,
            alert_allowed=job.alert_allowed,
            channels=list(job.routed),
        )
        return entry.entry_id


class ModerationQueueDispatcher(Dispatcher):
    """Puts stored content in front of moderators.
    
    Prayer requests at or over the flag threshold are hidden from the
    public wall until a moderator unhides them.
    """
    
    channel = Channel.MODERATION_QUEUE
    
    def __init__(
        self,
        store: ModerationStore,
        flag_threshold: int = 3,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.flag_threshold = flag_threshold
        self.audit_logger = audit_logger
    
    def _send(self, job: DispatchJob) -> Optional[str]:
        event = job.event
        details = {
            "flag_count": event.flag_count,
            "spam_detected": event.spam_detected,
            "source": event.source.value,
        }
        
        if event.source != SubmissionSource.PRAYER_REQUEST:
            # Guidance and journal text has no public item to hide
            logger.warning(
                "MODERATION_REVIEW_REQUESTED",
                extra={
                    "job_id": job.job_id,
                    "record_id": event.record_id,
                    "source": event.source.value,
                    "spam_detected": event.spam_detected,
                }
            )
            if self.audit_logger:
                entity = (
                    AuditEntity.GUIDANCE_SESSION
                    if event.source == SubmissionSource.GUIDANCE
                    else AuditEntity.JOURNAL_ENTRY
                )
                self.audit_logger.log(
                    action=AuditAction.ITEM_QUEUED,
                    entity_type=entity,
                    entity_id=event.record_id,
                    details=details,
                )
            return "review_logged"
        
        self.store.mark_needs_moderation(event.record_id)
        action = AuditAction.ITEM_QUEUED
        
        if event.flag_count >= self.flag_threshold:
            self.store.set_status(event.record_id, ItemStatus.HIDDEN)
            action = AuditAction.ITEM_AUTO_HIDDEN
            logger.warning(
                "ITEM_AUTO_HIDDEN",
                extra={
                    "item_id": event.record_id,
                    "flag_count": event.flag_count,
                    "threshold": self.flag_threshold,
                }
            )
        
        if self.audit_logger:
            self.audit_logger.log_moderation(action, event.record_id, "keepwatch-pipeline", details)
        return action.value


class MandatoryReportDispatcher(Dispatcher):
    """Durably records a minor-abuse disclosure and opens the capture."""
    
    channel = Channel.MANDATORY_REPORT
    
    def __init__(self, flow: "MandatoryReportFlow"):
        self.flow = flow
    
    def _send(self, job: DispatchJob) -> Optional[str]:
        guard = self.flow.begin_capture(job.event.record_id)
        if guard is None:
            return "already_resolved"
        return guard.expires_at.isoformat()
