"""Audit logger - hash-chained trail of every safety decision.

Each classified submission gets an entry whether or not the pastor alert
was suppressed, so the trail shows what the pipeline saw and what it did.
Moderator actions and mandatory-report outcomes are chained into the same
trail.
"""
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from keepwatch.shared.models import SafetyEvent, SubmissionSource
from keepwatch.shared.utils import hash_pii, hash_text_for_audit

if TYPE_CHECKING:
    from .audit_repository import AuditRepository

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


class AuditAction(Enum):
    """Actions that require audit logging."""
    # Pipeline decisions
    SIGNAL_DETECTED = "signal_detected"
    ALERT_SUPPRESSED = "alert_suppressed"
    
    # Mandatory reporting
    REPORT_TRIGGERED = "report_triggered"
    REPORT_SUBMITTED = "report_submitted"
    REPORT_SKIPPED = "report_skipped"
    
    # Moderation
    ITEM_QUEUED = "item_queued"
    ITEM_AUTO_HIDDEN = "item_auto_hidden"
    ITEM_EDITED = "item_edited"
    ITEM_HIDDEN = "item_hidden"
    ITEM_UNHIDDEN = "item_unhidden"
    ITEM_DELETED = "item_deleted"


class AuditEntity(Enum):
    """Entity types for audit logging."""
    PRAYER_REQUEST = "prayer_request"
    JOURNAL_ENTRY = "journal_entry"
    GUIDANCE_SESSION = "guidance_session"
    MANDATORY_REPORT = "mandatory_report"
    SYSTEM = "system"


SYSTEM_ACTOR = "keepwatch-pipeline"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry.
    
    Stored append-only; `previous_hash` chains it to the entry before.
    """
    entry_id: str
    timestamp: datetime
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str
    actor_id: str   # Hashed unless it is the system or a moderator
    actor_role: str
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""
    entry_hash: str = ""
    
    def compute_hash(self) -> str:
        """Compute SHA-256 hash of entry for verification.
        
        Returns:
            Hex-encoded hash string
        """
        content = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(content_str.encode()).hexdigest()


def verify_entries(entries: Iterable[AuditEntry]) -> bool:
    """Check that entries (oldest first) form an unbroken hash chain."""
    expected_prev = GENESIS_HASH
    count = 0
    for entry in entries:
        if entry.previous_hash != expected_prev:
            logger.critical(
                "AUDIT_CHAIN_BROKEN",
                extra={
                    "entry_id": entry.entry_id,
                    "expected_prev": expected_prev[:16],
                    "actual_prev": entry.previous_hash[:16],
                }
            )
            return False
        
        computed = entry.compute_hash()
        if computed != entry.entry_hash:
            logger.critical(
                "AUDIT_ENTRY_TAMPERED",
                extra={
                    "entry_id": entry.entry_id,
                    "computed": computed[:16],
                    "stored": entry.entry_hash[:16],
                }
            )
            return False
        
        expected_prev = entry.entry_hash
        count += 1
    
    logger.info("AUDIT_CHAIN_VERIFIED", extra={"entry_count": count})
    return True


_SOURCE_ENTITIES = {
    SubmissionSource.PRAYER_REQUEST: AuditEntity.PRAYER_REQUEST,
    SubmissionSource.PRAYER_JOURNAL: AuditEntity.JOURNAL_ENTRY,
    SubmissionSource.GUIDANCE: AuditEntity.GUIDANCE_SESSION,
}

_SESSION_ENTITIES = (AuditEntity.GUIDANCE_SESSION, AuditEntity.MANDATORY_REPORT)


class AuditLogger:
    """Appends chained audit entries to an AuditRepository.
    
    The repository reads the chain head and appends under one lock, so
    every logger over the same store, in any process, extends one chain.
    """
    
    def __init__(self, repository: Optional["AuditRepository"] = None):
        if repository is None:
            from .audit_repository import AuditRepository
            repository = AuditRepository()
        
        self.repository = repository
        
        logger.info(
            "AUDIT_LOGGER_INITIALIZED",
            extra={"backend": repository.backend}
        )
    
    def log(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        actor_id: str = SYSTEM_ACTOR,
        actor_role: str = "system",
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Log an audit entry.
        
        Args:
            action: Action being audited
            entity_type: Type of entity being acted upon
            entity_id: Identifier of entity
            actor_id: Who performed the action (hashed if a subject)
            actor_role: system, subject or moderator
            details: Additional context; never raw submission text
            
        Returns:
            Created AuditEntry
            
        Raises:
            RepositoryError: If the entry could not be stored
            
        Logs:
            - AUDIT_ENTRY_CREATED: After entry is stored
        """
        def chain_onto(previous_hash: str) -> AuditEntry:
            entry = AuditEntry(
                entry_id=f"audit_{uuid.uuid4().hex[:16]}",
                timestamp=datetime.utcnow(),
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                actor_role=actor_role,
                details=details or {},
                previous_hash=previous_hash,
            )
            return replace(entry, entry_hash=entry.compute_hash())

        entry = self.repository.append_chained(chain_onto)

        # Session ids double as subject ids
        logged_id = hash_pii(entity_id) if entity_type in _SESSION_ENTITIES else entity_id
        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry.entry_id,
                "action": action.value,
                "entity_type": entity_type.value,
                "entity_id": logged_id,
                "actor_role": actor_role,
                "entry_hash": entry.entry_hash[:16],
            }
        )
        
        return entry
    
    def log_safety_event(
        self,
        event: SafetyEvent,
        alert_allowed: bool,
        channels: List[str],
    ) -> AuditEntry:
        """Record a classified submission and the routing it received.
        
        Suppressed alerts are recorded too, under ALERT_SUPPRESSED.
        """
        action = AuditAction.SIGNAL_DETECTED if alert_allowed else AuditAction.ALERT_SUPPRESSED
        details = event.to_dict()
        details["channels"] = channels
        details["text_sha256"] = hash_text_for_audit(event.raw_text)
        
        return self.log(
            action=action,
            entity_type=_SOURCE_ENTITIES.get(event.source, AuditEntity.SYSTEM),
            entity_id=event.record_id or event.event_id,
            actor_id=hash_pii(event.subject_id),
            actor_role="subject",
            details=details,
        )
    
    def log_moderation(
        self,
        action: AuditAction,
        item_id: str,
        moderator_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Record a moderator action on a prayer request."""
        return self.log(
            action=action,
            entity_type=AuditEntity.PRAYER_REQUEST,
            entity_id=item_id,
            actor_id=moderator_id,
            actor_role="moderator",
            details=details,
        )
    
    def log_report(
        self,
        action: AuditAction,
        session_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Record a mandatory-report lifecycle step."""
        return self.log(
            action=action,
            entity_type=AuditEntity.MANDATORY_REPORT,
            entity_id=session_id,
            details=details,
        )
    
    def verify_chain(self) -> bool:
        """Verify integrity of the stored chain.
        
        Returns:
            True if chain is valid, False if tampered
        """
        return verify_entries(self.repository.all_entries())
    
    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Query audit entries, newest first."""
        return self.repository.query(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )
