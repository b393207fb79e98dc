"""Safety pipeline - classification through dispatch for one submission.

Classification, the dedup claim and routing run in order inside the
request. The resulting jobs go to the DispatchExecutor and are never
awaited; whatever happens to them, the caller's content write has already
succeeded. When the jobs settle, the subject's cooldown claim is kept if
an email or push got through and released otherwise.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable, List, Mapping, Optional, Tuple

from keepwatch.shared.models import (
    CategorySet,
    Channel,
    HUMAN_CHANNELS,
    SafetyEvent,
    SubjectContact,
    SubmissionSource,
)
from keepwatch.shared.utils import hash_pii
from keepwatch.services.alert_service import AlertDeduplicator, CooldownClaim
from keepwatch.services.moderation_service.store import ModerationStore, PrayerCategory
from keepwatch.services.notification_service import DispatchBatch, DispatchExecutor, DispatchResult
from keepwatch.services.safety_service import KeywordClassifier
from .router import EscalationRouter

logger = logging.getLogger(__name__)

MINOR_AGE = 18


@dataclass(frozen=True)
class PipelineOutcome:
    """What the pipeline decided for one event."""
    event: SafetyEvent
    alert_allowed: bool
    channels: Tuple[Channel, ...] = ()
    batch: Optional[DispatchBatch] = field(default=None, compare=False)
    
    @property
    def capture_required(self) -> bool:
        return Channel.MANDATORY_REPORT in self.channels


@dataclass(frozen=True)
class SubmissionReceipt:
    """Returned to the submitter: the stored record id, nothing about safety."""
    record_id: str
    outcome: Optional[PipelineOutcome] = field(default=None, compare=False)


class SafetyPipeline:
    """Runs submissions through classify, dedup, route and dispatch."""
    
    def __init__(
        self,
        classifier: KeywordClassifier,
        deduplicator: AlertDeduplicator,
        router: EscalationRouter,
        executor: DispatchExecutor,
        moderation_store: ModerationStore,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.classifier = classifier
        self.deduplicator = deduplicator
        self.router = router
        self.executor = executor
        self.moderation_store = moderation_store
        self._clock = clock
        
        logger.info(
            "SAFETY_PIPELINE_INITIALIZED",
            extra={
                "pattern_version": classifier.pattern_version,
                "flag_threshold": router.flag_threshold,
            }
        )
    
    def process(self, event: SafetyEvent) -> PipelineOutcome:
        """Claim the cooldown, route, and schedule dispatch for an event."""
        claim: Optional[CooldownClaim] = None
        alert_allowed = False
        
        if event.has_signal:
            logger.warning(
                "SAFETY_SIGNAL_DETECTED",
                extra={
                    "event_id": event.event_id,
                    "subject_id_hash": hash_pii(event.subject_id),
                    "source": event.source.value,
                    "categories": sorted(c.value for c in event.categories),
                    "keyword_count": len(event.categories.keywords),
                }
            )
            claim = self.deduplicator.claim(event.subject_id, event.timestamp)
            alert_allowed = claim.granted
        
        try:
            jobs = self.router.route(event, alert_allowed)
            channels = tuple(job.channel for job in jobs)
            if not jobs:
                return PipelineOutcome(event=event, alert_allowed=alert_allowed)

            on_complete = partial(self._settle_claim, claim) if claim and claim.granted else None
            batch = self.executor.submit(event.event_id, jobs, on_complete)
        except Exception:
            # Nothing was sent, so the window goes back
            if claim is not None:
                self.deduplicator.release(claim)
            raise
        
        return PipelineOutcome(
            event=event,
            alert_allowed=alert_allowed,
            channels=channels,
            batch=batch,
        )
    
    def _settle_claim(self, claim: CooldownClaim, results: List[DispatchResult]) -> None:
        delivered = any(r.ok for r in results if r.channel in HUMAN_CHANNELS)
        self.deduplicator.settle(claim, delivered)
    
    def _process_safely(self, event: SafetyEvent) -> Optional[PipelineOutcome]:
        """Process without ever failing the caller's request."""
        try:
            return self.process(event)
        except Exception as e:
            logger.critical(
                "SAFETY_PROCESSING_FAILED",
                extra={
                    "event_id": event.event_id,
                    "record_id": event.record_id,
                    "error": str(e),
                    "action": "MANUAL_REVIEW_REQUIRED",
                }
            )
            return None
    
    def _event(
        self,
        subject_id: str,
        text: str,
        source: SubmissionSource,
        record_id: str,
        categories: Optional[CategorySet] = None,
        spam: Optional[List[str]] = None,
        **context: Any,
    ) -> SafetyEvent:
        if categories is None:
            categories = self.classifier.classify(text)
        if spam is None:
            spam = self.classifier.detect_spam(text)
        return SafetyEvent(
            event_id=f"evt_{uuid.uuid4().hex[:12]}",
            subject_id=subject_id,
            raw_text=text,
            categories=categories,
            source=source,
            record_id=record_id,
            spam_detected=bool(spam),
            timestamp=self._clock(),
            **context,
        )
    
    def submit_content(
        self,
        subject_id: str,
        text: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> SubmissionReceipt:
        """Store a submission, then run safety processing as a side effect.
        
        Args:
            subject_id: Submitting user or anonymous id
            text: Submitted text
            metadata: source (prayer_request | prayer_journal), category,
                is_anonymous, name, email, location, record_id
            
        Returns:
            SubmissionReceipt with the stored record id
            
        Raises:
            ValueError: Unknown source or category
            RepositoryError: If the content write itself failed
        """
        metadata = metadata or {}
        source = SubmissionSource(metadata.get("source", SubmissionSource.PRAYER_REQUEST.value))
        if source == SubmissionSource.GUIDANCE:
            raise ValueError("Guidance messages go through process_guidance_message")
        
        categories = self.classifier.classify(text)
        spam = self.classifier.detect_spam(text)
        is_anonymous = bool(metadata.get("is_anonymous", False))
        contact = SubjectContact() if is_anonymous else SubjectContact(
            name=metadata.get("name"),
            email=metadata.get("email"),
            location=metadata.get("location"),
        )
        
        if source == SubmissionSource.PRAYER_REQUEST:
            item = self.moderation_store.new_item(
                owner_id=subject_id,
                body=text,
                category=PrayerCategory(metadata.get("category", PrayerCategory.OTHER.value)),
                is_anonymous=is_anonymous,
                owner_name=contact.name,
                owner_location=contact.location,
                categories=categories,
                spam=spam,
            )
            record_id = self.moderation_store.create(item).id
        else:
            record_id = metadata.get("record_id") or f"entry_{uuid.uuid4().hex[:16]}"
        
        event = self._event(
            subject_id,
            text,
            source,
            record_id,
            categories=categories,
            spam=spam,
            contact=contact,
        )
        return SubmissionReceipt(record_id=record_id, outcome=self._process_safely(event))
    
    def process_guidance_message(
        self,
        session_id: str,
        text: str,
        age: Optional[int] = None,
        contact: Optional[SubjectContact] = None,
    ) -> Optional[PipelineOutcome]:
        """Screen one pastoral-guidance message.
        
        `age` comes from the guided age question; keywords alone never
        mark a subject as a minor.
        """
        event = self._event(
            session_id,
            text,
            SubmissionSource.GUIDANCE,
            session_id,
            subject_is_minor=age is not None and age < MINOR_AGE,
            contact=contact or SubjectContact(),
        )
        return self._process_safely(event)
    
    def flag_item(self, item_id: str) -> int:
        """Record a user flag; at the threshold the item goes to moderation.
        
        Raises:
            NotFoundError: Unknown item
        """
        count = self.moderation_store.increment_flag(item_id)
        logger.info("ITEM_FLAGGED", extra={"item_id": item_id, "flag_count": count})
        
        if count >= self.router.flag_threshold:
            item = self.moderation_store.get(item_id)
            event = self._event(
                item.owner_id,
                item.body,
                SubmissionSource.PRAYER_REQUEST,
                item.id,
                categories=CategorySet(),
                spam=[],
                flag_count=count,
            )
            self._process_safely(event)
        
        return count
    
    def heart_item(self, item_id: str) -> int:
        return self.moderation_store.increment_heart(item_id)
