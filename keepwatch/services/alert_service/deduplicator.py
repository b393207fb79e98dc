"""Alert Deduplicator - per-subject cooldown for pastor alerts.

One alert per subject per 24 hours, however many messages a distressed
person sends in that window. The cooldown is only kept when at least one
notification channel delivered; if every channel failed the claim is
released so the next submission can try again.

Store errors fail open: an unreachable store means "alert", never
"suppress".
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from keepwatch.shared.utils import hash_pii
from .cooldown_store import AlertCooldownRecord, CooldownStore, InMemoryCooldownStore

logger = logging.getLogger(__name__)

COOLDOWN_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class CooldownClaim:
    """Outcome of an atomic check-and-record for one subject.
    
    `previous` is the value the claim replaced, kept so a failed dispatch
    can hand the window back. `held` is False when the claim was granted
    without touching the store (fail-open), in which case there is
    nothing to settle.
    """
    subject_id: str
    granted: bool
    claimed_at: datetime
    previous: Optional[datetime] = None
    held: bool = False


class AlertDeduplicator:
    """Suppresses repeat alerts for a subject inside the cooldown window."""
    
    def __init__(
        self,
        store: Optional[CooldownStore] = None,
        window: timedelta = COOLDOWN_WINDOW,
    ):
        self.store = store or InMemoryCooldownStore()
        self.window = window
        
        logger.info(
            "ALERT_DEDUPLICATOR_INITIALIZED",
            extra={
                "store": type(self.store).__name__,
                "window_seconds": int(window.total_seconds()),
            }
        )
    
    def _within_window(self, last_alert_at: Optional[datetime], now: datetime) -> bool:
        if last_alert_at is None:
            return False
        return now - last_alert_at < self.window
    
    def should_alert(self, subject_id: str, now: datetime) -> bool:
        """True unless a prior alert for this subject is inside the window."""
        try:
            record = self.store.get(subject_id)
        except Exception as e:
            logger.error(
                "COOLDOWN_STORE_UNAVAILABLE",
                extra={
                    "subject_id_hash": hash_pii(subject_id),
                    "operation": "should_alert",
                    "error": str(e),
                    "action": "FAILING_OPEN",
                }
            )
            return True
        
        return not self._within_window(record.last_alert_at if record else None, now)
    
    def record_alert(self, subject_id: str, now: datetime) -> None:
        """Overwrite the subject's cooldown with `now`.
        
        Call only after at least one channel delivered.
        """
        try:
            self.store.put(AlertCooldownRecord(subject_id=subject_id, last_alert_at=now))
        except Exception as e:
            logger.error(
                "COOLDOWN_RECORD_FAILED",
                extra={
                    "subject_id_hash": hash_pii(subject_id),
                    "error": str(e),
                }
            )
            return
        
        logger.info(
            "COOLDOWN_RECORDED",
            extra={"subject_id_hash": hash_pii(subject_id), "last_alert_at": now.isoformat()}
        )
    
    def claim(self, subject_id: str, now: datetime) -> CooldownClaim:
        """Atomically check the window and reserve it for this event.
        
        Two concurrent submissions from the same subject cannot both be
        granted: the loser's compare-and-set fails and it is denied.
        """
        subject_hash = hash_pii(subject_id)
        try:
            record = self.store.get(subject_id)
            previous = record.last_alert_at if record else None
            
            if self._within_window(previous, now):
                logger.info(
                    "ALERT_SUPPRESSED_COOLDOWN",
                    extra={
                        "subject_id_hash": subject_hash,
                        "last_alert_at": previous.isoformat(),
                    }
                )
                return CooldownClaim(subject_id=subject_id, granted=False, claimed_at=now, previous=previous)
            
            won = self.store.compare_and_set(subject_id, previous, now)
        except Exception as e:
            logger.error(
                "COOLDOWN_STORE_UNAVAILABLE",
                extra={
                    "subject_id_hash": subject_hash,
                    "operation": "claim",
                    "error": str(e),
                    "action": "FAILING_OPEN",
                }
            )
            return CooldownClaim(subject_id=subject_id, granted=True, claimed_at=now)
        
        if not won:
            logger.info(
                "ALERT_SUPPRESSED_CONCURRENT_CLAIM",
                extra={"subject_id_hash": subject_hash}
            )
            return CooldownClaim(subject_id=subject_id, granted=False, claimed_at=now, previous=previous)
        
        logger.info(
            "COOLDOWN_CLAIMED",
            extra={"subject_id_hash": subject_hash, "claimed_at": now.isoformat()}
        )
        return CooldownClaim(
            subject_id=subject_id,
            granted=True,
            claimed_at=now,
            previous=previous,
            held=True,
        )
    
    def release(self, claim: CooldownClaim) -> bool:
        """Hand a held claim back, restoring the value it replaced.
        
        A no-op if someone else has claimed the subject since.
        
        Returns:
            True if the store was rolled back
        """
        if not claim.granted or not claim.held:
            return False
        
        subject_hash = hash_pii(claim.subject_id)
        try:
            if claim.previous is None:
                released = self.store.compare_and_delete(claim.subject_id, claim.claimed_at)
            else:
                released = self.store.compare_and_set(claim.subject_id, claim.claimed_at, claim.previous)
        except Exception as e:
            logger.error(
                "COOLDOWN_RELEASE_FAILED",
                extra={"subject_id_hash": subject_hash, "error": str(e)}
            )
            return False
        
        logger.warning(
            "COOLDOWN_RELEASED",
            extra={"subject_id_hash": subject_hash, "released": released}
        )
        return released
    
    def settle(self, claim: CooldownClaim, delivered: bool) -> None:
        """Keep or hand back a granted claim once dispatch has finished.
        
        Args:
            claim: Claim returned by claim()
            delivered: True if at least one notification channel succeeded
        """
        if not claim.granted or not claim.held:
            return
        
        if delivered:
            logger.info(
                "COOLDOWN_RECORDED",
                extra={
                    "subject_id_hash": hash_pii(claim.subject_id),
                    "last_alert_at": claim.claimed_at.isoformat(),
                }
            )
            return
        
        logger.warning(
            "ALL_ALERT_CHANNELS_FAILED",
            extra={"subject_id_hash": hash_pii(claim.subject_id)}
        )
        self.release(claim)
