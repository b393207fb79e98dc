"""Per-subject alert cooldown storage.

One AlertCooldownRecord per subject, overwritten on each new alert. The
only read-then-write state in the pipeline, so every backend exposes an
atomic compare-and-set keyed by subject; no global lock is taken.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from keepwatch.shared.database import BaseRepository, ConnectionManager

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


@dataclass(frozen=True)
class AlertCooldownRecord:
    """Last successfully dispatched alert for a subject."""
    subject_id: str
    last_alert_at: datetime


class CooldownStore(ABC):
    """Keyed cooldown storage with an atomic per-subject swap."""
    
    @abstractmethod
    def get(self, subject_id: str) -> Optional[AlertCooldownRecord]:
        """Return the subject's record, or None."""
    
    @abstractmethod
    def put(self, record: AlertCooldownRecord) -> None:
        """Overwrite the subject's record unconditionally."""
    
    @abstractmethod
    def compare_and_set(
        self,
        subject_id: str,
        expected: Optional[datetime],
        new_value: datetime,
    ) -> bool:
        """Set last_alert_at to new_value only if it still equals expected.
        
        expected=None means "no record exists yet".
        
        Returns:
            True if this caller won the swap
        """
    
    @abstractmethod
    def compare_and_delete(self, subject_id: str, expected: datetime) -> bool:
        """Remove the record only if last_alert_at still equals expected."""


class InMemoryCooldownStore(CooldownStore):
    """Process-local store for development and tests.
    
    Subjects hash onto a fixed set of lock stripes, so swaps for different
    subjects rarely contend and the lock table never grows.
    """
    
    def __init__(self, stripes: int = LOCK_STRIPES):
        self._records: Dict[str, datetime] = {}
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]
    
    def _lock_for(self, subject_id: str) -> threading.Lock:
        return self._locks[hash(subject_id) % len(self._locks)]
    
    def get(self, subject_id: str) -> Optional[AlertCooldownRecord]:
        with self._lock_for(subject_id):
            last = self._records.get(subject_id)
        if last is None:
            return None
        return AlertCooldownRecord(subject_id=subject_id, last_alert_at=last)
    
    def put(self, record: AlertCooldownRecord) -> None:
        with self._lock_for(record.subject_id):
            self._records[record.subject_id] = record.last_alert_at
    
    def compare_and_set(
        self,
        subject_id: str,
        expected: Optional[datetime],
        new_value: datetime,
    ) -> bool:
        with self._lock_for(subject_id):
            if self._records.get(subject_id) != expected:
                return False
            self._records[subject_id] = new_value
            return True
    
    def compare_and_delete(self, subject_id: str, expected: datetime) -> bool:
        with self._lock_for(subject_id):
            if self._records.get(subject_id) != expected:
                return False
            del self._records[subject_id]
            return True


class PostgresCooldownStore(BaseRepository[AlertCooldownRecord], CooldownStore):
    """alert_cooldowns table; swaps are single conditional statements."""
    
    columns = ("subject_id", "last_alert_at")
    
    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(
            connection_manager,
            table_name="alert_cooldowns",
            key_column="subject_id",
            order_column="last_alert_at",
        )
    
    def _row_to_entity(self, row: tuple) -> AlertCooldownRecord:
        return AlertCooldownRecord(subject_id=row[0], last_alert_at=row[1])
    
    def _entity_to_params(self, entity: AlertCooldownRecord) -> Dict[str, Any]:
        return {
            "subject_id": entity.subject_id,
            "last_alert_at": entity.last_alert_at,
        }
    
    def get(self, subject_id: str) -> Optional[AlertCooldownRecord]:
        return self.find_by_id(subject_id)
    
    def put(self, record: AlertCooldownRecord) -> None:
        self.save(record)
    
    def compare_and_set(
        self,
        subject_id: str,
        expected: Optional[datetime],
        new_value: datetime,
    ) -> bool:
        if expected is None:
            query = """
                INSERT INTO alert_cooldowns (subject_id, last_alert_at)
                VALUES (%s, %s)
                ON CONFLICT (subject_id) DO NOTHING
            """
            params = (subject_id, new_value)
        else:
            query = """
                UPDATE alert_cooldowns SET last_alert_at = %s
                WHERE subject_id = %s AND last_alert_at = %s
            """
            params = (new_value, subject_id, expected)
        
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                won = cur.rowcount == 1
            conn.commit()
        return won
    
    def compare_and_delete(self, subject_id: str, expected: datetime) -> bool:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM alert_cooldowns WHERE subject_id = %s AND last_alert_at = %s",
                    (subject_id, expected),
                )
                removed = cur.rowcount == 1
            conn.commit()
        return removed
