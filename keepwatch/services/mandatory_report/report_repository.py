"""Mandatory report storage.

Rows are created on trigger and resolved at most once: the first submit
or skip sets report_timestamp and merges the subject's fields, and every
later resolution leaves the row as it was. While a row is pending,
guard_expires_at marks how long the conversation stays paused. The
application never deletes rows.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

from keepwatch.shared.database import BaseRepository, ConnectionManager, NotFoundError
from keepwatch.shared.utils import hash_pii
from .capture import MandatoryReportRecord, ReportFields, ReportResolution

logger = logging.getLogger(__name__)

PERSONAL_FIELDS = ("full_name", "age", "phone", "address", "contact_email")


class ReportRepository(ABC):
    """Keyed mandatory report storage."""
    
    @abstractmethod
    def get(self, session_id: str) -> Optional[MandatoryReportRecord]:
        pass
    
    @abstractmethod
    def record_trigger(
        self,
        session_id: str,
        triggered_at: datetime,
        guard_expires_at: datetime,
    ) -> MandatoryReportRecord:
        """Create the pending record or extend a pending record's guard.
        
        triggered_at is kept from the first trigger. A resolved record is
        returned untouched.
        """
        pass
    
    @abstractmethod
    def resolve(
        self,
        session_id: str,
        fields: ReportFields,
        resolution: ReportResolution,
        report_timestamp: datetime,
    ) -> MandatoryReportRecord:
        """Resolve the record if it is still pending, creating it if absent.
        
        Returns:
            The stored record; its report_timestamp equals the one passed
            in only if this call resolved it
        """
        pass
    
    @abstractmethod
    def mark_email_sent(self, session_id: str) -> MandatoryReportRecord:
        pass


class InMemoryReportRepository(ReportRepository):
    """Process-local store for development and tests."""
    
    def __init__(self):
        self._records: Dict[str, MandatoryReportRecord] = {}
        self._lock = threading.Lock()
    
    def get(self, session_id: str) -> Optional[MandatoryReportRecord]:
        with self._lock:
            return self._records.get(session_id)
    
    def record_trigger(
        self,
        session_id: str,
        triggered_at: datetime,
        guard_expires_at: datetime,
    ) -> MandatoryReportRecord:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                record = MandatoryReportRecord(
                    session_id=session_id,
                    triggered_at=triggered_at,
                    guard_expires_at=guard_expires_at,
                )
            elif not record.resolved:
                record = replace(record, guard_expires_at=guard_expires_at)
            self._records[session_id] = record
            return record
    
    def resolve(
        self,
        session_id: str,
        fields: ReportFields,
        resolution: ReportResolution,
        report_timestamp: datetime,
    ) -> MandatoryReportRecord:
        with self._lock:
            record = self._records.get(session_id) or MandatoryReportRecord(
                session_id=session_id,
                triggered_at=report_timestamp,
            )
            if record.resolved:
                return record
            
            merged = {
                name: getattr(fields, name) if getattr(fields, name) is not None else getattr(record, name)
                for name in PERSONAL_FIELDS
            }
            record = replace(
                record,
                report_timestamp=report_timestamp,
                resolution=resolution,
                **merged,
            )
            self._records[session_id] = record
            return record
    
    def mark_email_sent(self, session_id: str) -> MandatoryReportRecord:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                raise NotFoundError(f"Mandatory report not found: {session_id}")
            record = replace(record, email_sent=True)
            self._records[session_id] = record
            return record


class PostgresReportRepository(BaseRepository[MandatoryReportRecord], ReportRepository):
    """mandatory_reports table; resolution is one conditional upsert."""
    
    columns = (
        "session_id", "full_name", "age", "phone", "address", "contact_email",
        "triggered_at", "report_timestamp", "resolution", "email_sent",
        "guard_expires_at",
    )
    
    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(
            connection_manager,
            table_name="mandatory_reports",
            key_column="session_id",
            order_column="triggered_at",
        )
    
    def _row_to_entity(self, row: tuple) -> MandatoryReportRecord:
        data = dict(zip(self.columns, row))
        data["resolution"] = ReportResolution(data["resolution"])
        return MandatoryReportRecord(**data)
    
    def _entity_to_params(self, entity: MandatoryReportRecord) -> Dict[str, Any]:
        params = {name: getattr(entity, name) for name in self.columns}
        params["resolution"] = entity.resolution.value
        return params
    
    def get(self, session_id: str) -> Optional[MandatoryReportRecord]:
        return self.find_by_id(session_id)
    
    def _execute_returning(self, query: str, params: tuple) -> Optional[tuple]:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            conn.commit()
        return row
    
    def record_trigger(
        self,
        session_id: str,
        triggered_at: datetime,
        guard_expires_at: datetime,
    ) -> MandatoryReportRecord:
        row = self._execute_returning(
            f"""
            INSERT INTO mandatory_reports (session_id, triggered_at, resolution, guard_expires_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (session_id) DO UPDATE SET guard_expires_at = CASE
                WHEN mandatory_reports.report_timestamp IS NULL THEN EXCLUDED.guard_expires_at
                ELSE mandatory_reports.guard_expires_at END
            RETURNING {", ".join(self.columns)}
            """,
            (session_id, triggered_at, ReportResolution.PENDING.value, guard_expires_at),
        )
        record = self._row_to_entity(row)
        
        logger.info(
            "MANDATORY_REPORT_ROW_WRITTEN",
            extra={"session_id_hash": hash_pii(session_id), "resolution": record.resolution.value}
        )
        return record
    
    def resolve(
        self,
        session_id: str,
        fields: ReportFields,
        resolution: ReportResolution,
        report_timestamp: datetime,
    ) -> MandatoryReportRecord:
        # Fields merge only while report_timestamp is still NULL
        merges = ",\n                ".join(
            f"{name} = CASE WHEN mandatory_reports.report_timestamp IS NULL "
            f"THEN COALESCE(EXCLUDED.{name}, mandatory_reports.{name}) "
            f"ELSE mandatory_reports.{name} END"
            for name in PERSONAL_FIELDS
        )
        query = f"""
            INSERT INTO mandatory_reports (
                session_id, {", ".join(PERSONAL_FIELDS)},
                triggered_at, report_timestamp, resolution
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (session_id) DO UPDATE SET
                {merges},
                resolution = CASE WHEN mandatory_reports.report_timestamp IS NULL
                    THEN EXCLUDED.resolution ELSE mandatory_reports.resolution END,
                report_timestamp = COALESCE(mandatory_reports.report_timestamp, EXCLUDED.report_timestamp)
            RETURNING {", ".join(self.columns)}
        """
        params = (
            session_id,
            fields.full_name,
            fields.age,
            fields.phone,
            fields.address,
            fields.contact_email,
            report_timestamp,
            report_timestamp,
            resolution.value,
        )
        record = self._row_to_entity(self._execute_returning(query, params))
        
        logger.info(
            "MANDATORY_REPORT_ROW_WRITTEN",
            extra={"session_id_hash": hash_pii(session_id), "resolution": record.resolution.value}
        )
        return record
    
    def mark_email_sent(self, session_id: str) -> MandatoryReportRecord:
        row = self._execute_returning(
            f"UPDATE mandatory_reports SET email_sent = TRUE WHERE session_id = %s "
            f"RETURNING {', '.join(self.columns)}",
            (session_id,),
        )
        if row is None:
            raise NotFoundError(f"Mandatory report not found: {session_id}")
        return self._row_to_entity(row)
