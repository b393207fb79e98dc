"""Audit repository for the append-only audit trail.

PostgreSQL in production (the application role has no UPDATE/DELETE on
audit_entries); an in-memory list for development and tests.
"""
import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, List, Optional

from keepwatch.shared.database import (
    ConnectionManager,
    RepositoryError,
)
from .audit_logger import AuditEntry, AuditAction, AuditEntity, GENESIS_HASH

logger = logging.getLogger(__name__)

AUDIT_COLUMNS = (
    "entry_id", "timestamp", "action", "entity_type", "entity_id",
    "actor_id", "actor_role", "details", "previous_hash", "entry_hash",
)

# pg_advisory_xact_lock key guarding the chain head
CHAIN_LOCK_KEY = 7_140_301


class AuditRepository:
    """Repository for immutable audit entries.
    
    Uses PostgreSQL when given a connection manager, otherwise memory.
    """
    
    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        """Initialize audit repository.
        
        Args:
            connection_manager: PostgreSQL connection manager
        """
        self.connection_manager = connection_manager
        self._memory_store: List[AuditEntry] = []
        self._memory_lock = threading.Lock()
        
        logger.info(
            "AUDIT_REPOSITORY_INITIALIZED",
            extra={"backend": self.backend}
        )
    
    @property
    def backend(self) -> str:
        return "postgresql" if self.connection_manager else "memory"
    
    def append_chained(self, build: Callable[[str], AuditEntry]) -> AuditEntry:
        """Append the entry `build` makes from the current chain head.
        
        This is append-only - entries cannot be modified or deleted. The
        head is read and the new entry stored under one lock (an advisory
        transaction lock in PostgreSQL), so concurrent writers in separate
        processes chain onto each other instead of forking the chain.
        
        Args:
            build: Makes the entry given the previous entry's hash
            
        Returns:
            The stored entry
            
        Raises:
            RepositoryError: If storage fails
        """
        if self.connection_manager:
            return self._append_postgres(build)
        return self._append_memory(build)
    
    def _append_postgres(self, build: Callable[[str], AuditEntry]) -> AuditEntry:
        """Append to PostgreSQL (append-only table)."""
        query = f"""
            INSERT INTO audit_entries ({", ".join(AUDIT_COLUMNS)})
            VALUES ({", ".join(["%s"] * len(AUDIT_COLUMNS))})
        """
        
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    # Held until commit; serializes every chain writer
                    cur.execute("SELECT pg_advisory_xact_lock(%s)", (CHAIN_LOCK_KEY,))
                    cur.execute("SELECT entry_hash FROM audit_entries ORDER BY seq DESC LIMIT 1")
                    row = cur.fetchone()
                    entry = build(row[0] if row else GENESIS_HASH)
                    cur.execute(query, self._entry_params(entry))
                conn.commit()
        except Exception as e:
            logger.error(
                "POSTGRES_APPEND_FAILED",
                extra={"error": str(e)}
            )
            raise RepositoryError(f"Failed to append audit entry: {e}") from e
        
        logger.info(
            "AUDIT_ENTRY_STORED_POSTGRES",
            extra={
                "entry_id": entry.entry_id,
                "action": entry.action.value,
            }
        )
        return entry
    
    def _entry_params(self, entry: AuditEntry) -> tuple:
        return (
            entry.entry_id,
            entry.timestamp,
            entry.action.value,
            entry.entity_type.value,
            entry.entity_id,
            entry.actor_id,
            entry.actor_role,
            json.dumps(entry.details, default=str),
            entry.previous_hash,
            entry.entry_hash,
        )
    
    def _append_memory(self, build: Callable[[str], AuditEntry]) -> AuditEntry:
        """Append to in-memory store (development only)."""
        with self._memory_lock:
            head = self._memory_store[-1].entry_hash if self._memory_store else GENESIS_HASH
            entry = build(head)
            self._memory_store.append(entry)
        
        logger.debug(
            "AUDIT_ENTRY_STORED_MEMORY",
            extra={
                "entry_id": entry.entry_id,
                "action": entry.action.value,
            }
        )
        return entry
    
    def all_entries(self) -> List[AuditEntry]:
        """Every entry in append order, for chain verification."""
        if not self.connection_manager:
            with self._memory_lock:
                return list(self._memory_store)
        
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {', '.join(AUDIT_COLUMNS)} FROM audit_entries ORDER BY seq ASC"
                )
                return [self._row_to_entry(row) for row in cur.fetchall()]
    
    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        actor_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Query audit entries.
        
        Args:
            entity_type: Filter by entity type
            entity_id: Filter by entity ID
            action: Filter by action
            actor_id: Filter by actor
            start_date: Filter by start date
            end_date: Filter by end date
            limit: Maximum entries to return
            
        Returns:
            Matching AuditEntry objects, newest first
        """
        if self.connection_manager:
            return self._query_postgres(
                entity_type, entity_id, action, actor_id,
                start_date, end_date, limit
            )
        return self._query_memory(
            entity_type, entity_id, action, actor_id,
            start_date, end_date, limit
        )
    
    def _query_postgres(
        self,
        entity_type: Optional[AuditEntity],
        entity_id: Optional[str],
        action: Optional[AuditAction],
        actor_id: Optional[str],
        start_date: Optional[datetime],
        end_date: Optional[datetime],
        limit: int,
    ) -> List[AuditEntry]:
        """Query PostgreSQL audit table."""
        query = f"SELECT {', '.join(AUDIT_COLUMNS)} FROM audit_entries WHERE 1=1"
        params: List[Any] = []
        
        if entity_type:
            query += " AND entity_type = %s"
            params.append(entity_type.value)
        if entity_id:
            query += " AND entity_id = %s"
            params.append(entity_id)
        if action:
            query += " AND action = %s"
            params.append(action.value)
        if actor_id:
            query += " AND actor_id = %s"
            params.append(actor_id)
        if start_date:
            query += " AND timestamp >= %s"
            params.append(start_date)
        if end_date:
            query += " AND timestamp <= %s"
            params.append(end_date)
        
        query += " ORDER BY seq DESC LIMIT %s"
        params.append(limit)
        
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
                
                return [self._row_to_entry(row) for row in rows]
    
    def _query_memory(
        self,
        entity_type: Optional[AuditEntity],
        entity_id: Optional[str],
        action: Optional[AuditAction],
        actor_id: Optional[str],
        start_date: Optional[datetime],
        end_date: Optional[datetime],
        limit: int,
    ) -> List[AuditEntry]:
        """Query in-memory store."""
        with self._memory_lock:
            results = list(self._memory_store)
        
        if entity_type:
            results = [e for e in results if e.entity_type == entity_type]
        if entity_id:
            results = [e for e in results if e.entity_id == entity_id]
        if action:
            results = [e for e in results if e.action == action]
        if actor_id:
            results = [e for e in results if e.actor_id == actor_id]
        if start_date:
            results = [e for e in results if e.timestamp >= start_date]
        if end_date:
            results = [e for e in results if e.timestamp <= end_date]
        
        # Append order is chain order; newest first
        results.reverse()
        
        return results[:limit]
    
    def _row_to_entry(self, row: tuple) -> AuditEntry:
        """Convert PostgreSQL row (AUDIT_COLUMNS order) to AuditEntry."""
        details = row[7]
        if isinstance(details, str):
            details = json.loads(details)
        
        return AuditEntry(
            entry_id=row[0],
            timestamp=row[1],
            action=AuditAction(row[2]),
            entity_type=AuditEntity(row[3]),
            entity_id=row[4],
            actor_id=row[5],
            actor_role=row[6],
            details=details or {},
            previous_hash=row[8],
            entry_hash=row[9],
        )
