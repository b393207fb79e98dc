"""Base repository pattern for database operations.

Provides common keyed operations shared by the pipeline's PostgreSQL
stores: cooldowns, moderated items and mandatory reports.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.
    
    Subclasses declare their column list and implement row/entity
    conversion while inheriting:
    - Connection management
    - Keyed lookup, upsert and delete
    - Logging patterns
    """
    
    columns: Sequence[str] = ()
    
    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
        key_column: str = "id",
        order_column: str = "created_at",
    ):
        """Initialize repository.
        
        Args:
            connection_manager: Database connection manager
            table_name: Name of the database table
            key_column: Primary key column
            order_column: Column used for newest-first listings
        """
        self.connection_manager = connection_manager
        self.table_name = table_name
        self.key_column = key_column
        self.order_column = order_column
        
        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name, "key_column": key_column}
        )
    
    @property
    def select_clause(self) -> str:
        return f"SELECT {', '.join(self.columns)} FROM {self.table_name}"
    
    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row (in `columns` order) to entity."""
        pass
    
    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert entity to a mapping of column names to values."""
        pass
    
    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by key, or None."""
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"{self.select_clause} WHERE {self.key_column} = %s",
                    (entity_id,)
                )
                row = cur.fetchone()
                
                if row is None:
                    return None
                
                return self._row_to_entity(row)
    
    def find_all(
        self,
        limit: int = 100,
        offset: int = 0,
    ) -> List[T]:
        """Find all entities, newest first, with pagination."""
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"{self.select_clause} ORDER BY {self.order_column} DESC LIMIT %s OFFSET %s",
                    (limit, offset)
                )
                rows = cur.fetchall()
                
                return [self._row_to_entity(row) for row in rows]
    
    def save(self, entity: T) -> T:
        """Save entity (insert or update every column).
        
        Args:
            entity: Entity to save
            
        Returns:
            Saved entity as stored
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        values = list(params.values())
        placeholders = ["%s"] * len(values)
        
        update_clause = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in columns if col != self.key_column
        )
        
        query = f"""
            INSERT INTO {self.table_name} ({", ".join(columns)})
            VALUES ({", ".join(placeholders)})
            ON CONFLICT ({self.key_column}) DO UPDATE SET {update_clause}
            RETURNING {", ".join(self.columns)}
        """
        
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, values)
                row = cur.fetchone()
                conn.commit()
                
                if row:
                    return self._row_to_entity(row)
                return entity
    
    def delete(self, entity_id: str) -> bool:
        """Delete entity by key.
        
        Returns:
            True if deleted, False if not found
        """
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self.table_name} WHERE {self.key_column} = %s",
                    (entity_id,)
                )
                conn.commit()
                
                return cur.rowcount > 0
    
    def count(self) -> int:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) FROM {self.table_name}")
                row = cur.fetchone()
                
                return row[0] if row else 0
