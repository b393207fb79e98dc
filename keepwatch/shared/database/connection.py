"""Database connection manager with pooling and health checks.

Manages PostgreSQL connections with:
- Connection pooling for efficiency
- Health checks for readiness probes
- Schema bootstrap for the pipeline tables
- Secrets Manager integration for credentials
"""
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.
    
    Credentials are loaded from AWS Secrets Manager in production,
    or from environment variables in development.
    """
    host: str
    port: int = 5432
    database: str = "keepwatch"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    ssl_mode: str = "require"
    
    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Create config from environment variables.
        
        Environment variables:
            DB_HOST: Database host
            DB_PORT: Database port (default 5432)
            DB_NAME: Database name (default keepwatch)
            DB_USER: Database username
            DB_PASSWORD: Database password
            DB_MIN_CONN: Minimum pool connections (default 2)
            DB_MAX_CONN: Maximum pool connections (default 10)
            DB_SSL_MODE: SSL mode (default require)
        """
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "keepwatch"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
        )
    
    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Load config from AWS Secrets Manager.
        
        Args:
            secret_arn: ARN of the secret containing credentials
            region: AWS region
            
        Returns:
            DatabaseConfig with credentials from Secrets Manager
        """
        try:
            import boto3
            import json
            
            client = boto3.client("secretsmanager", region_name=region)
            response = client.get_secret_value(SecretId=secret_arn)
            secret = json.loads(response["SecretString"])
            
            return cls(
                host=secret.get("host", os.getenv("DB_HOST", "localhost")),
                port=int(secret.get("port", os.getenv("DB_PORT", "5432"))),
                database=secret.get("dbname", os.getenv("DB_NAME", "keepwatch")),
                username=secret.get("username", ""),
                password=secret.get("password", ""),
            )
        except Exception as e:
            logger.error(
                "SECRETS_MANAGER_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise


class ConnectionManager:
    """Manages database connections with pooling.
    
    Uses a psycopg2 threaded pool so dispatch worker threads and request
    threads can share it.
    """
    
    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool = None
        self._initialized = False
        
        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "host": config.host,
                "database": config.database,
                "min_connections": config.min_connections,
                "max_connections": config.max_connections,
            }
        )
    
    def initialize(self) -> None:
        """Initialize the connection pool.
        
        Call this during application startup.
        """
        if self._initialized:
            return
        
        try:
            from psycopg2 import pool
            
            self._pool = pool.ThreadedConnectionPool(
                minconn=self.config.min_connections,
                maxconn=self.config.max_connections,
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.username,
                password=self.config.password,
                connect_timeout=self.config.connect_timeout,
                sslmode=self.config.ssl_mode,
            )
            
            self._initialized = True
            logger.info(
                "CONNECTION_POOL_INITIALIZED",
                extra={
                    "host": self.config.host,
                    "database": self.config.database,
                }
            )
            
        except Exception as e:
            logger.error(
                "CONNECTION_POOL_INIT_FAILED",
                extra={"error": str(e)}
            )
            raise
    
    @contextmanager
    def get_connection(self):
        """Get a connection from the pool.
        
        Usage:
            with manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        
        Uncommitted work is rolled back before the connection goes back
        to the pool.
        
        Yields:
            Database connection
        """
        if not self._initialized:
            self.initialize()
        
        conn = self._pool.getconn()
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)
    
    def apply_schema(self, schema_path: Path = SCHEMA_PATH) -> None:
        """Create pipeline tables if they do not exist."""
        ddl = schema_path.read_text()
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(ddl)
            conn.commit()
        
        logger.info("DATABASE_SCHEMA_APPLIED", extra={"schema": schema_path.name})
    
    def health_check(self) -> Dict[str, Any]:
        """Check database connectivity.
        
        Returns:
            Dictionary with health status
        """
        if not self._initialized:
            return {
                "status": "not_initialized",
                "healthy": False,
            }
        
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
            
            return {
                "status": "connected",
                "healthy": True,
                "host": self.config.host,
                "database": self.config.database,
            }
            
        except Exception as e:
            logger.error(
                "DATABASE_HEALTH_CHECK_FAILED",
                extra={"error": str(e)}
            )
            return {
                "status": "error",
                "healthy": False,
                "error": str(e),
            }
    
    def close(self) -> None:
        """Close all connections in the pool.
        
        Call this during application shutdown.
        """
        if self._pool is not None:
            self._pool.closeall()
            logger.info("CONNECTION_POOL_CLOSED")
        
        self._initialized = False


# Global connection manager instance
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get or create the global connection manager.
    
    Returns:
        ConnectionManager instance
    """
    global _connection_manager
    
    if _connection_manager is None:
        config = DatabaseConfig.from_env()
        _connection_manager = ConnectionManager(config)
    
    return _connection_manager
