"""Tests for database connection manager."""
import pytest
from unittest.mock import MagicMock, patch

from keepwatch.shared.database.connection import (
    DatabaseConfig,
    ConnectionManager,
)


def _pooled_manager():
    """Connection manager wired to a MagicMock pool."""
    manager = ConnectionManager(DatabaseConfig(host="localhost"))
    manager._initialized = True
    manager._pool = MagicMock()
    conn = manager._pool.getconn.return_value
    cursor = conn.cursor.return_value.__enter__.return_value
    return manager, conn, cursor


class TestDatabaseConfig:
    """Tests for DatabaseConfig dataclass."""
    
    def test_default_values(self):
        config = DatabaseConfig(host="localhost")
        
        assert config.host == "localhost"
        assert config.port == 5432
        assert config.database == "keepwatch"
        assert config.min_connections == 2
        assert config.max_connections == 10
        assert config.ssl_mode == "require"
    
    def test_from_env(self):
        with patch.dict("os.environ", {
            "DB_HOST": "env-host",
            "DB_PORT": "5434",
            "DB_NAME": "env_db",
            "DB_USER": "env_user",
            "DB_PASSWORD": "env_pass",
        }):
            config = DatabaseConfig.from_env()
            
            assert config.host == "env-host"
            assert config.port == 5434
            assert config.database == "env_db"
            assert config.username == "env_user"
            assert config.password == "env_pass"
    
    def test_from_env_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            config = DatabaseConfig.from_env()
            
            assert config.host == "localhost"
            assert config.port == 5432
            assert config.database == "keepwatch"
    
    @patch("boto3.client")
    def test_from_secrets_manager(self, mock_boto_client):
        mock_boto_client.return_value.get_secret_value.return_value = {
            "SecretString": '{"host": "db.internal", "username": "kw", "password": "pw"}'
        }
        
        config = DatabaseConfig.from_secrets_manager("arn:aws:secretsmanager:x")
        
        assert config.host == "db.internal"
        assert config.username == "kw"
        mock_boto_client.assert_called_once_with("secretsmanager", region_name="us-east-1")


class TestConnectionManager:
    """Tests for ConnectionManager class."""
    
    def test_initialization(self):
        config = DatabaseConfig(host="localhost")
        manager = ConnectionManager(config)
        
        assert manager.config == config
        assert manager._initialized is False
    
    @patch("psycopg2.pool.ThreadedConnectionPool")
    def test_initialize_creates_threaded_pool(self, mock_pool_cls):
        manager = ConnectionManager(DatabaseConfig(host="db", database="kw"))
        
        manager.initialize()
        manager.initialize()
        
        assert manager._initialized is True
        mock_pool_cls.assert_called_once()
        assert mock_pool_cls.call_args.kwargs["database"] == "kw"
    
    def test_get_connection_returns_pooled_connection(self):
        manager, conn, _ = _pooled_manager()
        
        with manager.get_connection() as got:
            assert got is conn
        
        manager._pool.putconn.assert_called_once_with(conn)
    
    def test_get_connection_rolls_back_on_error(self):
        manager, conn, _ = _pooled_manager()
        
        with pytest.raises(RuntimeError):
            with manager.get_connection():
                raise RuntimeError("boom")
        
        conn.rollback.assert_called_once()
        manager._pool.putconn.assert_called_once_with(conn)
    
    def test_apply_schema_executes_ddl(self, tmp_path):
        manager, conn, cursor = _pooled_manager()
        schema = tmp_path / "schema.sql"
        schema.write_text("CREATE TABLE t (id TEXT);")
        
        manager.apply_schema(schema)
        
        cursor.execute.assert_called_once_with("CREATE TABLE t (id TEXT);")
        conn.commit.assert_called_once()
    
    def test_health_check_not_initialized(self):
        manager = ConnectionManager(DatabaseConfig(host="localhost"))
        
        health = manager.health_check()
        
        assert health["status"] == "not_initialized"
        assert health["healthy"] is False
    
    def test_health_check_connected(self):
        manager, _, cursor = _pooled_manager()
        
        health = manager.health_check()
        
        assert health["healthy"] is True
        cursor.execute.assert_called_once_with("SELECT 1")
    
    def test_health_check_error(self):
        manager, _, cursor = _pooled_manager()
        cursor.execute.side_effect = Exception("connection refused")
        
        health = manager.health_check()
        
        assert health["healthy"] is False
        assert "connection refused" in health["error"]
    
    def test_close(self):
        manager, _, _ = _pooled_manager()
        pool = manager._pool
        
        manager.close()
        
        pool.closeall.assert_called_once()
        assert manager._initialized is False
