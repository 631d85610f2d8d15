"""
Database adapter for the charging-station Q&A system.

This module provides a single read-only interface over SQLite (local development
and tests) and SQL Server through pyodbc (production).
"""

import os
import sqlite3
import logging
import threading
import time
from typing import Optional, Dict, Any, List

try:
    import pyodbc
    SQLSERVER_AVAILABLE = True
except ImportError:
    SQLSERVER_AVAILABLE = False

from config import StoreConfig, get_config
from errors import StoreExecutionFailed

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    """
    Unified database adapter supporting both SQLite and SQL Server.

    Automatically detects database type from connection string:
    - SQLite: file path (e.g., "db/charging.db") or "sqlite:///db/charging.db"
    - SQL Server: ODBC string (e.g., "DRIVER={...};SERVER=...") or "mssql://..."
    """

    def __init__(self, connection_string: str, query_timeout: int = 25):
        """
        Initialize database adapter.

        Args:
            connection_string: Database connection string or file path
            query_timeout: Seconds a single query may run before it is abandoned
        """
        self.connection_string = connection_string
        self.db_type = self._detect_database_type(connection_string)
        self.query_timeout = int(query_timeout)
        self.connection = None
        self._lock = threading.RLock()

        logger.info(f"Database adapter initialized for {self.db_type}")

    def _detect_database_type(self, connection_string: str) -> str:
        """Detect database type from connection string."""
        lowered = connection_string.lower()
        if lowered.startswith(('mssql://', 'sqlserver://')) or 'driver=' in lowered:
            return 'sqlserver'
        else:
            return 'sqlite'

    def _sqlite_path(self) -> str:
        if self.connection_string.startswith('sqlite:///'):
            return self.connection_string[len('sqlite:///'):]
        return self.connection_string

    def _odbc_string(self) -> str:
        if self.connection_string.lower().startswith(('mssql://', 'sqlserver://')):
            # mssql://ODBC-STRING is accepted as a URL-ish wrapper around a raw ODBC string
            return self.connection_string.split('://', 1)[1]
        return self.connection_string

    def connect(self):
        """Establish database connection."""
        try:
            if self.db_type == 'sqlserver':
                if not SQLSERVER_AVAILABLE:
                    raise ImportError("SQL Server dependencies not available. Install pyodbc.")
                self.connection = pyodbc.connect(self._odbc_string(), autocommit=True)
                self.connection.timeout = self.query_timeout
                logger.info("Connected to SQL Server database")

            else:  # SQLite
                self.connection = sqlite3.connect(self._sqlite_path(), check_same_thread=False)
                self.connection.row_factory = sqlite3.Row
                logger.info(f"Connected to SQLite database: {self._sqlite_path()}")

        except Exception as e:
            logger.error(f"Failed to connect to {self.db_type} database: {e}")
            raise StoreExecutionFailed(
                f"could not connect to {self.db_type} store",
                stage='connect',
                engine_error=str(e),
            ) from e

    def disconnect(self):
        """Close database connection."""
        if self.connection:
            self.connection.close()
            self.connection = None
            logger.info("Database connection closed")

    def register_function(self, name: str, num_params: int, func):
        """Register a scalar SQL function (SQLite only; used to emulate T-SQL builtins)."""
        if self.db_type != 'sqlite':
            raise ValueError("register_function is only supported for SQLite")
        if not self.connection:
            self.connect()
        self.connection.create_function(name, num_params, func)

    def _install_deadline(self) -> Dict[str, bool]:
        # SQLite has no statement timeout; abort from the progress handler instead.
        deadline = time.monotonic() + self.query_timeout
        state = {'aborted': False}

        def check():
            if time.monotonic() > deadline:
                state['aborted'] = True
                return 1
            return 0

        self.connection.set_progress_handler(check, 10000)
        return state

    def _is_timeout(self, error: Exception, deadline: Optional[Dict[str, bool]]) -> bool:
        if self.db_type == 'sqlite':
            return bool(deadline and deadline['aborted'])
        # HYT00: query timeout expired, HYT01: connection timeout expired
        return (SQLSERVER_AVAILABLE and isinstance(error, pyodbc.Error)
                and bool(error.args) and error.args[0] in ('HYT00', 'HYT01'))

    def execute_query(self, query: str, params: tuple = None) -> List[Dict[str, Any]]:
        """
        Execute a SELECT query and return results.

        Queries on one adapter run one at a time, since they share a connection and,
        on SQLite, its progress handler.

        Args:
            query: SQL query string
            params: Query parameters

        Returns:
            List of dictionaries representing rows

        Raises:
            StoreExecutionFailed: the store rejected the query or it timed out
        """
        with self._lock:
            if not self.connection:
                self.connect()

            started = time.monotonic()
            cursor = None
            deadline = None
            try:
                cursor = self.connection.cursor()
                if self.db_type == 'sqlite':
                    deadline = self._install_deadline()

                if params:
                    cursor.execute(query, params)
                else:
                    cursor.execute(query)

                # Convert results to list of dictionaries
                if self.db_type == 'sqlserver':
                    columns = [d[0] for d in cursor.description or []]
                    results = [dict(zip(columns, row)) for row in cursor.fetchall()]
                else:  # SQLite
                    results = [dict(row) for row in cursor.fetchall()]

                logger.info(f"Query returned {len(results)} row(s) in {int((time.monotonic() - started) * 1000)} ms")
                return results

            except Exception as e:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                timed_out = self._is_timeout(e, deadline)
                logger.error(f"Query execution failed: {e}")
                logger.error(f"Query: {query}")
                logger.error(f"Params: {params}")
                raise StoreExecutionFailed(
                    'query timed out' if timed_out else 'query rejected by the store',
                    stage='execute',
                    sql=query,
                    engine_error=str(e),
                    timed_out=timed_out,
                    elapsed_ms=elapsed_ms,
                ) from e
            finally:
                if cursor is not None:
                    cursor.close()
                if self.db_type == 'sqlite' and self.connection is not None:
                    self.connection.set_progress_handler(None, 0)

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()


def get_database_connection(store_cfg: Optional[StoreConfig] = None) -> Optional[str]:
    """
    Get database connection string from configuration and environment variables.

    Returns:
        Connection string (ODBC string or SQLite file path), or None when no store is configured
    """
    cfg = store_cfg or get_config().store
    if cfg.url:
        logger.info("Using store from CHARGEQA_DB_URL / config file")
        return cfg.url

    from utils.env_config import get_config as get_env_config
    odbc = get_env_config().sqlserver_odbc_string(cfg.odbc_driver, cfg.connect_timeout_seconds)
    if odbc:
        logger.info("Using SQL Server store from DB_* environment variables")
        return odbc

    sqlite_path = os.getenv('CHARGEQA_DB_PATH')
    if sqlite_path:
        logger.info(f"Using SQLite database: {sqlite_path}")
        return sqlite_path

    logger.warning("No store configured")
    return None


def create_database_adapter(store_cfg: Optional[StoreConfig] = None) -> Optional[DatabaseAdapter]:
    """Create a configured database adapter, or None when no store is configured."""
    cfg = store_cfg or get_config().store
    connection_string = get_database_connection(cfg)
    if connection_string is None:
        return None
    return DatabaseAdapter(connection_string, query_timeout=cfg.query_timeout_seconds)
