"""
Database connection handling for the checkpoint store, job lock and sink.

Uses PostgreSQL when DATABASE_URL is configured and psycopg2 is installed,
otherwise falls back to a local SQLite file.
"""

import sqlite3
import time
from typing import Optional

try:
    import psycopg2
    HAS_POSTGRES = True
except ImportError:
    HAS_POSTGRES = False


# =============================================================================
# Schema
# =============================================================================

SQLITE_SCHEMA = [
    '''CREATE TABLE IF NOT EXISTS sync_checkpoints (
        source_key TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_aggregate_maps (
        source_key TEXT PRIMARY KEY,
        payload BLOB NOT NULL,
        entry_count INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_worker_status (
        source_key TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        updated_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_locks (
        name TEXT PRIMARY KEY,
        holder TEXT NOT NULL,
        acquired_at REAL NOT NULL,
        expires_at REAL NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_output_rows (
        source_key TEXT NOT NULL,
        position INTEGER NOT NULL,
        product_key TEXT NOT NULL,
        payload TEXT NOT NULL,
        written_at TEXT NOT NULL,
        PRIMARY KEY (source_key, position))''',
    '''CREATE TABLE IF NOT EXISTS sync_summaries (
        source_key TEXT PRIMARY KEY,
        total_revenue REAL NOT NULL DEFAULT 0,
        total_units INTEGER NOT NULL DEFAULT 0,
        unique_orders INTEGER NOT NULL DEFAULT 0,
        product_count INTEGER NOT NULL DEFAULT 0,
        products_with_sales INTEGER NOT NULL DEFAULT 0,
        out_of_stock_with_sales INTEGER NOT NULL DEFAULT 0,
        out_of_stock_with_sales_ratio REAL NOT NULL DEFAULT 0,
        synced_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_status (
        source_key TEXT PRIMARY KEY,
        phase TEXT NOT NULL,
        message TEXT,
        updated_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_labels (
        source_key TEXT NOT NULL,
        product_key TEXT NOT NULL,
        label TEXT NOT NULL,
        labeled_at TEXT NOT NULL,
        PRIMARY KEY (source_key, product_key))''',
]

POSTGRES_SCHEMA = [
    '''CREATE TABLE IF NOT EXISTS sync_checkpoints (
        source_key TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_aggregate_maps (
        source_key TEXT PRIMARY KEY,
        payload BYTEA NOT NULL,
        entry_count INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_worker_status (
        source_key TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        updated_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_locks (
        name TEXT PRIMARY KEY,
        holder TEXT NOT NULL,
        acquired_at DOUBLE PRECISION NOT NULL,
        expires_at DOUBLE PRECISION NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_output_rows (
        source_key TEXT NOT NULL,
        position INTEGER NOT NULL,
        product_key TEXT NOT NULL,
        payload TEXT NOT NULL,
        written_at TEXT NOT NULL,
        PRIMARY KEY (source_key, position))''',
    '''CREATE TABLE IF NOT EXISTS sync_summaries (
        source_key TEXT PRIMARY KEY,
        total_revenue DOUBLE PRECISION NOT NULL DEFAULT 0,
        total_units INTEGER NOT NULL DEFAULT 0,
        unique_orders INTEGER NOT NULL DEFAULT 0,
        product_count INTEGER NOT NULL DEFAULT 0,
        products_with_sales INTEGER NOT NULL DEFAULT 0,
        out_of_stock_with_sales INTEGER NOT NULL DEFAULT 0,
        out_of_stock_with_sales_ratio DOUBLE PRECISION NOT NULL DEFAULT 0,
        synced_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_status (
        source_key TEXT PRIMARY KEY,
        phase TEXT NOT NULL,
        message TEXT,
        updated_at TEXT NOT NULL)''',
    '''CREATE TABLE IF NOT EXISTS sync_labels (
        source_key TEXT NOT NULL,
        product_key TEXT NOT NULL,
        label TEXT NOT NULL,
        labeled_at TEXT NOT NULL,
        PRIMARY KEY (source_key, product_key))''',
]


def is_postgres(conn) -> bool:
    """Check if connection is PostgreSQL."""
    return HAS_POSTGRES and hasattr(conn, 'info')


def db_placeholder(conn) -> str:
    """Return the correct placeholder for the database type."""
    return '%s' if is_postgres(conn) else '?'


def init_schema(conn) -> None:
    """Create the sync tables if they do not exist."""
    cursor = conn.cursor()
    for statement in (POSTGRES_SCHEMA if is_postgres(conn) else SQLITE_SCHEMA):
        cursor.execute(statement)
    conn.commit()


def connect_sqlite(db_path: str):
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


# =============================================================================
# Database Connection Wrapper (auto-reconnect)
# =============================================================================

class DatabaseConnection:
    """
    Wrapper for database connection that handles automatic reconnection.
    Detects closed connections and reconnects transparently.
    """

    def __init__(self, database_url: Optional[str] = None, sqlite_path: str = "salesync.db"):
        self.database_url = database_url
        self.sqlite_path = sqlite_path
        self._conn = None
        self._is_postgres = False

    @classmethod
    def from_config(cls, config) -> "DatabaseConnection":
        return cls(database_url=config.database_url, sqlite_path=config.sqlite_path)

    def connect(self):
        """Establish database connection and make sure the schema exists."""
        if HAS_POSTGRES and self.database_url:
            self._conn = psycopg2.connect(self.database_url)
            self._is_postgres = True
        else:
            if self.database_url and not HAS_POSTGRES:
                print("  (psycopg2 not installed, using SQLite)", flush=True)
            self._conn = connect_sqlite(self.sqlite_path)
            self._is_postgres = False
        init_schema(self._conn)
        return self._conn

    def reconnect(self):
        """Reconnect to database after connection loss."""
        print("  Reconnecting to database...", flush=True)
        if self._conn is not None:
            try:
                self._conn.close()
            except Exception:
                pass

        if self._is_postgres:
            self._conn = psycopg2.connect(self.database_url)
            print("  Database reconnected (PostgreSQL)", flush=True)
        else:
            self._conn = connect_sqlite(self.sqlite_path)
            print(f"  Database reconnected (SQLite: {self.sqlite_path})", flush=True)
        return self._conn

    def is_connection_error(self, error: Exception) -> bool:
        """Check if exception is a connection-related error."""
        error_str = str(error).lower()
        connection_errors = [
            'connection already closed',
            'connection is closed',
            'server closed the connection',
            'could not receive data',
            'ssl syscall error',
            'operation timed out',
            'connection refused',
            'connection reset',
            'broken pipe',
            'network is unreachable',
            'cannot operate on a closed database',
        ]
        return any(err in error_str for err in connection_errors)

    def execute_with_retry(self, func, *args, max_retries: int = 3, **kwargs):
        """
        Execute a database function with automatic reconnection on failure.

        Args:
            func: Function to execute (should take conn as first argument)
            *args: Additional arguments to pass to func
            max_retries: Maximum number of reconnection attempts
            **kwargs: Keyword arguments to pass to func

        Returns:
            Result of func
        """
        if self._conn is None:
            self.connect()
        last_error = None
        for attempt in range(max_retries):
            try:
                return func(self._conn, *args, **kwargs)
            except Exception as e:
                last_error = e
                if self.is_connection_error(e) and attempt < max_retries - 1:
                    print(f"  Database error: {e}", flush=True)
                    self.reconnect()
                    time.sleep(1)
                else:
                    self._rollback_quietly()
                    raise
        raise last_error

    def _rollback_quietly(self) -> None:
        try:
            self._conn.rollback()
        except Exception:
            pass

    @property
    def conn(self):
        """Get the underlying connection, connecting on first use."""
        if self._conn is None:
            self.connect()
        return self._conn

    def close(self):
        """Close the database connection."""
        if self._conn is not None:
            try:
                self._conn.close()
            except Exception:
                pass
            self._conn = None
