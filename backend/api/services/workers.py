"""
Worker and sink access for the API.

Workers are built per request from environment configuration, so each
request gets its own database connection. Read-only endpoints share a single
sink connection, opened on startup and closed on shutdown.
"""

import os
from typing import Callable, Optional

from salesync.config import DEFAULT_SQLITE_PATH, SyncConfig
from salesync.db import DatabaseConnection
from salesync.sink import DatabaseSink, OutputSink
from salesync.worker import SyncWorker, build_worker

WorkerFactory = Callable[[str], SyncWorker]


def get_database_url() -> Optional[str]:
    """Get the database URL from environment variables (None means SQLite)."""
    return os.getenv("DATABASE_URL")


class SinkPool:
    """
    Single shared connection for reading summaries and rows.

    Same reuse model as a one-connection pool: the wrapped DatabaseConnection
    reconnects on its own when the server drops it.
    """

    def __init__(self):
        self._db: Optional[DatabaseConnection] = None
        self._sink: Optional[DatabaseSink] = None

    def initialize(self) -> None:
        self._db = DatabaseConnection(
            database_url=get_database_url(),
            sqlite_path=os.getenv("SALESYNC_SQLITE_PATH", DEFAULT_SQLITE_PATH),
        )
        self._db.connect()
        self._sink = DatabaseSink(self._db)

    @property
    def sink(self) -> DatabaseSink:
        if self._sink is None:
            self.initialize()
        return self._sink

    def ping(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        def _ping(conn):
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            return cursor.fetchone()
        if self._db is None:
            self.initialize()
        self._db.execute_with_retry(_ping)

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
        self._db = None
        self._sink = None


# Global sink pool instance
sink_pool = SinkPool()


def make_worker(platform: str) -> SyncWorker:
    """Build a database-backed worker for platform (raises ConfigError)."""
    return build_worker(SyncConfig.from_env(platform))


def get_worker_factory() -> WorkerFactory:
    """
    Dependency for FastAPI routes that need a worker.

    Tests override this to hand out workers wired to in-memory stores.
    """
    return make_worker


def get_sink() -> OutputSink:
    """Dependency for FastAPI routes that read sync output."""
    return sink_pool.sink
