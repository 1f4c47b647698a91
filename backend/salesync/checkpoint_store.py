"""
Checkpoint store: durable job-control state and the aggregate map blob.

The checkpoint is a small JSON record. The aggregate map can hold tens of
thousands of entries, so it is stored gzip-compressed in its own table.
Every call is atomic; save_progress writes both in a single transaction.
"""

import gzip
import json
from datetime import datetime, timezone
from typing import Optional

from .db import DatabaseConnection, db_placeholder
from .errors import CheckpointError
from .models import (
    AggregateMap,
    JobCheckpoint,
    WorkerStatus,
    aggregates_from_dict,
    aggregates_to_dict,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def encode_checkpoint(checkpoint: JobCheckpoint) -> str:
    return json.dumps(checkpoint.to_dict(), sort_keys=True)


def decode_checkpoint(payload: str) -> JobCheckpoint:
    try:
        return JobCheckpoint.from_dict(json.loads(payload))
    except (ValueError, KeyError, TypeError) as e:
        raise CheckpointError(f"Stored checkpoint is unreadable: {e}") from e


def encode_aggregates(aggregates: AggregateMap) -> bytes:
    raw = json.dumps(aggregates_to_dict(aggregates), separators=(',', ':'))
    return gzip.compress(raw.encode('utf-8'))


def decode_aggregates(payload: bytes) -> AggregateMap:
    try:
        entries = json.loads(gzip.decompress(bytes(payload)).decode('utf-8'))
        return aggregates_from_dict(entries)
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise CheckpointError(f"Stored aggregate map is unreadable: {e}") from e


class CheckpointStore:
    """Interface for persisting job state for one source."""

    def get_checkpoint(self) -> Optional[JobCheckpoint]:
        raise NotImplementedError

    def put_checkpoint(self, checkpoint: JobCheckpoint) -> None:
        raise NotImplementedError

    def delete_checkpoint(self) -> None:
        raise NotImplementedError

    def get_aggregate_map(self) -> AggregateMap:
        raise NotImplementedError

    def put_aggregate_map(self, aggregates: AggregateMap) -> None:
        raise NotImplementedError

    def delete_aggregate_map(self) -> None:
        raise NotImplementedError

    def get_worker_status(self) -> WorkerStatus:
        raise NotImplementedError

    def set_worker_status(self, status: WorkerStatus) -> None:
        raise NotImplementedError

    def save_progress(self, checkpoint: JobCheckpoint, aggregates: AggregateMap) -> None:
        """Persist checkpoint and aggregate map together."""
        raise NotImplementedError


# =============================================================================
# In-memory store
# =============================================================================

class MemoryCheckpointStore(CheckpointStore):
    """
    Dict-backed store for tests and dry runs.

    Values are kept in their encoded form so callers never share mutable
    state with the store, same as with the database store.
    """

    def __init__(self):
        self._checkpoint: Optional[str] = None
        self._aggregates: Optional[bytes] = None
        self._status = WorkerStatus.IDLE
        self.reads = 0
        self.writes = 0

    def get_checkpoint(self) -> Optional[JobCheckpoint]:
        self.reads += 1
        return decode_checkpoint(self._checkpoint) if self._checkpoint else None

    def put_checkpoint(self, checkpoint: JobCheckpoint) -> None:
        self.writes += 1
        self._checkpoint = encode_checkpoint(checkpoint)

    def delete_checkpoint(self) -> None:
        self.writes += 1
        self._checkpoint = None

    def get_aggregate_map(self) -> AggregateMap:
        self.reads += 1
        return decode_aggregates(self._aggregates) if self._aggregates else {}

    def put_aggregate_map(self, aggregates: AggregateMap) -> None:
        self.writes += 1
        self._aggregates = encode_aggregates(aggregates)

    def delete_aggregate_map(self) -> None:
        self.writes += 1
        self._aggregates = None

    def has_aggregate_map(self) -> bool:
        return self._aggregates is not None

    def get_worker_status(self) -> WorkerStatus:
        return self._status

    def set_worker_status(self, status: WorkerStatus) -> None:
        self._status = status

    def save_progress(self, checkpoint: JobCheckpoint, aggregates: AggregateMap) -> None:
        encoded_checkpoint = encode_checkpoint(checkpoint)
        encoded_aggregates = encode_aggregates(aggregates)
        self.writes += 1
        self._checkpoint = encoded_checkpoint
        self._aggregates = encoded_aggregates


# =============================================================================
# Database store
# =============================================================================

def _upsert_checkpoint(conn, source_key: str, payload: str) -> None:
    ph = db_placeholder(conn)
    conn.cursor().execute(
        f'''INSERT INTO sync_checkpoints (source_key, payload, updated_at)
           VALUES ({ph}, {ph}, {ph})
           ON CONFLICT (source_key) DO UPDATE SET
               payload = excluded.payload, updated_at = excluded.updated_at''',
        (source_key, payload, _now())
    )


def _upsert_aggregates(conn, source_key: str, payload: bytes, entry_count: int) -> None:
    ph = db_placeholder(conn)
    conn.cursor().execute(
        f'''INSERT INTO sync_aggregate_maps (source_key, payload, entry_count, updated_at)
           VALUES ({ph}, {ph}, {ph}, {ph})
           ON CONFLICT (source_key) DO UPDATE SET
               payload = excluded.payload, entry_count = excluded.entry_count,
               updated_at = excluded.updated_at''',
        (source_key, payload, entry_count, _now())
    )


def _select_one(conn, query: str, params: tuple):
    cursor = conn.cursor()
    cursor.execute(query, params)
    return cursor.fetchone()


def _delete_row(conn, table: str, source_key: str) -> None:
    ph = db_placeholder(conn)
    conn.cursor().execute(f'DELETE FROM {table} WHERE source_key = {ph}', (source_key,))
    conn.commit()


class DatabaseCheckpointStore(CheckpointStore):
    """Checkpoint store backed by the sync tables (PostgreSQL or SQLite)."""

    def __init__(self, db: DatabaseConnection, source_key: str):
        self.db = db
        self.source_key = source_key

    def get_checkpoint(self) -> Optional[JobCheckpoint]:
        def _get(conn):
            ph = db_placeholder(conn)
            return _select_one(
                conn, f'SELECT payload FROM sync_checkpoints WHERE source_key = {ph}',
                (self.source_key,)
            )
        row = self.db.execute_with_retry(_get)
        return decode_checkpoint(row[0]) if row else None

    def put_checkpoint(self, checkpoint: JobCheckpoint) -> None:
        payload = encode_checkpoint(checkpoint)

        def _put(conn):
            _upsert_checkpoint(conn, self.source_key, payload)
            conn.commit()
        self.db.execute_with_retry(_put)

    def delete_checkpoint(self) -> None:
        self.db.execute_with_retry(_delete_row, 'sync_checkpoints', self.source_key)

    def get_aggregate_map(self) -> AggregateMap:
        def _get(conn):
            ph = db_placeholder(conn)
            return _select_one(
                conn, f'SELECT payload FROM sync_aggregate_maps WHERE source_key = {ph}',
                (self.source_key,)
            )
        row = self.db.execute_with_retry(_get)
        return decode_aggregates(row[0]) if row else {}

    def put_aggregate_map(self, aggregates: AggregateMap) -> None:
        payload = encode_aggregates(aggregates)

        def _put(conn):
            _upsert_aggregates(conn, self.source_key, payload, len(aggregates))
            conn.commit()
        self.db.execute_with_retry(_put)

    def delete_aggregate_map(self) -> None:
        self.db.execute_with_retry(_delete_row, 'sync_aggregate_maps', self.source_key)

    def get_worker_status(self) -> WorkerStatus:
        def _get(conn):
            ph = db_placeholder(conn)
            return _select_one(
                conn, f'SELECT status FROM sync_worker_status WHERE source_key = {ph}',
                (self.source_key,)
            )
        try:
            row = self.db.execute_with_retry(_get)
        except Exception as e:
            raise CheckpointError(f"Could not read worker status for {self.source_key}: {e}") from e
        if not row:
            return WorkerStatus.IDLE
        try:
            return WorkerStatus(row[0])
        except ValueError:
            return WorkerStatus.IDLE

    def set_worker_status(self, status: WorkerStatus) -> None:
        def _set(conn):
            ph = db_placeholder(conn)
            conn.cursor().execute(
                f'''INSERT INTO sync_worker_status (source_key, status, updated_at)
                   VALUES ({ph}, {ph}, {ph})
                   ON CONFLICT (source_key) DO UPDATE SET
                       status = excluded.status, updated_at = excluded.updated_at''',
                (self.source_key, status.value, _now())
            )
            conn.commit()
        self.db.execute_with_retry(_set)

    def save_progress(self, checkpoint: JobCheckpoint, aggregates: AggregateMap) -> None:
        checkpoint_payload = encode_checkpoint(checkpoint)
        aggregates_payload = encode_aggregates(aggregates)

        def _save(conn):
            _upsert_aggregates(conn, self.source_key, aggregates_payload, len(aggregates))
            _upsert_checkpoint(conn, self.source_key, checkpoint_payload)
            conn.commit()
        self.db.execute_with_retry(_save)
