"""
Named, time-boxed advisory lock that serializes worker ticks.

The database lock is a row in sync_locks with a holder token and a lease
expiry, so a tick that dies without releasing frees the lock once the lease
runs out.
"""

import threading
import time
import uuid
from typing import Optional

from .db import DatabaseConnection, db_placeholder
from .errors import LockError

POLL_INTERVAL = 0.1


class JobLock:
    """Interface for the tick exclusion lock."""

    def try_acquire(self, timeout: float) -> bool:
        """Wait at most timeout seconds; return False instead of blocking longer."""
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

    def force_release(self) -> None:
        """Drop the lock whoever holds it (operator reset)."""
        raise NotImplementedError


class MemoryJobLock(JobLock):
    """Process-local lock for tests and single-process runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self.acquire_attempts = 0

    def try_acquire(self, timeout: float) -> bool:
        self.acquire_attempts += 1
        if timeout <= 0:
            acquired = self._lock.acquire(blocking=False)
        else:
            acquired = self._lock.acquire(timeout=timeout)
        if acquired:
            self._owner = threading.get_ident()
        return acquired

    def release(self) -> None:
        # Only the thread that acquired the lock may release it
        if self._owner != threading.get_ident():
            return
        self._owner = None
        self._lock.release()

    def force_release(self) -> None:
        if self._lock.locked():
            self._owner = None
            self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()


def _try_insert_lease(conn, name: str, holder: str, now: float, ttl: float) -> bool:
    """Clear an expired lease, then try to take the lock. Returns True on success."""
    cursor = conn.cursor()
    ph = db_placeholder(conn)
    cursor.execute(
        f'DELETE FROM sync_locks WHERE name = {ph} AND expires_at < {ph}',
        (name, now)
    )
    cursor.execute(
        f'''INSERT INTO sync_locks (name, holder, acquired_at, expires_at)
           VALUES ({ph}, {ph}, {ph}, {ph})
           ON CONFLICT (name) DO NOTHING''',
        (name, holder, now, now + ttl)
    )
    acquired = cursor.rowcount == 1
    conn.commit()
    return acquired


def _delete_lease(conn, name: str, holder: Optional[str]) -> None:
    cursor = conn.cursor()
    ph = db_placeholder(conn)
    if holder is None:
        cursor.execute(f'DELETE FROM sync_locks WHERE name = {ph}', (name,))
    else:
        cursor.execute(
            f'DELETE FROM sync_locks WHERE name = {ph} AND holder = {ph}',
            (name, holder)
        )
    conn.commit()


class DatabaseJobLock(JobLock):
    """Lease-based lock stored in the sync_locks table."""

    def __init__(self, db: DatabaseConnection, name: str, ttl_seconds: float,
                 poll_interval: float = POLL_INTERVAL):
        self.db = db
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.poll_interval = poll_interval
        self.holder = uuid.uuid4().hex
        self._held = False

    def try_acquire(self, timeout: float) -> bool:
        give_up_at = time.monotonic() + max(0.0, timeout)
        while True:
            try:
                acquired = self.db.execute_with_retry(
                    _try_insert_lease, self.name, self.holder, time.time(), self.ttl_seconds
                )
            except Exception as e:
                raise LockError(f"Could not acquire lock {self.name}: {e}") from e
            if acquired:
                self._held = True
                return True
            if time.monotonic() + self.poll_interval > give_up_at:
                return False
            time.sleep(self.poll_interval)

    def release(self) -> None:
        if not self._held:
            return
        self.db.execute_with_retry(_delete_lease, self.name, self.holder)
        self._held = False

    def force_release(self) -> None:
        self.db.execute_with_retry(_delete_lease, self.name, None)
        self._held = False
