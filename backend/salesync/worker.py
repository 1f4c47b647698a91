"""
Sync worker: the Job Initiator and the Worker Tick.

A job is started once per scheduling period and then driven forward by
repeated ticks, each bounded by the execution budget:

    start() -> tick() -> tick() -> ... -> DONE (checkpoint deleted, IDLE)

Every tick runs under the job lock, and so does the reset done by start().
Progress is persisted after each phase executor returns; an unexpected
exception persists nothing, so the next tick retries from the last saved
checkpoint.
"""

import traceback
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .checkpoint_store import CheckpointStore, DatabaseCheckpointStore
from .clock import Clock, Deadline, SystemClock
from .config import SyncConfig
from .db import DatabaseConnection
from .errors import CheckpointError, SalesSyncError
from .labels import RevenueLabeler
from .lock import DatabaseJobLock, JobLock
from .models import JobCheckpoint, Phase, WorkerStatus
from .phases import EXECUTORS, PhaseContext, TickStats
from .sink import DatabaseSink, OutputSink
from .sources import PagedSource, build_source


class TickOutcome(Enum):
    IDLE = "idle"                    # worker not active, nothing touched
    LOCKED = "locked"                # another tick holds the lock
    NO_CHECKPOINT = "no_checkpoint"  # active but no job state; set idle
    PROGRESSED = "progressed"        # work done, job not finished
    COMPLETED = "completed"          # job reached DONE and was cleaned up
    FAILED = "failed"                # fetch error or exception, retried next tick
    EXPIRED = "expired"              # job too old, marked ERROR


@dataclass
class TickResult:
    outcome: TickOutcome
    phase: Optional[Phase] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outcome': self.outcome.value,
            'phase': self.phase.value if self.phase else None,
            'message': self.message,
        }


class SyncWorker:
    """Owns the job state of one source and drives it through its phases."""

    def __init__(self, config: SyncConfig, source: PagedSource, store: CheckpointStore,
                 lock: JobLock, sink: OutputSink, clock: Optional[Clock] = None,
                 labeler: Optional[RevenueLabeler] = None):
        self.config = config
        self.source = source
        self.store = store
        self.lock = lock
        self.sink = sink
        self.clock = clock or SystemClock()
        self.labeler = labeler

    @property
    def source_key(self) -> str:
        return self.config.source_key

    def log(self, message: str) -> None:
        timestamp = self.clock.now().strftime("%H:%M:%S")
        print(f"[{timestamp}] [{self.source_key}] {message}", flush=True)

    def _write_status(self, phase: str, message: str) -> None:
        """Status records are best effort; a sink outage must not mask the tick result."""
        try:
            self.sink.write_status(self.source_key, phase, message, self.clock.now())
        except Exception as e:
            self.log(f"Could not write status record: {e}")

    # =========================================================================
    # Job Initiator
    # =========================================================================

    def start(self) -> TickResult:
        """Discard any previous run, create a fresh checkpoint, then tick once.

        The reset and the first tick happen under the job lock, so a start
        never cuts into a tick that is still running.
        """
        self.log("Starting new sync job")
        try:
            acquired = self.lock.try_acquire(self.config.lock_wait_seconds)
        except SalesSyncError as e:
            return self._gate_failed(e)
        if not acquired:
            self.log("Another tick is running, not starting a new job")
            return TickResult(TickOutcome.LOCKED, message="Lock held by another tick")

        try:
            self._begin_job()
            return self._tick_locked()
        finally:
            self.lock.release()

    def _begin_job(self) -> None:
        now = self.clock.now()
        self.store.delete_checkpoint()

        since = now - timedelta(days=self.config.lookback_days)
        checkpoint = JobCheckpoint(
            phase=Phase.FETCH_CATALOG,
            catalog_cursor=self.source.initial_catalog_cursor(),
            events_cursor=self.source.initial_events_cursor(since),
            write_cursor=0,
            started_at=now,
        )
        self.store.put_checkpoint(checkpoint)
        self.store.set_worker_status(WorkerStatus.ACTIVE)
        self.store.delete_aggregate_map()
        self._write_status(Phase.FETCH_CATALOG.value, f"Job started (orders since {since.date()})")

    # =========================================================================
    # Worker Tick
    # =========================================================================

    def tick(self) -> TickResult:
        """Advance the active job as far as the execution budget allows."""
        try:
            if self.store.get_worker_status() != WorkerStatus.ACTIVE:
                return TickResult(TickOutcome.IDLE, message="Worker is idle")
            acquired = self.lock.try_acquire(self.config.lock_wait_seconds)
        except SalesSyncError as e:
            return self._gate_failed(e)
        if not acquired:
            self.log("Another tick is running, skipping")
            return TickResult(TickOutcome.LOCKED, message="Lock held by another tick")

        try:
            return self._tick_locked()
        finally:
            self.lock.release()

    def _gate_failed(self, error: SalesSyncError) -> TickResult:
        """Status or lock backend unavailable; nothing was touched."""
        self.log(f"Tick could not start: {error}")
        self._write_status("UNKNOWN", f"Tick could not start: {error}")
        return TickResult(TickOutcome.FAILED, message=str(error))

    def _tick_locked(self) -> TickResult:
        try:
            checkpoint = self.store.get_checkpoint()
        except CheckpointError as e:
            self.log(str(e))
            self._write_status("UNKNOWN", f"{e}; reset required")
            return TickResult(TickOutcome.FAILED, message=str(e))
        if checkpoint is None:
            self.store.set_worker_status(WorkerStatus.IDLE)
            self.log("No checkpoint found, going idle")
            return TickResult(TickOutcome.NO_CHECKPOINT, message="No job in progress")

        if checkpoint.phase == Phase.DONE:
            # Finished but not cleaned up (crash between save and cleanup)
            return self._complete(checkpoint)
        if checkpoint.phase == Phase.ERROR:
            self.store.set_worker_status(WorkerStatus.IDLE)
            return TickResult(TickOutcome.FAILED, Phase.ERROR, checkpoint.last_error or "Job in ERROR")

        if self._is_expired(checkpoint):
            return self._expire(checkpoint)

        stats = TickStats(self.clock, self.source_key)
        stats.phase_before = checkpoint.phase
        try:
            return self._run_phases(checkpoint, stats)
        finally:
            stats.print_report()

    def _run_phases(self, checkpoint: JobCheckpoint, stats: TickStats) -> TickResult:
        deadline = Deadline.after(self.clock, self.config.execution_budget_seconds)
        ctx = PhaseContext(self.config, self.source, self.sink, self.clock, stats)
        saved_phase = checkpoint.phase

        try:
            aggregates = self.store.get_aggregate_map()
            while True:
                phase = checkpoint.phase
                outcome = EXECUTORS[phase](ctx, checkpoint, aggregates, deadline)

                if outcome.error is not None:
                    checkpoint.last_error = str(outcome.error)
                elif checkpoint.phase != phase:
                    checkpoint.last_error = None
                self.store.save_progress(checkpoint, aggregates)
                saved_phase = checkpoint.phase
                stats.phase_after = checkpoint.phase

                if outcome.error is not None:
                    return self._fetch_failed(checkpoint, stats, outcome.error)
                if checkpoint.phase == Phase.DONE:
                    return self._complete(checkpoint)
                if checkpoint.phase == phase or deadline.expired():
                    break
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            stats.error = message
            self.log(f"Tick failed in {saved_phase.value}: {message}")
            traceback.print_exc()
            self._write_status(saved_phase.value, f"Tick failed, will retry: {message}")
            return TickResult(TickOutcome.FAILED, saved_phase, message)

        message = self._progress_message(checkpoint)
        self._write_status(checkpoint.phase.value, message)
        return TickResult(TickOutcome.PROGRESSED, checkpoint.phase, message)

    def _progress_message(self, checkpoint: JobCheckpoint) -> str:
        if checkpoint.phase == Phase.WRITE_OUTPUT:
            return f"Writing output, {checkpoint.write_cursor} rows written"
        totals = checkpoint.totals
        return (
            f"In progress ({checkpoint.phase.value}): revenue {totals.revenue:.2f}, "
            f"{totals.units_sold} units, {totals.unique_orders} orders"
        )

    def _fetch_failed(self, checkpoint: JobCheckpoint, stats: TickStats, error) -> TickResult:
        message = f"Fetch failed, will retry next tick: {error}"
        stats.error = str(error)
        self.log(message)
        self._write_status(checkpoint.phase.value, message)
        return TickResult(TickOutcome.FAILED, checkpoint.phase, message)

    def _is_expired(self, checkpoint: JobCheckpoint) -> bool:
        if checkpoint.started_at is None:
            return False
        age = self.clock.now() - checkpoint.started_at
        return age > timedelta(hours=self.config.max_job_age_hours)

    def _expire(self, checkpoint: JobCheckpoint) -> TickResult:
        message = (
            f"Job started at {checkpoint.started_at.isoformat()} exceeded "
            f"{self.config.max_job_age_hours}h in {checkpoint.phase.value}; abandoned"
        )
        checkpoint.phase = Phase.ERROR
        checkpoint.last_error = message
        self.store.put_checkpoint(checkpoint)
        self.store.delete_aggregate_map()
        self.store.set_worker_status(WorkerStatus.IDLE)
        self.log(message)
        self._write_status(Phase.ERROR.value, message)
        return TickResult(TickOutcome.EXPIRED, Phase.ERROR, message)

    # =========================================================================
    # Job Completion
    # =========================================================================

    def _complete(self, checkpoint: JobCheckpoint) -> TickResult:
        totals = checkpoint.totals
        message = (
            f"Job complete: revenue {totals.revenue:.2f}, {totals.units_sold} units, "
            f"{totals.unique_orders} orders"
        )
        self.store.delete_checkpoint()
        self.store.delete_aggregate_map()
        self.store.set_worker_status(WorkerStatus.IDLE)
        self.log(message)
        self._write_status(Phase.DONE.value, message)

        if self.labeler is not None:
            try:
                self.labeler.label_source(self.source_key)
            except Exception as e:
                self.log(f"Labeling failed (job stays complete): {type(e).__name__}: {e}")

        return TickResult(TickOutcome.COMPLETED, Phase.DONE, message)

    # =========================================================================
    # Operator actions
    # =========================================================================

    def reset(self) -> None:
        """Cancel the current job: drop checkpoint, aggregate map and lock."""
        self.lock.force_release()
        self.store.delete_checkpoint()
        self.store.delete_aggregate_map()
        self.store.set_worker_status(WorkerStatus.IDLE)
        self.log("Job reset")
        self._write_status("RESET", "Job reset by operator")

    def status(self) -> Dict[str, Any]:
        checkpoint = self.store.get_checkpoint()
        return {
            'source_key': self.source_key,
            'worker_status': self.store.get_worker_status().value,
            'checkpoint': checkpoint.to_dict() if checkpoint else None,
            'last_status': self.sink.get_status(self.source_key),
        }


def build_worker(config: SyncConfig, session=None) -> SyncWorker:
    """Wire a worker to the configured database and the platform API."""
    db = DatabaseConnection.from_config(config)
    sink = DatabaseSink(db)
    return SyncWorker(
        config=config,
        source=build_source(config, session=session),
        store=DatabaseCheckpointStore(db, config.source_key),
        lock=DatabaseJobLock(db, config.lock_name, config.lock_ttl_seconds),
        sink=sink,
        clock=SystemClock(),
        labeler=RevenueLabeler(sink),
    )
