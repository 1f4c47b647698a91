"""
Sync job routes.

Endpoints for starting, ticking, resetting and inspecting the sync job of a
platform. An external timer is expected to POST the tick endpoint every few
minutes; ticks are no-ops while no job is active.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from salesync.errors import ConfigError
from salesync.models import PLATFORMS
from salesync.worker import SyncWorker

from ..services.workers import WorkerFactory, get_worker_factory


router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class StartJobResponse(BaseModel):
    """Response after scheduling a job start."""
    message: str
    platform: str


class TickResponse(BaseModel):
    """Result of one worker tick."""
    platform: str
    outcome: str
    phase: Optional[str] = None
    message: str


class ResetResponse(BaseModel):
    message: str
    platform: str


class JobStatusResponse(BaseModel):
    """Worker status plus the current checkpoint, if a job exists."""
    source_key: str
    worker_status: str
    checkpoint: Optional[Dict[str, Any]] = None
    last_status: Optional[Dict[str, Any]] = None


def resolve_worker(platform: str, factory: WorkerFactory) -> SyncWorker:
    """Build the worker for platform or raise the matching HTTP error."""
    if platform not in PLATFORMS:
        raise HTTPException(
            status_code=404,
            detail=f"Platform {platform} not found. Valid platforms: {list(PLATFORMS)}"
        )
    try:
        return factory(platform)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))


def run_start(worker: SyncWorker) -> None:
    """Background task: start the job and run its first tick."""
    result = worker.start()
    print(f"Start {worker.source_key}: {result.outcome.value} - {result.message}", flush=True)


@router.post("/{platform}/start", response_model=StartJobResponse, status_code=202)
def start_job(platform: str, background_tasks: BackgroundTasks,
              factory: WorkerFactory = Depends(get_worker_factory)):
    """
    Start a new sync job for the platform.

    Any job in progress is discarded. The first tick runs in the background;
    poll the status endpoint to follow it.
    """
    worker = resolve_worker(platform, factory)
    background_tasks.add_task(run_start, worker)
    return StartJobResponse(message=f"Starting {platform} sync job", platform=platform)


@router.post("/{platform}/tick", response_model=TickResponse)
def tick_job(platform: str, factory: WorkerFactory = Depends(get_worker_factory)):
    """Run one tick synchronously and report what it did."""
    worker = resolve_worker(platform, factory)
    result = worker.tick()
    return TickResponse(platform=platform, **result.to_dict())


@router.post("/{platform}/reset", response_model=ResetResponse)
def reset_job(platform: str, factory: WorkerFactory = Depends(get_worker_factory)):
    """Cancel the job in progress and release its lock."""
    worker = resolve_worker(platform, factory)
    worker.reset()
    return ResetResponse(message=f"Reset {platform} sync job", platform=platform)


@router.get("/{platform}/status", response_model=JobStatusResponse)
def get_job_status(platform: str, factory: WorkerFactory = Depends(get_worker_factory)):
    worker = resolve_worker(platform, factory)
    return JobStatusResponse(**worker.status())
