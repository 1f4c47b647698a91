"""
SalesSync HTTP API.

Lets an external scheduler (or an operator) drive sync jobs over HTTP:
start a job, send the periodic tick, reset a stuck job, and read back the
summaries and product rows that completed jobs leave behind.

Local development:
    cd backend
    uvicorn api.main:app --reload --port 8000
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from salesync import __version__
from salesync.models import PLATFORMS

from .routes import jobs, summaries
from .services.workers import sink_pool

DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000"


def cors_origins() -> List[str]:
    """Allowed origins from SALESYNC_CORS_ORIGINS (comma separated)."""
    raw = os.getenv("SALESYNC_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the shared read connection for the app's lifetime."""
    try:
        sink_pool.initialize()
        print("Sink connection ready", flush=True)
    except Exception as e:
        # Job routes open their own connections, so the app still starts
        print(f"Warning: sink connection failed ({e}); summary routes will retry on demand", flush=True)

    yield

    sink_pool.close()
    print("Sink connection closed", flush=True)


app = FastAPI(
    title="SalesSync API",
    description="Drive resumable store sync jobs and read their results",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(jobs.router)
app.include_router(summaries.router)


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    database: str
    platforms: List[str]


@app.get("/api/health", response_model=HealthResponse, tags=["health"])
def health_check():
    """Report API liveness and whether the output database answers."""
    try:
        sink_pool.ping()
        database = "connected"
    except Exception as e:
        database = f"error: {e}"

    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc),
        database=database,
        platforms=list(PLATFORMS),
    )


@app.get("/", tags=["root"])
def root():
    return {
        "service": "salesync",
        "version": __version__,
        "docs": "/docs",
        "health": "/api/health",
    }
