"""
FastAPI backend for SalesSync.

Provides REST API endpoints for:
- Starting and ticking platform sync jobs
- Viewing worker status and checkpoints
- Reading job summaries and output rows
"""
