"""
Sync output routes.

Read-only endpoints for the summaries and per-product rows written by
completed jobs.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from salesync.models import PLATFORMS
from salesync.sink import OutputSink

from ..services.workers import get_sink


router = APIRouter(prefix="/api/summaries", tags=["summaries"])


class Summary(BaseModel):
    """Job summary for one platform."""
    source_key: str
    total_revenue: float
    total_units: int
    unique_orders: int
    product_count: int
    products_with_sales: int
    out_of_stock_with_sales: int
    out_of_stock_with_sales_ratio: float
    synced_at: str


class SummaryListResponse(BaseModel):
    summaries: List[Summary]
    total: int


class OutputRow(BaseModel):
    """One product row, in revenue order."""
    position: int
    product_key: str
    platform: str
    parent_id: str
    variant_id: str
    name: str
    sku: Optional[str] = None
    price: Optional[float] = None
    stock_status: Optional[str] = None
    stock_quantity: Optional[int] = None
    created_at: Optional[str] = None
    revenue: float
    units_sold: int
    order_count: int
    recent_revenue: float
    recent_units: int
    last_order_at: Optional[str] = None
    label: Optional[str] = None


class OutputRowsResponse(BaseModel):
    rows: List[OutputRow]
    total: int
    limit: int
    offset: int


def check_platform(platform: str) -> None:
    if platform not in PLATFORMS:
        raise HTTPException(
            status_code=404,
            detail=f"Platform {platform} not found. Valid platforms: {list(PLATFORMS)}"
        )


@router.get("", response_model=SummaryListResponse)
def list_summaries(sink: OutputSink = Depends(get_sink)):
    """List the latest summary of every platform that has completed a job."""
    summaries = [Summary(**row) for row in sink.list_summaries()]
    return SummaryListResponse(summaries=summaries, total=len(summaries))


@router.get("/{platform}", response_model=Summary)
def get_summary(platform: str, sink: OutputSink = Depends(get_sink)):
    check_platform(platform)
    summary = sink.get_summary(platform)
    if not summary:
        raise HTTPException(status_code=404, detail=f"No summary for {platform} yet")
    return Summary(**summary)


@router.get("/{platform}/rows", response_model=OutputRowsResponse)
def list_rows(
    platform: str,
    limit: int = Query(100, ge=1, le=1000, description="Number of rows to return"),
    offset: int = Query(0, ge=0, description="Number of rows to skip"),
    sink: OutputSink = Depends(get_sink),
):
    """
    Get output rows for a platform, highest revenue first.

    Args:
        platform: shopify or woocommerce
        limit: Maximum number of rows to return (default 100, max 1000)
        offset: Number of rows to skip for pagination

    Returns:
        Rows with their labels and pagination info
    """
    check_platform(platform)
    labels = sink.get_labels(platform)
    rows: List[Dict[str, Any]] = sink.read_rows(platform, limit=limit, offset=offset)
    return OutputRowsResponse(
        rows=[OutputRow(**row, label=labels.get(row['product_key'])) for row in rows],
        total=sink.row_count(platform),
        limit=limit,
        offset=offset,
    )
