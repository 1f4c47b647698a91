"""
Phase executors for the sync job.

Each executor takes the checkpoint and aggregate map, does as much bounded
work as the deadline allows, and mutates both in place. The worker decides
what gets persisted afterwards.

    FETCH_CATALOG -> FETCH_EVENTS -> WRITE_OUTPUT -> DONE
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .clock import Clock, Deadline
from .config import SyncConfig
from .http import FetchError
from .models import (
    AggregateMap,
    CatalogItem,
    JobCheckpoint,
    JobTotals,
    OrderEvent,
    Phase,
    ProductAggregate,
    format_timestamp,
    parse_timestamp,
)


# =============================================================================
# Tick statistics
# =============================================================================

class TickStats:
    """Counters for one tick, printed as a report when the tick ends."""

    def __init__(self, clock: Clock, source_key: str):
        self.clock = clock
        self.source_key = source_key
        self.started = clock.monotonic()

        self.phase_before: Optional[Phase] = None
        self.phase_after: Optional[Phase] = None

        self.pages_fetched = 0
        self.catalog_items = 0
        self.orders_seen = 0
        self.orders_cancelled = 0
        self.lines_folded = 0
        self.lines_unknown = 0
        self.records_skipped = 0
        self.rows_written = 0
        self.error: Optional[str] = None

    def log(self, message: str) -> None:
        timestamp = self.clock.now().strftime("%H:%M:%S")
        print(f"[{timestamp}] [{self.source_key}] {message}", flush=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_key': self.source_key,
            'phase_before': self.phase_before.value if self.phase_before else None,
            'phase_after': self.phase_after.value if self.phase_after else None,
            'pages_fetched': self.pages_fetched,
            'catalog_items': self.catalog_items,
            'orders_seen': self.orders_seen,
            'orders_cancelled': self.orders_cancelled,
            'lines_folded': self.lines_folded,
            'lines_unknown': self.lines_unknown,
            'records_skipped': self.records_skipped,
            'rows_written': self.rows_written,
            'error': self.error,
        }

    def print_report(self):
        """Print the end-of-tick statistics report to console."""
        elapsed = self.clock.monotonic() - self.started
        before = self.phase_before.value if self.phase_before else "-"
        after = self.phase_after.value if self.phase_after else "-"

        print("\n" + "=" * 70)
        print(f"TICK REPORT: {self.source_key}")
        print("=" * 70)
        print(f"\nDuration: {elapsed:.1f}s")
        print(f"Phase:    {before} -> {after}")

        print("\n--- FETCH ---")
        print(f"  Pages:           {self.pages_fetched:>6}")
        print(f"  Catalog items:   {self.catalog_items:>6}")
        print(f"  Orders:          {self.orders_seen:>6}")
        print(f"  Cancelled:       {self.orders_cancelled:>6}")
        print(f"  Lines folded:    {self.lines_folded:>6}")
        print(f"  Lines unknown:   {self.lines_unknown:>6}")
        print(f"  Records skipped: {self.records_skipped:>6}")

        print("\n--- OUTPUT ---")
        print(f"  Rows written:    {self.rows_written:>6}")

        if self.error:
            print("\n--- ERROR ---")
            print(f"  {self.error}")

        print("=" * 70 + "\n", flush=True)


# =============================================================================
# Executor plumbing
# =============================================================================

@dataclass
class PhaseContext:
    """Collaborators shared by every executor in a tick."""
    config: SyncConfig
    source: Any
    sink: Any
    clock: Clock
    stats: TickStats

    @property
    def source_key(self) -> str:
        return self.config.source_key


@dataclass
class PhaseOutcome:
    """How far an executor got. error is set when a fetch gave up."""
    pages: int = 0
    error: Optional[FetchError] = None


PhaseExecutor = Callable[[PhaseContext, JobCheckpoint, AggregateMap, Deadline], PhaseOutcome]


# =============================================================================
# Folding
# =============================================================================

def apply_catalog_page(aggregates: AggregateMap, items: List[CatalogItem]) -> int:
    """Create or overwrite aggregates for a catalog page. Returns items applied."""
    for item in items:
        aggregate = aggregates.get(item.key)
        if aggregate is None:
            aggregates[item.key] = ProductAggregate.from_catalog(item)
        else:
            aggregate.apply_catalog(item)
    return len(items)


def recent_window(started_at: datetime, recent_window_days: int) -> Tuple[datetime, datetime]:
    return started_at - timedelta(days=recent_window_days), started_at


def fold_order(aggregates: AggregateMap, totals: JobTotals, event: OrderEvent,
               window: Tuple[datetime, datetime]) -> Tuple[int, int]:
    """
    Fold one order into the aggregates and job totals.

    Lines whose product is not in the catalog map are ignored. The order
    counts towards unique_orders only if at least one line matched.

    Returns (lines_folded, lines_unknown).
    """
    if event.cancelled:
        return 0, 0

    in_window = event.created_at is not None and window[0] <= event.created_at <= window[1]
    ordered_at = format_timestamp(event.created_at)
    seen = set()
    folded = 0
    unknown = 0

    for line in event.lines:
        aggregate = aggregates.get(line.key) if line.key is not None else None
        if aggregate is None:
            unknown += 1
            continue

        aggregate.revenue += line.revenue
        aggregate.units_sold += line.quantity
        if line.key not in seen:
            aggregate.order_count += 1
            seen.add(line.key)
        if in_window:
            aggregate.recent_revenue += line.revenue
            aggregate.recent_units += line.quantity
        if event.created_at is not None:
            last = parse_timestamp(aggregate.last_order_at)
            if last is None or event.created_at > last:
                aggregate.last_order_at = ordered_at

        totals.revenue += line.revenue
        totals.units_sold += line.quantity
        folded += 1

    if folded:
        totals.unique_orders += 1
    return folded, unknown


def sorted_aggregates(aggregates: AggregateMap) -> List[ProductAggregate]:
    """Descending by revenue; ties keep map order (sorted() is stable)."""
    return sorted(aggregates.values(), key=lambda a: a.revenue, reverse=True)


def build_summary(aggregates: AggregateMap, totals: JobTotals, synced_at: datetime) -> Dict[str, Any]:
    with_sales = [a for a in aggregates.values() if a.units_sold > 0]
    out_of_stock = [a for a in with_sales if a.is_out_of_stock]
    ratio = len(out_of_stock) / len(with_sales) if with_sales else 0.0
    return {
        'total_revenue': round(totals.revenue, 2),
        'total_units': totals.units_sold,
        'unique_orders': totals.unique_orders,
        'product_count': len(aggregates),
        'products_with_sales': len(with_sales),
        'out_of_stock_with_sales': len(out_of_stock),
        'out_of_stock_with_sales_ratio': round(ratio, 4),
        'synced_at': synced_at.isoformat(),
    }


# =============================================================================
# Executors
# =============================================================================

def fetch_catalog(ctx: PhaseContext, checkpoint: JobCheckpoint, aggregates: AggregateMap,
                  deadline: Deadline) -> PhaseOutcome:
    """Page through the catalog, creating or overwriting aggregates."""
    outcome = PhaseOutcome()

    while checkpoint.catalog_cursor is not None:
        if deadline.expired():
            ctx.stats.log("Time budget used, catalog will resume next tick")
            return outcome

        result = ctx.source.fetch_catalog_page(checkpoint.catalog_cursor, deadline)
        if not result.ok:
            outcome.error = result.error
            return outcome

        page = result.value
        applied = apply_catalog_page(aggregates, page.items)
        checkpoint.catalog_cursor = page.next_cursor

        outcome.pages += 1
        ctx.stats.pages_fetched += 1
        ctx.stats.catalog_items += applied
        ctx.stats.records_skipped += page.skipped
        if page.skipped:
            ctx.stats.log(f"Skipped {page.skipped} malformed catalog record(s)")
        ctx.stats.log(f"Catalog page {outcome.pages}: {applied} items ({len(aggregates)} total)")

    checkpoint.phase = Phase.FETCH_EVENTS
    ctx.stats.log(f"Catalog complete: {len(aggregates)} products")
    return outcome


def fetch_events(ctx: PhaseContext, checkpoint: JobCheckpoint, aggregates: AggregateMap,
                 deadline: Deadline) -> PhaseOutcome:
    """Page through orders, folding line items into matching aggregates."""
    outcome = PhaseOutcome()
    window = recent_window(checkpoint.started_at or ctx.clock.now(), ctx.config.recent_window_days)

    while checkpoint.events_cursor is not None:
        if deadline.expired():
            ctx.stats.log("Time budget used, orders will resume next tick")
            return outcome

        result = ctx.source.fetch_events_page(checkpoint.events_cursor, deadline)
        if not result.ok:
            outcome.error = result.error
            return outcome

        page = result.value
        for event in page.items:
            ctx.stats.orders_seen += 1
            if event.cancelled:
                ctx.stats.orders_cancelled += 1
                continue
            folded, unknown = fold_order(aggregates, checkpoint.totals, event, window)
            ctx.stats.lines_folded += folded
            ctx.stats.lines_unknown += unknown
        checkpoint.events_cursor = page.next_cursor

        outcome.pages += 1
        ctx.stats.pages_fetched += 1
        ctx.stats.records_skipped += page.skipped
        if page.skipped:
            ctx.stats.log(f"Skipped {page.skipped} malformed order record(s)")
        ctx.stats.log(
            f"Orders page {outcome.pages}: {len(page.items)} orders | "
            f"revenue so far {checkpoint.totals.revenue:.2f}"
        )

    checkpoint.phase = Phase.WRITE_OUTPUT
    checkpoint.write_cursor = 0
    ctx.stats.log(f"Orders complete: {checkpoint.totals.unique_orders} orders matched")
    return outcome


def write_output(ctx: PhaseContext, checkpoint: JobCheckpoint, aggregates: AggregateMap,
                 deadline: Deadline) -> PhaseOutcome:
    """Flush sorted rows to the sink in chunks, then upsert the summary."""
    outcome = PhaseOutcome()
    rows = [aggregate.to_row() for aggregate in sorted_aggregates(aggregates)]
    chunk_size = ctx.config.write_chunk_size

    while checkpoint.write_cursor < len(rows):
        if deadline.expired():
            ctx.stats.log(f"Time budget used, output resumes at row {checkpoint.write_cursor}")
            return outcome

        start = checkpoint.write_cursor
        chunk = rows[start:start + chunk_size]
        ctx.sink.write_rows(ctx.source_key, start, chunk)
        checkpoint.write_cursor = start + len(chunk)

        outcome.pages += 1
        ctx.stats.rows_written += len(chunk)
        ctx.stats.log(f"Wrote rows {start}-{checkpoint.write_cursor - 1} of {len(rows)}")

    # Drop rows left over from a previous, larger run
    ctx.sink.truncate_rows(ctx.source_key, len(rows))

    summary = build_summary(aggregates, checkpoint.totals, ctx.clock.now())
    ctx.sink.upsert_summary(ctx.source_key, summary)
    checkpoint.phase = Phase.DONE
    ctx.stats.log(
        f"Output complete: {len(rows)} rows | revenue {summary['total_revenue']:.2f} | "
        f"units {summary['total_units']} | orders {summary['unique_orders']}"
    )
    return outcome


EXECUTORS: Dict[Phase, PhaseExecutor] = {
    Phase.FETCH_CATALOG: fetch_catalog,
    Phase.FETCH_EVENTS: fetch_events,
    Phase.WRITE_OUTPUT: write_output,
}
