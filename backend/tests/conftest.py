"""
Pytest fixtures and test infrastructure for sync engine tests.
"""
import pytest
import os
import sys
from datetime import datetime, timedelta, timezone

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from salesync.checkpoint_store import MemoryCheckpointStore  # noqa: E402
from salesync.config import SyncConfig  # noqa: E402
from salesync.db import DatabaseConnection, connect_sqlite, init_schema  # noqa: E402
from salesync.http import FetchResult  # noqa: E402
from salesync.lock import MemoryJobLock  # noqa: E402
from salesync.models import (  # noqa: E402
    PLATFORM_SHOPIFY,
    STOCK_IN,
    CatalogItem,
    OrderEvent,
    OrderLine,
    Page,
    ProductKey,
)
from salesync.sink import MemorySink  # noqa: E402
from salesync.sources.base import PagedSource  # noqa: E402
from salesync.worker import SyncWorker  # noqa: E402


START_TIME = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Fake clock
# =============================================================================

class FakeClock:
    """Clock whose time only moves when a test (or sleep) moves it."""

    def __init__(self, start: datetime = START_TIME):
        self.start = start
        self.elapsed = 0.0
        self.sleeps = []

    def monotonic(self) -> float:
        return self.elapsed

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.elapsed += seconds

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds


# =============================================================================
# Scripted source
# =============================================================================

def product_key(parent_id, variant_id=None) -> ProductKey:
    return ProductKey(PLATFORM_SHOPIFY, parent_id, variant_id)


def catalog_item(parent_id, price=10.0, variant_id=None, stock_status=STOCK_IN, name=None) -> CatalogItem:
    return CatalogItem(
        key=product_key(parent_id, variant_id),
        name=name or f"Product {parent_id}",
        sku=f"SKU-{parent_id}",
        price=price,
        stock_status=stock_status,
        stock_quantity=5,
    )


def order_event(order_id, lines, created_at=None, cancelled=False) -> OrderEvent:
    """lines: list of (parent_id, quantity, unit_price)."""
    return OrderEvent(
        order_id=str(order_id),
        created_at=created_at or START_TIME - timedelta(days=1),
        cancelled=cancelled,
        lines=[
            OrderLine(key=product_key(pid) if pid is not None else None, quantity=qty, revenue=qty * price)
            for pid, qty, price in lines
        ],
    )


class FakeSource(PagedSource):
    """
    Source that serves fixed lists in pages of page_size.

    Cursors look like 'catalog:2' / 'events:0'. failures maps a cursor to a
    FetchError (returned) or an Exception (raised); each entry fires once.
    on_fetch is called with the cursor before every fetch.
    """

    platform = PLATFORM_SHOPIFY

    def __init__(self, catalog=None, events=None, page_size=2, failures=None, on_fetch=None):
        self.catalog = list(catalog or [])
        self.events = list(events or [])
        self.page_size = page_size
        self.failures = dict(failures or {})
        self.on_fetch = on_fetch
        self.fetched = []
        self.events_since = None

    def initial_catalog_cursor(self):
        return "catalog:0"

    def initial_events_cursor(self, since):
        self.events_since = since
        return "events:0"

    def _page(self, cursor, records, prefix):
        self.fetched.append(cursor)
        if self.on_fetch:
            self.on_fetch(cursor)
        failure = self.failures.pop(cursor, None)
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return FetchResult(error=failure)
        index = int(cursor.split(":")[1])
        start = index * self.page_size
        items = records[start:start + self.page_size]
        has_more = start + self.page_size < len(records)
        return FetchResult.success(Page(items=items, next_cursor=f"{prefix}:{index + 1}" if has_more else None))

    def fetch_catalog_page(self, cursor, deadline=None):
        return self._page(cursor, self.catalog, "catalog")

    def fetch_events_page(self, cursor, deadline=None):
        return self._page(cursor, self.events, "events")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return SyncConfig(
        platform=PLATFORM_SHOPIFY,
        store_url="https://shop.example.com/",
        access_token="shpat_test",
        execution_budget_seconds=60,
        lock_wait_seconds=0,
        write_chunk_size=2,
        max_retries=3,
    )


@pytest.fixture
def example_source():
    """Three products, two orders: A x2 @10, B x1 @20."""
    return FakeSource(
        catalog=[catalog_item('A', 10), catalog_item('B', 20), catalog_item('C', 5)],
        events=[
            order_event(1, [('A', 2, 10.0)]),
            order_event(2, [('B', 1, 20.0)]),
        ],
    )


@pytest.fixture
def make_worker(config, clock):
    """Factory for memory-backed workers sharing the test clock."""
    def _make(source, store=None, lock=None, sink=None, labeler=None, worker_config=None):
        return SyncWorker(
            config=worker_config or config,
            source=source,
            store=store or MemoryCheckpointStore(),
            lock=lock or MemoryJobLock(),
            sink=sink or MemorySink(),
            clock=clock,
            labeler=labeler,
        )
    return _make


@pytest.fixture
def sqlite_conn():
    """In-memory SQLite database with the sync schema."""
    conn = connect_sqlite(':memory:')
    init_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def sqlite_db():
    """DatabaseConnection wrapper around an in-memory SQLite database."""
    db = DatabaseConnection(sqlite_path=':memory:')
    db.connect()
    yield db
    db.close()


@pytest.fixture
def file_db_path(tmp_path):
    """Path for an on-disk SQLite database shared by several connections."""
    return str(tmp_path / "salesync_test.db")


@pytest.fixture
def postgres_db():
    """Test PostgreSQL connection (requires TEST_DATABASE_URL env var)."""
    url = os.environ.get('TEST_DATABASE_URL')
    if not url:
        pytest.skip("TEST_DATABASE_URL not set")
    db = DatabaseConnection(database_url=url)
    db.connect()
    yield db
    cursor = db.conn.cursor()
    for table in ('sync_checkpoints', 'sync_aggregate_maps', 'sync_worker_status', 'sync_locks',
                  'sync_output_rows', 'sync_summaries', 'sync_status', 'sync_labels'):
        cursor.execute(f'DELETE FROM {table}')
    db.conn.commit()
    db.close()
