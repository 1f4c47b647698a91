"""
Domain types for the sync engine.

JobCheckpoint is the small control record persisted after every tick; the
aggregate map (ProductKey -> ProductAggregate) is the large working set that
is stored separately as a blob.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# Enums
# =============================================================================

class Phase(Enum):
    """Stages of a sync job. Progression is linear; only a reset goes back."""
    FETCH_CATALOG = "FETCH_CATALOG"
    FETCH_EVENTS = "FETCH_EVENTS"
    WRITE_OUTPUT = "WRITE_OUTPUT"
    DONE = "DONE"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.DONE, Phase.ERROR)


class WorkerStatus(Enum):
    """Gate checked by every scheduled tick."""
    ACTIVE = "ACTIVE"
    IDLE = "IDLE"


# =============================================================================
# Product identity
# =============================================================================

PLATFORM_SHOPIFY = "shopify"
PLATFORM_WOOCOMMERCE = "woocommerce"
PLATFORMS = (PLATFORM_SHOPIFY, PLATFORM_WOOCOMMERCE)

# Variant id used for products that have no variants
NO_VARIANT = "0"

KEY_SEPARATOR = ":"


@dataclass(frozen=True)
class ProductKey:
    """Composite identity of one sellable catalog entry."""
    platform: str
    parent_id: str
    variant_id: str = NO_VARIANT

    def __post_init__(self):
        parent_id = _normalize_id(self.parent_id)
        variant_id = _normalize_id(self.variant_id) or NO_VARIANT
        if self.platform not in PLATFORMS:
            raise ValueError(f"Unknown platform: {self.platform!r}")
        if not parent_id:
            raise ValueError("ProductKey requires a parent id")
        if KEY_SEPARATOR in parent_id or KEY_SEPARATOR in variant_id:
            raise ValueError(f"Ids may not contain {KEY_SEPARATOR!r}")
        object.__setattr__(self, "parent_id", parent_id)
        object.__setattr__(self, "variant_id", variant_id)

    @classmethod
    def parse(cls, text: str) -> "ProductKey":
        """Parse 'platform:parent_id:variant_id' back into a key."""
        parts = (text or "").split(KEY_SEPARATOR)
        if len(parts) != 3:
            raise ValueError(f"Malformed product key: {text!r}")
        return cls(platform=parts[0], parent_id=parts[1], variant_id=parts[2])

    def __str__(self) -> str:
        return KEY_SEPARATOR.join((self.platform, self.parent_id, self.variant_id))


def _normalize_id(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


# =============================================================================
# Timestamps
# =============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 API timestamp. Naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Remote records
# =============================================================================

@dataclass
class CatalogItem:
    """One catalog entry (product or variant) as returned by a source."""
    key: ProductKey
    name: str
    sku: str = ""
    price: float = 0.0
    stock_status: str = "unknown"
    stock_quantity: Optional[int] = None
    created_at: Optional[str] = None


@dataclass
class OrderLine:
    """One line item of an order. key is None when the line has no product."""
    key: Optional[ProductKey]
    quantity: int
    revenue: float


@dataclass
class OrderEvent:
    """A remote order; never persisted on its own."""
    order_id: str
    created_at: Optional[datetime]
    cancelled: bool = False
    lines: List[OrderLine] = field(default_factory=list)


@dataclass
class Page:
    """A bounded page of records plus the continuation cursor."""
    items: List[Any]
    next_cursor: Optional[str] = None
    skipped: int = 0  # records dropped for missing/invalid fields


# =============================================================================
# Aggregates
# =============================================================================

STOCK_IN = "in_stock"
STOCK_OUT = "out_of_stock"
STOCK_BACKORDER = "backorder"
STOCK_UNKNOWN = "unknown"


@dataclass
class ProductAggregate:
    """Per-product accumulator built up over one job run."""
    key: ProductKey
    name: str = ""
    sku: str = ""
    price: float = 0.0
    stock_status: str = STOCK_UNKNOWN
    stock_quantity: Optional[int] = None
    created_at: Optional[str] = None

    revenue: float = 0.0
    units_sold: int = 0
    order_count: int = 0
    recent_revenue: float = 0.0
    recent_units: int = 0
    last_order_at: Optional[str] = None

    @classmethod
    def from_catalog(cls, item: CatalogItem) -> "ProductAggregate":
        aggregate = cls(key=item.key)
        aggregate.apply_catalog(item)
        return aggregate

    def apply_catalog(self, item: CatalogItem) -> None:
        """Overwrite the descriptive fields; accumulators are left alone."""
        self.name = item.name
        self.sku = item.sku
        self.price = item.price
        self.stock_status = item.stock_status
        self.stock_quantity = item.stock_quantity
        self.created_at = item.created_at

    @property
    def is_out_of_stock(self) -> bool:
        return self.stock_status == STOCK_OUT

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': str(self.key),
            'name': self.name,
            'sku': self.sku,
            'price': self.price,
            'stock_status': self.stock_status,
            'stock_quantity': self.stock_quantity,
            'created_at': self.created_at,
            'revenue': self.revenue,
            'units_sold': self.units_sold,
            'order_count': self.order_count,
            'recent_revenue': self.recent_revenue,
            'recent_units': self.recent_units,
            'last_order_at': self.last_order_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductAggregate":
        return cls(
            key=ProductKey.parse(data['key']),
            name=data.get('name', ''),
            sku=data.get('sku', ''),
            price=float(data.get('price') or 0),
            stock_status=data.get('stock_status', STOCK_UNKNOWN),
            stock_quantity=data.get('stock_quantity'),
            created_at=data.get('created_at'),
            revenue=float(data.get('revenue') or 0),
            units_sold=int(data.get('units_sold') or 0),
            order_count=int(data.get('order_count') or 0),
            recent_revenue=float(data.get('recent_revenue') or 0),
            recent_units=int(data.get('recent_units') or 0),
            last_order_at=data.get('last_order_at'),
        )

    def to_row(self) -> Dict[str, Any]:
        """Flat output row for the sink."""
        return {
            'product_key': str(self.key),
            'platform': self.key.platform,
            'parent_id': self.key.parent_id,
            'variant_id': self.key.variant_id,
            'name': self.name,
            'sku': self.sku,
            'price': self.price,
            'stock_status': self.stock_status,
            'stock_quantity': self.stock_quantity,
            'created_at': self.created_at,
            'revenue': round(self.revenue, 2),
            'units_sold': self.units_sold,
            'order_count': self.order_count,
            'recent_revenue': round(self.recent_revenue, 2),
            'recent_units': self.recent_units,
            'last_order_at': self.last_order_at,
        }


AggregateMap = Dict[ProductKey, ProductAggregate]


def aggregates_to_dict(aggregates: AggregateMap) -> List[Dict[str, Any]]:
    """Serialize an aggregate map, preserving insertion order."""
    return [aggregate.to_dict() for aggregate in aggregates.values()]


def aggregates_from_dict(entries: List[Dict[str, Any]]) -> AggregateMap:
    aggregates: AggregateMap = {}
    for entry in entries:
        aggregate = ProductAggregate.from_dict(entry)
        aggregates[aggregate.key] = aggregate
    return aggregates


# =============================================================================
# Checkpoint
# =============================================================================

@dataclass
class JobTotals:
    """Job-level running totals, accumulated incrementally."""
    revenue: float = 0.0
    units_sold: int = 0
    unique_orders: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'revenue': round(self.revenue, 2),
            'unitsSold': self.units_sold,
            'uniqueOrders': self.unique_orders,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobTotals":
        data = data or {}
        return cls(
            revenue=float(data.get('revenue') or 0),
            units_sold=int(data.get('unitsSold') or 0),
            unique_orders=int(data.get('uniqueOrders') or 0),
        )


@dataclass
class JobCheckpoint:
    """Control-plane state of the in-progress job."""
    phase: Phase = Phase.FETCH_CATALOG
    catalog_cursor: Optional[str] = None
    events_cursor: Optional[str] = None
    write_cursor: int = 0
    started_at: Optional[datetime] = None
    totals: JobTotals = field(default_factory=JobTotals)
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'phase': self.phase.value,
            'catalogCursor': self.catalog_cursor,
            'eventsCursor': self.events_cursor,
            'writeCursor': self.write_cursor,
            'startedAt': format_timestamp(self.started_at),
            'totals': self.totals.to_dict(),
            'lastError': self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobCheckpoint":
        return cls(
            phase=Phase(data['phase']),
            catalog_cursor=data.get('catalogCursor'),
            events_cursor=data.get('eventsCursor'),
            write_cursor=int(data.get('writeCursor') or 0),
            started_at=parse_timestamp(data.get('startedAt')),
            totals=JobTotals.from_dict(data.get('totals')),
            last_error=data.get('lastError'),
        )
