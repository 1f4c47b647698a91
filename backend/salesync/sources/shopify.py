"""
Shopify Admin REST source.

Pages are followed through the Link header (rel="next"), so the cursor is the
full URL of the next page. Every variant becomes its own catalog entry.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode

from ..clock import Deadline
from ..http import FetchResult, HttpFetcher
from ..models import (
    PLATFORM_SHOPIFY,
    STOCK_BACKORDER,
    STOCK_IN,
    STOCK_OUT,
    CatalogItem,
    OrderEvent,
    OrderLine,
    Page,
    ProductKey,
    format_timestamp,
    parse_timestamp,
)
from .base import PagedSource, record_list, to_float, to_int

PRODUCT_FIELDS = "id,title,created_at,variants"
ORDER_FIELDS = "id,created_at,cancelled_at,financial_status,line_items"
DEFAULT_VARIANT_TITLE = "Default Title"
VOIDED_FINANCIAL_STATUSES = {"voided"}


def convert_stock_status(variant: Dict) -> Tuple[str, Optional[int]]:
    """Map a Shopify variant's inventory fields to (stock_status, quantity)."""
    quantity = to_int(variant.get('inventory_quantity'))
    if not variant.get('inventory_management'):
        # Inventory not tracked - always purchasable
        return STOCK_IN, quantity
    if quantity is not None and quantity > 0:
        return STOCK_IN, quantity
    if variant.get('inventory_policy') == 'continue':
        return STOCK_BACKORDER, quantity
    return STOCK_OUT, quantity


def parse_product(product: Dict) -> Tuple[List[CatalogItem], int]:
    """Parse one product into catalog items. Returns (items, skipped_count)."""
    items = []
    if not isinstance(product, dict) or product.get('id') is None:
        return items, 1
    product_id = product['id']

    title = product.get('title') or 'Unknown'
    created_at = format_timestamp(parse_timestamp(product.get('created_at')))

    variants, skipped = record_list(product.get('variants'))
    for variant in variants:
        if not isinstance(variant, dict) or variant.get('id') is None:
            skipped += 1
            continue
        variant_title = variant.get('title')
        if variant_title and variant_title != DEFAULT_VARIANT_TITLE:
            name = f"{title} - {variant_title}"
        else:
            name = title
        try:
            key = ProductKey(PLATFORM_SHOPIFY, product_id, variant['id'])
        except ValueError:
            skipped += 1
            continue
        stock_status, quantity = convert_stock_status(variant)
        items.append(CatalogItem(
            key=key,
            name=name,
            sku=variant.get('sku') or '',
            price=to_float(variant.get('price')),
            stock_status=stock_status,
            stock_quantity=quantity,
            created_at=created_at,
        ))

    return items, skipped


def parse_order(order: Dict) -> Tuple[Optional[OrderEvent], int]:
    """Parse one order. Returns (event or None, skipped_count)."""
    if not isinstance(order, dict) or order.get('id') is None:
        return None, 1

    cancelled = bool(order.get('cancelled_at')) or \
        order.get('financial_status') in VOIDED_FINANCIAL_STATUSES
    event = OrderEvent(
        order_id=str(order['id']),
        created_at=parse_timestamp(order.get('created_at')),
        cancelled=cancelled,
    )
    lines, skipped = record_list(order.get('line_items'))
    for line in lines:
        if not isinstance(line, dict):
            skipped += 1
            continue
        quantity = to_int(line.get('quantity'))
        if quantity is None or line.get('price') is None:
            skipped += 1
            continue
        product_id = line.get('product_id')
        key = None
        if product_id is not None:
            try:
                key = ProductKey(PLATFORM_SHOPIFY, product_id, line.get('variant_id'))
            except ValueError:
                skipped += 1
                continue
        event.lines.append(OrderLine(
            key=key,
            quantity=quantity,
            revenue=to_float(line.get('price')) * quantity,
        ))
    return event, skipped


class ShopifySource(PagedSource):
    """Products and orders from the Shopify Admin REST API."""

    platform = PLATFORM_SHOPIFY

    def __init__(self, config, fetcher: HttpFetcher):
        super().__init__(config, fetcher)
        self.base_url = f"{config.store_url}/admin/api/{config.api_version}"

    @classmethod
    def from_config(cls, config, session=None, clock=None) -> "ShopifySource":
        fetcher = HttpFetcher.from_config(
            config, session=session, clock=clock,
            headers={
                'X-Shopify-Access-Token': config.access_token or '',
                'Accept': 'application/json',
            },
        )
        return cls(config, fetcher)

    def initial_catalog_cursor(self) -> str:
        query = urlencode({'limit': self.config.page_size, 'fields': PRODUCT_FIELDS})
        return f"{self.base_url}/products.json?{query}"

    def initial_events_cursor(self, since: datetime) -> str:
        query = urlencode({
            'limit': self.config.page_size,
            'status': 'any',
            'created_at_min': since.isoformat(),
            'fields': ORDER_FIELDS,
        })
        return f"{self.base_url}/orders.json?{query}"

    def _next_cursor(self, response) -> Optional[str]:
        return (response.links.get('next') or {}).get('url')

    def fetch_catalog_page(self, cursor: str, deadline: Optional[Deadline] = None) -> FetchResult:
        result = self.fetcher.get_json(cursor, deadline=deadline)
        if not result.ok:
            return result
        response = result.value

        items: List[CatalogItem] = []
        products, skipped = record_list(response.data, 'products')
        for product in products:
            parsed, bad = parse_product(product)
            items.extend(parsed)
            skipped += bad
        return FetchResult.success(Page(items=items, next_cursor=self._next_cursor(response), skipped=skipped))

    def fetch_events_page(self, cursor: str, deadline: Optional[Deadline] = None) -> FetchResult:
        result = self.fetcher.get_json(cursor, deadline=deadline)
        if not result.ok:
            return result
        response = result.value

        events: List[OrderEvent] = []
        orders, skipped = record_list(response.data, 'orders')
        for order in orders:
            event, bad = parse_order(order)
            skipped += bad
            if event is not None:
                events.append(event)
        return FetchResult.success(Page(items=events, next_cursor=self._next_cursor(response), skipped=skipped))
