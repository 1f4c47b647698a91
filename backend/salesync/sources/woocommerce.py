"""
WooCommerce REST v3 source.

WooCommerce pages by number, so cursors are small query strings such as
"page=3" or "page=1&after=2024-01-01T00:00:00". Variable products are
expanded into their variations; those requests run concurrently (bounded by
max_concurrent_requests) and the results are folded back in product order.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

from requests.auth import HTTPBasicAuth

from ..clock import Deadline
from ..http import FetchResult, HttpFetcher
from ..models import (
    NO_VARIANT,
    PLATFORM_WOOCOMMERCE,
    STOCK_BACKORDER,
    STOCK_IN,
    STOCK_OUT,
    STOCK_UNKNOWN,
    CatalogItem,
    OrderEvent,
    OrderLine,
    Page,
    ProductKey,
    format_timestamp,
    parse_timestamp,
)
from .base import PagedSource, record_list, to_float, to_int

STOCK_STATUS_MAP = {
    'instock': STOCK_IN,
    'outofstock': STOCK_OUT,
    'onbackorder': STOCK_BACKORDER,
}

CANCELLED_ORDER_STATUSES = {'cancelled', 'failed', 'refunded', 'trash'}

# Variation listing page size (WooCommerce maximum)
VARIATIONS_PER_PAGE = 100
MAX_VARIATION_PAGES = 20


def encode_cursor(params: Dict[str, str]) -> str:
    return urlencode(params)


def decode_cursor(cursor: str) -> Dict[str, str]:
    params = dict(parse_qsl(cursor or ''))
    if 'page' not in params:
        params['page'] = '1'
    return params


def next_page_cursor(params: Dict[str, str], item_count: int, per_page: int,
                     total_pages: Optional[int]) -> Optional[str]:
    """Cursor for the following page, or None when this was the last one."""
    page = int(params.get('page', '1'))
    if total_pages is not None:
        if page >= total_pages:
            return None
    elif item_count < per_page:
        return None
    return encode_cursor({**params, 'page': str(page + 1)})


def _catalog_item(key: ProductKey, name: str, record: Dict, created_at: Optional[str]) -> CatalogItem:
    return CatalogItem(
        key=key,
        name=name,
        sku=record.get('sku') or '',
        price=to_float(record.get('price')),
        stock_status=STOCK_STATUS_MAP.get(record.get('stock_status'), STOCK_UNKNOWN),
        stock_quantity=to_int(record.get('stock_quantity')),
        created_at=created_at,
    )


def variation_name(parent_name: str, variation: Dict) -> str:
    attributes, _ = record_list(variation.get('attributes'))
    options = [a.get('option') for a in attributes if isinstance(a, dict) and a.get('option')]
    if not options:
        return parent_name
    return f"{parent_name} - {' / '.join(options)}"


def parse_product(product: Dict, variations: Optional[List[Dict]] = None) -> Tuple[List[CatalogItem], int]:
    """Parse a product (and its variations, for variable products)."""
    if not isinstance(product, dict) or product.get('id') is None:
        return [], 1
    product_id = product['id']

    name = product.get('name') or 'Unknown'
    created_at = format_timestamp(parse_timestamp(
        product.get('date_created_gmt') or product.get('date_created')
    ))

    if product.get('type') != 'variable':
        try:
            key = ProductKey(PLATFORM_WOOCOMMERCE, product_id, NO_VARIANT)
        except ValueError:
            return [], 1
        return [_catalog_item(key, name, product, created_at)], 0

    items = []
    skipped = 0
    for variation in variations or []:
        if not isinstance(variation, dict):
            skipped += 1
            continue
        try:
            key = ProductKey(PLATFORM_WOOCOMMERCE, product_id, variation.get('id'))
        except ValueError:
            skipped += 1
            continue
        if key.variant_id == NO_VARIANT:
            skipped += 1
            continue
        items.append(_catalog_item(key, variation_name(name, variation), variation, created_at))
    return items, skipped


def parse_order(order: Dict) -> Tuple[Optional[OrderEvent], int]:
    """Parse one order. Returns (event or None, skipped_count)."""
    if not isinstance(order, dict) or order.get('id') is None:
        return None, 1

    event = OrderEvent(
        order_id=str(order['id']),
        created_at=parse_timestamp(order.get('date_created_gmt') or order.get('date_created')),
        cancelled=order.get('status') in CANCELLED_ORDER_STATUSES,
    )
    lines, skipped = record_list(order.get('line_items'))
    for line in lines:
        if not isinstance(line, dict):
            skipped += 1
            continue
        quantity = to_int(line.get('quantity'))
        if quantity is None:
            skipped += 1
            continue
        if line.get('total') is not None:
            revenue = to_float(line.get('total'))
        elif line.get('price') is not None:
            revenue = to_float(line.get('price')) * quantity
        else:
            skipped += 1
            continue
        key = None
        if to_int(line.get('product_id')):
            try:
                key = ProductKey(PLATFORM_WOOCOMMERCE, line['product_id'], line.get('variation_id') or NO_VARIANT)
            except ValueError:
                skipped += 1
                continue
        event.lines.append(OrderLine(key=key, quantity=quantity, revenue=revenue))
    return event, skipped


class WooCommerceSource(PagedSource):
    """Products and orders from the WooCommerce REST API."""

    platform = PLATFORM_WOOCOMMERCE

    def __init__(self, config, fetcher: HttpFetcher):
        super().__init__(config, fetcher)
        self.base_url = f"{config.store_url}/wp-json/wc/v3"

    @classmethod
    def from_config(cls, config, session=None, clock=None, session_factory=None) -> "WooCommerceSource":
        fetcher = HttpFetcher.from_config(
            config, session=session, clock=clock, session_factory=session_factory,
            headers={'Accept': 'application/json'},
            auth=HTTPBasicAuth(config.consumer_key or '', config.consumer_secret or ''),
        )
        return cls(config, fetcher)

    def initial_catalog_cursor(self) -> str:
        return encode_cursor({'page': '1'})

    def initial_events_cursor(self, since: datetime) -> str:
        return encode_cursor({'page': '1', 'after': since.strftime('%Y-%m-%dT%H:%M:%S')})

    def _total_pages(self, response) -> Optional[int]:
        return to_int(response.headers.get('X-WP-TotalPages'))

    def _fetch_variations(self, fetcher: HttpFetcher, product_id, deadline: Optional[Deadline]) -> FetchResult:
        """All variations of one variable product (may span several pages)."""
        variations: List[Dict] = []
        for page in range(1, MAX_VARIATION_PAGES + 1):
            result = fetcher.get_json(
                f"{self.base_url}/products/{product_id}/variations",
                params={'per_page': VARIATIONS_PER_PAGE, 'page': page},
                deadline=deadline,
            )
            if not result.ok:
                return result
            batch, _ = record_list(result.value.data)
            variations.extend(batch)
            total_pages = self._total_pages(result.value)
            if (total_pages is not None and page >= total_pages) or len(batch) < VARIATIONS_PER_PAGE:
                break
        return FetchResult.success(variations)

    def _fetch_all_variations(self, product_ids: List, deadline: Optional[Deadline]) -> List[FetchResult]:
        """
        Fetch variations on a bounded pool, results in input order.

        requests.Session is not documented as thread-safe, so every pool
        thread gets its own fetcher and session; they are closed with the pool.
        """
        local = threading.local()
        fetchers: List[HttpFetcher] = []

        def fetch(product_id) -> FetchResult:
            fetcher = getattr(local, 'fetcher', None)
            if fetcher is None:
                fetcher = local.fetcher = self.fetcher.clone()
                fetchers.append(fetcher)
            return self._fetch_variations(fetcher, product_id, deadline)

        workers = max(1, min(self.config.max_concurrent_requests, len(product_ids)))
        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                return list(executor.map(fetch, product_ids))
        finally:
            for fetcher in fetchers:
                fetcher.session.close()

    def fetch_catalog_page(self, cursor: str, deadline: Optional[Deadline] = None) -> FetchResult:
        params = decode_cursor(cursor)
        result = self.fetcher.get_json(
            f"{self.base_url}/products",
            params={
                'per_page': self.config.page_size,
                'page': params['page'],
                'orderby': 'id',
                'order': 'asc',
            },
            deadline=deadline,
        )
        if not result.ok:
            return result
        response = result.value
        products, malformed = record_list(response.data)

        variable_ids = [
            p['id'] for p in products
            if isinstance(p, dict) and p.get('type') == 'variable' and p.get('id') is not None
        ]
        variations_by_product: Dict = {}
        if variable_ids:
            fetched = self._fetch_all_variations(variable_ids, deadline)
            for product_id, variation_result in zip(variable_ids, fetched):
                if not variation_result.ok:
                    return variation_result
                variations_by_product[product_id] = variation_result.value

        items: List[CatalogItem] = []
        skipped = malformed
        for product in products:
            product_id = product.get('id') if isinstance(product, dict) else None
            parsed, bad = parse_product(product, variations_by_product.get(product_id))
            items.extend(parsed)
            skipped += bad

        next_cursor = next_page_cursor(params, len(products), self.config.page_size,
                                       self._total_pages(response))
        return FetchResult.success(Page(items=items, next_cursor=next_cursor, skipped=skipped))

    def fetch_events_page(self, cursor: str, deadline: Optional[Deadline] = None) -> FetchResult:
        params = decode_cursor(cursor)
        query = {
            'per_page': self.config.page_size,
            'page': params['page'],
            'orderby': 'date',
            'order': 'asc',
        }
        if params.get('after'):
            query['after'] = params['after']
        result = self.fetcher.get_json(f"{self.base_url}/orders", params=query, deadline=deadline)
        if not result.ok:
            return result
        response = result.value
        orders, skipped = record_list(response.data)

        events: List[OrderEvent] = []
        for order in orders:
            event, bad = parse_order(order)
            skipped += bad
            if event is not None:
                events.append(event)

        next_cursor = next_page_cursor(params, len(orders), self.config.page_size,
                                       self._total_pages(response))
        return FetchResult.success(Page(items=events, next_cursor=next_cursor, skipped=skipped))
