from ..models import PLATFORM_SHOPIFY, PLATFORM_WOOCOMMERCE
from .base import PagedSource
from .shopify import ShopifySource
from .woocommerce import WooCommerceSource

SOURCES = {
    PLATFORM_SHOPIFY: ShopifySource,
    PLATFORM_WOOCOMMERCE: WooCommerceSource,
}


def build_source(config, session=None, clock=None) -> PagedSource:
    """Create the paged source for config.platform."""
    return SOURCES[config.platform].from_config(config, session=session, clock=clock)


__all__ = ['PagedSource', 'ShopifySource', 'WooCommerceSource', 'SOURCES', 'build_source']
