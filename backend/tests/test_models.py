"""
Tests for domain types: product keys, aggregates and checkpoint serialization.
"""
import pytest
from datetime import datetime, timezone

from salesync.models import (
    NO_VARIANT,
    STOCK_OUT,
    CatalogItem,
    JobCheckpoint,
    JobTotals,
    Phase,
    ProductAggregate,
    ProductKey,
    aggregates_from_dict,
    aggregates_to_dict,
    parse_timestamp,
)


class TestProductKey:
    """Test composite product identity."""

    def test_ids_normalized_to_strings(self):
        key = ProductKey('shopify', 123, 456)
        assert key.parent_id == '123'
        assert key.variant_id == '456'

    def test_float_ids_from_json(self):
        """Integral floats (as decoded from some JSON) lose the .0."""
        key = ProductKey('woocommerce', 42.0, 7.0)
        assert str(key) == 'woocommerce:42:7'

    def test_missing_variant_defaults(self):
        assert ProductKey('shopify', 1, None).variant_id == NO_VARIANT
        assert ProductKey('shopify', 1).variant_id == NO_VARIANT

    def test_parse_round_trip(self):
        key = ProductKey.parse('shopify:100:200')
        assert key == ProductKey('shopify', '100', '200')
        assert str(key) == 'shopify:100:200'

    def test_equal_keys_hash_equal(self):
        assert len({ProductKey('shopify', 1, 2), ProductKey('shopify', '1', '2')}) == 1

    @pytest.mark.parametrize('text', ['', 'shopify:1', 'shopify:1:2:3', 'amazon:1:2', 'shopify::2'])
    def test_parse_rejects_malformed(self, text):
        with pytest.raises(ValueError):
            ProductKey.parse(text)

    def test_separator_in_id_rejected(self):
        with pytest.raises(ValueError):
            ProductKey('shopify', 'a:b', '1')


class TestParseTimestamp:

    def test_zulu_suffix(self):
        parsed = parse_timestamp('2024-05-01T10:00:00Z')
        assert parsed == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_naive_taken_as_utc(self):
        assert parse_timestamp('2024-05-01T10:00:00').tzinfo == timezone.utc

    def test_garbage_is_none(self):
        assert parse_timestamp('not a date') is None
        assert parse_timestamp(None) is None


class TestProductAggregate:
    """Test aggregate creation and catalog overwrite."""

    def _item(self, **overrides):
        fields = dict(key=ProductKey('shopify', 1, 2), name='Widget', sku='W-1', price=9.5,
                      stock_status='in_stock', stock_quantity=3)
        fields.update(overrides)
        return CatalogItem(**fields)

    def test_apply_catalog_keeps_accumulators(self):
        aggregate = ProductAggregate.from_catalog(self._item())
        aggregate.revenue = 50.0
        aggregate.units_sold = 5

        aggregate.apply_catalog(self._item(name='Widget v2', stock_status=STOCK_OUT))

        assert aggregate.name == 'Widget v2'
        assert aggregate.is_out_of_stock
        assert aggregate.revenue == 50.0
        assert aggregate.units_sold == 5

    def test_to_row_rounds_money(self):
        aggregate = ProductAggregate.from_catalog(self._item())
        aggregate.revenue = 10.0 / 3
        row = aggregate.to_row()
        assert row['revenue'] == 3.33
        assert row['product_key'] == 'shopify:1:2'
        assert row['variant_id'] == '2'

    def test_map_serialization_preserves_order(self):
        aggregates = {}
        for parent in ('9', '1', '5'):
            item = self._item(key=ProductKey('shopify', parent))
            aggregates[item.key] = ProductAggregate.from_catalog(item)
        aggregates[ProductKey('shopify', '1')].revenue = 12.5

        restored = aggregates_from_dict(aggregates_to_dict(aggregates))

        assert [k.parent_id for k in restored] == ['9', '1', '5']
        assert restored[ProductKey('shopify', '1')].revenue == 12.5


class TestJobCheckpoint:
    """Test the persisted checkpoint shape."""

    def test_to_dict_shape(self):
        checkpoint = JobCheckpoint(
            phase=Phase.FETCH_EVENTS,
            catalog_cursor=None,
            events_cursor='<token>',
            totals=JobTotals(revenue=1234.56, units_sold=42, unique_orders=17),
        )
        data = checkpoint.to_dict()
        assert data['phase'] == 'FETCH_EVENTS'
        assert data['catalogCursor'] is None
        assert data['eventsCursor'] == '<token>'
        assert data['writeCursor'] == 0
        assert data['totals'] == {'revenue': 1234.56, 'unitsSold': 42, 'uniqueOrders': 17}

    def test_from_dict_round_trip(self):
        started = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
        checkpoint = JobCheckpoint(phase=Phase.WRITE_OUTPUT, write_cursor=1000, started_at=started,
                                   last_error='transient: boom')
        restored = JobCheckpoint.from_dict(checkpoint.to_dict())
        assert restored == checkpoint

    def test_terminal_phases(self):
        assert Phase.DONE.is_terminal
        assert Phase.ERROR.is_terminal
        assert not Phase.WRITE_OUTPUT.is_terminal
