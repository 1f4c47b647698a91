"""
Tests for the output sinks and CSV export.
"""
import os

import pandas as pd
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from salesync.errors import SinkError
from salesync.sink import DatabaseSink, MemorySink, export_rows_csv


def row(parent_id, revenue=0.0, **fields):
    data = {
        'product_key': f'shopify:{parent_id}:0',
        'parent_id': str(parent_id),
        'name': f'Product {parent_id}',
        'revenue': revenue,
    }
    data.update(fields)
    return data


@pytest.fixture(params=['memory', 'sqlite'])
def sink(request, sqlite_db):
    if request.param == 'memory':
        return MemorySink()
    return DatabaseSink(sqlite_db)


class TestRows:

    def test_write_and_read_in_position_order(self, sink):
        sink.write_rows('shopify', 2, [row('C')])
        sink.write_rows('shopify', 0, [row('A'), row('B')])

        rows = sink.read_rows('shopify')

        assert [(r['position'], r['parent_id']) for r in rows] == [(0, 'A'), (1, 'B'), (2, 'C')]
        assert sink.row_count('shopify') == 3

    def test_rewrite_overwrites_in_place(self, sink):
        """Re-flushing a chunk after an interrupted tick must not duplicate rows."""
        sink.write_rows('shopify', 0, [row('A', 1.0), row('B', 2.0)])
        sink.write_rows('shopify', 0, [row('A', 5.0), row('B', 6.0)])

        assert sink.row_count('shopify') == 2
        assert [r['revenue'] for r in sink.read_rows('shopify')] == [5.0, 6.0]

    def test_read_with_limit_and_offset(self, sink):
        sink.write_rows('shopify', 0, [row(i) for i in range(5)])
        page = sink.read_rows('shopify', limit=2, offset=1)
        assert [r['position'] for r in page] == [1, 2]

    def test_truncate(self, sink):
        sink.write_rows('shopify', 0, [row(i) for i in range(5)])
        sink.truncate_rows('shopify', 3)
        assert sink.row_count('shopify') == 3
        assert sink.read_rows('shopify')[-1]['position'] == 2

    def test_sources_are_separate(self, sink):
        sink.write_rows('shopify', 0, [row('A')])
        sink.write_rows('woocommerce', 0, [row('W'), row('X')])
        sink.truncate_rows('woocommerce', 0)
        assert sink.row_count('shopify') == 1
        assert sink.row_count('woocommerce') == 0


class TestSummaries:

    SUMMARY = {
        'total_revenue': 40.0, 'total_units': 3, 'unique_orders': 2, 'product_count': 3,
        'products_with_sales': 2, 'out_of_stock_with_sales': 0,
        'out_of_stock_with_sales_ratio': 0.0, 'synced_at': '2024-06-01T12:00:00+00:00',
    }

    def test_upsert_replaces(self, sink):
        sink.upsert_summary('shopify', self.SUMMARY)
        sink.upsert_summary('shopify', dict(self.SUMMARY, total_revenue=55.5))

        summary = sink.get_summary('shopify')

        assert summary['source_key'] == 'shopify'
        assert summary['total_revenue'] == 55.5
        assert summary['unique_orders'] == 2

    def test_missing_summary(self, sink):
        assert sink.get_summary('woocommerce') is None

    def test_list_sorted_by_source(self, sink):
        sink.upsert_summary('woocommerce', self.SUMMARY)
        sink.upsert_summary('shopify', self.SUMMARY)
        assert [s['source_key'] for s in sink.list_summaries()] == ['shopify', 'woocommerce']


class TestStatusAndLabels:

    def test_status_latest_wins(self, sink):
        at = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
        sink.write_status('shopify', 'FETCH_CATALOG', 'Job started', at)
        sink.write_status('shopify', 'DONE', 'Job complete', at)

        status = sink.get_status('shopify')

        assert status['phase'] == 'DONE'
        assert status['message'] == 'Job complete'
        assert status['updated_at'] == at.isoformat()
        assert sink.get_status('woocommerce') is None

    def test_labels_replaced_per_source(self, sink):
        sink.write_labels('shopify', {'shopify:A:0': 'top_seller', 'shopify:B:0': 'steady'})
        sink.write_labels('shopify', {'shopify:A:0': 'restock'})
        assert sink.get_labels('shopify') == {'shopify:A:0': 'restock'}
        assert sink.get_labels('woocommerce') == {}


class TestDatabaseSinkErrors:

    def test_write_failure_raises_sink_error(self):
        db = MagicMock()
        db.execute_with_retry.side_effect = RuntimeError("disk full")
        with pytest.raises(SinkError, match="disk full"):
            DatabaseSink(db).write_rows('shopify', 0, [row('A')])


class TestExportCsv:

    def test_export_with_labels(self, tmp_path, capsys):
        sink = MemorySink()
        sink.write_rows('shopify', 0, [row('A', 20.0, units_sold=2), row('B', 0.0, units_sold=0)])
        sink.write_labels('shopify', {'shopify:A:0': 'top_seller'})

        path = export_rows_csv(sink, 'shopify', output_dir=str(tmp_path), output_file='out.csv')

        assert path == os.path.join(str(tmp_path), 'out.csv')
        df = pd.read_csv(path, keep_default_na=False)
        assert list(df.columns[:2]) == ['position', 'product_key']
        assert list(df['label']) == ['top_seller', '']
        assert list(df['revenue']) == [20.0, 0.0]
        assert "Saved 2 rows" in capsys.readouterr().out

    def test_timestamped_name_in_new_directory(self, tmp_path):
        sink = MemorySink()
        sink.write_rows('woocommerce', 0, [row('W')])
        output_dir = tmp_path / 'exports'

        path = export_rows_csv(sink, 'woocommerce', output_dir=str(output_dir))

        assert os.path.exists(path)
        assert os.path.basename(path).startswith('woocommerce_sales_')

    def test_nothing_to_export(self, tmp_path):
        assert export_rows_csv(MemorySink(), 'shopify', output_dir=str(tmp_path)) == ""
