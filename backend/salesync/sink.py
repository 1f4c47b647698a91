"""
Output sink: the tabular store that receives finished rows, summaries,
status records and labels.

Rows are positional: row N of a source always lives at (source_key, N), so
re-writing a range after an interrupted flush overwrites instead of appending.
"""

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

from .db import DatabaseConnection, db_placeholder
from .errors import SinkError

SUMMARY_FIELDS = [
    'total_revenue',
    'total_units',
    'unique_orders',
    'product_count',
    'products_with_sales',
    'out_of_stock_with_sales',
    'out_of_stock_with_sales_ratio',
    'synced_at',
]

# Column order for CSV exports; anything else follows
EXPORT_COLUMNS = [
    'position', 'product_key', 'platform', 'parent_id', 'variant_id',
    'name', 'sku', 'price', 'stock_status', 'stock_quantity',
    'revenue', 'units_sold', 'order_count', 'recent_revenue', 'recent_units',
    'last_order_at', 'created_at', 'label',
]


class OutputSink:
    """Interface for the output store."""

    def write_rows(self, source_key: str, start_offset: int, rows: List[Dict[str, Any]]) -> None:
        """Write rows at positions start_offset, start_offset + 1, ..."""
        raise NotImplementedError

    def truncate_rows(self, source_key: str, row_count: int) -> None:
        """Delete rows at positions >= row_count."""
        raise NotImplementedError

    def read_rows(self, source_key: str, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def row_count(self, source_key: str) -> int:
        raise NotImplementedError

    def upsert_summary(self, source_key: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get_summary(self, source_key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def list_summaries(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def write_status(self, source_key: str, phase: str, message: str, timestamp: datetime) -> None:
        raise NotImplementedError

    def get_status(self, source_key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def write_labels(self, source_key: str, labels: Dict[str, str]) -> None:
        """Replace the labels of a source with product_key -> label."""
        raise NotImplementedError

    def get_labels(self, source_key: str) -> Dict[str, str]:
        raise NotImplementedError


# =============================================================================
# In-memory sink
# =============================================================================

class MemorySink(OutputSink):
    """Dict-backed sink for tests and dry runs."""

    def __init__(self):
        self.rows: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self.summaries: Dict[str, Dict[str, Any]] = {}
        self.statuses: Dict[str, Dict[str, Any]] = {}
        self.labels: Dict[str, Dict[str, str]] = {}
        self.write_calls: List[tuple] = []

    def write_rows(self, source_key, start_offset, rows):
        self.write_calls.append((source_key, start_offset, len(rows)))
        table = self.rows.setdefault(source_key, {})
        for i, row in enumerate(rows):
            table[start_offset + i] = dict(row)

    def truncate_rows(self, source_key, row_count):
        table = self.rows.get(source_key, {})
        for position in [p for p in table if p >= row_count]:
            del table[position]

    def read_rows(self, source_key, limit=None, offset=0):
        table = self.rows.get(source_key, {})
        positions = sorted(p for p in table if p >= offset)
        if limit is not None:
            positions = positions[:limit]
        return [dict(table[p], position=p) for p in positions]

    def row_count(self, source_key):
        return len(self.rows.get(source_key, {}))

    def upsert_summary(self, source_key, fields):
        self.summaries[source_key] = {'source_key': source_key, **fields}

    def get_summary(self, source_key):
        summary = self.summaries.get(source_key)
        return dict(summary) if summary else None

    def list_summaries(self):
        return [dict(self.summaries[k]) for k in sorted(self.summaries)]

    def write_status(self, source_key, phase, message, timestamp):
        self.statuses[source_key] = {
            'source_key': source_key,
            'phase': phase,
            'message': message,
            'updated_at': timestamp.isoformat(),
        }

    def get_status(self, source_key):
        status = self.statuses.get(source_key)
        return dict(status) if status else None

    def write_labels(self, source_key, labels):
        self.labels[source_key] = dict(labels)

    def get_labels(self, source_key):
        return dict(self.labels.get(source_key, {}))


# =============================================================================
# Database sink
# =============================================================================

class DatabaseSink(OutputSink):
    """Sink backed by the sync_output_rows / sync_summaries / sync_status / sync_labels tables."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def _run(self, func, *args):
        try:
            return self.db.execute_with_retry(func, *args)
        except Exception as e:
            raise SinkError(f"Output sink write failed: {e}") from e

    def write_rows(self, source_key, start_offset, rows):
        written_at = datetime.now(timezone.utc).isoformat()
        params = [
            (source_key, start_offset + i, row['product_key'], json.dumps(row), written_at)
            for i, row in enumerate(rows)
        ]

        def _write(conn):
            ph = db_placeholder(conn)
            conn.cursor().executemany(
                f'''INSERT INTO sync_output_rows (source_key, position, product_key, payload, written_at)
                   VALUES ({ph}, {ph}, {ph}, {ph}, {ph})
                   ON CONFLICT (source_key, position) DO UPDATE SET
                       product_key = excluded.product_key, payload = excluded.payload,
                       written_at = excluded.written_at''',
                params
            )
            conn.commit()
        self._run(_write)

    def truncate_rows(self, source_key, row_count):
        def _truncate(conn):
            ph = db_placeholder(conn)
            conn.cursor().execute(
                f'DELETE FROM sync_output_rows WHERE source_key = {ph} AND position >= {ph}',
                (source_key, row_count)
            )
            conn.commit()
        self._run(_truncate)

    def read_rows(self, source_key, limit=None, offset=0):
        def _read(conn):
            ph = db_placeholder(conn)
            query = f'''SELECT position, payload FROM sync_output_rows
                        WHERE source_key = {ph} AND position >= {ph}
                        ORDER BY position'''
            params = [source_key, offset]
            if limit is not None:
                query += f' LIMIT {ph}'
                params.append(limit)
            cursor = conn.cursor()
            cursor.execute(query, tuple(params))
            return cursor.fetchall()
        return [dict(json.loads(row[1]), position=row[0]) for row in self.db.execute_with_retry(_read)]

    def row_count(self, source_key):
        def _count(conn):
            ph = db_placeholder(conn)
            cursor = conn.cursor()
            cursor.execute(f'SELECT COUNT(*) FROM sync_output_rows WHERE source_key = {ph}', (source_key,))
            return cursor.fetchone()[0]
        return self.db.execute_with_retry(_count)

    def upsert_summary(self, source_key, fields):
        values = [fields.get(name) for name in SUMMARY_FIELDS]
        columns = ', '.join(SUMMARY_FIELDS)
        updates = ', '.join(f'{name} = excluded.{name}' for name in SUMMARY_FIELDS)

        def _upsert(conn):
            ph = db_placeholder(conn)
            placeholders = ', '.join([ph] * (len(SUMMARY_FIELDS) + 1))
            conn.cursor().execute(
                f'''INSERT INTO sync_summaries (source_key, {columns})
                   VALUES ({placeholders})
                   ON CONFLICT (source_key) DO UPDATE SET {updates}''',
                (source_key, *values)
            )
            conn.commit()
        self._run(_upsert)

    def _summary_rows(self, source_key: Optional[str] = None):
        def _select(conn):
            query = f'SELECT source_key, {", ".join(SUMMARY_FIELDS)} FROM sync_summaries'
            params: tuple = ()
            if source_key is not None:
                query += f' WHERE source_key = {db_placeholder(conn)}'
                params = (source_key,)
            cursor = conn.cursor()
            cursor.execute(query + ' ORDER BY source_key', params)
            return cursor.fetchall()
        columns = ['source_key'] + SUMMARY_FIELDS
        return [dict(zip(columns, row)) for row in self.db.execute_with_retry(_select)]

    def get_summary(self, source_key):
        rows = self._summary_rows(source_key)
        return rows[0] if rows else None

    def list_summaries(self):
        return self._summary_rows()

    def write_status(self, source_key, phase, message, timestamp):
        def _write(conn):
            ph = db_placeholder(conn)
            conn.cursor().execute(
                f'''INSERT INTO sync_status (source_key, phase, message, updated_at)
                   VALUES ({ph}, {ph}, {ph}, {ph})
                   ON CONFLICT (source_key) DO UPDATE SET
                       phase = excluded.phase, message = excluded.message,
                       updated_at = excluded.updated_at''',
                (source_key, phase, message, timestamp.isoformat())
            )
            conn.commit()
        self._run(_write)

    def get_status(self, source_key):
        def _select(conn):
            ph = db_placeholder(conn)
            cursor = conn.cursor()
            cursor.execute(
                f'SELECT source_key, phase, message, updated_at FROM sync_status WHERE source_key = {ph}',
                (source_key,)
            )
            return cursor.fetchone()
        row = self.db.execute_with_retry(_select)
        if not row:
            return None
        return dict(zip(['source_key', 'phase', 'message', 'updated_at'], row))

    def write_labels(self, source_key, labels):
        labeled_at = datetime.now(timezone.utc).isoformat()

        def _write(conn):
            ph = db_placeholder(conn)
            cursor = conn.cursor()
            cursor.execute(f'DELETE FROM sync_labels WHERE source_key = {ph}', (source_key,))
            cursor.executemany(
                f'''INSERT INTO sync_labels (source_key, product_key, label, labeled_at)
                   VALUES ({ph}, {ph}, {ph}, {ph})''',
                [(source_key, key, label, labeled_at) for key, label in labels.items()]
            )
            conn.commit()
        self._run(_write)

    def get_labels(self, source_key):
        def _select(conn):
            ph = db_placeholder(conn)
            cursor = conn.cursor()
            cursor.execute(
                f'SELECT product_key, label FROM sync_labels WHERE source_key = {ph}',
                (source_key,)
            )
            return cursor.fetchall()
        return {row[0]: row[1] for row in self.db.execute_with_retry(_select)}


# =============================================================================
# CSV export
# =============================================================================

def export_rows_csv(sink: OutputSink, source_key: str, output_dir: str = "output",
                    output_file: Optional[str] = None) -> str:
    """
    Save a source's output rows (with labels, if any) to a CSV file.
    If output_file is provided, uses that filename. Otherwise generates timestamped name.
    Returns the filepath of the created file.
    """
    rows = sink.read_rows(source_key)
    if not rows:
        print("No data to save")
        return ""

    labels = sink.get_labels(source_key)
    df = pd.DataFrame(rows)
    df['label'] = df['product_key'].map(labels).fillna('')

    other_cols = [c for c in df.columns if c not in EXPORT_COLUMNS]
    ordered_cols = [c for c in EXPORT_COLUMNS if c in df.columns] + other_cols
    df = df[ordered_cols]

    if output_file:
        filepath = output_file if os.path.isabs(output_file) else os.path.join(output_dir, output_file)
    else:
        timestamp = datetime.now().strftime("%Y-%m-%d_%H%M%S")
        filepath = os.path.join(output_dir, f"{source_key}_sales_{timestamp}.csv")

    os.makedirs(os.path.dirname(filepath) or ".", exist_ok=True)
    df.to_csv(filepath, index=False)
    print(f"\nSaved {len(rows)} rows to: {filepath}")

    return filepath
