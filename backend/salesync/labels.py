"""
Downstream labeling pass, chained after a job reaches DONE.

Classifies every output row with a single label:

    no_sales    nothing sold in the lookback window
    restock     selling, but currently out of stock
    top_seller  inside the top TOP_SELLER_SHARE of cumulative revenue
    steady      sold something in the recent window
    slow_mover  everything else
"""

from typing import Any, Dict, List

from .models import STOCK_OUT
from .sink import OutputSink

LABEL_TOP_SELLER = "top_seller"
LABEL_STEADY = "steady"
LABEL_SLOW_MOVER = "slow_mover"
LABEL_NO_SALES = "no_sales"
LABEL_RESTOCK = "restock"

# Products that together make up this share of revenue are top sellers
TOP_SELLER_SHARE = 0.5


def classify_rows(rows: List[Dict[str, Any]], top_share: float = TOP_SELLER_SHARE) -> Dict[str, str]:
    """Label rows (any order). Returns product_key -> label."""
    total = sum(float(row.get('revenue') or 0) for row in rows)
    ranked = sorted(rows, key=lambda r: float(r.get('revenue') or 0), reverse=True)

    labels = {}
    cumulative = 0.0
    for row in ranked:
        revenue = float(row.get('revenue') or 0)
        share_before = cumulative / total if total > 0 else 1.0
        cumulative += revenue

        if int(row.get('units_sold') or 0) <= 0:
            label = LABEL_NO_SALES
        elif row.get('stock_status') == STOCK_OUT:
            label = LABEL_RESTOCK
        elif revenue > 0 and share_before < top_share:
            label = LABEL_TOP_SELLER
        elif int(row.get('recent_units') or 0) > 0:
            label = LABEL_STEADY
        else:
            label = LABEL_SLOW_MOVER
        labels[row['product_key']] = label
    return labels


class RevenueLabeler:
    """Reads a source's output rows from the sink and writes labels back."""

    def __init__(self, sink: OutputSink, top_share: float = TOP_SELLER_SHARE):
        self.sink = sink
        self.top_share = top_share

    def label_source(self, source_key: str) -> Dict[str, str]:
        rows = self.sink.read_rows(source_key)
        labels = classify_rows(rows, self.top_share)
        self.sink.write_labels(source_key, labels)

        counts: Dict[str, int] = {}
        for label in labels.values():
            counts[label] = counts.get(label, 0) + 1
        summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
        print(f"  Labeled {len(labels)} products for {source_key}: {summary or 'none'}", flush=True)
        return labels
