"""
SalesSync - resumable product sales aggregation for e-commerce platforms.

Pages through a store's catalog and recent orders across many short worker
ticks, folds order lines into per-product aggregates, and writes the ranked
results plus a summary to the output store.
"""

__version__ = "1.0.0"
