"""
Core modules for Usage Ledger.

This package contains parsing, deduplication, pricing, ingestion,
aggregation, billing periods, gap detection and the view facade.
"""
