"""
Usage Ledger.

Incremental ingestion and aggregation of coding-assistant usage logs.
"""

__version__ = "0.1.0"
