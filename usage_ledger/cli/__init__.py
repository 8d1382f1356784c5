"""
Command-line interface for Usage Ledger.
"""
