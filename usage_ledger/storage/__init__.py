"""
Storage layer for Usage Ledger.
"""
