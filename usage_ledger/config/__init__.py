"""
Configuration loading for Usage Ledger.
"""
