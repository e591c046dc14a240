"""
SQLite persistence for usage ledger snapshots.
"""
