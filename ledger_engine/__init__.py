"""
Ledger Engine

Account balances and fund transfers with double-entry bookkeeping,
exactly-once transfer application and ordered account locking.
"""

__version__ = "1.0.0"
