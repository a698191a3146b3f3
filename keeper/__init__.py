"""
Keeper execution engine: watches prices, orders, positions and bets and
settles fired triggers on the ledger.
"""

__version__ = "0.1.0"
