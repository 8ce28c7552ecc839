"""
Ledger Service

A minimal ledger holding account balances and recording transfers between
accounts. Balances are exact Decimals and every transfer is applied as one
locked, atomic unit.
"""

__version__ = "1.0.0"
