"""
Card Ledger

A single-institution card account ledger: cardholder authentication,
withdrawals, deposits and transfers with enforced limits and lockouts,
an append-only transaction history, and balance forecasting on top of it.
All monetary values use Decimal.
"""

__version__ = "1.0.0"
