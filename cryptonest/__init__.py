"""
CryptoNest Bookkeeping Backend

Account ledger, deposits, tiered fixed-return investment plans and a daily
interest accrual job, with Decimal money math and a hash-chained audit trail.
"""

__version__ = "1.0.0"
