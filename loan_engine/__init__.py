"""
Loan Engine

Loan lifecycle and amortization ledger engine for microfinance back offices:
loan state machine with lineage, exact schedule math, the payment allocation
waterfall, and a double-entry ledger that stays balanced under reversals.
"""

__version__ = "1.0.0"
