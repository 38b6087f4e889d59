"""
Scrooge Bank Core

Customer accounts, deposits and withdrawals, the append-only bank ledger,
and loan underwriting and repayment. All amounts inside the core are
integer cents.
"""

__version__ = "0.1.0"
