"""
Lending Core

Loan lifecycle and payment-ledger engine: amortized installments, approval,
payment application with due-date advancement, and a balance that always
agrees with the recorded payment history. All money math uses Decimal.
"""

__version__ = "1.0.0"
