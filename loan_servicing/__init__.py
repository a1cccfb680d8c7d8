"""
Loan Servicing Engine

Amortization schedules, payment allocation, arrears accrual and payroll
batch reconciliation for installment credits, with every financial
movement mirrored to an external ledger through a retrying outbox.
"""

__version__ = "1.0.0"
