"""SQLAlchemy models for the settlement engine."""

from settlement.models.loan import Loan, LoanStatus
from settlement.models.commission import Commission, CommissionStatus, CommissionType
from settlement.models.financial import (
    FinancialTransaction,
    TransactionDirection,
    TransactionCategory,
    ENGINE_CATEGORIES,
)
from settlement.models.audit import AuditLog
from settlement.models.error_log import ErrorLog, ErrorSeverity

__all__ = [
    "Loan",
    "LoanStatus",
    "Commission",
    "CommissionStatus",
    "CommissionType",
    "FinancialTransaction",
    "TransactionDirection",
    "TransactionCategory",
    "ENGINE_CATEGORIES",
    "AuditLog",
    "ErrorLog",
    "ErrorSeverity",
]
