"""Cash ledger model.

Rows posted by the settlement engine (LOAN and COMMISSION categories) are
immutable: there is no update or delete path for them.  Each posting carries
an idempotency key so a retried approval or finalization cannot double-count.
"""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    Index,
    CheckConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement.database import Base


class TransactionDirection(str, enum.Enum):
    IN = "in"
    OUT = "out"


class TransactionCategory(str, enum.Enum):
    LOAN = "loan"
    COMMISSION = "commission"
    FIXED_EXPENSE = "fixed_expense"
    VARIABLE_EXPENSE = "variable_expense"
    OTHER = "other"


ENGINE_CATEGORIES = frozenset({TransactionCategory.LOAN, TransactionCategory.COMMISSION})


class FinancialTransaction(Base):
    """Single cash-flow record (inflow or outflow)."""

    __tablename__ = "financial_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_fin_tx_amount_positive"),
        Index("ix_fin_tx_date", "transaction_date"),
        Index("ix_fin_tx_origin", "origin_id", "category"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(
        Enum(TransactionDirection), nullable=False
    )
    category: Mapped[TransactionCategory] = mapped_column(
        Enum(TransactionCategory), nullable=False, index=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # Link back to the originating entity (commission id or loan id)
    origin_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    loan_id: Mapped[int | None] = mapped_column(
        ForeignKey("loans.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        String(128), unique=True, nullable=True
    )

    # Settlement
    settled_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    receipt_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    loan = relationship("Loan", back_populates="financial_transactions")
