"""Seller commission model."""

import enum
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    String, Numeric, Integer, Enum, DateTime, ForeignKey, CheckConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement.database import Base


class CommissionStatus(str, enum.Enum):
    OPEN = "open"
    APPROVED = "approved"
    CANCELED = "canceled"


class CommissionType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class Commission(Base):
    """The seller's earned amount on a loan.

    At most one commission exists per loan (unique ``loan_id``).
    ``reference_value`` is percentage points for PERCENTAGE and a currency
    amount for FIXED_AMOUNT.
    """

    __tablename__ = "commissions"
    __table_args__ = (
        CheckConstraint("reference_value > 0", name="ck_commissions_reference_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(
        ForeignKey("loans.id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    seller_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    period: Mapped[str] = mapped_column(String(7), nullable=False, index=True)  # MM/YYYY

    commission_type: Mapped[CommissionType] = mapped_column(
        Enum(CommissionType), nullable=False
    )
    reference_value: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    calculated_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[CommissionStatus] = mapped_column(
        Enum(CommissionStatus), default=CommissionStatus.OPEN, nullable=False, index=True
    )
    approved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    loan = relationship("Loan", back_populates="commission")
