"""Loan (credit sale) model."""

import enum
from datetime import datetime, date
from decimal import Decimal
from sqlalchemy import (
    Numeric, Integer, Enum, DateTime, Date, Text, CheckConstraint, Index, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement.database import Base


class LoanStatus(str, enum.Enum):
    ACTIVE = "active"
    FINALIZED = "finalized"
    CANCELED = "canceled"
    LATE = "late"


class Loan(Base):
    """A recorded credit sale to a customer.

    Customer, seller and the categorical lookups (organ, bank, product type,
    group, rate table) belong to other modules and are kept as opaque ids.
    """

    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint("term > 0", name="ck_loans_term_positive"),
        CheckConstraint("installment_value > 0", name="ck_loans_installment_positive"),
        CheckConstraint("gross_value > 0", name="ck_loans_gross_positive"),
        CheckConstraint("net_value > 0", name="ck_loans_net_positive"),
        Index("ix_loans_seller_start", "seller_id", "start_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[int] = mapped_column(Integer, unique=True, index=True, nullable=False)

    # Sale details
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    term: Mapped[int] = mapped_column(Integer, nullable=False)
    installment_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    gross_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    net_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus), default=LoanStatus.ACTIVE, nullable=False, index=True
    )

    # Opaque references to other modules
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    seller_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    organ_id: Mapped[int] = mapped_column(Integer, nullable=False)
    bank_id: Mapped[int] = mapped_column(Integer, nullable=False)
    product_type_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[int] = mapped_column(Integer, nullable=False)
    rate_table_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships. Deletes are guarded by RESTRICT foreign keys; never load children to null them
    commission = relationship(
        "Commission", back_populates="loan", uselist=False, passive_deletes="all"
    )
    financial_transactions = relationship(
        "FinancialTransaction", back_populates="loan", passive_deletes="all"
    )
