"""Commission approval view.

Lists existing commissions together with every loan in scope that has no
commission yet.  The latter are returned as transient rows in status
``pending_generation`` with a zero amount; an operator fills in type and
reference and the API turns that into ``generate_and_approve``.  Nothing
here is persisted.

A loan is in scope for period ``MM/YYYY`` when its start date falls in that
month.  Canceled loans never produce pending rows.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.models.commission import Commission, CommissionType
from settlement.models.loan import Loan, LoanStatus
from settlement.services import commissions as commission_service
from settlement.services.periods import period_bounds, parse_period

PENDING_GENERATION = "pending_generation"


@dataclass
class CommissionViewRow:
    loan_id: int
    loan_code: int
    customer_id: int
    seller_id: int
    loan_start_date: date
    base_value: Decimal
    status: str
    calculated_amount: Decimal
    commission_id: int | None = None
    period: str | None = None
    commission_type: CommissionType | None = None
    reference_value: Decimal | None = None
    approved_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == PENDING_GENERATION


def _from_commission(commission: Commission) -> CommissionViewRow:
    loan = commission.loan
    return CommissionViewRow(
        loan_id=loan.id,
        loan_code=loan.code,
        customer_id=loan.customer_id,
        seller_id=commission.seller_id,
        loan_start_date=loan.start_date,
        base_value=loan.net_value,
        status=commission.status.value,
        calculated_amount=commission.calculated_amount,
        commission_id=commission.id,
        period=commission.period,
        commission_type=commission.commission_type,
        reference_value=commission.reference_value,
        approved_at=commission.approved_at,
    )


def _pending_from_loan(loan: Loan, period: str | None) -> CommissionViewRow:
    return CommissionViewRow(
        loan_id=loan.id,
        loan_code=loan.code,
        customer_id=loan.customer_id,
        seller_id=loan.seller_id,
        loan_start_date=loan.start_date,
        base_value=loan.net_value,
        status=PENDING_GENERATION,
        calculated_amount=Decimal("0.00"),
        period=period or f"{loan.start_date.month:02d}/{loan.start_date.year}",
    )


async def _loans_without_commission(
    db: AsyncSession, *, period: str | None, seller_id: int | None
) -> list[Loan]:
    q = (
        select(Loan)
        .outerjoin(Commission, Commission.loan_id == Loan.id)
        .where(Commission.id.is_(None), Loan.status != LoanStatus.CANCELED)
        .order_by(Loan.start_date.desc(), Loan.id.desc())
    )
    if period:
        start, end = period_bounds(period)
        q = q.where(Loan.start_date >= start, Loan.start_date < end)
    if seller_id is not None:
        q = q.where(Loan.seller_id == seller_id)
    result = await db.execute(q)
    return list(result.scalars().all())


async def list_commission_view(
    db: AsyncSession,
    *,
    period: str | None = None,
    seller_id: int | None = None,
) -> list[CommissionViewRow]:
    """Existing commissions first, then pending-generation rows."""
    if period:
        parse_period(period)
    existing = await commission_service.list_commissions(db, period=period, seller_id=seller_id)
    pending = await _loans_without_commission(db, period=period, seller_id=seller_id)
    return [_from_commission(c) for c in existing] + [
        _pending_from_loan(loan, period) for loan in pending
    ]
