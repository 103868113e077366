"""Commission lifecycle.

State machine over ``Commission.status``:

    (create) ──► OPEN ──approve──► APPROVED ──edit──► APPROVED
                   │
                   └───cancel───► CANCELED

* OPEN commissions may be edited freely (amount recomputed, no ledger effect).
* Approval posts exactly one COMMISSION outflow for the calculated amount.
* Editing an APPROVED commission recomputes the amount and posts the
  difference as a compensating COMMISSION transaction so the ledger stays in
  step with the commission record.
* CANCELED is terminal.

Status changes are compare-and-swap updates (``WHERE status = 'open'``): of
two concurrent approvals only one affects a row, and only that one posts to
the ledger.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from settlement.models.commission import Commission, CommissionStatus, CommissionType
from settlement.models.financial import TransactionCategory, TransactionDirection
from settlement.models.loan import Loan
from settlement.services import ledger
from settlement.services.audit import record_audit, MODULE_COMMISSIONS
from settlement.services.calculator import calculate_commission, normalize_reference
from settlement.services.errors import (
    DuplicateCommissionError,
    InvalidStateTransitionError,
    NotFoundError,
)
from settlement.services.periods import parse_period

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_commission(db: AsyncSession, commission_id: int) -> Commission | None:
    result = await db.execute(
        select(Commission)
        .where(Commission.id == commission_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_commission_for_loan(
    db: AsyncSession, loan_id: int, *, for_update: bool = False
) -> Commission | None:
    q = select(Commission).where(Commission.loan_id == loan_id)
    if for_update:
        q = q.with_for_update()
    result = await db.execute(q)
    return result.scalar_one_or_none()


async def list_commissions(
    db: AsyncSession,
    *,
    period: str | None = None,
    seller_id: int | None = None,
    status: CommissionStatus | None = None,
) -> list[Commission]:
    q = (
        select(Commission)
        .options(selectinload(Commission.loan))
        .order_by(Commission.created_at.desc(), Commission.id.desc())
    )
    if period:
        parse_period(period)
        q = q.where(Commission.period == period)
    if seller_id is not None:
        q = q.where(Commission.seller_id == seller_id)
    if status:
        q = q.where(Commission.status == status)
    result = await db.execute(q)
    return list(result.scalars().all())


async def _require_commission(db: AsyncSession, commission_id: int) -> Commission:
    commission = await get_commission(db, commission_id)
    if commission is None:
        raise NotFoundError(f"Commission {commission_id} not found")
    return commission


async def _require_loan(db: AsyncSession, loan_id: int) -> Loan:
    result = await db.execute(select(Loan).where(Loan.id == loan_id))
    loan = result.scalar_one_or_none()
    if loan is None:
        raise NotFoundError(f"Loan {loan_id} not found")
    return loan


async def _claim_transition(
    db: AsyncSession,
    commission_id: int,
    *,
    expected: CommissionStatus,
    values: dict,
) -> bool:
    """Apply *values* only if the commission is still in *expected* status.

    Returns True when exactly one row changed.
    """
    result = await db.execute(
        update(Commission)
        .where(Commission.id == commission_id, Commission.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _reject_transition(db: AsyncSession, commission_id: int, verb: str) -> None:
    commission = await get_commission(db, commission_id)
    if commission is None:
        raise NotFoundError(f"Commission {commission_id} not found")
    raise InvalidStateTransitionError(
        f"Cannot {verb}: commission {commission_id} is {commission.status.value}, expected open"
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def open_commission(
    db: AsyncSession,
    *,
    loan_id: int,
    commission_type: CommissionType,
    reference,
    period: str,
    seller_id: int | None = None,
    base_value=None,
    requester_id: int,
    ip: str | None = None,
) -> Commission:
    """Create an OPEN commission for a loan.

    *seller_id* and *base_value* default to the loan's seller and net value.
    """
    parse_period(period)
    loan = await _require_loan(db, loan_id)
    commission_type = CommissionType(commission_type)
    base = loan.net_value if base_value is None else base_value
    amount = calculate_commission(base, commission_type, reference)

    existing = await get_commission_for_loan(db, loan_id)
    if existing is not None:
        raise DuplicateCommissionError(
            f"Loan {loan_id} already has commission {existing.id} ({existing.status.value})"
        )

    commission = Commission(
        loan_id=loan_id,
        seller_id=seller_id if seller_id is not None else loan.seller_id,
        period=period,
        commission_type=commission_type,
        reference_value=normalize_reference(reference),
        calculated_amount=amount,
        status=CommissionStatus.OPEN,
        created_by=requester_id,
    )
    try:
        async with db.begin_nested():
            db.add(commission)
            await db.flush()
    except IntegrityError as exc:
        raise DuplicateCommissionError(
            f"Loan {loan_id} already has a commission"
        ) from exc

    logger.info(
        "Opened commission %s for loan %s: %s %s -> %s",
        commission.id, loan_id, commission_type.value, reference, amount,
    )
    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_COMMISSIONS,
        action="CALCULATE_AND_CREATE",
        entity_id=commission.id,
        ip=ip,
        details={"loan_id": loan_id, "calculated_amount": str(amount)},
    )
    return commission


async def approve_commission(
    db: AsyncSession,
    commission_id: int,
    *,
    requester_id: int,
    ip: str | None = None,
) -> Commission:
    """OPEN → APPROVED, then post one COMMISSION outflow."""
    now = datetime.now(timezone.utc)
    claimed = await _claim_transition(
        db,
        commission_id,
        expected=CommissionStatus.OPEN,
        values={
            "status": CommissionStatus.APPROVED,
            "approved_at": now,
            "approved_by": requester_id,
        },
    )
    if not claimed:
        await _reject_transition(db, commission_id, "approve")

    commission = await _require_commission(db, commission_id)
    tx = await ledger.post_transaction(
        db,
        amount=commission.calculated_amount,
        direction=TransactionDirection.OUT,
        category=TransactionCategory.COMMISSION,
        description=f"Commission payout - loan #{commission.loan_id}",
        origin_id=commission.id,
        loan_id=commission.loan_id,
        idempotency_key=ledger.commission_approval_key(commission.id),
        transaction_date=now.date(),
        settled_on=now.date(),
        created_by=requester_id,
    )

    logger.info("Approved commission %s by user %s", commission_id, requester_id)
    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_COMMISSIONS,
        action="APPROVE",
        entity_id=commission_id,
        ip=ip,
        details={"transaction_id": tx.id, "amount": str(tx.amount)},
    )
    return commission


async def cancel_commission(
    db: AsyncSession,
    commission_id: int,
    *,
    requester_id: int,
    ip: str | None = None,
) -> Commission:
    """OPEN → CANCELED.  No ledger effect."""
    claimed = await _claim_transition(
        db,
        commission_id,
        expected=CommissionStatus.OPEN,
        values={
            "status": CommissionStatus.CANCELED,
            "canceled_at": datetime.now(timezone.utc),
        },
    )
    if not claimed:
        await _reject_transition(db, commission_id, "cancel")

    commission = await _require_commission(db, commission_id)
    logger.info("Canceled commission %s by user %s", commission_id, requester_id)
    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_COMMISSIONS,
        action="CANCEL",
        entity_id=commission_id,
        ip=ip,
    )
    return commission


async def _locked_commission(db: AsyncSession, commission_id: int) -> Commission:
    result = await db.execute(
        select(Commission)
        .where(Commission.id == commission_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    commission = result.scalar_one_or_none()
    if commission is None:
        raise NotFoundError(f"Commission {commission_id} not found")
    return commission


async def _recompute(
    db: AsyncSession, commission: Commission, commission_type, reference, base_value
) -> tuple[Decimal, Decimal]:
    """Apply a new type/reference; return (old_amount, new_amount)."""
    if base_value is None:
        base_value = (await _require_loan(db, commission.loan_id)).net_value
    commission_type = CommissionType(commission_type)
    new_amount = calculate_commission(base_value, commission_type, reference)
    old_amount = commission.calculated_amount

    commission.commission_type = commission_type
    commission.reference_value = normalize_reference(reference)
    commission.calculated_amount = new_amount
    await db.flush()
    await db.refresh(commission)
    return old_amount, new_amount


async def edit_open_commission(
    db: AsyncSession,
    commission_id: int,
    *,
    commission_type: CommissionType,
    reference,
    base_value=None,
    requester_id: int,
    ip: str | None = None,
) -> Commission:
    """Change type/reference of an OPEN commission."""
    commission = await _locked_commission(db, commission_id)
    if commission.status != CommissionStatus.OPEN:
        raise InvalidStateTransitionError(
            f"Cannot edit: commission {commission_id} is {commission.status.value}, expected open"
        )
    old_amount, new_amount = await _recompute(db, commission, commission_type, reference, base_value)
    logger.info("Edited open commission %s: %s -> %s", commission_id, old_amount, new_amount)
    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_COMMISSIONS,
        action="EDIT",
        entity_id=commission_id,
        ip=ip,
        details={"old_amount": str(old_amount), "new_amount": str(new_amount)},
    )
    return commission


async def edit_approved_commission(
    db: AsyncSession,
    commission_id: int,
    *,
    commission_type: CommissionType,
    reference,
    base_value=None,
    requester_id: int,
    ip: str | None = None,
) -> Commission:
    """Change type/reference of an APPROVED commission.

    The amount is recomputed and the difference is posted as a compensating
    COMMISSION transaction: OUT when the commission grows, IN when it shrinks.
    """
    commission = await _locked_commission(db, commission_id)
    if commission.status != CommissionStatus.APPROVED:
        raise InvalidStateTransitionError(
            f"Cannot edit approved: commission {commission_id} is {commission.status.value}"
        )
    old_amount, new_amount = await _recompute(db, commission, commission_type, reference, base_value)

    delta = new_amount - old_amount
    adjustment_id = None
    if delta != 0:
        sequence = await ledger.count_postings_with_prefix(
            db, ledger.commission_adjustment_prefix(commission_id)
        ) + 1
        tx = await ledger.post_transaction(
            db,
            amount=abs(delta),
            direction=TransactionDirection.OUT if delta > 0 else TransactionDirection.IN,
            category=TransactionCategory.COMMISSION,
            description=(
                f"Commission adjustment #{sequence} - loan #{commission.loan_id} "
                f"({old_amount} -> {new_amount})"
            ),
            origin_id=commission.id,
            loan_id=commission.loan_id,
            idempotency_key=ledger.commission_adjustment_key(commission_id, sequence),
            created_by=requester_id,
        )
        adjustment_id = tx.id

    logger.info(
        "Edited approved commission %s: %s -> %s (adjustment tx=%s)",
        commission_id, old_amount, new_amount, adjustment_id,
    )
    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_COMMISSIONS,
        action="EDIT_APPROVED",
        entity_id=commission_id,
        ip=ip,
        details={
            "old_amount": str(old_amount),
            "new_amount": str(new_amount),
            "adjustment_transaction_id": adjustment_id,
        },
    )
    return commission


async def edit_commission(
    db: AsyncSession,
    commission_id: int,
    *,
    commission_type: CommissionType,
    reference,
    base_value=None,
    requester_id: int,
    ip: str | None = None,
) -> Commission:
    """Route an edit to the open or approved variant by current status."""
    commission = await _require_commission(db, commission_id)
    handler = {
        CommissionStatus.OPEN: edit_open_commission,
        CommissionStatus.APPROVED: edit_approved_commission,
    }.get(commission.status)
    if handler is None:
        raise InvalidStateTransitionError(
            f"Cannot edit: commission {commission_id} is {commission.status.value}"
        )
    return await handler(
        db,
        commission_id,
        commission_type=commission_type,
        reference=reference,
        base_value=base_value,
        requester_id=requester_id,
        ip=ip,
    )


async def generate_and_approve(
    db: AsyncSession,
    *,
    loan_id: int,
    commission_type: CommissionType,
    reference,
    period: str,
    requester_id: int,
    ip: str | None = None,
) -> Commission:
    """Open a commission for a pending loan and approve it in one step."""
    commission = await open_commission(
        db,
        loan_id=loan_id,
        commission_type=commission_type,
        reference=reference,
        period=period,
        requester_id=requester_id,
        ip=ip,
    )
    return await approve_commission(db, commission.id, requester_id=requester_id, ip=ip)
