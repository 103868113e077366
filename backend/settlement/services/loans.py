"""Loan lifecycle.

Status graph (anything else is an InvalidStateTransitionError):

    ACTIVE ─► FINALIZED | CANCELED | LATE
    LATE   ─► ACTIVE | FINALIZED | CANCELED

FINALIZED and CANCELED are terminal.  Finalizing posts one LOAN inflow for
the net value.  A loan whose commission has been approved or canceled is
locked for edits.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update, func as sa_func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.config import settings
from settlement.models.commission import Commission, CommissionStatus, CommissionType
from settlement.models.financial import TransactionCategory, TransactionDirection
from settlement.models.loan import Loan, LoanStatus
from settlement.services import commissions as commission_service
from settlement.services import ledger
from settlement.services.audit import record_audit, MODULE_LOANS
from settlement.services.calculator import to_decimal
from settlement.services.errors import (
    EditLockedError,
    IntegrityViolationError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from settlement.services.periods import current_period

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[LoanStatus, frozenset[LoanStatus]] = {
    LoanStatus.ACTIVE: frozenset({LoanStatus.FINALIZED, LoanStatus.CANCELED, LoanStatus.LATE}),
    LoanStatus.LATE: frozenset({LoanStatus.ACTIVE, LoanStatus.FINALIZED, LoanStatus.CANCELED}),
    LoanStatus.FINALIZED: frozenset(),
    LoanStatus.CANCELED: frozenset(),
}

CODE_ATTEMPTS = 5

MONEY_FIELDS = ("installment_value", "gross_value", "net_value")
REFERENCE_FIELDS = (
    "customer_id",
    "seller_id",
    "organ_id",
    "bank_id",
    "product_type_id",
    "group_id",
    "rate_table_id",
)
EDITABLE_FIELDS = frozenset(
    ("start_date", "term", "note") + MONEY_FIELDS + REFERENCE_FIELDS
)


def can_transition(current: LoanStatus, new: LoanStatus) -> bool:
    return LoanStatus(new) in ALLOWED_TRANSITIONS[LoanStatus(current)]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _validate_loan_fields(fields: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    """Normalize and check loan attributes.  Returns a cleaned copy."""
    cleaned = dict(fields)

    for name in MONEY_FIELDS:
        if name in cleaned:
            value = to_decimal(cleaned[name], name)
            if value <= 0:
                raise ValidationError(f"{name} must be greater than zero")
            cleaned[name] = value
        elif not partial:
            raise ValidationError(f"{name} is required")

    if "term" in cleaned:
        term = cleaned["term"]
        if isinstance(term, bool) or not isinstance(term, int) or term <= 0:
            raise ValidationError("term must be a positive whole number of installments")
    elif not partial:
        raise ValidationError("term is required")

    if "start_date" in cleaned:
        if not isinstance(cleaned["start_date"], date):
            raise ValidationError("start_date must be a date")
    elif not partial:
        raise ValidationError("start_date is required")

    for name in REFERENCE_FIELDS:
        if name in cleaned:
            if cleaned[name] is None:
                raise ValidationError(f"{name} is required")
        elif not partial:
            raise ValidationError(f"{name} is required")

    return cleaned


def _check_net_not_above_gross(net_value: Decimal, gross_value: Decimal) -> None:
    if net_value > gross_value:
        raise ValidationError(
            f"net_value ({net_value}) cannot exceed gross_value ({gross_value})"
        )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_loan(db: AsyncSession, loan_id: int) -> Loan | None:
    result = await db.execute(
        select(Loan).where(Loan.id == loan_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_loan(db: AsyncSession, loan_id: int) -> Loan:
    loan = await get_loan(db, loan_id)
    if loan is None:
        raise NotFoundError(f"Loan {loan_id} not found")
    return loan


async def list_loans(
    db: AsyncSession,
    *,
    seller_id: int | None = None,
    status: LoanStatus | None = None,
) -> list[Loan]:
    q = select(Loan).order_by(Loan.created_at.desc(), Loan.id.desc())
    if seller_id is not None:
        q = q.where(Loan.seller_id == seller_id)
    if status:
        q = q.where(Loan.status == status)
    result = await db.execute(q)
    return list(result.scalars().all())


async def _next_loan_code(db: AsyncSession) -> int:
    """Next human-facing sequential contract code."""
    result = await db.execute(select(sa_func.max(Loan.code)))
    last = result.scalar_one_or_none()
    return (last or 0) + 1


async def _set_status_if(
    db: AsyncSession, loan_id: int, *, expected: LoanStatus, new: LoanStatus
) -> bool:
    result = await db.execute(
        update(Loan)
        .where(Loan.id == loan_id, Loan.status == expected)
        .values(status=new)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def _insert_with_next_code(db: AsyncSession, loan: Loan) -> None:
    """Insert *loan* under the next free contract code.

    A concurrent create can take the same code between the read and the
    insert; the unique constraint rejects it inside a SAVEPOINT and the next
    code is tried.
    """
    for attempt in range(1, CODE_ATTEMPTS + 1):
        loan.code = await _next_loan_code(db)
        try:
            async with db.begin_nested():
                db.add(loan)
                await db.flush()
            return
        except IntegrityError as exc:
            logger.warning("Loan code %s taken (attempt %s/%s)", loan.code, attempt, CODE_ATTEMPTS)
            last_error = exc
    raise IntegrityViolationError(
        f"Could not allocate a contract code after {CODE_ATTEMPTS} attempts",
        hint="loans.code",
    ) from last_error


async def create_loan(
    db: AsyncSession,
    data: dict[str, Any],
    *,
    requester_id: int,
    ip: str | None = None,
    auto_generate_commission: bool = False,
) -> Loan:
    """Persist a loan and optionally open the house-default commission.

    Loans are always inserted ACTIVE.  Any other requested status is applied
    afterwards through ``update_loan_status`` so its side effects (the LOAN
    inflow on finalization) happen exactly as for a later change.
    """
    fields = _validate_loan_fields(data)
    _check_net_not_above_gross(fields["net_value"], fields["gross_value"])
    status = LoanStatus(fields.pop("status", None) or LoanStatus.ACTIVE)

    loan = Loan(
        status=LoanStatus.ACTIVE,
        **{k: v for k, v in fields.items() if k in EDITABLE_FIELDS},
    )
    await _insert_with_next_code(db, loan)
    logger.info("Created loan %s (code %s) for seller %s", loan.id, loan.code, loan.seller_id)

    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_LOANS,
        action="CREATE",
        entity_id=loan.id,
        ip=ip,
    )

    if auto_generate_commission:
        await commission_service.open_commission(
            db,
            loan_id=loan.id,
            seller_id=loan.seller_id,
            base_value=loan.net_value,
            commission_type=CommissionType(settings.default_commission_type),
            reference=settings.default_commission_reference,
            period=current_period(),
            requester_id=requester_id,
            ip=ip,
        )

    if status != LoanStatus.ACTIVE:
        loan = await update_loan_status(db, loan.id, status, requester_id=requester_id, ip=ip)
    return loan


async def update_loan_status(
    db: AsyncSession,
    loan_id: int,
    new_status: LoanStatus,
    *,
    requester_id: int,
    ip: str | None = None,
) -> Loan:
    """Move a loan along the status graph; finalization posts the loan inflow."""
    new_status = LoanStatus(new_status)
    loan = await require_loan(db, loan_id)
    current = loan.status
    if not can_transition(current, new_status):
        raise InvalidStateTransitionError(
            f"Cannot move loan {loan_id} from {current.value} to {new_status.value}"
        )

    if not await _set_status_if(db, loan_id, expected=current, new=new_status):
        raise InvalidStateTransitionError(
            f"Loan {loan_id} changed status concurrently; expected {current.value}"
        )
    loan = await require_loan(db, loan_id)
    logger.info("Loan %s: %s -> %s by user %s", loan_id, current.value, new_status.value, requester_id)

    if new_status == LoanStatus.FINALIZED:
        await ledger.post_transaction(
            db,
            amount=loan.net_value,
            direction=TransactionDirection.IN,
            category=TransactionCategory.LOAN,
            description=f"Loan finalization - contract #{loan.code} (loan {loan.id})",
            origin_id=loan.id,
            loan_id=loan.id,
            idempotency_key=ledger.loan_finalization_key(loan.id),
            created_by=requester_id,
        )

    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_LOANS,
        action=f"UPDATE_STATUS_{new_status.name}",
        entity_id=loan_id,
        ip=ip,
        details={"from": current.value, "to": new_status.value},
    )
    return loan


async def _ensure_editable(db: AsyncSession, loan_id: int) -> Commission | None:
    """Raise EditLockedError once the loan's commission has left OPEN.

    The commission row is locked so a concurrent approval waits for this
    transaction.
    """
    commission = await commission_service.get_commission_for_loan(db, loan_id, for_update=True)
    if commission is not None and commission.status != CommissionStatus.OPEN:
        raise EditLockedError(
            f"Loan {loan_id} is locked: its commission is {commission.status.value}"
        )
    return commission


async def update_loan(
    db: AsyncSession,
    loan_id: int,
    changes: dict[str, Any],
    *,
    requester_id: int,
    ip: str | None = None,
) -> Loan:
    """Plain field edit, refused once the commission is approved or canceled.

    Status is not editable here; use ``update_loan_status``.  When the net
    value changes on a loan with an OPEN percentage commission, the commission
    amount is recomputed.
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")

    loan = await require_loan(db, loan_id)
    commission = await _ensure_editable(db, loan_id)

    fields = _validate_loan_fields(changes, partial=True)
    _check_net_not_above_gross(
        fields.get("net_value", loan.net_value),
        fields.get("gross_value", loan.gross_value),
    )

    old_net = loan.net_value
    for name, value in fields.items():
        setattr(loan, name, value)
    await db.flush()
    await db.refresh(loan)
    logger.info("Updated loan %s fields: %s", loan_id, ", ".join(sorted(fields)))

    if (
        commission is not None
        and "net_value" in fields
        and fields["net_value"] != old_net
        and commission.commission_type == CommissionType.PERCENTAGE
    ):
        await commission_service.edit_open_commission(
            db,
            commission.id,
            commission_type=commission.commission_type,
            reference=commission.reference_value,
            base_value=loan.net_value,
            requester_id=requester_id,
            ip=ip,
        )

    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_LOANS,
        action="UPDATE",
        entity_id=loan_id,
        ip=ip,
        details={"fields": sorted(fields)},
    )
    return loan


async def delete_loan(
    db: AsyncSession,
    loan_id: int,
    *,
    requester_id: int,
    ip: str | None = None,
) -> None:
    """Hard-delete a loan that nothing references."""
    loan = await require_loan(db, loan_id)

    commission = await commission_service.get_commission_for_loan(db, loan_id)
    if commission is not None:
        raise IntegrityViolationError(
            f"Loan {loan_id} has a commission ({commission.status.value}) and cannot be deleted. "
            "Commissions are kept for the audit trail.",
            hint="commissions.loan_id",
        )
    if await ledger.count_postings_for_loan(db, loan_id):
        raise IntegrityViolationError(
            f"Loan {loan_id} has financial transactions and cannot be deleted. "
            "Ledger postings are immutable.",
            hint="financial_transactions.loan_id",
        )

    try:
        async with db.begin_nested():
            await db.delete(loan)
            await db.flush()
    except IntegrityError as exc:
        raise IntegrityViolationError(
            f"Loan {loan_id} is still referenced by other records and cannot be deleted",
            hint="loans.id",
        ) from exc

    logger.info("Deleted loan %s by user %s", loan_id, requester_id)
    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_LOANS,
        action="DELETE",
        entity_id=loan_id,
        ip=ip,
    )
