"""Cash ledger poster.

The only writer of ``financial_transactions`` rows.  Postings are immediate
and synchronous; there is no batching and no update or delete path for rows
in the engine-owned categories (LOAN, COMMISSION).

Each engine posting carries an idempotency key derived from the triggering
event, e.g. ``commission:42:approve`` or ``loan:7:finalize``.  The key is
checked before insert and backed by a unique constraint, so a retried event
is rejected instead of double-counted.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select, func as sa_func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.models.financial import (
    FinancialTransaction,
    TransactionCategory,
    TransactionDirection,
    ENGINE_CATEGORIES,
)
from settlement.services.audit import record_audit, MODULE_FINANCIAL
from settlement.services.calculator import to_decimal, quantize_money
from settlement.services.errors import (
    DuplicatePostingError,
    NotFoundError,
    ValidationError,
)
from settlement.services.periods import period_bounds

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Idempotency keys
# ---------------------------------------------------------------------------

def commission_approval_key(commission_id: int) -> str:
    return f"commission:{commission_id}:approve"


def commission_adjustment_key(commission_id: int, sequence: int) -> str:
    return f"commission:{commission_id}:adjust:{sequence}"


def commission_adjustment_prefix(commission_id: int) -> str:
    return f"commission:{commission_id}:adjust:"


def loan_finalization_key(loan_id: int) -> str:
    return f"loan:{loan_id}:finalize"


def manual_key(client_key: str) -> str:
    return f"manual:{client_key}"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_transaction(db: AsyncSession, transaction_id: int) -> FinancialTransaction | None:
    result = await db.execute(
        select(FinancialTransaction).where(FinancialTransaction.id == transaction_id)
    )
    return result.scalar_one_or_none()


async def get_posting_by_key(db: AsyncSession, key: str) -> FinancialTransaction | None:
    result = await db.execute(
        select(FinancialTransaction).where(FinancialTransaction.idempotency_key == key)
    )
    return result.scalar_one_or_none()


async def count_postings_with_prefix(db: AsyncSession, prefix: str) -> int:
    result = await db.execute(
        select(sa_func.count())
        .select_from(FinancialTransaction)
        .where(FinancialTransaction.idempotency_key.like(f"{prefix}%"))
    )
    return int(result.scalar_one() or 0)


async def count_postings_for_loan(db: AsyncSession, loan_id: int) -> int:
    result = await db.execute(
        select(sa_func.count())
        .select_from(FinancialTransaction)
        .where(FinancialTransaction.loan_id == loan_id)
    )
    return int(result.scalar_one() or 0)


def _filtered(query, *, period=None, category=None, direction=None, loan_id=None):
    if period:
        start, end = period_bounds(period)
        query = query.where(
            FinancialTransaction.transaction_date >= start,
            FinancialTransaction.transaction_date < end,
        )
    if category:
        query = query.where(FinancialTransaction.category == TransactionCategory(category))
    if direction:
        query = query.where(FinancialTransaction.direction == TransactionDirection(direction))
    if loan_id is not None:
        query = query.where(FinancialTransaction.loan_id == loan_id)
    return query


async def list_transactions(
    db: AsyncSession,
    *,
    period: str | None = None,
    category: TransactionCategory | str | None = None,
    direction: TransactionDirection | str | None = None,
    loan_id: int | None = None,
) -> list[FinancialTransaction]:
    q = _filtered(
        select(FinancialTransaction),
        period=period, category=category, direction=direction, loan_id=loan_id,
    ).order_by(FinancialTransaction.transaction_date.desc(), FinancialTransaction.id.desc())
    result = await db.execute(q)
    return list(result.scalars().all())


async def get_balance(db: AsyncSession, *, period: str | None = None) -> dict[str, Decimal]:
    """Total inflow, total outflow and the resulting balance."""
    total_in = sa_func.coalesce(
        sa_func.sum(
            case((FinancialTransaction.direction == TransactionDirection.IN, FinancialTransaction.amount), else_=0)
        ),
        0,
    )
    total_out = sa_func.coalesce(
        sa_func.sum(
            case((FinancialTransaction.direction == TransactionDirection.OUT, FinancialTransaction.amount), else_=0)
        ),
        0,
    )
    q = _filtered(select(total_in, total_out), period=period)
    row = (await db.execute(q)).one()
    total_in_value = quantize_money(Decimal(str(row[0])))
    total_out_value = quantize_money(Decimal(str(row[1])))
    return {
        "total_in": total_in_value,
        "total_out": total_out_value,
        "balance": total_in_value - total_out_value,
    }


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------

async def post_transaction(
    db: AsyncSession,
    *,
    amount,
    direction: TransactionDirection,
    category: TransactionCategory,
    description: str,
    origin_id: int | None = None,
    loan_id: int | None = None,
    idempotency_key: str | None = None,
    transaction_date: date | None = None,
    settled_on: date | None = None,
    receipt_reference: str | None = None,
    created_by: int | None = None,
) -> FinancialTransaction:
    """Insert one ledger row.  No business logic beyond validation."""
    value = to_decimal(amount, "amount")
    if value <= 0:
        raise ValidationError(f"Ledger amount must be positive, got {value}")
    if not description or not description.strip():
        raise ValidationError("Ledger description is required")

    if idempotency_key:
        existing = await get_posting_by_key(db, idempotency_key)
        if existing is not None:
            raise DuplicatePostingError(
                f"Posting '{idempotency_key}' already exists (transaction {existing.id})",
                hint="financial_transactions.idempotency_key",
            )

    tx = FinancialTransaction(
        transaction_date=transaction_date or datetime.now(timezone.utc).date(),
        amount=quantize_money(value),
        direction=TransactionDirection(direction),
        category=TransactionCategory(category),
        description=description.strip(),
        origin_id=origin_id,
        loan_id=loan_id,
        idempotency_key=idempotency_key,
        settled_on=settled_on,
        receipt_reference=receipt_reference,
        created_by=created_by,
    )
    try:
        async with db.begin_nested():
            db.add(tx)
            await db.flush()
    except IntegrityError as exc:
        raise DuplicatePostingError(
            f"Posting '{idempotency_key}' was recorded concurrently",
            hint="financial_transactions.idempotency_key",
        ) from exc

    logger.info(
        "Posted %s %s %s (key=%s, tx=%s)",
        tx.direction.value, tx.category.value, tx.amount, idempotency_key, tx.id,
    )
    return tx


async def record_manual_transaction(
    db: AsyncSession,
    *,
    amount,
    direction: TransactionDirection,
    category: TransactionCategory,
    description: str,
    transaction_date: date | None = None,
    settled_on: date | None = None,
    receipt_reference: str | None = None,
    client_key: str | None = None,
    requester_id: int,
    ip: str | None = None,
) -> FinancialTransaction:
    """General income/expense entry.

    LOAN and COMMISSION rows are reserved for the engine.  When *client_key*
    is given a replay returns the original row instead of posting again.
    """
    category = TransactionCategory(category)
    if category in ENGINE_CATEGORIES:
        raise ValidationError(
            f"Category '{category.value}' is posted automatically and cannot be entered manually"
        )

    key = manual_key(client_key) if client_key else None
    if key:
        existing = await get_posting_by_key(db, key)
        if existing is not None:
            logger.info("Manual entry replay for key %s, returning tx %s", key, existing.id)
            return existing

    tx = await post_transaction(
        db,
        amount=amount,
        direction=direction,
        category=category,
        description=description,
        idempotency_key=key,
        transaction_date=transaction_date,
        settled_on=settled_on,
        receipt_reference=receipt_reference,
        created_by=requester_id,
    )
    await record_audit(
        db,
        actor_id=requester_id,
        module=MODULE_FINANCIAL,
        action="CREATE_FINANCIAL_RECORD",
        entity_id=tx.id,
        ip=ip,
    )
    return tx


async def require_transaction(db: AsyncSession, transaction_id: int) -> FinancialTransaction:
    tx = await get_transaction(db, transaction_id)
    if tx is None:
        raise NotFoundError(f"Financial transaction {transaction_id} not found")
    return tx
