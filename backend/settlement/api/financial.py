"""Financial ledger API endpoints.

Engine postings (loan and commission categories) are read-only here; manual
entries cover the other categories and accept an ``Idempotency-Key`` header
so a retried request returns the original row.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.api.common import limiter, to_http_error
from settlement.auth_utils import PERM_FINANCIAL_MANAGE, Requester, require_permission
from settlement.config import settings
from settlement.database import get_db
from settlement.models.financial import TransactionCategory, TransactionDirection
from settlement.schemas import BalanceResponse, ManualTransactionCreate, TransactionResponse
from settlement.services import ledger
from settlement.services.error_logger import log_error_standalone
from settlement.services.errors import SettlementError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=list[TransactionResponse])
async def list_transactions(
    period: Optional[str] = Query(None, description="MM/YYYY"),
    category: Optional[TransactionCategory] = Query(None),
    direction: Optional[TransactionDirection] = Query(None),
    loan_id: Optional[int] = Query(None),
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(require_permission(PERM_FINANCIAL_MANAGE)),
):
    try:
        try:
            rows = await ledger.list_transactions(
                db, period=period, category=category, direction=direction, loan_id=loan_id
            )
            return [TransactionResponse.model_validate(tx) for tx in rows]
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.financial", function_name="list_transactions")
        raise


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    period: Optional[str] = Query(None, description="MM/YYYY"),
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(require_permission(PERM_FINANCIAL_MANAGE)),
):
    try:
        try:
            totals = await ledger.get_balance(db, period=period)
            return BalanceResponse(period=period, **totals)
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.financial", function_name="get_balance")
        raise


@router.post("/", response_model=TransactionResponse, status_code=201)
@limiter.limit(settings.rate_limit_mutations)
async def create_manual_transaction(
    request: Request,
    data: ManualTransactionCreate,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=100),
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(require_permission(PERM_FINANCIAL_MANAGE)),
):
    try:
        try:
            tx = await ledger.record_manual_transaction(
                db,
                amount=data.amount,
                direction=TransactionDirection(data.direction),
                category=TransactionCategory(data.category),
                description=data.description,
                transaction_date=data.transaction_date,
                settled_on=data.settled_on,
                receipt_reference=data.receipt_reference,
                client_key=idempotency_key,
                requester_id=requester.id,
                ip=requester.ip,
            )
            return TransactionResponse.model_validate(tx)
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.financial", function_name="create_manual_transaction")
        raise
