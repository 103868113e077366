"""Loan API endpoints: CRUD plus the status lifecycle."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.api.common import limiter, to_http_error
from settlement.auth_utils import (
    PERM_LOANS_EDIT_ALL,
    Requester,
    get_requester,
    require_permission,
)
from settlement.config import settings
from settlement.database import get_db
from settlement.models.loan import LoanStatus
from settlement.schemas import LoanCreate, LoanResponse, LoanStatusUpdate, LoanUpdate
from settlement.services import loans as loan_service
from settlement.services.error_logger import log_error_standalone
from settlement.services.errors import SettlementError

logger = logging.getLogger(__name__)
router = APIRouter()


def _visible_seller(requester: Requester, seller_id: Optional[int]) -> Optional[int]:
    """Sellers without loans.edit_all only ever see their own loans."""
    if requester.has_permission(PERM_LOANS_EDIT_ALL):
        return seller_id
    return requester.id


@router.post("/", response_model=LoanResponse, status_code=201)
@limiter.limit(settings.rate_limit_mutations)
async def create_loan(
    request: Request,
    data: LoanCreate,
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    """Register a sale.  The seller defaults to the requester."""
    try:
        try:
            fields = data.model_dump(exclude={"auto_generate_commission"})
            if fields.get("seller_id") is None or not requester.has_permission(PERM_LOANS_EDIT_ALL):
                fields["seller_id"] = requester.id
            loan = await loan_service.create_loan(
                db,
                fields,
                requester_id=requester.id,
                ip=requester.ip,
                auto_generate_commission=data.auto_generate_commission,
            )
            return LoanResponse.model_validate(loan)
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.loans", function_name="create_loan")
        raise


@router.get("/", response_model=list[LoanResponse])
async def list_loans(
    seller_id: Optional[int] = Query(None),
    status: Optional[LoanStatus] = Query(None),
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    try:
        loans = await loan_service.list_loans(
            db, seller_id=_visible_seller(requester, seller_id), status=status
        )
        return [LoanResponse.model_validate(loan) for loan in loans]
    except Exception as e:
        await log_error_standalone(e, module="api.loans", function_name="list_loans")
        raise


@router.get("/{loan_id}", response_model=LoanResponse)
async def get_loan(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    try:
        loan = await loan_service.get_loan(db, loan_id)
        if not loan or _visible_seller(requester, loan.seller_id) != loan.seller_id:
            raise HTTPException(status_code=404, detail="Loan not found")
        return LoanResponse.model_validate(loan)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.loans", function_name="get_loan")
        raise


@router.patch("/{loan_id}/status", response_model=LoanResponse)
@limiter.limit(settings.rate_limit_mutations)
async def update_loan_status(
    request: Request,
    loan_id: int,
    data: LoanStatusUpdate,
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(require_permission(PERM_LOANS_EDIT_ALL)),
):
    """Move the loan along its lifecycle.  FINALIZED posts the loan inflow."""
    try:
        try:
            loan = await loan_service.update_loan_status(
                db,
                loan_id,
                LoanStatus(data.status),
                requester_id=requester.id,
                ip=requester.ip,
            )
            return LoanResponse.model_validate(loan)
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.loans", function_name="update_loan_status")
        raise


@router.patch("/{loan_id}", response_model=LoanResponse)
@limiter.limit(settings.rate_limit_mutations)
async def update_loan(
    request: Request,
    loan_id: int,
    data: LoanUpdate,
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(require_permission(PERM_LOANS_EDIT_ALL)),
):
    try:
        try:
            loan = await loan_service.update_loan(
                db,
                loan_id,
                data.model_dump(exclude_unset=True),
                requester_id=requester.id,
                ip=requester.ip,
            )
            return LoanResponse.model_validate(loan)
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.loans", function_name="update_loan")
        raise


@router.delete("/{loan_id}", status_code=204)
@limiter.limit(settings.rate_limit_mutations)
async def delete_loan(
    request: Request,
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(require_permission(PERM_LOANS_EDIT_ALL)),
):
    """Delete a loan nothing references; commissions and postings block it."""
    try:
        try:
            await loan_service.delete_loan(db, loan_id, requester_id=requester.id, ip=requester.ip)
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.loans", function_name="delete_loan")
        raise
