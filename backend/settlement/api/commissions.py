"""Commission API endpoints.

The list endpoint is the approval view: existing commissions plus loans still
awaiting one (``pending_generation``).  PATCH carries either a lifecycle
action (APPROVE / CANCEL) or a type/reference edit.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from settlement.api.common import limiter, to_http_error
from settlement.auth_utils import (
    PERM_COMMISSIONS_MANAGE,
    Requester,
    get_requester,
    require_permission,
)
from settlement.config import settings
from settlement.database import get_db
from settlement.models.commission import CommissionType
from settlement.schemas import (
    CommissionCreate,
    CommissionResponse,
    CommissionUpdate,
    CommissionViewRowResponse,
)
from settlement.services import commissions as commission_service
from settlement.services import pending as pending_service
from settlement.services.error_logger import log_error_standalone
from settlement.services.errors import SettlementError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=CommissionResponse, status_code=201)
@limiter.limit(settings.rate_limit_mutations)
async def create_commission(
    request: Request,
    data: CommissionCreate,
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(require_permission(PERM_COMMISSIONS_MANAGE)),
):
    """Open a commission for a loan, or generate and approve it in one step."""
    try:
        try:
            if data.approve:
                commission = await commission_service.generate_and_approve(
                    db,
                    loan_id=data.loan_id,
                    commission_type=CommissionType(data.commission_type),
                    reference=data.reference_value,
                    period=data.period,
                    requester_id=requester.id,
                    ip=requester.ip,
                )
            else:
                commission = await commission_service.open_commission(
                    db,
                    loan_id=data.loan_id,
                    commission_type=CommissionType(data.commission_type),
                    reference=data.reference_value,
                    period=data.period,
                    requester_id=requester.id,
                    ip=requester.ip,
                )
            return CommissionResponse.model_validate(commission)
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.commissions", function_name="create_commission")
        raise


@router.get("/", response_model=list[CommissionViewRowResponse])
async def list_commission_view(
    period: Optional[str] = Query(None, description="MM/YYYY"),
    seller_id: Optional[int] = Query(None),
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(require_permission(PERM_COMMISSIONS_MANAGE)),
):
    try:
        try:
            rows = await pending_service.list_commission_view(db, period=period, seller_id=seller_id)
            return [CommissionViewRowResponse.model_validate(row) for row in rows]
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.commissions", function_name="list_commission_view")
        raise


@router.get("/{commission_id}", response_model=CommissionResponse)
async def get_commission(
    commission_id: int,
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(get_requester),
):
    try:
        commission = await commission_service.get_commission(db, commission_id)
        if not commission:
            raise HTTPException(status_code=404, detail="Commission not found")
        if commission.seller_id != requester.id and not requester.has_permission(PERM_COMMISSIONS_MANAGE):
            raise HTTPException(status_code=404, detail="Commission not found")
        return CommissionResponse.model_validate(commission)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.commissions", function_name="get_commission")
        raise


@router.patch("/{commission_id}", response_model=CommissionResponse)
@limiter.limit(settings.rate_limit_mutations)
async def update_commission(
    request: Request,
    commission_id: int,
    data: CommissionUpdate,
    db: AsyncSession = Depends(get_db),
    requester: Requester = Depends(require_permission(PERM_COMMISSIONS_MANAGE)),
):
    try:
        try:
            if data.action == "APPROVE":
                commission = await commission_service.approve_commission(
                    db, commission_id, requester_id=requester.id, ip=requester.ip
                )
            elif data.action == "CANCEL":
                commission = await commission_service.cancel_commission(
                    db, commission_id, requester_id=requester.id, ip=requester.ip
                )
            else:
                commission = await commission_service.edit_commission(
                    db,
                    commission_id,
                    commission_type=CommissionType(data.commission_type),
                    reference=data.reference_value,
                    requester_id=requester.id,
                    ip=requester.ip,
                )
            return CommissionResponse.model_validate(commission)
        except SettlementError as e:
            raise to_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await log_error_standalone(e, module="api.commissions", function_name="update_commission")
        raise
