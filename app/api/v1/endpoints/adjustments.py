from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from app.core.database import get_db
from app.core.tenant import RequestContext, get_admin_context, get_request_context
from app.schemas.adjustment import AdjustmentCreate, AdjustmentResponse, NetAmountResponse
from app.services.adjustment_service import AdjustmentService
from app.services.commission_service import CommissionService

router = APIRouter()


@router.post("/", response_model=AdjustmentResponse, status_code=status.HTTP_201_CREATED)
async def create_adjustment(
    adjustment_data: AdjustmentCreate,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Add an adjustment to a commission (admin only)"""
    return AdjustmentService.create_adjustment(db, context.organization_id, adjustment_data, applied_by=context.user_id)


@router.delete("/{adjustment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_adjustment(
    adjustment_id: str,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Remove an adjustment (admin only)"""
    AdjustmentService.delete_adjustment(db, context.organization_id, adjustment_id, user_id=context.user_id)


@router.get("/commission/{calculation_id}", response_model=List[AdjustmentResponse])
async def list_adjustments(
    calculation_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Adjustments of one commission"""
    CommissionService.get_calculation(db, context.organization_id, calculation_id, user_id=context.visible_user_id())
    adjustments = AdjustmentService.list_adjustments(db, context.organization_id, calculation_id)
    if not context.is_admin:
        # Notes are internal
        return [AdjustmentResponse.model_validate(item).model_copy(update={"notes": None}) for item in adjustments]
    return adjustments


@router.get("/commission/{calculation_id}/net", response_model=NetAmountResponse)
async def get_net_amount(
    calculation_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Calculated amount plus adjustments"""
    CommissionService.get_calculation(db, context.organization_id, calculation_id, user_id=context.visible_user_id())
    return AdjustmentService.get_net_amount(db, context.organization_id, calculation_id)
