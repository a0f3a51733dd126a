from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.core.config import settings
from app.core.database import get_db
from app.core.tenant import RequestContext, get_admin_context, get_request_context
from app.models.commission import CommissionStatus
from app.schemas.commission import (
    AuditLogResponse,
    BulkCommissionIds,
    BulkOperationResult,
    CommissionCalculationDetail,
    CommissionCalculationResponse,
    CommissionStats,
    StatusChange,
    TaskDispatch,
)
from app.schemas.explanation import CommissionExplanation
from app.services.audit_service import AuditService
from app.services.commission_service import CommissionService
from app.services.explanation_service import ExplanationService
from app.tasks.commission_tasks import backfill_missing_task

router = APIRouter()


@router.get("/", response_model=List[CommissionCalculationResponse])
async def list_commissions(
    status_filter: Optional[CommissionStatus] = Query(None, alias="status"),
    user_id: Optional[str] = None,
    plan_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """List commission calculations"""
    return CommissionService.list_calculations(
        db,
        context.organization_id,
        status=status_filter,
        user_id=user_id if context.is_admin else context.visible_user_id(),
        plan_id=plan_id,
        transaction_id=transaction_id,
        skip=skip,
        limit=limit
    )


@router.get("/stats", response_model=CommissionStats)
async def get_commission_stats(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Counts and totals per status"""
    return CommissionService.get_stats(db, context.organization_id, user_id=context.visible_user_id())


@router.post("/bulk/approve", response_model=BulkOperationResult)
async def bulk_approve_commissions(
    payload: BulkCommissionIds,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Approve many commissions; paid and missing ones are skipped"""
    return CommissionService.bulk_approve(db, context.organization_id, payload.ids, approved_by=context.user_id)


@router.post("/bulk/pay", response_model=BulkOperationResult)
async def bulk_mark_commissions_paid(
    payload: BulkCommissionIds,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Mark many approved commissions as paid"""
    return CommissionService.bulk_mark_paid(db, context.organization_id, payload.ids, user_id=context.user_id)


@router.post("/backfill", response_model=TaskDispatch, status_code=status.HTTP_202_ACCEPTED)
async def backfill_missing_commissions(
    context: RequestContext = Depends(get_admin_context)
):
    """Queue calculation of sales that have no commissions yet"""
    result = backfill_missing_task.delay(context.organization_id)
    return {"task_id": result.id, "status": "queued"}


@router.get("/{calculation_id}", response_model=CommissionCalculationDetail)
async def get_commission(
    calculation_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Get one commission calculation with its trace"""
    return CommissionService.get_calculation(db, context.organization_id, calculation_id, user_id=context.visible_user_id())


@router.get("/{calculation_id}/explanation", response_model=CommissionExplanation)
async def explain_commission(
    calculation_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Explain how a commission was calculated"""
    return ExplanationService.explain(db, context, calculation_id)


@router.get("/{calculation_id}/history", response_model=List[AuditLogResponse])
async def get_commission_history(
    calculation_id: str,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Audit entries for a commission, newest first (admin only)"""
    CommissionService.get_calculation(db, context.organization_id, calculation_id)
    return AuditService.list_logs(db, context.organization_id, entity_id=calculation_id)


@router.post("/{calculation_id}/approve", response_model=CommissionCalculationResponse)
async def approve_commission(
    calculation_id: str,
    payload: Optional[StatusChange] = None,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Approve a pending commission (admin only)"""
    return CommissionService.approve(
        db,
        context.organization_id,
        calculation_id,
        approved_by=context.user_id,
        expected_version=payload.version if payload else None
    )


@router.post("/{calculation_id}/pay", response_model=CommissionCalculationResponse)
async def mark_commission_paid(
    calculation_id: str,
    payload: Optional[StatusChange] = None,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Mark an approved commission as paid (admin only)"""
    return CommissionService.mark_paid(
        db,
        context.organization_id,
        calculation_id,
        user_id=context.user_id,
        expected_version=payload.version if payload else None
    )


@router.delete("/{calculation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def reject_commission(
    calculation_id: str,
    version: Optional[int] = None,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Reject a commission; the calculation is removed"""
    CommissionService.reject(
        db,
        context.organization_id,
        calculation_id,
        user_id=context.user_id,
        expected_version=version
    )
