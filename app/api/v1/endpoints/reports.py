from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date

from app.core.database import get_db
from app.core.tenant import RequestContext, get_admin_context, get_request_context
from app.models.commission import CommissionStatus
from app.schemas.commission import CommissionStats
from app.services.commission_service import CommissionService
from app.services.report_service import ReportService

router = APIRouter()


@router.get("/commissions.csv")
async def export_commissions(
    status: Optional[CommissionStatus] = CommissionStatus.APPROVED,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Payout export as CSV (admin only)"""
    content = ReportService.export_commissions_csv(
        db,
        context.organization_id,
        status=status,
        start_date=start_date,
        end_date=end_date
    )
    filename = f"commissions-{status.value if status else 'all'}-{date.today().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.get("/totals", response_model=CommissionStats)
async def get_totals_by_status(
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Commission counts and totals per status"""
    return CommissionService.get_stats(db, context.organization_id, user_id=context.visible_user_id())


@router.get("/salespeople")
async def get_totals_by_salesperson(
    status: Optional[CommissionStatus] = CommissionStatus.APPROVED,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
) -> List[dict]:
    """Net commission per salesperson (admin only)"""
    return ReportService.totals_by_salesperson(
        db,
        context.organization_id,
        status=status,
        start_date=start_date,
        end_date=end_date
    )
