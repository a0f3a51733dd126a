from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.core.config import settings
from app.core.database import get_db
from app.core.tenant import RequestContext, get_admin_context, get_request_context
from app.engine.enums import TransactionType
from app.schemas.commission import CommissionCalculationResponse
from app.schemas.transaction import (
    SalesTransactionCreate,
    SalesTransactionResponse,
    SalesTransactionResult,
)
from app.services.commission_service import CommissionService
from app.services.transaction_service import TransactionService

router = APIRouter()


@router.post("/", response_model=SalesTransactionResult, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    transaction_data: SalesTransactionCreate,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Record a sales transaction and calculate its commissions"""
    transaction, calculations = TransactionService.create_transaction(db, context, transaction_data)
    return {"transaction": transaction, "calculations": calculations}


@router.get("/", response_model=List[SalesTransactionResponse])
async def list_transactions(
    transaction_type: Optional[TransactionType] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """List sales transactions"""
    return TransactionService.list_transactions(
        db,
        context.organization_id,
        user_id=context.visible_user_id(),
        transaction_type=transaction_type,
        skip=skip,
        limit=limit
    )


@router.get("/{transaction_id}", response_model=SalesTransactionResponse)
async def get_transaction(
    transaction_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Get a sales transaction"""
    return TransactionService.get_transaction(
        db, context.organization_id, transaction_id, user_id=context.visible_user_id()
    )


@router.post("/{transaction_id}/recalculate", response_model=List[CommissionCalculationResponse])
async def recalculate_transaction(
    transaction_id: str,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Recalculate the commissions of one transaction (admin only)"""
    return CommissionService.recalculate_transaction(
        db, context.organization_id, transaction_id, user_id=context.user_id
    )
