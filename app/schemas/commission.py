from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from decimal import Decimal

from app.engine.enums import CustomerTier, TransactionType
from app.models.commission import CommissionStatus


class CommissionCalculationResponse(BaseModel):
    id: str
    sales_transaction_id: str
    commission_plan_id: str
    user_id: str
    amount: Decimal
    status: CommissionStatus
    calculated_at: datetime
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    paid_at: Optional[datetime] = None
    version: int
    created_at: datetime

    class Config:
        from_attributes = True


class CommissionCalculationDetail(CommissionCalculationResponse):
    trace: Dict[str, Any]


class AuditLogResponse(BaseModel):
    id: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    description: Optional[str] = None
    changes: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StatusChange(BaseModel):
    # Version the client last read; a mismatch is reported as a conflict
    version: Optional[int] = None


class BulkCommissionIds(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class SkippedCommission(BaseModel):
    id: str
    reason: str


class BulkOperationResult(BaseModel):
    updated: List[str] = []
    skipped: List[SkippedCommission] = []


class CommissionStats(BaseModel):
    pending_count: int = 0
    pending_amount: Decimal = Decimal("0")
    approved_count: int = 0
    approved_amount: Decimal = Decimal("0")
    paid_count: int = 0
    paid_amount: Decimal = Decimal("0")
    total_count: int = 0
    total_amount: Decimal = Decimal("0")


class CommissionSimulation(BaseModel):
    amount: Decimal
    transaction_type: TransactionType = TransactionType.SALE
    returns_total: Decimal = Decimal("0")
    transaction_date: Optional[date] = None

    # Either an existing client, or the customer attributes directly
    client_id: Optional[str] = None
    customer_tier: Optional[CustomerTier] = None
    territory_id: Optional[str] = None
    project_id: Optional[str] = None
    product_category_id: Optional[str] = None


class RecalculationSummary(BaseModel):
    processed: int = 0
    calculated: int = 0
    removed: int = 0
    skipped_paid: int = 0
    failed: int = 0
    failures: List[Dict[str, str]] = []


class BackfillSummary(BaseModel):
    checked: int = 0
    created: int = 0
    still_missing: int = 0
    failed: int = 0
    failures: List[Dict[str, str]] = []


class TaskDispatch(BaseModel):
    task_id: str
    status: str = "queued"
