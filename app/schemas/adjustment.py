from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from decimal import Decimal

from app.models.commission import AdjustmentType


class AdjustmentCreate(BaseModel):
    commission_calculation_id: str
    type: AdjustmentType
    # Negative for deductions, positive for additions
    amount: Decimal
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None
    related_transaction_id: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("Adjustment amount cannot be zero")
        return value


class AdjustmentResponse(BaseModel):
    id: str
    commission_calculation_id: str
    type: AdjustmentType
    amount: Decimal
    reason: Optional[str] = None
    notes: Optional[str] = None
    related_transaction_id: Optional[str] = None
    applied_by: Optional[str] = None
    applied_at: datetime

    class Config:
        from_attributes = True


class NetAmountResponse(BaseModel):
    commission_calculation_id: str
    amount: Decimal
    adjustments_total: Decimal
    net_amount: Decimal
