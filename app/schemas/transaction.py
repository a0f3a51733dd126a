from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, date
from decimal import Decimal

from app.engine.enums import TransactionType
from app.schemas.commission import CommissionCalculationResponse


class SalesTransactionCreate(BaseModel):
    amount: Decimal
    transaction_date: date
    transaction_type: TransactionType = TransactionType.SALE
    parent_transaction_id: Optional[str] = None
    project_id: Optional[str] = None
    client_id: Optional[str] = None
    product_category_id: Optional[str] = None
    invoice_number: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None

    # Salesperson credited; defaults to the caller
    user_id: Optional[str] = None


class SalesTransactionResponse(BaseModel):
    id: str
    amount: Decimal
    transaction_date: date
    transaction_type: TransactionType
    parent_transaction_id: Optional[str] = None
    project_id: Optional[str] = None
    client_id: Optional[str] = None
    product_category_id: Optional[str] = None
    user_id: str
    invoice_number: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SalesTransactionResult(BaseModel):
    transaction: SalesTransactionResponse
    calculations: List[CommissionCalculationResponse] = []
