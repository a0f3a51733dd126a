from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal

from app.engine.enums import CommissionBasis, CustomerTier, RulePriority, RuleScope, RuleType


class TierBandSchema(BaseModel):
    threshold: Decimal = Field(..., ge=0)
    percentage: Decimal = Field(..., ge=0, le=100)

    class Config:
        from_attributes = True


class CommissionPlanCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    project_id: Optional[str] = None
    commission_basis: CommissionBasis = CommissionBasis.GROSS_REVENUE
    is_active: bool = True


class CommissionPlanUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    commission_basis: Optional[CommissionBasis] = None
    is_active: Optional[bool] = None


class CommissionPlanResponse(BaseModel):
    id: str
    organization_id: str
    project_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    commission_basis: CommissionBasis
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CommissionRuleBase(BaseModel):
    rule_type: RuleType
    scope: RuleScope = RuleScope.GLOBAL
    priority: Optional[RulePriority] = None

    percentage: Optional[Decimal] = None
    flat_amount: Optional[Decimal] = None
    tiers: List[TierBandSchema] = []

    min_sale_amount: Optional[Decimal] = None
    max_sale_amount: Optional[Decimal] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    customer_tier: Optional[CustomerTier] = None
    product_category_id: Optional[str] = None
    territory_id: Optional[str] = None
    client_id: Optional[str] = None
    project_id: Optional[str] = None

    stacking: bool = False
    description: Optional[str] = None

    @field_validator("tiers", mode="before")
    @classmethod
    def _tiers_default(cls, value):
        return value or []


class CommissionRuleCreate(CommissionRuleBase):
    pass


class CommissionRuleUpdate(BaseModel):
    """Partial update; fields left out keep their stored value"""
    rule_type: Optional[RuleType] = None
    scope: Optional[RuleScope] = None
    priority: Optional[RulePriority] = None
    percentage: Optional[Decimal] = None
    flat_amount: Optional[Decimal] = None
    tiers: Optional[List[TierBandSchema]] = None
    min_sale_amount: Optional[Decimal] = None
    max_sale_amount: Optional[Decimal] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    customer_tier: Optional[CustomerTier] = None
    product_category_id: Optional[str] = None
    territory_id: Optional[str] = None
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    stacking: Optional[bool] = None
    description: Optional[str] = None


class CommissionRuleResponse(CommissionRuleBase):
    id: str
    commission_plan_id: str
    priority: RulePriority
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RuleWriteResult(BaseModel):
    rule: CommissionRuleResponse
    warnings: List[Dict[str, Any]] = []


class PrecedenceEntry(BaseModel):
    position: int
    rule_id: str
    rule_type: RuleType
    scope: RuleScope
    priority: RulePriority
    stacking: bool
    label: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
