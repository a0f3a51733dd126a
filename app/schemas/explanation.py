from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from decimal import Decimal

from app.engine.enums import CommissionBasis, RuleType, TransactionType
from app.models.commission import AdjustmentType, CommissionStatus


class ExplanationSummary(BaseModel):
    commission_amount: Decimal
    effective_rate: Optional[Decimal] = None
    sale_amount: Decimal
    plan_name: str
    calculated_at: datetime
    status: CommissionStatus


class ExplainedTransaction(BaseModel):
    id: str
    amount: Decimal
    transaction_type: TransactionType
    transaction_date: date
    invoice_number: Optional[str] = None
    description: Optional[str] = None
    client_name: Optional[str] = None
    project_name: Optional[str] = None


class ExplainedRule(BaseModel):
    description: str
    rule_type: RuleType
    rate: Optional[Decimal] = None
    flat_amount: Optional[Decimal] = None
    basis_type: CommissionBasis
    basis_amount: Decimal
    raw_amount: Decimal
    final_amount: Decimal
    cap_applied: bool = False
    steps: List[str] = []


class ExplainedAdjustment(BaseModel):
    id: str
    type: AdjustmentType
    amount: Decimal
    reason: Optional[str] = None
    related_transaction_id: Optional[str] = None
    applied_at: datetime
    applied_by: Optional[str] = None


class AdminDetails(BaseModel):
    engine_version: str
    migrated_from: Optional[int] = None
    rejected_rules: List[Dict[str, Any]] = []
    trace: Dict[str, Any]


class CommissionExplanation(BaseModel):
    calculation_id: str
    summary: ExplanationSummary
    transaction: ExplainedTransaction
    applied_rule: Optional[ExplainedRule] = None
    stacked_rules: List[ExplainedRule] = []
    adjustments: List[ExplainedAdjustment] = []
    adjustments_total: Decimal = Decimal("0")
    net_amount: Decimal
    admin_details: Optional[AdminDetails] = None
