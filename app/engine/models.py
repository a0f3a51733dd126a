"""Input and output types of the rule resolution engine."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from app.core.exceptions import InvalidRuleConfiguration
from app.engine.enums import (
    CommissionBasis,
    CustomerTier,
    RulePriority,
    RuleScope,
    RuleType,
    TransactionType,
)
from app.engine.precedence import assign_priority_from_scope
from app.engine.trace import CalculationTrace


class EngineModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class TransactionInput(EngineModel):
    id: Optional[str] = None
    amount: Decimal
    transaction_date: Optional[date] = None
    transaction_type: TransactionType = TransactionType.SALE
    returns_total: Decimal = Decimal("0")
    invoice_number: Optional[str] = None

    @model_validator(mode="after")
    def _sale_amount_not_negative(self):
        if self.transaction_type == TransactionType.SALE and self.amount < 0:
            raise ValueError("SALE transactions must carry a non-negative amount")
        return self


class CalculationContext(EngineModel):
    customer_id: Optional[str] = None
    customer_tier: Optional[CustomerTier] = None
    project_id: Optional[str] = None
    territory_id: Optional[str] = None
    product_category_id: Optional[str] = None


class PlanRef(EngineModel):
    id: str
    name: Optional[str] = None
    commission_basis: CommissionBasis = CommissionBasis.GROSS_REVENUE
    is_active: bool = True
    project_id: Optional[str] = None
    updated_at: Optional[datetime] = None


class TierBand(EngineModel):
    """Marginal band: ``percentage`` applies from ``threshold`` up to the next band."""

    threshold: Decimal
    percentage: Decimal


class RuleDefinition(EngineModel):
    id: str
    plan: PlanRef
    rule_type: RuleType
    scope: RuleScope = RuleScope.GLOBAL
    priority: Optional[RulePriority] = None

    percentage: Optional[Decimal] = None
    flat_amount: Optional[Decimal] = None
    tiers: Tuple[TierBand, ...] = ()

    # Gates on the sale (basis) amount
    min_sale_amount: Optional[Decimal] = None
    max_sale_amount: Optional[Decimal] = None

    # Caps on the computed commission
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    customer_tier: Optional[CustomerTier] = None
    product_category_id: Optional[str] = None
    territory_id: Optional[str] = None
    client_id: Optional[str] = None
    project_id: Optional[str] = None

    stacking: bool = False
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def effective_priority(self) -> RulePriority:
        return self.priority or assign_priority_from_scope(self.scope)

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "RuleDefinition":
        """Build a rule from loosely typed data, tagging bad input as a rule error."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            errors = [
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in exc.errors()
            ]
            raise InvalidRuleConfiguration(data.get("id"), errors) from exc


class SelectedRule(EngineModel):
    id: str
    rule_type: RuleType
    scope: RuleScope
    priority: RulePriority
    percentage: Optional[Decimal] = None
    flat_amount: Optional[Decimal] = None
    description: Optional[str] = None


class MatchedRule(EngineModel):
    id: str
    scope: RuleScope
    priority: RulePriority
    selected: bool
    stacked: bool = False


class AppliedRule(EngineModel):
    rule_id: str
    rule_type: RuleType
    raw_amount: Decimal
    final_amount: Decimal
    cap_applied: bool = False
    description: Optional[str] = None


class CalculationResult(EngineModel):
    plan_id: str
    plan_name: Optional[str] = None
    basis_type: CommissionBasis
    basis_amount: Decimal
    selected_rule: Optional[SelectedRule] = None
    matched_rules: List[MatchedRule] = []
    applied_rules: List[AppliedRule] = []
    raw_amount: Optional[Decimal] = None
    capped_amount: Optional[Decimal] = None
    cap_applied: bool = False
    final_amount: Optional[Decimal] = None
    trace: CalculationTrace

    @property
    def has_match(self) -> bool:
        return self.selected_rule is not None


class EvaluationResult(EngineModel):
    transaction_id: Optional[str] = None
    calculations: List[CalculationResult] = []
    unmatched_plan_ids: List[str] = []

    @property
    def is_missing(self) -> bool:
        """True when no active plan produced a payable calculation."""
        return not self.calculations
