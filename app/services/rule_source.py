"""
Builds engine inputs from persisted rows.

The engine never touches the database; this module is the only place
that knows how ORM rows map onto TransactionInput, CalculationContext
and RuleDefinition.
"""
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.engine.enums import TransactionType
from app.engine.models import (
    CalculationContext,
    PlanRef,
    RuleDefinition,
    TierBand,
    TransactionInput,
)
from app.models.commission_plan import CommissionPlan
from app.models.sales_transaction import SalesTransaction


def tier_bands(tiers: Optional[list]) -> Tuple[TierBand, ...]:
    """Stored JSON bands to engine bands, in stored order"""
    return tuple(
        TierBand(threshold=Decimal(str(band["threshold"])), percentage=Decimal(str(band["percentage"])))
        for band in (tiers or [])
    )


def serialize_tiers(bands: Iterable) -> Optional[list]:
    """Engine or schema bands to JSON, amounts as strings"""
    result = [{"threshold": str(band.threshold), "percentage": str(band.percentage)} for band in bands]
    return result or None


def plan_ref(plan: CommissionPlan) -> PlanRef:
    return PlanRef(
        id=plan.id,
        name=plan.name,
        commission_basis=plan.commission_basis,
        is_active=bool(plan.is_active),
        project_id=plan.project_id,
        updated_at=plan.updated_at,
    )


def rule_definition(rule, plan: Optional[PlanRef] = None) -> RuleDefinition:
    """Map a CommissionRule row onto the engine type.

    Raises:
        InvalidRuleConfiguration: the stored row cannot be represented.
    """
    return RuleDefinition.parse({
        "id": rule.id,
        "plan": plan or plan_ref(rule.plan),
        "rule_type": rule.rule_type,
        "scope": rule.scope,
        "priority": rule.priority,
        "percentage": rule.percentage,
        "flat_amount": rule.flat_amount,
        "tiers": tier_bands(rule.tiers),
        "min_sale_amount": rule.min_sale_amount,
        "max_sale_amount": rule.max_sale_amount,
        "min_amount": rule.min_amount,
        "max_amount": rule.max_amount,
        "customer_tier": rule.customer_tier,
        "product_category_id": rule.product_category_id,
        "territory_id": rule.territory_id,
        "client_id": rule.client_id,
        "project_id": rule.project_id,
        "stacking": bool(rule.stacking),
        "description": rule.description,
        "created_at": rule.created_at,
    })


def plan_rules(plan: CommissionPlan) -> List[RuleDefinition]:
    ref = plan_ref(plan)
    return [rule_definition(rule, ref) for rule in plan.rules]


def returns_total(db: Session, transaction: SalesTransaction) -> Decimal:
    """Sum of the RETURN rows linked to a sale, as a positive amount"""
    if transaction.transaction_type != TransactionType.SALE:
        return Decimal("0")
    total = db.query(func.sum(SalesTransaction.amount)).filter(
        SalesTransaction.parent_transaction_id == transaction.id,
        SalesTransaction.transaction_type == TransactionType.RETURN,
    ).scalar()
    return abs(Decimal(str(total))) if total is not None else Decimal("0")


def transaction_input(db: Session, transaction: SalesTransaction) -> TransactionInput:
    return TransactionInput(
        id=transaction.id,
        amount=Decimal(str(transaction.amount)),
        transaction_date=transaction.transaction_date,
        transaction_type=transaction.transaction_type,
        returns_total=returns_total(db, transaction),
        invoice_number=transaction.invoice_number,
    )


def calculation_context(transaction: SalesTransaction) -> CalculationContext:
    """Customer attributes come from the transaction's client, or its project's client"""
    client = transaction.client
    if client is None and transaction.project is not None:
        client = transaction.project.client

    return CalculationContext(
        customer_id=client.id if client is not None else None,
        customer_tier=client.tier if client is not None else None,
        project_id=transaction.project_id,
        territory_id=client.territory_id if client is not None else None,
        product_category_id=transaction.product_category_id,
    )


def applicable_plans(db: Session, organization_id: str, project_id: Optional[str]) -> List[CommissionPlan]:
    """Active organization-wide plans plus the active plans of the transaction's project"""
    scope_filter = CommissionPlan.project_id.is_(None)
    if project_id:
        scope_filter = or_(scope_filter, CommissionPlan.project_id == project_id)

    return db.query(CommissionPlan).filter(
        CommissionPlan.organization_id == organization_id,
        CommissionPlan.is_active == True,
        scope_filter,
    ).order_by(CommissionPlan.id).all()


def candidate_rules(plans: Iterable[CommissionPlan]) -> List[RuleDefinition]:
    rules = []
    for plan in plans:
        rules.extend(plan_rules(plan))
    return rules
