"""
Calculation trace schema.

The trace is persisted with every CommissionCalculation and drives the
"explain this commission" views. There is exactly one current shape
(``schema_version`` 2). Blobs written by earlier releases are converted
with :func:`upgrade_trace` before anything reads them.
"""
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from app.engine.enums import (
    CommissionBasis,
    CustomerTier,
    RulePriority,
    RuleScope,
    RuleType,
    TransactionType,
)
from app.engine.precedence import assign_priority_from_scope

ENGINE_VERSION = "2.0.0"
TRACE_SCHEMA_VERSION = 2


class TraceModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class PlanSnapshot(TraceModel):
    id: str
    name: Optional[str] = None
    commission_basis: CommissionBasis = CommissionBasis.GROSS_REVENUE
    updated_at: Optional[datetime] = None


class InputSnapshot(TraceModel):
    transaction_id: Optional[str] = None
    transaction_type: TransactionType = TransactionType.SALE
    transaction_date: Optional[date] = None
    invoice_number: Optional[str] = None
    gross_amount: Decimal
    returns_total: Decimal = Decimal("0")
    net_amount: Decimal
    customer_id: Optional[str] = None
    customer_tier: Optional[CustomerTier] = None
    project_id: Optional[str] = None
    territory_id: Optional[str] = None
    product_category_id: Optional[str] = None


class RuleCondition(TraceModel):
    field: str
    operator: str
    expected: Optional[str] = None
    actual: Optional[str] = None
    passed: bool


class TierPortion(TraceModel):
    threshold: Decimal
    ceiling: Optional[Decimal] = None
    percentage: Decimal
    portion: Decimal
    amount: Decimal


class CalculationDetail(TraceModel):
    basis: CommissionBasis
    basis_amount: Decimal
    rate: Optional[Decimal] = None
    flat_amount: Optional[Decimal] = None
    tiers: List[TierPortion] = []
    raw_amount: Decimal
    min_cap: Optional[Decimal] = None
    max_cap: Optional[Decimal] = None
    cap_applied: bool = False
    final_amount: Decimal


class RuleEvaluation(TraceModel):
    rule_id: str
    rule_type: RuleType
    scope: RuleScope
    priority: RulePriority
    description: Optional[str] = None
    conditions: List[RuleCondition] = []
    eligible: bool
    selected: bool = False
    stacked: bool = False
    calculation: Optional[CalculationDetail] = None


class TraceOutput(TraceModel):
    selected_rule_id: Optional[str] = None
    commission_amount: Optional[Decimal] = None
    effective_rate: Optional[Decimal] = None


class CalculationTrace(TraceModel):
    schema_version: Literal[2] = TRACE_SCHEMA_VERSION
    engine_version: str = ENGINE_VERSION
    plan: PlanSnapshot
    input: InputSnapshot
    rule_trace: List[RuleEvaluation] = []
    output: TraceOutput
    migrated_from: Optional[int] = None

    @property
    def selected(self) -> Optional[RuleEvaluation]:
        for evaluation in self.rule_trace:
            if evaluation.selected:
                return evaluation
        return None


# Legacy formats

def detect_trace_version(blob: Dict[str, Any]) -> int:
    """Return the schema version of a stored trace blob.

    0: flat metadata written at transaction creation / backfill
       (``basis``, ``basisAmount``, ``selectedRule``, ``matchedRules``).
    1: camelCase trace with ``engineVersion`` and ``ruleTrace``.
    2: current schema.
    """
    if blob.get("schema_version") == TRACE_SCHEMA_VERSION:
        return 2
    if "engineVersion" in blob and "ruleTrace" in blob:
        return 1
    if "basis" in blob and "basisAmount" in blob:
        return 0
    raise ValueError("Unrecognized commission trace format")


def upgrade_trace(
    blob: Dict[str, Any],
    plan_id: Optional[str] = None,
    plan_name: Optional[str] = None,
    amount: Optional[Decimal] = None,
    transaction_id: Optional[str] = None,
) -> CalculationTrace:
    """Convert any stored trace blob to the current schema.

    ``plan_id``, ``plan_name``, ``amount`` and ``transaction_id`` come from
    the owning calculation row and fill in what the oldest format never
    recorded.
    """
    version = detect_trace_version(blob)
    if version == 2:
        return CalculationTrace.model_validate(blob)
    if version == 1:
        return _upgrade_v1(blob)
    return _upgrade_v0(blob, plan_id, plan_name, amount, transaction_id)


def _decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None:
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _priority(value: Any, scope: RuleScope) -> RulePriority:
    if value:
        return RulePriority(value)
    return assign_priority_from_scope(scope)


def _upgrade_v1(blob: Dict[str, Any]) -> CalculationTrace:
    plan = blob.get("planVersion") or {}
    snapshot = blob.get("inputSnapshot") or {}
    client = snapshot.get("client") or {}
    gross = _decimal(snapshot.get("grossAmount"), Decimal("0"))
    net = _decimal(snapshot.get("netAmount"), gross)
    output = blob.get("output") or {}

    evaluations = []
    for item in blob.get("ruleTrace") or []:
        scope = RuleScope(item.get("scope") or RuleScope.GLOBAL.value)
        calculation = item.get("calculation")
        detail = None
        if calculation:
            detail = CalculationDetail(
                basis=CommissionBasis(calculation.get("basis") or plan.get("commissionBasis") or "GROSS_REVENUE"),
                basis_amount=_decimal(calculation.get("basisAmount"), Decimal("0")),
                rate=_decimal(calculation.get("rate")),
                flat_amount=_decimal(calculation.get("flatAmount")),
                raw_amount=_decimal(calculation.get("rawAmount"), Decimal("0")),
                min_cap=_decimal(calculation.get("minCap")),
                max_cap=_decimal(calculation.get("maxCap")),
                cap_applied=_decimal(calculation.get("rawAmount")) != _decimal(calculation.get("finalAmount")),
                final_amount=_decimal(calculation.get("finalAmount"), Decimal("0")),
            )
        evaluations.append(RuleEvaluation(
            rule_id=item["ruleId"],
            rule_type=RuleType(item.get("ruleType") or RuleType.PERCENTAGE.value),
            scope=scope,
            priority=_priority(item.get("priority"), scope),
            description=item.get("description"),
            conditions=[
                RuleCondition(
                    field=condition.get("field", ""),
                    operator=condition.get("operator", "equals"),
                    expected=_text(condition.get("expected")),
                    actual=_text(condition.get("actual")),
                    passed=bool(condition.get("passed")),
                )
                for condition in item.get("conditions") or []
            ],
            eligible=bool(item.get("eligible")),
            selected=bool(item.get("selected")),
            calculation=detail,
        ))

    effective_rate = _decimal(output.get("effectiveRate"))
    return CalculationTrace(
        engine_version=blob.get("engineVersion") or ENGINE_VERSION,
        plan=PlanSnapshot(
            id=plan.get("id") or "unknown",
            name=plan.get("name"),
            commission_basis=CommissionBasis(plan.get("commissionBasis") or "GROSS_REVENUE"),
            updated_at=plan.get("updatedAt"),
        ),
        input=InputSnapshot(
            transaction_id=snapshot.get("transactionId"),
            transaction_type=TransactionType(snapshot.get("transactionType") or "SALE"),
            transaction_date=_date(snapshot.get("transactionDate")),
            invoice_number=snapshot.get("invoiceNumber"),
            gross_amount=gross,
            returns_total=gross - net if gross >= net else Decimal("0"),
            net_amount=net,
            customer_id=client.get("id"),
            customer_tier=client.get("tier"),
            project_id=(snapshot.get("project") or {}).get("id"),
            territory_id=(snapshot.get("territory") or {}).get("id"),
            product_category_id=(snapshot.get("productCategory") or {}).get("id"),
        ),
        rule_trace=evaluations,
        output=TraceOutput(
            selected_rule_id=output.get("selectedRuleId"),
            commission_amount=_decimal(output.get("commissionAmount")),
            effective_rate=effective_rate.quantize(Decimal("0.0001")) if effective_rate is not None else None,
        ),
        migrated_from=1,
    )


def _upgrade_v0(
    blob: Dict[str, Any],
    plan_id: Optional[str],
    plan_name: Optional[str],
    amount: Optional[Decimal],
    transaction_id: Optional[str],
) -> CalculationTrace:
    basis = CommissionBasis(blob.get("basis") or "GROSS_REVENUE")
    basis_amount = _decimal(blob.get("basisAmount"), Decimal("0"))
    gross = _decimal(blob.get("grossAmount"), basis_amount)
    net = _decimal(blob.get("netAmount"), gross)
    context = blob.get("context") or {}
    selected = blob.get("selectedRule") or {}
    applied = {item.get("ruleId"): item for item in blob.get("appliedRules") or []}

    commission = amount
    if commission is None and applied:
        commission = sum((_decimal(item.get("calculatedAmount"), Decimal("0")) for item in applied.values()), Decimal("0"))

    evaluations = []
    for matched in blob.get("matchedRules") or []:
        scope = RuleScope(matched.get("scope") or RuleScope.GLOBAL.value)
        applied_rule = applied.get(matched.get("id"))
        detail = None
        if applied_rule is not None:
            final = _decimal(applied_rule.get("calculatedAmount"), Decimal("0"))
            detail = CalculationDetail(
                basis=basis,
                basis_amount=basis_amount,
                raw_amount=final,
                final_amount=final,
            )
        evaluations.append(RuleEvaluation(
            rule_id=matched["id"],
            rule_type=RuleType((applied_rule or {}).get("ruleType") or RuleType.PERCENTAGE.value),
            scope=scope,
            priority=_priority(matched.get("priority"), scope),
            description=selected.get("description") if matched.get("selected") else None,
            eligible=True,
            selected=bool(matched.get("selected")),
            calculation=detail,
        ))

    effective_rate = None
    if commission is not None and basis_amount:
        effective_rate = (commission / basis_amount * 100).quantize(Decimal("0.0001"))

    return CalculationTrace(
        engine_version="0",
        plan=PlanSnapshot(id=plan_id or "unknown", name=plan_name, commission_basis=basis),
        input=InputSnapshot(
            transaction_id=transaction_id,
            gross_amount=gross,
            returns_total=gross - net if gross >= net else Decimal("0"),
            net_amount=net,
            customer_id=context.get("customerId"),
            customer_tier=context.get("customerTier"),
            project_id=context.get("projectId"),
            territory_id=context.get("territoryId"),
            product_category_id=context.get("productCategoryId"),
        ),
        rule_trace=evaluations,
        output=TraceOutput(
            selected_rule_id=selected.get("id"),
            commission_amount=commission,
            effective_rate=effective_rate,
        ),
        migrated_from=0,
    )


def _date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
