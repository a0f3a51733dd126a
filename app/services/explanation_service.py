import logging
from decimal import Decimal
from typing import List

from sqlalchemy.orm import Session

from app.core.exceptions import AuthorizationError, ValidationError
from app.core.tenant import RequestContext
from app.engine.calculator import money
from app.engine.enums import CommissionBasis, RuleType
from app.engine.trace import CalculationTrace, RuleEvaluation, TRACE_SCHEMA_VERSION, detect_trace_version
from app.services.commission_service import CommissionService

logger = logging.getLogger(__name__)

_BASIS_LABELS = {
    CommissionBasis.GROSS_REVENUE: "Gross revenue",
    CommissionBasis.NET_SALES: "Net sales",
}


def _plain(value: Decimal) -> str:
    text = format(value, "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


def _steps(evaluation: RuleEvaluation) -> List[str]:
    detail = evaluation.calculation
    steps = [f"{_BASIS_LABELS[detail.basis]} basis: ${detail.basis_amount:,.2f}"]

    if evaluation.rule_type == RuleType.PERCENTAGE and detail.rate is not None:
        steps.append(f"{_plain(detail.rate)}% x ${detail.basis_amount:,.2f} = ${detail.raw_amount:,.2f}")
    elif evaluation.rule_type == RuleType.FLAT_AMOUNT and detail.flat_amount is not None:
        steps.append(f"Flat ${detail.flat_amount:,.2f} per sale = ${detail.raw_amount:,.2f}")
    elif evaluation.rule_type == RuleType.TIERED and detail.tiers:
        for portion in detail.tiers:
            steps.append(
                f"{_plain(portion.percentage)}% of ${portion.portion:,.2f} "
                f"(from ${portion.threshold:,.0f}) = ${portion.amount:,.2f}"
            )
        steps.append(f"Tier total = ${detail.raw_amount:,.2f}")
    else:
        # Migrated traces may only carry the amounts
        steps.append(f"Calculated amount = ${detail.raw_amount:,.2f}")

    if detail.cap_applied:
        bounds = []
        if detail.min_cap is not None:
            bounds.append(f"min ${detail.min_cap:,.2f}")
        if detail.max_cap is not None:
            bounds.append(f"max ${detail.max_cap:,.2f}")
        steps.append(f"Capped to ${detail.final_amount:,.2f} ({', '.join(bounds)})")

    return steps


def _explain_rule(evaluation: RuleEvaluation) -> dict:
    detail = evaluation.calculation
    return {
        "description": evaluation.description or "Commission rule",
        "rule_type": evaluation.rule_type,
        "rate": detail.rate,
        "flat_amount": detail.flat_amount,
        "basis_type": detail.basis,
        "basis_amount": detail.basis_amount,
        "raw_amount": detail.raw_amount,
        "final_amount": detail.final_amount,
        "cap_applied": detail.cap_applied,
        "steps": _steps(evaluation),
    }


def _rejected_rules(trace: CalculationTrace) -> List[dict]:
    rejected = []
    for evaluation in trace.rule_trace:
        if evaluation.selected or evaluation.stacked:
            continue
        if evaluation.eligible:
            reasons = ["Outranked by a higher precedence rule"]
        else:
            reasons = [
                f"{condition.field} {condition.operator} {condition.expected} (was {condition.actual})"
                for condition in evaluation.conditions
                if not condition.passed
            ]
        rejected.append({
            "rule_id": evaluation.rule_id,
            "description": evaluation.description,
            "priority": evaluation.priority.value,
            "reasons": reasons,
        })
    return rejected


class ExplanationService:
    @staticmethod
    def explain(db: Session, context: RequestContext, calculation_id: str) -> dict:
        """Explain how a commission was computed.

        Salespeople see only their own commissions and get the summary view;
        administrators also get the full trace and why other rules lost.
        Legacy traces must be migrated first.
        """
        calculation = CommissionService.get_calculation(db, context.organization_id, calculation_id)
        if not context.is_admin and calculation.user_id != context.user_id:
            raise AuthorizationError("You can only view your own commissions")

        blob = calculation.trace or {}
        try:
            version = detect_trace_version(blob)
        except ValueError as exc:
            raise ValidationError(
                "Calculation trace is unreadable",
                details={"calculation_id": calculation.id}
            ) from exc
        if version != TRACE_SCHEMA_VERSION:
            raise ValidationError(
                f"Calculation trace uses legacy format v{version}, run the trace migration first",
                details={"calculation_id": calculation.id, "trace_version": version}
            )

        trace = CalculationTrace.model_validate(blob)
        transaction = calculation.sales_transaction
        project = transaction.project
        client = transaction.client or (project.client if project is not None else None)

        amount = money(Decimal(str(calculation.amount)))
        sale_amount = money(Decimal(str(transaction.amount)))
        adjustments = list(calculation.adjustments)
        adjustments_total = sum((Decimal(str(item.amount)) for item in adjustments), Decimal("0.00"))

        selected = trace.selected
        explanation = {
            "calculation_id": calculation.id,
            "summary": {
                "commission_amount": amount,
                "effective_rate": (amount / sale_amount * 100).quantize(Decimal("0.01")) if sale_amount else None,
                "sale_amount": sale_amount,
                "plan_name": calculation.commission_plan.name,
                "calculated_at": calculation.calculated_at,
                "status": calculation.status,
            },
            "transaction": {
                "id": transaction.id,
                "amount": sale_amount,
                "transaction_type": transaction.transaction_type,
                "transaction_date": transaction.transaction_date,
                "invoice_number": transaction.invoice_number,
                "description": transaction.description,
                "client_name": client.name if client is not None else None,
                "project_name": project.name if project is not None else None,
            },
            "applied_rule": _explain_rule(selected) if selected is not None and selected.calculation else None,
            "stacked_rules": [
                _explain_rule(evaluation)
                for evaluation in trace.rule_trace
                if evaluation.stacked and evaluation.calculation
            ],
            "adjustments": [
                {
                    "id": item.id,
                    "type": item.type,
                    "amount": item.amount,
                    "reason": item.reason,
                    "related_transaction_id": item.related_transaction_id,
                    "applied_at": item.applied_at,
                    "applied_by": item.applied_by if context.is_admin else None,
                }
                for item in adjustments
            ],
            "adjustments_total": adjustments_total,
            "net_amount": amount + adjustments_total,
            "admin_details": None,
        }

        if context.is_admin:
            explanation["admin_details"] = {
                "engine_version": trace.engine_version,
                "migrated_from": trace.migrated_from,
                "rejected_rules": _rejected_rules(trace),
                "trace": blob,
            }

        return explanation
