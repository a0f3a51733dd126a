"""
Rule resolution engine.

Pure function over its inputs: no database, no clock, no shared state.
Calling ``evaluate`` twice with the same transaction, context and rules
returns results whose JSON dumps are byte-identical.
"""
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from app.engine.calculator import (
    apply_caps,
    describe_rule,
    money,
    net_amount,
    raw_amount,
    rule_conditions,
    select_basis,
)
from app.engine.enums import RuleType
from app.engine.models import (
    AppliedRule,
    CalculationContext,
    CalculationResult,
    EvaluationResult,
    MatchedRule,
    PlanRef,
    RuleDefinition,
    SelectedRule,
    TransactionInput,
)
from app.engine.precedence import sort_by_precedence
from app.engine.trace import (
    ENGINE_VERSION,
    CalculationDetail,
    CalculationTrace,
    InputSnapshot,
    PlanSnapshot,
    RuleEvaluation,
    TraceOutput,
)
from app.engine.validation import ensure_valid

logger = logging.getLogger(__name__)

_RATE_QUANT = Decimal("0.0001")


class RuleResolutionEngine:
    """Selects and applies commission rules for a transaction.

    Usage:
        engine = RuleResolutionEngine()
        result = engine.evaluate(transaction, context, rules)
        for calculation in result.calculations:
            persist(calculation)
    """

    def __init__(self, engine_version: str = ENGINE_VERSION) -> None:
        self._engine_version = engine_version

    def evaluate(
        self,
        transaction: TransactionInput,
        context: CalculationContext,
        candidate_rules: Iterable[RuleDefinition],
    ) -> EvaluationResult:
        """Evaluate every active plan represented in ``candidate_rules``.

        Plans are independent: each one with a selected rule yields its own
        CalculationResult. Plans are visited in plan id order.

        Raises:
            InvalidRuleConfiguration: a candidate rule cannot be evaluated.
        """
        by_plan: Dict[str, List[RuleDefinition]] = defaultdict(list)
        plans: Dict[str, PlanRef] = {}
        for rule in candidate_rules:
            ensure_valid(rule)
            if not rule.plan.is_active:
                logger.debug(f"Skipping rule {rule.id}: plan {rule.plan.id} is inactive")
                continue
            by_plan[rule.plan.id].append(rule)
            plans.setdefault(rule.plan.id, rule.plan)

        calculations = []
        unmatched = []
        for plan_id in sorted(by_plan):
            result = self.evaluate_plan(transaction, context, plans[plan_id], by_plan[plan_id])
            if result.has_match:
                calculations.append(result)
            else:
                unmatched.append(plan_id)

        if not calculations:
            logger.info(f"No commission rule matched transaction {transaction.id}")

        return EvaluationResult(
            transaction_id=transaction.id,
            calculations=calculations,
            unmatched_plan_ids=unmatched,
        )

    def evaluate_plan(
        self,
        transaction: TransactionInput,
        context: CalculationContext,
        plan: PlanRef,
        rules: Iterable[RuleDefinition],
    ) -> CalculationResult:
        """Select one primary rule within a plan and compute its commission.

        Eligible rules flagged ``stacking`` are added on top of the selected
        rule; they never compete for selection. When nothing is selected
        the result carries ``final_amount=None``.
        """
        rules = [rule for rule in rules if rule.plan.id == plan.id]
        for rule in rules:
            ensure_valid(rule)

        basis_amount = select_basis(transaction, plan.commission_basis)
        ordered = sort_by_precedence(rules)

        conditions = {rule.id: rule_conditions(rule, basis_amount, context) for rule in ordered}
        eligible = [rule for rule in ordered if all(c.passed for c in conditions[rule.id])]

        selected: Optional[RuleDefinition] = next((rule for rule in eligible if not rule.stacking), None)
        stacked = [rule for rule in eligible if rule.stacking] if selected is not None else []
        applied_ids = {rule.id for rule in stacked}
        if selected is not None:
            applied_ids.add(selected.id)

        details: Dict[str, CalculationDetail] = {}
        applied_rules = []
        for rule in ([selected] if selected is not None else []) + stacked:
            detail = self._calculate(rule, plan, basis_amount)
            details[rule.id] = detail
            applied_rules.append(AppliedRule(
                rule_id=rule.id,
                rule_type=rule.rule_type,
                raw_amount=detail.raw_amount,
                final_amount=detail.final_amount,
                cap_applied=detail.cap_applied,
                description=describe_rule(rule),
            ))

        if selected is not None:
            logger.debug(
                f"Plan {plan.id}: selected rule {selected.id} "
                f"({selected.effective_priority.value}) out of {len(eligible)} eligible"
            )

        raw_total = sum((rule.raw_amount for rule in applied_rules), Decimal("0")) if applied_rules else None
        final_total = sum((rule.final_amount for rule in applied_rules), Decimal("0")) if applied_rules else None
        cap_applied = any(rule.cap_applied for rule in applied_rules)

        matched_rules = [
            MatchedRule(
                id=rule.id,
                scope=rule.scope,
                priority=rule.effective_priority,
                selected=selected is not None and rule.id == selected.id,
                stacked=rule.id in applied_ids and not (selected is not None and rule.id == selected.id),
            )
            for rule in eligible
        ]

        trace = CalculationTrace(
            engine_version=self._engine_version,
            plan=PlanSnapshot(
                id=plan.id,
                name=plan.name,
                commission_basis=plan.commission_basis,
                updated_at=plan.updated_at,
            ),
            input=InputSnapshot(
                transaction_id=transaction.id,
                transaction_type=transaction.transaction_type,
                transaction_date=transaction.transaction_date,
                invoice_number=transaction.invoice_number,
                gross_amount=money(transaction.amount),
                returns_total=money(abs(transaction.returns_total)),
                net_amount=money(net_amount(transaction)),
                customer_id=context.customer_id,
                customer_tier=context.customer_tier,
                project_id=context.project_id,
                territory_id=context.territory_id,
                product_category_id=context.product_category_id,
            ),
            rule_trace=[
                RuleEvaluation(
                    rule_id=rule.id,
                    rule_type=rule.rule_type,
                    scope=rule.scope,
                    priority=rule.effective_priority,
                    description=rule.description or describe_rule(rule),
                    conditions=conditions[rule.id],
                    eligible=all(c.passed for c in conditions[rule.id]),
                    selected=selected is not None and rule.id == selected.id,
                    stacked=rule.id in applied_ids and rule is not selected,
                    calculation=details.get(rule.id),
                )
                for rule in ordered
            ],
            output=TraceOutput(
                selected_rule_id=selected.id if selected is not None else None,
                commission_amount=final_total,
                effective_rate=self._effective_rate(final_total, basis_amount),
            ),
        )

        return CalculationResult(
            plan_id=plan.id,
            plan_name=plan.name,
            basis_type=plan.commission_basis,
            basis_amount=basis_amount,
            selected_rule=SelectedRule(
                id=selected.id,
                rule_type=selected.rule_type,
                scope=selected.scope,
                priority=selected.effective_priority,
                percentage=selected.percentage if selected.rule_type == RuleType.PERCENTAGE else None,
                flat_amount=selected.flat_amount if selected.rule_type == RuleType.FLAT_AMOUNT else None,
                description=describe_rule(selected),
            ) if selected is not None else None,
            matched_rules=matched_rules,
            applied_rules=applied_rules,
            raw_amount=raw_total,
            capped_amount=final_total if cap_applied else None,
            cap_applied=cap_applied,
            final_amount=final_total,
            trace=trace,
        )

    @staticmethod
    def _calculate(rule: RuleDefinition, plan: PlanRef, basis_amount: Decimal) -> CalculationDetail:
        raw, portions = raw_amount(rule, basis_amount)
        final, capped = apply_caps(rule, raw)
        return CalculationDetail(
            basis=plan.commission_basis,
            basis_amount=basis_amount,
            rate=rule.percentage if rule.rule_type == RuleType.PERCENTAGE else None,
            flat_amount=rule.flat_amount if rule.rule_type == RuleType.FLAT_AMOUNT else None,
            tiers=portions,
            raw_amount=raw,
            min_cap=rule.min_amount,
            max_cap=rule.max_amount,
            cap_applied=capped,
            final_amount=final,
        )

    @staticmethod
    def _effective_rate(amount: Optional[Decimal], basis_amount: Decimal) -> Optional[Decimal]:
        if amount is None or basis_amount == 0:
            return None
        return (amount / basis_amount * 100).quantize(_RATE_QUANT)


def evaluate(
    transaction: TransactionInput,
    context: CalculationContext,
    candidate_rules: Iterable[RuleDefinition],
) -> EvaluationResult:
    """Module-level shortcut for ``RuleResolutionEngine().evaluate``"""
    return RuleResolutionEngine().evaluate(transaction, context, candidate_rules)
