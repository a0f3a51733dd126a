"""
Per-rule arithmetic: basis selection, scope matching, raw amounts and caps.

All money is Decimal and is quantized to cents with ROUND_HALF_UP.
Negative amounts only arrive through RETURN / ADJUSTMENT transactions and
keep their sign through every step.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from app.engine.enums import CommissionBasis, RuleScope, RuleType, TransactionType
from app.engine.models import CalculationContext, RuleDefinition, TransactionInput
from app.engine.trace import RuleCondition, TierPortion

CENT = Decimal("0.01")
ZERO = Decimal("0")
_HUNDRED = Decimal("100")

_SCOPE_FIELDS = {
    RuleScope.CUSTOMER_TIER: ("customer_tier", "customer_tier"),
    RuleScope.PRODUCT_CATEGORY: ("product_category_id", "product_category_id"),
    RuleScope.TERRITORY: ("territory_id", "territory_id"),
    RuleScope.CUSTOMER_SPECIFIC: ("client_id", "customer_id"),
    RuleScope.PROJECT_SPECIFIC: ("project_id", "project_id"),
}


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def net_amount(transaction: TransactionInput) -> Decimal:
    """Gross minus linked returns, never below zero for sales"""
    if transaction.transaction_type != TransactionType.SALE:
        return transaction.amount
    return max(ZERO, transaction.amount - abs(transaction.returns_total))


def select_basis(transaction: TransactionInput, basis: CommissionBasis) -> Decimal:
    if basis == CommissionBasis.NET_SALES:
        return money(net_amount(transaction))
    return money(transaction.amount)


def _text(value) -> Optional[str]:
    if value is None:
        return None
    return value.value if hasattr(value, "value") else str(value)


def rule_conditions(
    rule: RuleDefinition,
    basis_amount: Decimal,
    context: CalculationContext,
) -> List[RuleCondition]:
    """Evaluate every gate of a rule against the transaction.

    Sale-range gates compare the magnitude of the basis so a return is
    reversed by the same rule that paid the original sale.
    """
    conditions = []
    sale_amount = abs(basis_amount)

    if rule.min_sale_amount is not None:
        conditions.append(RuleCondition(
            field="sale_amount",
            operator="greater_than_or_equal",
            expected=str(rule.min_sale_amount),
            actual=str(sale_amount),
            passed=sale_amount >= rule.min_sale_amount,
        ))

    if rule.max_sale_amount is not None:
        conditions.append(RuleCondition(
            field="sale_amount",
            operator="less_than_or_equal",
            expected=str(rule.max_sale_amount),
            actual=str(sale_amount),
            passed=sale_amount <= rule.max_sale_amount,
        ))

    if rule.scope == RuleScope.GLOBAL:
        conditions.append(RuleCondition(
            field="scope",
            operator="equals",
            expected=RuleScope.GLOBAL.value,
            actual=RuleScope.GLOBAL.value,
            passed=True,
        ))
    else:
        rule_field, context_field = _SCOPE_FIELDS[rule.scope]
        expected = getattr(rule, rule_field)
        actual = getattr(context, context_field)
        conditions.append(RuleCondition(
            field=context_field,
            operator="equals",
            expected=_text(expected),
            actual=_text(actual),
            passed=expected is not None and expected == actual,
        ))

    return conditions


def tiered_amount(rule: RuleDefinition, basis_amount: Decimal) -> Tuple[Decimal, List[TierPortion]]:
    """Marginal calculation: each band only taxes the slice of the basis inside it.

    Bands run from their threshold to the next band's threshold; the last
    band is open ended. A negative basis is computed on its magnitude and
    the sign restored.
    """
    sign = -1 if basis_amount < 0 else 1
    remaining_basis = abs(basis_amount)
    portions = []
    total = ZERO

    bands = list(rule.tiers)
    for index, band in enumerate(bands):
        ceiling = bands[index + 1].threshold if index + 1 < len(bands) else None
        if remaining_basis <= band.threshold:
            break
        upper = remaining_basis if ceiling is None else min(remaining_basis, ceiling)
        portion = upper - band.threshold
        exact = portion * band.percentage / _HUNDRED
        portions.append(TierPortion(
            threshold=band.threshold,
            ceiling=ceiling,
            percentage=band.percentage,
            portion=money(portion * sign),
            amount=money(exact) * sign,
        ))
        total += exact

    # Bands are rounded for the trace only; the total is rounded once
    return money(total) * sign, portions


def raw_amount(rule: RuleDefinition, basis_amount: Decimal) -> Tuple[Decimal, List[TierPortion]]:
    if rule.rule_type == RuleType.PERCENTAGE:
        return money(basis_amount * rule.percentage / _HUNDRED), []
    if rule.rule_type == RuleType.FLAT_AMOUNT:
        flat = money(rule.flat_amount)
        return (-flat if basis_amount < 0 else flat), []
    return tiered_amount(rule, basis_amount)


def apply_caps(rule: RuleDefinition, amount: Decimal) -> Tuple[Decimal, bool]:
    """Clamp the commission magnitude into [min_amount, max_amount].

    A zero commission stays zero: caps never manufacture a payout out of a
    zero basis.
    """
    if amount == 0:
        return amount, False

    sign = -1 if amount < 0 else 1
    magnitude = abs(amount)
    capped = magnitude
    if rule.min_amount is not None and capped < rule.min_amount:
        capped = rule.min_amount
    if rule.max_amount is not None and capped > rule.max_amount:
        capped = rule.max_amount

    capped = money(capped)
    return capped * sign, capped != magnitude


def describe_rule(rule) -> str:
    """Human readable label used in traces and the precedence listing"""
    range_text = ""
    if rule.min_sale_amount is not None and rule.max_sale_amount is not None:
        range_text = f" (sales ${rule.min_sale_amount:,.0f}-${rule.max_sale_amount:,.0f})"
    elif rule.min_sale_amount is not None:
        range_text = f" (sales ${rule.min_sale_amount:,.0f}+)"
    elif rule.max_sale_amount is not None:
        range_text = f" (sales up to ${rule.max_sale_amount:,.0f})"

    rule_type = RuleType(rule.rule_type)
    if rule_type == RuleType.PERCENTAGE:
        text = f"{_plain(rule.percentage)}% of sale"
    elif rule_type == RuleType.FLAT_AMOUNT:
        text = f"${rule.flat_amount:,.2f} per sale"
    else:
        bands = ", ".join(f"{_plain(band.percentage)}% from ${band.threshold:,.0f}" for band in rule.tiers)
        text = f"Tiered: {bands}"

    return text + range_text


def _plain(value: Decimal) -> str:
    """Render 10.00 as 10 and 7.50 as 7.5"""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
