"""Structural checks for commission rules, shared by authoring and evaluation."""
from decimal import Decimal
from typing import Dict, List

from app.core.exceptions import InvalidRuleConfiguration
from app.engine.enums import RuleScope, RuleType

_REQUIRED_FILTER = {
    RuleScope.CUSTOMER_TIER: "customer_tier",
    RuleScope.PRODUCT_CATEGORY: "product_category_id",
    RuleScope.TERRITORY: "territory_id",
    RuleScope.CUSTOMER_SPECIFIC: "client_id",
    RuleScope.PROJECT_SPECIFIC: "project_id",
}

_HUNDRED = Decimal("100")


def validate_rule(rule, strict: bool = False) -> List[Dict[str, str]]:
    """Return field errors for a rule-shaped object.

    ``strict`` additionally rejects scope filters set on a scope that
    ignores them. The engine tolerates those; the authoring API does not.
    """
    errors: List[Dict[str, str]] = []

    def error(field: str, message: str) -> None:
        errors.append({"field": field, "message": message})

    try:
        rule_type = RuleType(rule.rule_type)
    except ValueError:
        error("rule_type", f"Unsupported rule type {rule.rule_type!r}")
        rule_type = None

    if rule_type == RuleType.PERCENTAGE:
        if rule.percentage is None:
            error("percentage", "Percentage is required for PERCENTAGE rules")
        elif not (0 < rule.percentage <= _HUNDRED):
            error("percentage", "Percentage must be greater than 0 and at most 100")

    elif rule_type == RuleType.FLAT_AMOUNT:
        if rule.flat_amount is None:
            error("flat_amount", "Flat amount is required for FLAT_AMOUNT rules")
        elif rule.flat_amount <= 0:
            error("flat_amount", "Flat amount must be greater than 0")

    elif rule_type == RuleType.TIERED:
        tiers = list(rule.tiers or ())
        if not tiers:
            error("tiers", "At least one tier is required for TIERED rules")
        previous = None
        for index, band in enumerate(tiers):
            if band.threshold < 0:
                error(f"tiers.{index}.threshold", "Tier threshold cannot be negative")
            if not (0 <= band.percentage <= _HUNDRED):
                error(f"tiers.{index}.percentage", "Tier percentage must be between 0 and 100")
            if previous is not None and band.threshold <= previous:
                error(f"tiers.{index}.threshold", "Tier thresholds must be strictly ascending")
            previous = band.threshold

    for field in ("min_sale_amount", "max_sale_amount", "min_amount", "max_amount"):
        value = getattr(rule, field)
        if value is not None and value < 0:
            error(field, "Amount cannot be negative")

    if rule.min_amount is not None and rule.max_amount is not None and rule.min_amount > rule.max_amount:
        error("max_amount", "Maximum commission must not be lower than minimum commission")

    if (
        rule.min_sale_amount is not None
        and rule.max_sale_amount is not None
        and rule.min_sale_amount > rule.max_sale_amount
    ):
        error("max_sale_amount", "Maximum sale amount must not be lower than minimum sale amount")

    try:
        scope = RuleScope(rule.scope)
    except ValueError:
        error("scope", f"Unsupported scope {rule.scope!r}")
        return errors

    required = _REQUIRED_FILTER.get(scope)
    if required and not getattr(rule, required, None):
        error(required, f"{required} is required for {scope.value} scope")

    if strict:
        for other_scope, field in _REQUIRED_FILTER.items():
            if other_scope != scope and getattr(rule, field, None):
                error(field, f"{field} should only be set for {other_scope.value} scope")

    return errors


def ensure_valid(rule) -> None:
    """Raise InvalidRuleConfiguration when a rule cannot be evaluated"""
    errors = validate_rule(rule)
    if errors:
        raise InvalidRuleConfiguration(getattr(rule, "id", None), errors)
