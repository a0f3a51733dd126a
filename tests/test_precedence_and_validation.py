"""
Tests for rule ordering, conflict detection, structural validation and labels.
"""

from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.core.exceptions import InvalidRuleConfiguration
from app.engine.calculator import describe_rule
from app.engine.enums import CustomerTier, RulePriority, RuleScope, RuleType
from app.engine.models import TierBand
from app.engine.precedence import assign_priority_from_scope, detect_rule_conflicts, sort_by_precedence
from app.engine.validation import ensure_valid, validate_rule


def _rule(rule_id, scope=RuleScope.GLOBAL, priority=None, created_at=datetime(2024, 1, 1), **kwargs) -> SimpleNamespace:
    values = {
        "id": rule_id,
        "rule_type": RuleType.PERCENTAGE,
        "scope": scope,
        "priority": priority,
        "percentage": Decimal("10"),
        "flat_amount": None,
        "tiers": (),
        "min_sale_amount": None,
        "max_sale_amount": None,
        "min_amount": None,
        "max_amount": None,
        "customer_tier": None,
        "product_category_id": None,
        "territory_id": None,
        "client_id": None,
        "project_id": None,
        "stacking": False,
        "description": None,
        "created_at": created_at,
    }
    values.update(kwargs)
    return SimpleNamespace(**values)


class TestPriority:
    @pytest.mark.parametrize("scope, priority", [
        (RuleScope.GLOBAL, RulePriority.DEFAULT),
        (RuleScope.CUSTOMER_TIER, RulePriority.CUSTOMER_TIER),
        (RuleScope.TERRITORY, RulePriority.TERRITORY),
        (RuleScope.PRODUCT_CATEGORY, RulePriority.PRODUCT_CATEGORY),
        (RuleScope.CUSTOMER_SPECIFIC, RulePriority.CUSTOMER_SPECIFIC),
        (RuleScope.PROJECT_SPECIFIC, RulePriority.PROJECT_SPECIFIC),
    ])
    def test_priority_follows_scope(self, scope: RuleScope, priority: RulePriority) -> None:
        assert assign_priority_from_scope(scope) == priority

    def test_priorities_compare_by_rank(self) -> None:
        assert RulePriority.PROJECT_SPECIFIC > RulePriority.CUSTOMER_SPECIFIC
        assert RulePriority.TERRITORY > RulePriority.CUSTOMER_TIER
        assert RulePriority.DEFAULT < RulePriority.CUSTOMER_TIER
        assert max(RulePriority) == RulePriority.PROJECT_SPECIFIC


class TestSortByPrecedence:
    def test_explicit_priority_outranks_scope(self) -> None:
        promoted = _rule("promoted", priority=RulePriority.PROJECT_SPECIFIC)
        customer = _rule("customer", scope=RuleScope.CUSTOMER_SPECIFIC, client_id="client-1")

        assert [rule.id for rule in sort_by_precedence([customer, promoted])] == ["promoted", "customer"]

    def test_scope_specificity_breaks_priority_ties(self) -> None:
        broad = _rule("broad", priority=RulePriority.CUSTOMER_TIER)
        tiered = _rule("tiered", scope=RuleScope.CUSTOMER_TIER, customer_tier=CustomerTier.VIP)

        assert [rule.id for rule in sort_by_precedence([broad, tiered])] == ["tiered", "broad"]

    def test_newest_first_then_undated(self) -> None:
        rules = [
            _rule("undated", created_at=None),
            _rule("older", created_at=datetime(2024, 1, 1)),
            _rule("newer", created_at=datetime(2024, 6, 1)),
        ]

        assert [rule.id for rule in sort_by_precedence(rules)] == ["newer", "older", "undated"]

    def test_id_is_the_final_tie_breaker(self) -> None:
        rules = [_rule("rule-c"), _rule("rule-a"), _rule("rule-b")]

        assert [rule.id for rule in sort_by_precedence(rules)] == ["rule-a", "rule-b", "rule-c"]


class TestConflicts:
    def test_same_scope_and_filters_conflict(self) -> None:
        existing = [_rule("existing", scope=RuleScope.CUSTOMER_TIER, customer_tier=CustomerTier.VIP)]
        new_rule = _rule("new", scope=RuleScope.CUSTOMER_TIER, customer_tier=CustomerTier.VIP)

        conflicts = detect_rule_conflicts(new_rule, existing)

        assert [conflict["rule_id"] for conflict in conflicts] == ["existing"]

    def test_different_filter_does_not_conflict(self) -> None:
        existing = [_rule("existing", scope=RuleScope.CUSTOMER_TIER, customer_tier=CustomerTier.VIP)]
        new_rule = _rule("new", scope=RuleScope.CUSTOMER_TIER, customer_tier=CustomerTier.NEW)

        assert detect_rule_conflicts(new_rule, existing) == []

    def test_disjoint_sale_ranges_do_not_conflict(self) -> None:
        existing = [_rule("small", max_sale_amount=Decimal("1000"))]
        new_rule = _rule("large", min_sale_amount=Decimal("5000"))

        assert detect_rule_conflicts(new_rule, existing) == []

    def test_stacking_rules_never_conflict(self) -> None:
        existing = [_rule("base")]
        new_rule = _rule("bonus", stacking=True)

        assert detect_rule_conflicts(new_rule, existing) == []

    def test_rule_does_not_conflict_with_itself(self) -> None:
        existing = [_rule("same")]

        assert detect_rule_conflicts(_rule("same"), existing, exclude_id="same") == []


class TestValidation:
    def test_valid_rule(self) -> None:
        assert validate_rule(_rule("ok")) == []

    @pytest.mark.parametrize("percentage", [Decimal("0"), Decimal("-5"), Decimal("100.5")])
    def test_percentage_out_of_range(self, percentage: Decimal) -> None:
        errors = validate_rule(_rule("bad", percentage=percentage))
        assert [error["field"] for error in errors] == ["percentage"]

    def test_flat_amount_required(self) -> None:
        errors = validate_rule(_rule("bad", rule_type=RuleType.FLAT_AMOUNT, percentage=None))
        assert [error["field"] for error in errors] == ["flat_amount"]

    def test_tiered_requires_bands(self) -> None:
        errors = validate_rule(_rule("bad", rule_type=RuleType.TIERED, percentage=None))
        assert [error["field"] for error in errors] == ["tiers"]

    def test_duplicate_tier_threshold(self) -> None:
        tiers = (
            TierBand(threshold=Decimal("0"), percentage=Decimal("5")),
            TierBand(threshold=Decimal("0"), percentage=Decimal("7")),
        )
        errors = validate_rule(_rule("bad", rule_type=RuleType.TIERED, percentage=None, tiers=tiers))
        assert [error["field"] for error in errors] == ["tiers.1.threshold"]

    def test_sale_range_out_of_order(self) -> None:
        errors = validate_rule(_rule("bad", min_sale_amount=Decimal("5000"), max_sale_amount=Decimal("1000")))
        assert [error["field"] for error in errors] == ["max_sale_amount"]

    def test_negative_cap(self) -> None:
        errors = validate_rule(_rule("bad", max_amount=Decimal("-1")))
        assert [error["field"] for error in errors] == ["max_amount"]

    def test_stray_filter_only_rejected_in_strict_mode(self) -> None:
        rule = _rule("loose", customer_tier=CustomerTier.VIP)

        assert validate_rule(rule) == []
        assert [error["field"] for error in validate_rule(rule, strict=True)] == ["customer_tier"]

    def test_ensure_valid_raises(self) -> None:
        with pytest.raises(InvalidRuleConfiguration) as exc_info:
            ensure_valid(_rule("bad", scope=RuleScope.PROJECT_SPECIFIC))

        assert exc_info.value.details["rule_id"] == "bad"
        assert exc_info.value.errors == [
            {"field": "project_id", "message": "project_id is required for PROJECT_SPECIFIC scope"}
        ]


class TestDescribeRule:
    def test_percentage_with_range(self) -> None:
        rule = _rule("r", min_sale_amount=Decimal("0"), max_sale_amount=Decimal("10000"))
        assert describe_rule(rule) == "10% of sale (sales $0-$10,000)"

    def test_fractional_percentage_with_open_range(self) -> None:
        rule = _rule("r", percentage=Decimal("7.50"), min_sale_amount=Decimal("50000"))
        assert describe_rule(rule) == "7.5% of sale (sales $50,000+)"

    def test_flat(self) -> None:
        rule = _rule("r", rule_type=RuleType.FLAT_AMOUNT, percentage=None, flat_amount=Decimal("500"))
        assert describe_rule(rule) == "$500.00 per sale"

    def test_tiered(self) -> None:
        tiers = (
            TierBand(threshold=Decimal("0"), percentage=Decimal("5")),
            TierBand(threshold=Decimal("10000"), percentage=Decimal("7")),
        )
        rule = _rule("r", rule_type=RuleType.TIERED, percentage=None, tiers=tiers, max_sale_amount=Decimal("20000"))
        assert describe_rule(rule) == "Tiered: 5% from $0, 7% from $10,000 (sales up to $20,000)"
