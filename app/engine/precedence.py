"""
Rule precedence.

Within one plan exactly one primary rule is selected. Candidates are
ordered by, in turn:

1. priority rank (PROJECT_SPECIFIC > CUSTOMER_SPECIFIC > PRODUCT_CATEGORY
   > TERRITORY > CUSTOMER_TIER > DEFAULT)
2. scope specificity (same ladder, GLOBAL lowest)
3. creation time, newest first; rules without a timestamp sort last
4. rule id, ascending

The last key makes the order total, so evaluation never depends on the
order the caller happened to load rules in.
"""
from datetime import timezone
from typing import Iterable, List, Optional, Sequence

from app.engine.enums import RulePriority, RuleScope

_SCOPE_TO_PRIORITY = {
    RuleScope.GLOBAL: RulePriority.DEFAULT,
    RuleScope.CUSTOMER_TIER: RulePriority.CUSTOMER_TIER,
    RuleScope.PRODUCT_CATEGORY: RulePriority.PRODUCT_CATEGORY,
    RuleScope.TERRITORY: RulePriority.TERRITORY,
    RuleScope.CUSTOMER_SPECIFIC: RulePriority.CUSTOMER_SPECIFIC,
    RuleScope.PROJECT_SPECIFIC: RulePriority.PROJECT_SPECIFIC,
}

_SCOPE_FILTERS = ("customer_tier", "product_category_id", "territory_id", "client_id", "project_id")


def assign_priority_from_scope(scope: RuleScope) -> RulePriority:
    return _SCOPE_TO_PRIORITY[RuleScope(scope)]


def _effective_priority(rule) -> RulePriority:
    return rule.priority or assign_priority_from_scope(rule.scope)


def _created_key(rule) -> float:
    created_at = getattr(rule, "created_at", None)
    if created_at is None:
        return float("-inf")
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at.timestamp()


def sort_by_precedence(rules: Iterable) -> List:
    """Return rules highest precedence first"""
    ordered = sorted(rules, key=lambda rule: str(rule.id))
    ordered.sort(key=_created_key, reverse=True)
    ordered.sort(
        key=lambda rule: (_effective_priority(rule).rank, RuleScope(rule.scope).specificity),
        reverse=True,
    )
    return ordered


def detect_rule_conflicts(new_rule, existing_rules: Sequence, exclude_id: Optional[str] = None) -> List[dict]:
    """Find rules in the same plan that compete with ``new_rule`` on equal footing.

    Two primary rules with the same scope, filters and effective priority
    are only separated by creation time. That is legal, but it is almost
    always an authoring mistake, so callers surface it as a warning.
    """
    conflicts = []
    new_priority = _effective_priority(new_rule)
    for existing in existing_rules:
        if exclude_id is not None and existing.id == exclude_id:
            continue
        if getattr(existing, "stacking", False) or getattr(new_rule, "stacking", False):
            continue
        if RuleScope(existing.scope) != RuleScope(new_rule.scope):
            continue
        if _effective_priority(existing) != new_priority:
            continue
        if any(getattr(existing, name, None) != getattr(new_rule, name, None) for name in _SCOPE_FILTERS):
            continue
        if not _sale_ranges_overlap(existing, new_rule):
            continue
        conflicts.append({
            "rule_id": existing.id,
            "description": getattr(existing, "description", None),
            "reason": "Same scope, filters and priority; the newer rule takes precedence",
        })
    return conflicts


def _sale_ranges_overlap(a, b) -> bool:
    low_a, high_a = a.min_sale_amount, a.max_sale_amount
    low_b, high_b = b.min_sale_amount, b.max_sale_amount
    if high_a is not None and low_b is not None and high_a < low_b:
        return False
    if high_b is not None and low_a is not None and high_b < low_a:
        return False
    return True
