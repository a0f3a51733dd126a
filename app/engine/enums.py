import enum


class RuleType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FLAT_AMOUNT = "FLAT_AMOUNT"
    TIERED = "TIERED"


class RuleScope(str, enum.Enum):
    GLOBAL = "GLOBAL"
    CUSTOMER_TIER = "CUSTOMER_TIER"
    PRODUCT_CATEGORY = "PRODUCT_CATEGORY"
    TERRITORY = "TERRITORY"
    CUSTOMER_SPECIFIC = "CUSTOMER_SPECIFIC"
    PROJECT_SPECIFIC = "PROJECT_SPECIFIC"

    @property
    def specificity(self) -> int:
        return _SCOPE_SPECIFICITY[self]


_SCOPE_SPECIFICITY = {
    RuleScope.PROJECT_SPECIFIC: 6,
    RuleScope.CUSTOMER_SPECIFIC: 5,
    RuleScope.PRODUCT_CATEGORY: 4,
    RuleScope.TERRITORY: 3,
    RuleScope.CUSTOMER_TIER: 2,
    RuleScope.GLOBAL: 1,
}


class RulePriority(str, enum.Enum):
    """Precedence tier of a rule. Compares by rank, not by name."""

    PROJECT_SPECIFIC = "PROJECT_SPECIFIC"
    CUSTOMER_SPECIFIC = "CUSTOMER_SPECIFIC"
    PRODUCT_CATEGORY = "PRODUCT_CATEGORY"
    TERRITORY = "TERRITORY"
    CUSTOMER_TIER = "CUSTOMER_TIER"
    DEFAULT = "DEFAULT"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, RulePriority):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, RulePriority):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, RulePriority):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, RulePriority):
            return NotImplemented
        return self.rank >= other.rank


_PRIORITY_RANK = {
    RulePriority.PROJECT_SPECIFIC: 100,
    RulePriority.CUSTOMER_SPECIFIC: 90,
    RulePriority.PRODUCT_CATEGORY: 80,
    RulePriority.TERRITORY: 70,
    RulePriority.CUSTOMER_TIER: 60,
    RulePriority.DEFAULT: 50,
}


class CustomerTier(str, enum.Enum):
    STANDARD = "STANDARD"
    VIP = "VIP"
    NEW = "NEW"
    ENTERPRISE = "ENTERPRISE"


class CommissionBasis(str, enum.Enum):
    GROSS_REVENUE = "GROSS_REVENUE"
    NET_SALES = "NET_SALES"


class TransactionType(str, enum.Enum):
    SALE = "SALE"
    RETURN = "RETURN"
    ADJUSTMENT = "ADJUSTMENT"
