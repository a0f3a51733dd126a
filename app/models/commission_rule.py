from sqlalchemy import Column, String, Boolean, DateTime, Numeric, ForeignKey, Text, Enum as SQLEnum, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

from app.core.database import Base
from app.engine.enums import CustomerTier, RulePriority, RuleScope, RuleType


class CommissionRule(Base):
    __tablename__ = "commission_rules"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    commission_plan_id = Column(String, ForeignKey("commission_plans.id"), nullable=False, index=True)

    rule_type = Column(SQLEnum(RuleType), nullable=False)
    scope = Column(SQLEnum(RuleScope), nullable=False, default=RuleScope.GLOBAL)
    priority = Column(SQLEnum(RulePriority), nullable=False, default=RulePriority.DEFAULT)

    # For percentage commission
    percentage = Column(Numeric(7, 4), nullable=True)

    # For flat commission
    flat_amount = Column(Numeric(12, 2), nullable=True)

    # For tiered commission: [{"threshold": "0", "percentage": "5"}, ...]
    tiers = Column(JSON, nullable=True)

    # Which sales the rule applies to
    min_sale_amount = Column(Numeric(12, 2), nullable=True)
    max_sale_amount = Column(Numeric(12, 2), nullable=True)

    # Caps on the computed commission
    min_amount = Column(Numeric(12, 2), nullable=True)
    max_amount = Column(Numeric(12, 2), nullable=True)

    # Scope filters
    customer_tier = Column(SQLEnum(CustomerTier), nullable=True)
    product_category_id = Column(String, nullable=True)
    territory_id = Column(String, nullable=True)
    client_id = Column(String, ForeignKey("clients.id"), nullable=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True)

    # Add-on rule applied on top of the selected rule
    stacking = Column(Boolean, default=False, nullable=False)

    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    created_by = Column(String, nullable=True)

    # Relationships
    plan = relationship("CommissionPlan", back_populates="rules")
