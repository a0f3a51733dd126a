from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Text, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

from app.core.database import Base
from app.engine.enums import CommissionBasis


class CommissionPlan(Base):
    __tablename__ = "commission_plans"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)

    # Organization-wide plan when null
    project_id = Column(String, ForeignKey("projects.id"), nullable=True, index=True)

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    commission_basis = Column(SQLEnum(CommissionBasis), nullable=False, default=CommissionBasis.GROSS_REVENUE)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    organization = relationship("Organization", back_populates="commission_plans")
    project = relationship("Project", back_populates="commission_plans")
    rules = relationship(
        "CommissionRule",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="CommissionRule.created_at",
    )
    calculations = relationship("CommissionCalculation", back_populates="commission_plan")
