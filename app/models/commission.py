from sqlalchemy import Column, String, Integer, DateTime, Numeric, ForeignKey, Text, Enum as SQLEnum, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum

from app.core.database import Base


class CommissionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


class AdjustmentType(str, enum.Enum):
    RETURN = "return"
    CLAWBACK = "clawback"
    OVERRIDE = "override"
    SPLIT_CREDIT = "split_credit"


class CommissionCalculation(Base):
    __tablename__ = "commission_calculations"
    __table_args__ = (
        UniqueConstraint("sales_transaction_id", "commission_plan_id", name="uq_calculation_transaction_plan"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    sales_transaction_id = Column(String, ForeignKey("sales_transactions.id"), nullable=False, index=True)
    commission_plan_id = Column(String, ForeignKey("commission_plans.id"), nullable=False, index=True)

    # Salesperson receiving the commission
    user_id = Column(String, nullable=False, index=True)

    # Final amount after caps; adjustments are tracked separately
    amount = Column(Numeric(12, 2), nullable=False)

    status = Column(SQLEnum(CommissionStatus), nullable=False, default=CommissionStatus.PENDING, index=True)

    # Versioned calculation trace (app.engine.trace.CalculationTrace)
    trace = Column(JSON, nullable=False)

    calculated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    # Optimistic concurrency between recalculation and approval
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    sales_transaction = relationship("SalesTransaction", back_populates="commission_calculations")
    commission_plan = relationship("CommissionPlan", back_populates="calculations")
    adjustments = relationship(
        "CommissionAdjustment",
        back_populates="commission_calculation",
        cascade="all, delete-orphan",
        order_by="CommissionAdjustment.applied_at.desc()",
    )


class CommissionAdjustment(Base):
    __tablename__ = "commission_adjustments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    commission_calculation_id = Column(String, ForeignKey("commission_calculations.id"), nullable=False, index=True)

    type = Column(SQLEnum(AdjustmentType), nullable=False)

    # Negative for deductions
    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text, nullable=True)

    # Admin-only notes
    notes = Column(Text, nullable=True)

    related_transaction_id = Column(String, ForeignKey("sales_transactions.id"), nullable=True)

    applied_by = Column(String, nullable=True)
    applied_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    commission_calculation = relationship("CommissionCalculation", back_populates="adjustments")
    related_transaction = relationship("SalesTransaction")
