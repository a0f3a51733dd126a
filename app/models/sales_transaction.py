from sqlalchemy import Column, String, Date, DateTime, Numeric, ForeignKey, Text, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

from app.core.database import Base
from app.engine.enums import TransactionType


class SalesTransaction(Base):
    __tablename__ = "sales_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)

    # Signed: RETURN and ADJUSTMENT rows may be negative
    amount = Column(Numeric(12, 2), nullable=False)
    transaction_date = Column(Date, nullable=False, index=True)
    transaction_type = Column(SQLEnum(TransactionType), nullable=False, default=TransactionType.SALE)

    # A RETURN points at the sale it reverses
    parent_transaction_id = Column(String, ForeignKey("sales_transactions.id"), nullable=True, index=True)

    project_id = Column(String, ForeignKey("projects.id"), nullable=True, index=True)
    client_id = Column(String, ForeignKey("clients.id"), nullable=True, index=True)
    product_category_id = Column(String, nullable=True, index=True)

    # Salesperson credited with the sale
    user_id = Column(String, nullable=False, index=True)

    invoice_number = Column(String(100), nullable=True, index=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    project = relationship("Project")
    client = relationship("Client")
    parent_transaction = relationship("SalesTransaction", remote_side=[id], back_populates="returns")
    returns = relationship("SalesTransaction", back_populates="parent_transaction")
    commission_calculations = relationship(
        "CommissionCalculation",
        back_populates="sales_transaction",
        cascade="all, delete-orphan",
    )
