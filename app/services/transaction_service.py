import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.core.tenant import RequestContext
from app.engine.enums import TransactionType
from app.models.client import Client, Project
from app.models.commission import CommissionCalculation
from app.models.organization import Organization
from app.models.sales_transaction import SalesTransaction
from app.schemas.transaction import SalesTransactionCreate
from app.services.adjustment_service import AdjustmentService
from app.services.audit_service import AuditService
from app.services.commission_service import CommissionService, commit_or_conflict

logger = logging.getLogger(__name__)


class TransactionService:
    @staticmethod
    def create_transaction(
        db: Session,
        context: RequestContext,
        data: SalesTransactionCreate
    ) -> Tuple[SalesTransaction, List[CommissionCalculation]]:
        """Record a sale, return or adjustment and calculate its commissions.

        A RETURN that names the sale it reverses is settled against that
        sale: RETURN adjustments for gross-basis commissions, and a
        recalculation of the sale for net-basis plans.
        """
        organization = db.get(Organization, context.organization_id)
        if not organization:
            raise NotFoundError("Organization not found", details={"id": context.organization_id})

        if data.user_id and data.user_id != context.user_id and not context.is_admin:
            raise AuthorizationError("Only administrators can record sales for another salesperson")

        parent = None
        if data.parent_transaction_id:
            if data.transaction_type != TransactionType.RETURN:
                raise ValidationError("Only RETURN transactions can reference an original sale")
            parent = CommissionService.get_transaction(db, context.organization_id, data.parent_transaction_id)
            if parent.transaction_type != TransactionType.SALE:
                raise ValidationError("A return must reference a SALE transaction")

        project_id = data.project_id or (parent.project_id if parent else None)
        client_id = data.client_id or (parent.client_id if parent else None)
        product_category_id = data.product_category_id or (parent.product_category_id if parent else None)
        user_id = data.user_id or (parent.user_id if parent else None) or context.user_id
        if not user_id:
            raise ValidationError("A salesperson is required for the transaction")

        if project_id:
            project = db.query(Project).filter(
                Project.organization_id == context.organization_id,
                Project.id == project_id
            ).first()
            if not project:
                raise NotFoundError("Project not found", details={"id": project_id})
            if client_id and client_id != project.client_id:
                raise ValidationError("Client does not match the project's client")
            client_id = client_id or project.client_id
        elif organization.require_projects:
            raise ValidationError("A project is required for sales in this organization")

        if client_id and not db.query(Client.id).filter(
            Client.organization_id == context.organization_id,
            Client.id == client_id
        ).first():
            raise NotFoundError("Client not found", details={"id": client_id})

        amount = data.amount
        if data.transaction_type == TransactionType.SALE and amount < 0:
            raise ValidationError("Sale amount cannot be negative")
        if data.transaction_type == TransactionType.RETURN:
            # Returns are stored negative
            amount = -abs(amount)

        if parent is not None:
            already_returned = db.query(func.sum(SalesTransaction.amount)).filter(
                SalesTransaction.parent_transaction_id == parent.id,
                SalesTransaction.transaction_type == TransactionType.RETURN
            ).scalar()
            already_returned = abs(Decimal(str(already_returned))) if already_returned is not None else Decimal("0")
            if already_returned + abs(amount) > Decimal(str(parent.amount)):
                raise ValidationError(
                    "Returns cannot exceed the original sale amount",
                    details={"sale_amount": str(parent.amount), "already_returned": str(already_returned)}
                )

        transaction = SalesTransaction(
            organization_id=context.organization_id,
            amount=amount,
            transaction_date=data.transaction_date,
            transaction_type=data.transaction_type,
            parent_transaction_id=parent.id if parent else None,
            project_id=project_id,
            client_id=client_id,
            product_category_id=product_category_id,
            user_id=user_id,
            invoice_number=data.invoice_number,
            description=data.description
        )
        db.add(transaction)
        db.flush()

        AuditService.log_action(
            db,
            organization_id=context.organization_id,
            action="transaction.created",
            entity_type="sales_transaction",
            entity_id=transaction.id,
            user_id=context.user_id,
            description=f"Recorded {data.transaction_type.value} of ${abs(amount):,.2f}",
            changes={"amount": str(amount), "parent_transaction_id": transaction.parent_transaction_id}
        )

        if parent is not None:
            AdjustmentService.link_return_to_commission(
                db, context.organization_id, transaction, applied_by=context.user_id
            )
            # Net-basis plans pick the return up through the sale's basis
            CommissionService.sync_calculations(db, parent)
            calculations = []
        else:
            calculations, _ = CommissionService.sync_calculations(db, transaction)

        commit_or_conflict(db)
        db.refresh(transaction)
        for calculation in calculations:
            db.refresh(calculation)

        logger.info(f"Transaction {transaction.id} recorded with {len(calculations)} commission(s)")
        return transaction, calculations

    @staticmethod
    def get_transaction(
        db: Session,
        organization_id: str,
        transaction_id: str,
        user_id: Optional[str] = None
    ) -> SalesTransaction:
        transaction = CommissionService.get_transaction(db, organization_id, transaction_id)
        if user_id and transaction.user_id != user_id:
            raise NotFoundError("Sales transaction not found", details={"id": transaction_id})
        return transaction

    @staticmethod
    def list_transactions(
        db: Session,
        organization_id: str,
        user_id: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None,
        skip: int = 0,
        limit: int = 20
    ) -> List[SalesTransaction]:
        query = db.query(SalesTransaction).filter(SalesTransaction.organization_id == organization_id)

        if user_id:
            query = query.filter(SalesTransaction.user_id == user_id)
        if transaction_type:
            query = query.filter(SalesTransaction.transaction_type == transaction_type)

        return query.order_by(
            SalesTransaction.transaction_date.desc(),
            SalesTransaction.id
        ).offset(skip).limit(limit).all()
