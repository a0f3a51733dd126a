import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.exceptions import NotFoundError, ValidationError
from app.engine.calculator import money
from app.engine.enums import CommissionBasis, TransactionType
from app.models.commission import AdjustmentType, CommissionAdjustment, CommissionStatus
from app.models.sales_transaction import SalesTransaction
from app.schemas.adjustment import AdjustmentCreate
from app.services.audit_service import AuditService
from app.services.commission_service import CommissionService, commit_or_conflict

logger = logging.getLogger(__name__)


class AdjustmentService:
    """Manual and automatic corrections layered on top of a calculation.

    Adjustments are additive: ``net = calculation.amount + sum(adjustments)``.
    They never rewrite the calculated amount, so the trace keeps explaining
    what the rules produced.
    """

    @staticmethod
    def create_adjustment(
        db: Session,
        organization_id: str,
        data: AdjustmentCreate,
        applied_by: Optional[str] = None
    ) -> CommissionAdjustment:
        calculation = CommissionService.get_calculation(db, organization_id, data.commission_calculation_id)

        if data.related_transaction_id:
            CommissionService.get_transaction(db, organization_id, data.related_transaction_id)

        adjustment = CommissionAdjustment(
            organization_id=organization_id,
            commission_calculation_id=calculation.id,
            type=data.type,
            amount=money(data.amount),
            reason=data.reason,
            notes=data.notes,
            related_transaction_id=data.related_transaction_id,
            applied_by=applied_by
        )
        db.add(adjustment)

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="adjustment.created",
            entity_type="commission_adjustment",
            entity_id=calculation.id,
            user_id=applied_by,
            description=f"Created {data.type.value} adjustment of ${abs(data.amount):,.2f} on commission {calculation.id}",
            changes={"type": data.type.value, "amount": str(money(data.amount)), "reason": data.reason}
        )
        commit_or_conflict(db)
        db.refresh(adjustment)
        logger.info(f"Adjustment {adjustment.id} ({data.type.value}) added to commission {calculation.id}")
        return adjustment

    @staticmethod
    def delete_adjustment(
        db: Session,
        organization_id: str,
        adjustment_id: str,
        user_id: Optional[str] = None
    ) -> None:
        adjustment = db.query(CommissionAdjustment).filter(
            CommissionAdjustment.organization_id == organization_id,
            CommissionAdjustment.id == adjustment_id
        ).first()
        if not adjustment:
            raise NotFoundError("Adjustment not found", details={"id": adjustment_id})

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="adjustment.deleted",
            entity_type="commission_adjustment",
            entity_id=adjustment.commission_calculation_id,
            user_id=user_id,
            description=f"Deleted {adjustment.type.value} adjustment of ${abs(adjustment.amount):,.2f}",
            changes={"type": adjustment.type.value, "amount": str(adjustment.amount)}
        )
        db.delete(adjustment)
        commit_or_conflict(db)

    @staticmethod
    def list_adjustments(db: Session, organization_id: str, calculation_id: str) -> List[CommissionAdjustment]:
        CommissionService.get_calculation(db, organization_id, calculation_id)
        return db.query(CommissionAdjustment).filter(
            CommissionAdjustment.organization_id == organization_id,
            CommissionAdjustment.commission_calculation_id == calculation_id
        ).order_by(CommissionAdjustment.applied_at.desc(), CommissionAdjustment.id).all()

    @staticmethod
    def get_adjustments_total(db: Session, organization_id: str, calculation_id: str) -> Decimal:
        total = db.query(func.sum(CommissionAdjustment.amount)).filter(
            CommissionAdjustment.organization_id == organization_id,
            CommissionAdjustment.commission_calculation_id == calculation_id
        ).scalar()
        return money(Decimal(str(total))) if total is not None else Decimal("0.00")

    @staticmethod
    def get_net_amount(db: Session, organization_id: str, calculation_id: str) -> Dict:
        calculation = CommissionService.get_calculation(db, organization_id, calculation_id)
        amount = money(Decimal(str(calculation.amount)))
        adjustments_total = AdjustmentService.get_adjustments_total(db, organization_id, calculation_id)
        return {
            "commission_calculation_id": calculation.id,
            "amount": amount,
            "adjustments_total": adjustments_total,
            "net_amount": amount + adjustments_total
        }

    @staticmethod
    def link_return_to_commission(
        db: Session,
        organization_id: str,
        return_transaction: SalesTransaction,
        applied_by: Optional[str] = None
    ) -> List[CommissionAdjustment]:
        """Reverse a linked return against the commissions of its original sale.

        The deduction uses the rate the sale was actually paid at
        (commission / sale amount). NET_SALES plans already shrink their
        basis when the sale is recalculated, so they only get an adjustment
        once their row is paid and can no longer be recalculated.

        Does not commit. Existing RETURN adjustments for the same return are
        left alone, so linking twice is harmless.
        """
        if return_transaction.transaction_type != TransactionType.RETURN:
            raise ValidationError("Only RETURN transactions can be linked to a commission")

        sale = return_transaction.parent_transaction
        if sale is None or sale.organization_id != organization_id:
            raise NotFoundError("Original sale not found", details={"id": return_transaction.parent_transaction_id})

        sale_amount = Decimal(str(sale.amount))
        if sale_amount <= 0:
            logger.warning(f"Sale {sale.id} has no positive amount, return {return_transaction.id} not linked")
            return []

        returned = abs(Decimal(str(return_transaction.amount)))
        created = []
        for calculation in sale.commission_calculations:
            plan = calculation.commission_plan
            if plan.commission_basis == CommissionBasis.NET_SALES and calculation.status != CommissionStatus.PAID:
                continue

            already_linked = db.query(CommissionAdjustment.id).filter(
                CommissionAdjustment.commission_calculation_id == calculation.id,
                CommissionAdjustment.related_transaction_id == return_transaction.id,
                CommissionAdjustment.type == AdjustmentType.RETURN
            ).first()
            if already_linked:
                continue

            original_rate = Decimal(str(calculation.amount)) / sale_amount
            amount = -money(returned * original_rate)
            if amount == 0:
                continue

            adjustment = CommissionAdjustment(
                organization_id=organization_id,
                commission_calculation_id=calculation.id,
                type=AdjustmentType.RETURN,
                amount=amount,
                reason=f"Return of ${returned:,.2f} on invoice {sale.invoice_number or 'N/A'}",
                related_transaction_id=return_transaction.id,
                applied_by=applied_by
            )
            db.add(adjustment)
            created.append(adjustment)

            AuditService.log_action(
                db,
                organization_id=organization_id,
                action="adjustment.return_linked",
                entity_type="commission_adjustment",
                entity_id=calculation.id,
                user_id=applied_by,
                description=f"Return adjustment of ${abs(amount):,.2f} at original rate",
                changes={
                    "return_transaction_id": return_transaction.id,
                    "original_commission": str(calculation.amount),
                    "original_rate": str(original_rate),
                    "amount": str(amount)
                }
            )

        logger.info(f"Return {return_transaction.id} linked to {len(created)} commission(s) of sale {sale.id}")
        return created
