import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.exceptions import (
    ConcurrencyConflictError,
    InvalidRuleConfiguration,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from app.engine.calculator import money
from app.engine.enums import TransactionType
from app.engine.models import CalculationContext, CalculationResult, TransactionInput
from app.engine.resolver import RuleResolutionEngine
from app.engine.validation import ensure_valid
from app.models.client import Client
from app.models.commission import CommissionCalculation, CommissionStatus
from app.models.commission_plan import CommissionPlan
from app.models.sales_transaction import SalesTransaction
from app.services import rule_source
from app.services.audit_service import AuditService

logger = logging.getLogger(__name__)

rules_engine = RuleResolutionEngine(engine_version=settings.ENGINE_VERSION)


def commit_or_conflict(db: Session) -> None:
    """Commit, reporting lost optimistic-lock races as ConcurrencyConflictError"""
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrencyConflictError(details={"reason": str(exc)}) from exc
    except IntegrityError as exc:
        db.rollback()
        raise ConcurrencyConflictError(
            "Record was created concurrently, retry the operation",
            details={"reason": str(exc.orig)}
        ) from exc


def _check_version(calculation: CommissionCalculation, expected_version: Optional[int]) -> None:
    if expected_version is not None and calculation.version != expected_version:
        raise ConcurrencyConflictError(details={
            "id": calculation.id,
            "expected_version": expected_version,
            "current_version": calculation.version
        })


class CommissionService:
    @staticmethod
    def get_transaction(db: Session, organization_id: str, transaction_id: str) -> SalesTransaction:
        transaction = db.query(SalesTransaction).filter(
            SalesTransaction.organization_id == organization_id,
            SalesTransaction.id == transaction_id
        ).first()

        if not transaction:
            raise NotFoundError("Sales transaction not found", details={"id": transaction_id})
        return transaction

    @staticmethod
    def get_calculation(
        db: Session,
        organization_id: str,
        calculation_id: str,
        user_id: Optional[str] = None
    ) -> CommissionCalculation:
        """Fetch one calculation; ``user_id`` restricts to a salesperson's own rows"""
        query = db.query(CommissionCalculation).filter(
            CommissionCalculation.organization_id == organization_id,
            CommissionCalculation.id == calculation_id
        )
        if user_id:
            query = query.filter(CommissionCalculation.user_id == user_id)

        calculation = query.first()
        if not calculation:
            raise NotFoundError("Commission calculation not found", details={"id": calculation_id})
        return calculation

    @staticmethod
    def sync_calculations(
        db: Session,
        transaction: SalesTransaction,
        plan_id: Optional[str] = None
    ) -> Tuple[List[CommissionCalculation], Dict[str, int]]:
        """Evaluate a transaction and bring its calculation rows in line, without committing.

        One row per matched plan, keyed on (transaction, plan) so repeated
        runs update in place. PAID rows are never touched. PENDING rows are
        removed only when their plan is still active and in scope but no
        longer matches; rows of deactivated plans are history and stay.
        ``plan_id`` limits the run to that plan's row.

        Returns the live rows and counters (``removed``, ``skipped_paid``).
        """
        stats = {"removed": 0, "skipped_paid": 0}

        if transaction.transaction_type == TransactionType.RETURN and transaction.parent_transaction_id:
            # Linked returns are settled as adjustments on the original sale
            logger.debug(f"Transaction {transaction.id} is a linked return, no calculation")
            return [], stats

        plans = rule_source.applicable_plans(db, transaction.organization_id, transaction.project_id)
        if plan_id:
            plans = [plan for plan in plans if plan.id == plan_id]
        result = rules_engine.evaluate(
            rule_source.transaction_input(db, transaction),
            rule_source.calculation_context(transaction),
            rule_source.candidate_rules(plans)
        )

        existing = {
            row.commission_plan_id: row
            for row in transaction.commission_calculations
            if not plan_id or row.commission_plan_id == plan_id
        }
        evaluated = {plan.id for plan in plans}
        matched = {calculation.plan_id: calculation for calculation in result.calculations}
        now = datetime.utcnow()
        rows = []

        for calculation in result.calculations:
            row = existing.get(calculation.plan_id)
            trace = calculation.trace.model_dump(mode="json")

            if row is None:
                row = CommissionCalculation(
                    organization_id=transaction.organization_id,
                    sales_transaction_id=transaction.id,
                    commission_plan_id=calculation.plan_id,
                    user_id=transaction.user_id,
                    amount=calculation.final_amount,
                    status=CommissionStatus.PENDING,
                    trace=trace,
                    calculated_at=now
                )
                db.add(row)
                rows.append(row)
                continue

            if row.status == CommissionStatus.PAID:
                logger.warning(f"Commission {row.id} is paid, recalculation skipped")
                stats["skipped_paid"] += 1
                continue

            amount_changed = Decimal(str(row.amount)) != calculation.final_amount
            if amount_changed or row.trace != trace:
                row.amount = calculation.final_amount
                row.trace = trace
                row.user_id = transaction.user_id
                row.calculated_at = now

            if amount_changed and row.status == CommissionStatus.APPROVED:
                logger.warning(f"Commission {row.id} amount changed after approval, returned to pending")
                row.status = CommissionStatus.PENDING
                row.approved_at = None
                row.approved_by = None

            rows.append(row)

        for row_plan_id, row in existing.items():
            if row_plan_id in matched or row_plan_id not in evaluated:
                continue
            if row.status == CommissionStatus.PENDING:
                db.delete(row)
                stats["removed"] += 1
            else:
                logger.warning(f"Commission {row.id} no longer matches plan {row_plan_id}, kept as {row.status.value}")

        logger.info(
            f"Transaction {transaction.id}: {len(rows)} commission(s), "
            f"{stats['removed']} removed, {stats['skipped_paid']} paid skipped"
        )
        return rows, stats

    @staticmethod
    def calculate_for_transaction(
        db: Session,
        organization_id: str,
        transaction_id: str,
        user_id: Optional[str] = None
    ) -> List[CommissionCalculation]:
        """Calculate (or recalculate) every applicable plan for one transaction"""
        transaction = CommissionService.get_transaction(db, organization_id, transaction_id)
        rows, stats = CommissionService.sync_calculations(db, transaction)

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="commission.calculated",
            entity_type="sales_transaction",
            entity_id=transaction.id,
            user_id=user_id,
            changes={"calculations": len(rows), **stats}
        )
        commit_or_conflict(db)
        for row in rows:
            db.refresh(row)
        return rows

    @staticmethod
    def recalculate_transaction(
        db: Session,
        organization_id: str,
        transaction_id: str,
        user_id: Optional[str] = None
    ) -> List[CommissionCalculation]:
        return CommissionService.calculate_for_transaction(db, organization_id, transaction_id, user_id=user_id)

    @staticmethod
    def _sync_each(
        db: Session,
        transaction_ids: Iterable[str],
        summary: Dict,
        plan_id: Optional[str] = None
    ) -> None:
        for transaction_id in transaction_ids:
            transaction = db.get(SalesTransaction, transaction_id)
            summary["processed"] += 1
            if transaction is None:
                logger.warning(f"Transaction {transaction_id} disappeared before recalculation")
                summary["failed"] += 1
                summary["failures"].append({"transaction_id": transaction_id, "error": "Sales transaction not found"})
                continue
            try:
                rows, stats = CommissionService.sync_calculations(db, transaction, plan_id=plan_id)
                commit_or_conflict(db)
            except (ConcurrencyConflictError, InvalidRuleConfiguration) as exc:
                db.rollback()
                logger.error(f"Recalculation of transaction {transaction_id} failed: {exc.message}")
                summary["failed"] += 1
                summary["failures"].append({"transaction_id": transaction_id, "error": exc.message})
                continue
            summary["calculated"] += len(rows)
            summary["removed"] += stats["removed"]
            summary["skipped_paid"] += stats["skipped_paid"]

    @staticmethod
    def recalculate_plan(
        db: Session,
        organization_id: str,
        plan_id: str,
        user_id: Optional[str] = None,
        batch_size: Optional[int] = None
    ) -> Dict:
        """Recalculate one plan's commissions across its scope, one commit per transaction.

        Rows of other plans are left as they are.

        Raises:
            InvalidRuleConfiguration: before any row is touched, when a rule
                of the plan cannot be evaluated.
        """
        plan = db.query(CommissionPlan).filter(
            CommissionPlan.organization_id == organization_id,
            CommissionPlan.id == plan_id
        ).first()
        if not plan:
            raise NotFoundError("Commission plan not found", details={"id": plan_id})

        for rule in rule_source.plan_rules(plan):
            ensure_valid(rule)

        batch_size = batch_size or settings.RECALCULATION_BATCH_SIZE
        summary = {"processed": 0, "calculated": 0, "removed": 0, "skipped_paid": 0, "failed": 0, "failures": []}

        query = db.query(SalesTransaction.id).filter(SalesTransaction.organization_id == organization_id)
        if plan.project_id:
            query = query.filter(SalesTransaction.project_id == plan.project_id)
        query = query.order_by(SalesTransaction.id)

        offset = 0
        while True:
            batch = [row.id for row in query.offset(offset).limit(batch_size).all()]
            if not batch:
                break
            CommissionService._sync_each(db, batch, summary, plan_id=plan.id)
            offset += len(batch)
            logger.info(f"Plan {plan_id}: recalculated {summary['processed']} transaction(s)")

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="commission.plan_recalculated",
            entity_type="commission_plan",
            entity_id=plan_id,
            user_id=user_id,
            changes={key: value for key, value in summary.items() if key != "failures"}
        )
        commit_or_conflict(db)
        return summary

    @staticmethod
    def backfill_missing(
        db: Session,
        organization_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> Dict:
        """Calculate SALE transactions that have no commission rows yet"""
        query = db.query(SalesTransaction.id).filter(
            SalesTransaction.transaction_type == TransactionType.SALE,
            ~SalesTransaction.commission_calculations.any()
        )
        if organization_id:
            query = query.filter(SalesTransaction.organization_id == organization_id)
        query = query.order_by(SalesTransaction.transaction_date, SalesTransaction.id)
        if limit:
            query = query.limit(limit)

        transaction_ids = [row.id for row in query.all()]
        logger.info(f"Backfill: {len(transaction_ids)} transaction(s) without commissions")

        summary = {"checked": 0, "created": 0, "still_missing": 0, "failed": 0, "failures": []}
        for transaction_id in transaction_ids:
            summary["checked"] += 1
            transaction = db.get(SalesTransaction, transaction_id)
            if transaction is None:
                logger.warning(f"Transaction {transaction_id} disappeared before backfill")
                summary["failed"] += 1
                summary["failures"].append({"transaction_id": transaction_id, "error": "Sales transaction not found"})
                continue
            try:
                rows, _ = CommissionService.sync_calculations(db, transaction)
                commit_or_conflict(db)
            except (ConcurrencyConflictError, InvalidRuleConfiguration) as exc:
                db.rollback()
                logger.error(f"Backfill of transaction {transaction_id} failed: {exc.message}")
                summary["failed"] += 1
                summary["failures"].append({"transaction_id": transaction_id, "error": exc.message})
                continue

            if rows:
                summary["created"] += len(rows)
            else:
                summary["still_missing"] += 1
                logger.warning(f"Transaction {transaction_id} still has no matching commission rule")

        return summary

    @staticmethod
    def simulate(db: Session, organization_id: str, plan_id: str, simulation) -> CalculationResult:
        """Evaluate arbitrary inputs against one plan without persisting anything.

        Inactive plans can be simulated, which is how drafts are checked.
        """
        plan = db.query(CommissionPlan).filter(
            CommissionPlan.organization_id == organization_id,
            CommissionPlan.id == plan_id
        ).first()
        if not plan:
            raise NotFoundError("Commission plan not found", details={"id": plan_id})

        customer_tier = simulation.customer_tier
        territory_id = simulation.territory_id
        if simulation.client_id:
            client = db.query(Client).filter(
                Client.organization_id == organization_id,
                Client.id == simulation.client_id
            ).first()
            if not client:
                raise NotFoundError("Client not found", details={"id": simulation.client_id})
            customer_tier = customer_tier or client.tier
            territory_id = territory_id or client.territory_id

        try:
            transaction = TransactionInput(
                amount=simulation.amount,
                transaction_date=simulation.transaction_date,
                transaction_type=simulation.transaction_type,
                returns_total=simulation.returns_total
            )
        except PydanticValidationError as exc:
            raise ValidationError("Invalid simulation input", details={"errors": [
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in exc.errors()
            ]}) from exc

        context = CalculationContext(
            customer_id=simulation.client_id,
            customer_tier=customer_tier,
            project_id=simulation.project_id,
            territory_id=territory_id,
            product_category_id=simulation.product_category_id
        )
        return rules_engine.evaluate_plan(transaction, context, rule_source.plan_ref(plan), rule_source.plan_rules(plan))

    # Approval workflow

    @staticmethod
    def approve(
        db: Session,
        organization_id: str,
        calculation_id: str,
        approved_by: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> CommissionCalculation:
        calculation = CommissionService.get_calculation(db, organization_id, calculation_id)
        _check_version(calculation, expected_version)

        if calculation.status == CommissionStatus.PAID:
            raise WorkflowError("Paid commissions cannot be approved", details={"id": calculation.id})
        if calculation.status == CommissionStatus.APPROVED:
            return calculation

        calculation.status = CommissionStatus.APPROVED
        calculation.approved_at = datetime.utcnow()
        calculation.approved_by = approved_by

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="commission.approved",
            entity_type="commission_calculation",
            entity_id=calculation.id,
            user_id=approved_by,
            description=f"Approved commission of ${calculation.amount:,.2f}",
            changes={"status": {"from": CommissionStatus.PENDING.value, "to": CommissionStatus.APPROVED.value}}
        )
        commit_or_conflict(db)
        db.refresh(calculation)
        logger.info(f"Commission {calculation.id} approved by {approved_by}")
        return calculation

    @staticmethod
    def _bulk_transition(
        db: Session,
        organization_id: str,
        calculation_ids: List[str],
        user_id: Optional[str],
        target: CommissionStatus
    ) -> Dict:
        ids = list(dict.fromkeys(calculation_ids))
        rows = db.query(CommissionCalculation).filter(
            CommissionCalculation.organization_id == organization_id,
            CommissionCalculation.id.in_(ids)
        ).all()
        found = {row.id: row for row in rows}

        now = datetime.utcnow()
        updated, skipped = [], []
        for calculation_id in ids:
            row = found.get(calculation_id)
            if row is None:
                skipped.append({"id": calculation_id, "reason": "not found"})
            elif row.status == target:
                skipped.append({"id": calculation_id, "reason": f"already {target.value}"})
            elif target == CommissionStatus.APPROVED and row.status == CommissionStatus.PAID:
                skipped.append({"id": calculation_id, "reason": "already paid"})
            elif target == CommissionStatus.PAID and row.status == CommissionStatus.PENDING:
                skipped.append({"id": calculation_id, "reason": "not approved"})
            else:
                # Per-row writes so every row's version is checked and bumped
                row.status = target
                if target == CommissionStatus.APPROVED:
                    row.approved_at = now
                    row.approved_by = user_id
                else:
                    row.paid_at = now
                updated.append(calculation_id)

        if updated:
            AuditService.log_action(
                db,
                organization_id=organization_id,
                action=f"commission.bulk_{'approved' if target == CommissionStatus.APPROVED else 'paid'}",
                entity_type="commission_calculation",
                user_id=user_id,
                description=f"Bulk {target.value} {len(updated)} commission(s)",
                changes={"ids": updated}
            )
        commit_or_conflict(db)
        logger.info(f"Bulk {target.value}: {len(updated)} updated, {len(skipped)} skipped")
        return {"updated": updated, "skipped": skipped}

    @staticmethod
    def bulk_approve(db: Session, organization_id: str, calculation_ids: List[str], approved_by: Optional[str] = None) -> Dict:
        return CommissionService._bulk_transition(db, organization_id, calculation_ids, approved_by, CommissionStatus.APPROVED)

    @staticmethod
    def mark_paid(
        db: Session,
        organization_id: str,
        calculation_id: str,
        user_id: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> CommissionCalculation:
        calculation = CommissionService.get_calculation(db, organization_id, calculation_id)
        _check_version(calculation, expected_version)

        if calculation.status == CommissionStatus.PENDING:
            raise WorkflowError("Commission must be approved before it can be paid", details={"id": calculation.id})
        if calculation.status == CommissionStatus.PAID:
            raise WorkflowError("Commission is already paid", details={"id": calculation.id})

        calculation.status = CommissionStatus.PAID
        calculation.paid_at = datetime.utcnow()

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="commission.paid",
            entity_type="commission_calculation",
            entity_id=calculation.id,
            user_id=user_id,
            description=f"Marked commission of ${calculation.amount:,.2f} as paid",
            changes={"status": {"from": CommissionStatus.APPROVED.value, "to": CommissionStatus.PAID.value}}
        )
        commit_or_conflict(db)
        db.refresh(calculation)
        logger.info(f"Commission {calculation.id} marked paid")
        return calculation

    @staticmethod
    def bulk_mark_paid(db: Session, organization_id: str, calculation_ids: List[str], user_id: Optional[str] = None) -> Dict:
        return CommissionService._bulk_transition(db, organization_id, calculation_ids, user_id, CommissionStatus.PAID)

    @staticmethod
    def reject(
        db: Session,
        organization_id: str,
        calculation_id: str,
        user_id: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> None:
        """Rejecting removes the calculation and its adjustments"""
        calculation = CommissionService.get_calculation(db, organization_id, calculation_id)
        _check_version(calculation, expected_version)

        if calculation.status == CommissionStatus.PAID:
            raise WorkflowError("Paid commissions cannot be rejected", details={"id": calculation.id})

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="commission.rejected",
            entity_type="commission_calculation",
            entity_id=calculation.id,
            user_id=user_id,
            description=f"Rejected commission of ${calculation.amount:,.2f}",
            changes={
                "sales_transaction_id": calculation.sales_transaction_id,
                "commission_plan_id": calculation.commission_plan_id,
                "amount": str(calculation.amount),
                "status": calculation.status.value
            }
        )
        db.delete(calculation)
        commit_or_conflict(db)
        logger.info(f"Commission {calculation_id} rejected")

    # Queries

    @staticmethod
    def get_stats(db: Session, organization_id: str, user_id: Optional[str] = None) -> Dict:
        query = db.query(
            CommissionCalculation.status,
            func.count(CommissionCalculation.id),
            func.sum(CommissionCalculation.amount)
        ).filter(CommissionCalculation.organization_id == organization_id)

        if user_id:
            query = query.filter(CommissionCalculation.user_id == user_id)

        stats = {
            "pending_count": 0, "pending_amount": Decimal("0"),
            "approved_count": 0, "approved_amount": Decimal("0"),
            "paid_count": 0, "paid_amount": Decimal("0"),
            "total_count": 0, "total_amount": Decimal("0"),
        }
        for status, count, total in query.group_by(CommissionCalculation.status).all():
            total = money(Decimal(str(total or 0)))
            stats[f"{status.value}_count"] = count
            stats[f"{status.value}_amount"] = total
            stats["total_count"] += count
            stats["total_amount"] += total

        return stats

    @staticmethod
    def list_calculations(
        db: Session,
        organization_id: str,
        status: Optional[CommissionStatus] = None,
        user_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 20
    ) -> List[CommissionCalculation]:
        query = db.query(CommissionCalculation).filter(
            CommissionCalculation.organization_id == organization_id
        )

        if status:
            query = query.filter(CommissionCalculation.status == status)
        if user_id:
            query = query.filter(CommissionCalculation.user_id == user_id)
        if plan_id:
            query = query.filter(CommissionCalculation.commission_plan_id == plan_id)
        if transaction_id:
            query = query.filter(CommissionCalculation.sales_transaction_id == transaction_id)

        return query.order_by(
            CommissionCalculation.calculated_at.desc(),
            CommissionCalculation.id
        ).offset(skip).limit(min(limit, settings.MAX_PAGE_SIZE)).all()
