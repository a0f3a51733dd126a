import logging
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ConcurrencyConflictError
from app.engine.trace import TRACE_SCHEMA_VERSION, detect_trace_version, upgrade_trace
from app.models.commission import CommissionCalculation
from app.services.commission_service import commit_or_conflict

logger = logging.getLogger(__name__)


class TraceMigrationService:
    @staticmethod
    def migrate_traces(
        db: Session,
        organization_id: Optional[str] = None,
        dry_run: bool = False,
        batch_size: Optional[int] = None
    ) -> Dict:
        """Rewrite legacy calculation traces in the current schema.

        Rows already on the current schema are left alone, so the migration
        can be re-run. Amounts are never touched. With ``dry_run`` nothing is
        written and the summary reports what would change.
        """
        batch_size = batch_size or settings.RECALCULATION_BATCH_SIZE
        summary = {"checked": 0, "current": 0, "upgraded": 0, "failed": 0, "failures": []}

        query = db.query(CommissionCalculation)
        if organization_id:
            query = query.filter(CommissionCalculation.organization_id == organization_id)
        query = query.order_by(CommissionCalculation.id)

        last_id = None
        while True:
            page = query
            if last_id is not None:
                page = page.filter(CommissionCalculation.id > last_id)
            rows = page.limit(batch_size).all()
            if not rows:
                break
            last_id = rows[-1].id

            pending = 0
            for row in rows:
                summary["checked"] += 1
                try:
                    version = detect_trace_version(row.trace or {})
                    if version == TRACE_SCHEMA_VERSION:
                        summary["current"] += 1
                        continue
                    upgraded = upgrade_trace(
                        row.trace,
                        plan_id=row.commission_plan_id,
                        plan_name=row.commission_plan.name if row.commission_plan else None,
                        amount=Decimal(str(row.amount)),
                        transaction_id=row.sales_transaction_id
                    )
                except ValueError as exc:
                    logger.error(f"Trace of commission {row.id} cannot be migrated: {exc}")
                    summary["failed"] += 1
                    summary["failures"].append({"id": row.id, "error": str(exc)})
                    continue

                summary["upgraded"] += 1
                if not dry_run:
                    row.trace = upgraded.model_dump(mode="json")
                    pending += 1

            if pending:
                try:
                    commit_or_conflict(db)
                except ConcurrencyConflictError as exc:
                    logger.error(f"Trace migration batch ending at {last_id} rolled back: {exc.message}")
                    summary["upgraded"] -= pending
                    summary["failed"] += pending
                    summary["failures"].append({"id": last_id, "error": exc.message})

        logger.info(
            f"Trace migration{' (dry run)' if dry_run else ''}: {summary['checked']} checked, "
            f"{summary['upgraded']} upgraded, {summary['failed']} failed"
        )
        return summary
