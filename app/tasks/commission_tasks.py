import logging

from celery import Task
from sqlalchemy.orm import Session

from app.core.database import SessionLocal
from app.core.exceptions import AppException
from app.services.commission_service import CommissionService
from app.services.trace_migration_service import TraceMigrationService
from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    """Base task with database session"""
    _db = None

    @property
    def db(self) -> Session:
        if self._db is None:
            self._db = SessionLocal()
        return self._db

    def after_return(self, *args, **kwargs):
        if self._db is not None:
            self._db.close()
            self._db = None


@celery_app.task(base=DatabaseTask, bind=True)
def recalculate_plan_task(self, organization_id: str, plan_id: str, user_id: str = None):
    """Recalculate every transaction a plan covers after its rules change"""
    try:
        summary = CommissionService.recalculate_plan(self.db, organization_id, plan_id, user_id=user_id)
    except AppException as e:
        logger.error(f"Recalculation of plan {plan_id} failed: {e.message}")
        return {"status": "error", "error_code": e.error_code, "message": e.message, "details": e.details}

    return {"status": "success", "plan_id": plan_id, **summary}


@celery_app.task(base=DatabaseTask, bind=True)
def backfill_missing_task(self, organization_id: str = None, limit: int = None):
    """Calculate sales that never got a commission"""
    summary = CommissionService.backfill_missing(self.db, organization_id=organization_id, limit=limit)
    return {"status": "success", **summary}


@celery_app.task(base=DatabaseTask, bind=True)
def migrate_traces_task(self, organization_id: str = None, dry_run: bool = False):
    """Upgrade stored calculation traces to the current schema"""
    summary = TraceMigrationService.migrate_traces(self.db, organization_id=organization_id, dry_run=dry_run)
    return {"status": "success", "dry_run": dry_run, **summary}
