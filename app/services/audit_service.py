from sqlalchemy.orm import Session
from typing import Optional, Dict, Any, List

from app.models.audit_log import AuditLog


class AuditService:
    @staticmethod
    def log_action(
        db: Session,
        organization_id: str,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        user_id: Optional[str] = None,
        description: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None
    ) -> AuditLog:
        """Record an audit entry in the caller's transaction.

        The caller commits, so the entry lands atomically with the change
        it describes.
        """
        log = AuditLog(
            organization_id=organization_id,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            description=description,
            changes=changes
        )
        db.add(log)
        return log

    @staticmethod
    def list_logs(
        db: Session,
        organization_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditLog]:
        query = db.query(AuditLog).filter(AuditLog.organization_id == organization_id)

        if entity_type:
            query = query.filter(AuditLog.entity_type == entity_type)
        if entity_id:
            query = query.filter(AuditLog.entity_id == entity_id)

        return query.order_by(AuditLog.created_at.desc(), AuditLog.id).limit(limit).all()
