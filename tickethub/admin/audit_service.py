from typing import Any, Dict, List, Optional
import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tickethub.admin.schemas import AuditAction
from tickethub.auth.schemas import AdminActor
from tickethub.models import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Persists admin decisions to the audit log"""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        actor: Optional[AdminActor],
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """Log audit event; a failed write is logged and does not undo the decision"""
        log_entry = AuditLog(
            admin_user_id=actor.id if actor else None,
            admin_username=actor.username if actor else None,
            action=action.value,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
            success=success,
            error_message=error_message,
        )
        try:
            self.db.add(log_entry)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Failed to write audit entry %s for %s %s", action.value, resource_type, resource_id, exc_info=True)
            return None
        return log_entry

    def list(
        self,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        query = self.db.query(AuditLog)
        if action:
            query = query.filter(AuditLog.action == action)
        if resource_type:
            query = query.filter(AuditLog.resource_type == resource_type)
        if resource_id:
            query = query.filter(AuditLog.resource_id == resource_id)
        return query.order_by(AuditLog.id.desc()).limit(limit).all()
