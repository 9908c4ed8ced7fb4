from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Create an audit log entry.

    Args:
        action: The audit action type
        actor_id: ID of the user or job performing the action
        resource_type: Type of resource affected (e.g., 'order')
        resource_id: ID of the specific resource
        metadata: Additional metadata
    """
    try:
        db = database.get_db()
        if db is None:
            logger.debug(f"Audit log skipped (no database): {action.value}")
            return ""

        audit_log = AuditLog(
            action=action,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata or None,
        )

        doc = audit_log.model_dump()
        doc["timestamp"] = doc["timestamp"].isoformat()

        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

