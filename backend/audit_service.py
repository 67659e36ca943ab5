from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

ENTITY_PAYMENT_APPLICATION = "PAYMENT_APPLICATION"
ENTITY_LINE_ITEM_CATALOG = "LINE_ITEM_CATALOG"


class AuditService:
    """Service for immutable billing audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.billing_audit_logs

    async def log_action(
        self,
        entity_id: str,
        action: str,
        user_id: Optional[str],
        project_id: Optional[str] = None,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        notes: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        entity_type: str = ENTITY_PAYMENT_APPLICATION,
        session=None
    ):
        """
        Log an action to the audit trail (INSERT ONLY).

        Runs inside the caller's session so the entry commits or rolls back
        with the change it describes.
        """
        audit_entry = {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "project_id": project_id,
            "action": action,
            "from_state": from_state,
            "to_state": to_state,
            "notes": notes,
            "details": details or {},
            "performed_by": user_id,
            "timestamp": datetime.now(timezone.utc)
        }

        await self.collection.insert_one(audit_entry, session=session)
        logger.info(f"[AUDIT] {action} on {entity_type}:{entity_id} by user:{user_id}")

    async def get_audit_logs(
        self,
        entity_id: Optional[str] = None,
        project_id: Optional[str] = None,
        entity_type: str = ENTITY_PAYMENT_APPLICATION,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Retrieve audit logs (READ ONLY), newest first"""
        query = {"entity_type": entity_type}

        if entity_id:
            query["entity_id"] = entity_id
        if project_id:
            query["project_id"] = project_id

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)

        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs
