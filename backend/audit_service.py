"""
Activity log.

Insert-only record of who changed what: users, projects, parties and ledger
transactions. Writing an entry never fails the request that caused it.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from ledger import InvalidStateError

logger = logging.getLogger(__name__)

ACTION_TYPES = ("CREATE", "UPDATE", "DELETE", "SOFT_DELETE", "RECONCILE")

# Ledger records leave the books through SOFT_DELETE only
SOFT_DELETE_ONLY = ("TRANSACTION",)


class AuditService:
    """Writes and reads the audit_logs collection"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["audit_logs"]

    def check_action(self, entity_type: str, action_type: str):
        if action_type not in ACTION_TYPES:
            raise InvalidStateError(f"Unknown audit action: {action_type}")
        if action_type == "DELETE" and entity_type in SOFT_DELETE_ONLY:
            raise InvalidStateError(f"{entity_type} records are soft deleted, never removed")

    async def log_action(
        self,
        module_name: str,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: str,
        project_id: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ):
        """
        Append one entry.

        A bad action for the entity type is a programming error and raises;
        storage failures are only logged.
        """
        self.check_action(entity_type, action_type)

        entry = {
            "project_id": project_id,
            "module_name": module_name,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action_type": action_type,
            "old_value_json": old_value,
            "new_value_json": new_value,
            "user_id": user_id,
            "timestamp": datetime.utcnow()
        }

        try:
            await self.collection.insert_one(entry)
        except Exception as e:
            logger.error(f"[AUDIT] Could not record {action_type} {entity_type}:{entity_id}: {str(e)}")
            return

        logger.info(f"[AUDIT] {action_type} {entity_type}:{entity_id} by user:{user_id}")

    async def get_audit_logs(
        self,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        project_id: Optional[str] = None,
        action_type: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Newest first"""
        filters = {
            "user_id": user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "project_id": project_id,
            "action_type": action_type,
        }
        query = {key: value for key, value in filters.items() if value}

        cursor = self.collection.find(query).sort("timestamp", DESCENDING).limit(limit)
        logs = await cursor.to_list(length=limit)

        for log in logs:
            log["audit_id"] = str(log.pop("_id"))
        return logs
