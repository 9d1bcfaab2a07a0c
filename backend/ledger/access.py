"""
Transaction access layer.

Resolves which projects and transactions an acting user may see or mutate.
Ownership chain: user -> project (created_by) -> transaction (project_id).

Anything outside the chain is reported as NotFound, exactly as if it did not
exist, so other users' data is never revealed.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
from typing import Optional, Dict, Any, List
import logging

from ledger.errors import NotFoundError, InvalidInputError

logger = logging.getLogger(__name__)


def parse_object_id(value: str, label: str = "ID") -> ObjectId:
    """Parse a hex id string, raising InvalidInputError on malformed input"""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str):
        raise InvalidInputError(f"Invalid {label} format")
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise InvalidInputError(f"Invalid {label} format")


class TransactionAccessLayer:
    """Read-only ownership resolution for projects and transactions"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.projects = db["projects"]
        self.parties = db["parties"]
        self.transactions = db["transactions"]

    async def list_owned_project_ids(self, user_id: str, session=None) -> List[str]:
        """Every project id owned by the user, as hex strings"""
        cursor = self.projects.find({"created_by": user_id}, {"_id": 1}, session=session)
        projects = await cursor.to_list(length=None)
        return [str(project["_id"]) for project in projects]

    async def resolve_owned_project(
        self,
        user_id: str,
        project_id: str,
        session=None
    ) -> Dict[str, Any]:
        """Fetch a project owned by the user, else NotFound"""
        project = await self.projects.find_one(
            {"_id": parse_object_id(project_id, "project ID"), "created_by": user_id},
            session=session
        )
        if not project:
            raise NotFoundError("Project not found")
        return project

    async def resolve_project_party(
        self,
        project_id: str,
        party_id: str,
        session=None
    ) -> Dict[str, Any]:
        """Fetch a party that belongs to the given project, else NotFound"""
        party = await self.parties.find_one(
            {"_id": parse_object_id(party_id, "party ID"), "project_id": project_id},
            session=session
        )
        if not party:
            raise NotFoundError("Party not found or not associated with this project")
        return party

    async def resolve_owned_transaction(
        self,
        user_id: str,
        transaction_id: str,
        session=None
    ) -> Dict[str, Any]:
        """
        Fetch a non-deleted transaction whose project is owned by the user.

        Raises NotFound for missing, soft-deleted and foreign transactions alike.
        """
        tx_oid = parse_object_id(transaction_id, "transaction ID")
        owned_ids = await self.list_owned_project_ids(user_id, session=session)

        transaction = await self.transactions.find_one(
            {
                "_id": tx_oid,
                "is_deleted": False,
                "project_id": {"$in": owned_ids}
            },
            session=session
        )
        if not transaction:
            logger.debug(f"[ACCESS] Transaction {transaction_id} not visible to user {user_id}")
            raise NotFoundError("Transaction not found")
        return transaction

    async def ownership_filter(
        self,
        user_id: str,
        project_id: Optional[str] = None,
        session=None
    ) -> Dict[str, Any]:
        """
        Base filter for transaction read paths.

        With a project_id the project must be owned by the user (else NotFound);
        without one the filter spans every owned project.
        """
        if project_id:
            project = await self.resolve_owned_project(user_id, project_id, session=session)
            return {"is_deleted": False, "project_id": str(project["_id"])}

        owned_ids = await self.list_owned_project_ids(user_id, session=session)
        return {"is_deleted": False, "project_id": {"$in": owned_ids}}
