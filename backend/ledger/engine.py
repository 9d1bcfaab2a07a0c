"""
LEDGER CONSISTENCY ENGINE

Creates, updates and soft-deletes transactions while keeping each project's
accumulators consistent:

    balance == total_income - total_expense

Order of operations for every write:
1. Resolve ownership (TransactionAccessLayer) - NotFound otherwise
2. Validate (party policy, positive amount) - no side effect on failure
3. Apply the totals delta to the project (ProjectAccumulator)
4. Persist the transaction record

Steps 3 and 4 are separate writes unless LEDGER_USE_TRANSACTIONS is on and a
replica-set client is available. The record write is conditional on the
state the delta was computed from; when it matches nothing (a concurrent
writer got there first) the delta is taken back off the totals and the
NotFound / Conflict is raised. Any other failure between the two writes is
logged, the project is flagged ledger_out_of_sync, and the error is re-raised.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from bson import ObjectId
from decimal import Decimal
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Awaitable, Tuple
import logging

from ledger.access import TransactionAccessLayer, parse_object_id
from ledger.accumulator import ProjectAccumulator, LedgerDelta, stored_totals
from ledger.financial_precision import to_decimal, to_float, to_cents, from_cents, validate_positive
from ledger.party_policy import ensure_compatible, normalize_transaction_type, INCOME, EXPENSE
from ledger.errors import NotFoundError, InvalidInputError, ConflictError

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "PKR"
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Fields a transaction patch may carry; project_id / party_id are immutable
MUTABLE_FIELDS = ("type", "amount", "date", "note", "reference", "file_url", "file_name")
TEXT_FIELDS = ("note", "reference", "file_url", "file_name")

# Record writes that matched nothing: no record changed, so the delta is undone
STALE_WRITE_ERRORS = (NotFoundError, ConflictError)


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class LedgerEngine:
    """
    Ledger consistency engine with:
    - Ownership-scoped access
    - Party type policy enforcement
    - Atomic relative accumulator updates
    - Soft delete with audit retention
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        client: Optional[AsyncIOMotorClient] = None,
        use_transactions: bool = False,
        audit_service=None
    ):
        self.db = db
        self.client = client
        self.use_transactions = use_transactions and client is not None
        self.audit_service = audit_service
        self.access = TransactionAccessLayer(db)
        self.accumulator = ProjectAccumulator(db)
        self.transactions = db["transactions"]
        self.parties = db["parties"]
        self.projects = db["projects"]

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def create_transaction(
        self,
        project_id: str,
        party_id: str,
        transaction_type: str,
        amount,
        acting_user_id: str,
        date: Optional[datetime] = None,
        note: Optional[str] = None,
        reference: Optional[str] = None,
        currency: Optional[str] = None,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record a new transaction and add its amount to the project totals.

        Preconditions, first failure wins:
        1. project owned by acting user      -> NotFound
        2. party belongs to that project     -> NotFound
        3. party type accepts the tx type    -> InvalidState
        4. amount > 0                        -> InvalidInput
        """
        project = await self.access.resolve_owned_project(acting_user_id, project_id)
        project_key = str(project["_id"])
        party = await self.access.resolve_project_party(project_key, party_id)
        transaction_type = normalize_transaction_type(transaction_type)
        ensure_compatible(party.get("party_type"), transaction_type)
        rounded_amount = validate_positive(amount, "Amount")

        now = datetime.utcnow()
        transaction_doc = {
            "project_id": project_key,
            "party_id": str(party["_id"]),
            "type": transaction_type,
            "amount": to_float(rounded_amount),
            "amount_cents": to_cents(rounded_amount),
            "currency": _clean_text(currency) or DEFAULT_CURRENCY,
            "date": date or now,
            "note": _clean_text(note),
            "reference": _clean_text(reference),
            "file_url": _clean_text(file_url),
            "file_name": _clean_text(file_name),
            "created_by": acting_user_id,
            "is_deleted": False,
            "created_at": now,
            "updated_at": now
        }

        async def write(session):
            result = await self.transactions.insert_one(transaction_doc, session=session)
            transaction_doc["_id"] = result.inserted_id
            return transaction_doc

        delta = LedgerDelta.for_entry(transaction_type, rounded_amount)
        _, transaction = await self._apply(project["_id"], delta, write, "create", "new transaction")

        logger.info(
            f"[LEDGER] Transaction created: {transaction['_id']} "
            f"{transaction_type} {transaction['amount']} project={project_key}"
        )
        await self._audit(
            "CREATE", transaction, acting_user_id,
            new_value={"type": transaction_type, "amount": transaction["amount"], "party_id": transaction["party_id"]}
        )
        return transaction

    async def update_transaction(
        self,
        transaction_id: str,
        changes: Dict[str, Any],
        acting_user_id: str
    ) -> Dict[str, Any]:
        """
        Apply a typed patch to a transaction.

        When type or amount is present the old entry is reversed and the new one
        re-applied on the project totals; other fields never touch totals.
        """
        unknown = sorted(set(changes) - set(MUTABLE_FIELDS))
        if unknown:
            raise InvalidInputError(f"Fields cannot be updated: {', '.join(unknown)}")

        existing = await self.access.resolve_owned_transaction(acting_user_id, transaction_id)

        set_fields: Dict[str, Any] = {}
        new_type = existing["type"]
        new_amount = to_decimal(existing["amount"])

        if "type" in changes:
            new_type = normalize_transaction_type(changes["type"])
            party = await self.parties.find_one({"_id": parse_object_id(existing["party_id"], "party ID")})
            if party:
                ensure_compatible(party.get("party_type"), new_type)
            else:
                logger.warning(
                    f"[LEDGER] Party {existing['party_id']} missing for transaction {transaction_id}; "
                    f"type change not validated against party"
                )
            set_fields["type"] = new_type

        if "amount" in changes:
            new_amount = validate_positive(changes["amount"], "Amount")
            set_fields["amount"] = to_float(new_amount)
            set_fields["amount_cents"] = to_cents(new_amount)

        if "date" in changes:
            if changes["date"] is None:
                raise InvalidInputError("Date cannot be empty")
            set_fields["date"] = changes["date"]

        for field in TEXT_FIELDS:
            if field in changes:
                set_fields[field] = _clean_text(changes[field])

        now = datetime.utcnow()
        set_fields["updated_at"] = now

        if "type" in changes or "amount" in changes:
            delta = LedgerDelta.replace(existing["type"], existing["amount"], new_type, new_amount)
        else:
            delta = LedgerDelta()

        async def write(session):
            # Only commit against the type / amount the delta was computed from
            updated = await self.transactions.find_one_and_update(
                {
                    "_id": existing["_id"],
                    "is_deleted": False,
                    "type": existing["type"],
                    "amount": existing["amount"]
                },
                {"$set": set_fields},
                return_document=ReturnDocument.AFTER,
                session=session
            )
            if updated:
                return updated
            still_active = await self.transactions.find_one(
                {"_id": existing["_id"], "is_deleted": False},
                {"_id": 1},
                session=session
            )
            if still_active:
                raise ConflictError("Transaction was changed by another request, reload and retry")
            raise NotFoundError("Transaction not found")

        project_oid = parse_object_id(existing["project_id"], "project ID")
        _, transaction = await self._apply(project_oid, delta, write, "update", f"transaction {transaction_id}")

        logger.info(f"[LEDGER] Transaction updated: {transaction_id} delta={delta}")
        await self._audit(
            "UPDATE", transaction, acting_user_id,
            old_value={"type": existing["type"], "amount": existing["amount"]},
            new_value={"type": transaction["type"], "amount": transaction["amount"]}
        )
        return transaction

    async def soft_delete_transaction(
        self,
        transaction_id: str,
        acting_user_id: str
    ) -> Dict[str, Any]:
        """
        Reverse a transaction's amount on the project totals and mark it deleted.
        The record is retained; read paths filter on is_deleted.
        """
        existing = await self.access.resolve_owned_transaction(acting_user_id, transaction_id)

        now = datetime.utcnow()

        async def write(session):
            deleted = await self.transactions.find_one_and_update(
                {"_id": existing["_id"], "is_deleted": False},
                {
                    "$set": {
                        "is_deleted": True,
                        "deleted_at": now,
                        "deleted_by": acting_user_id,
                        "updated_at": now
                    }
                },
                return_document=ReturnDocument.AFTER,
                session=session
            )
            if not deleted:
                raise NotFoundError("Transaction not found")
            return deleted

        delta = LedgerDelta.for_entry(existing["type"], existing["amount"], sign=-1)
        project_oid = parse_object_id(existing["project_id"], "project ID")
        _, transaction = await self._apply(project_oid, delta, write, "soft_delete", f"transaction {transaction_id}")

        logger.info(f"[LEDGER] Transaction soft-deleted: {transaction_id}")
        await self._audit(
            "SOFT_DELETE", transaction, acting_user_id,
            old_value={"type": existing["type"], "amount": existing["amount"], "is_deleted": False},
            new_value={"is_deleted": True}
        )
        return transaction

    async def _apply(
        self,
        project_oid: ObjectId,
        delta: LedgerDelta,
        write: Callable[[Any], Awaitable[Dict[str, Any]]],
        operation: str,
        target: str
    ) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
        """
        Apply the totals delta, then run the record write.

        A zero delta skips the project write entirely. `target` names the
        transaction (or "new transaction") in logs and in the out-of-sync reason.
        """
        if self.use_transactions:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    project = None
                    if not delta.is_zero:
                        project = await self.accumulator.apply_delta(project_oid, delta, session=session)
                    record = await write(session)
                    return project, record

        project = None
        if not delta.is_zero:
            project = await self.accumulator.apply_delta(project_oid, delta)

        try:
            record = await write(None)
        except STALE_WRITE_ERRORS as e:
            if project is not None:
                await self._undo_delta(project_oid, delta, operation, target, e)
            raise
        except Exception as e:
            if project is not None:
                await self._mark_partial_failure(project_oid, delta, operation, target, e)
            raise

        return project, record

    async def _undo_delta(self, project_oid, delta: LedgerDelta, operation: str, target: str, cause: Exception):
        """Take a delta back off the totals after its record write matched nothing"""
        try:
            await self.accumulator.apply_delta(project_oid, -delta)
        except Exception as e:
            await self._mark_partial_failure(project_oid, delta, operation, target, e)
            return
        logger.warning(
            f"[LEDGER] {operation} {target} lost to a concurrent write, "
            f"delta={delta} undone on project={project_oid}: {str(cause)}"
        )

    async def _mark_partial_failure(self, project_oid, delta: LedgerDelta, operation: str, target: str, cause: Exception):
        reason = f"{operation} {target} failed after totals update (delta={delta}): {str(cause)}"
        logger.error(f"[LEDGER PARTIAL FAILURE] project={project_oid} {reason}")
        await self.accumulator.flag_out_of_sync(project_oid, reason)

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def get_transaction(self, transaction_id: str, acting_user_id: str) -> Dict[str, Any]:
        transaction = await self.access.resolve_owned_transaction(acting_user_id, transaction_id)
        populated = await self._attach_references([transaction])
        return populated[0]

    async def list_transactions(
        self,
        acting_user_id: str,
        project_id: Optional[str] = None,
        party_id: Optional[str] = None,
        transaction_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        """
        List non-deleted transactions visible to the user.

        The summary is derived from the whole filtered set, not the page, and is
        independent of the persisted project accumulators.
        """
        query = await self.access.ownership_filter(acting_user_id, project_id)

        if party_id:
            query["party_id"] = str(parse_object_id(party_id, "party ID"))
        if transaction_type:
            query["type"] = normalize_transaction_type(transaction_type)
        if start_date or end_date:
            query["date"] = {}
            if start_date:
                query["date"]["$gte"] = start_date
            if end_date:
                query["date"]["$lte"] = end_date

        page = max(int(page), 1)
        limit = min(max(int(limit), 1), MAX_PAGE_SIZE)
        skip = (page - 1) * limit

        total = await self.transactions.count_documents(query)
        cursor = self.transactions.find(query).sort([("date", -1), ("_id", -1)]).skip(skip).limit(limit)
        transactions = await cursor.to_list(length=limit)
        transactions = await self._attach_references(transactions)

        summary = await self.summarize(query)

        return {
            "transactions": transactions,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit
            },
            "summary": summary
        }

    async def list_project_transactions(
        self,
        project_id: str,
        acting_user_id: str,
        **criteria
    ) -> Dict[str, Any]:
        """Project-scoped listing, with the persisted accumulators alongside"""
        project = await self.access.resolve_owned_project(acting_user_id, project_id)
        result = await self.list_transactions(acting_user_id, project_id=project_id, **criteria)
        totals = stored_totals(project)
        result["project"] = {
            "id": str(project["_id"]),
            "title": project.get("title"),
            "code": project.get("code"),
            "budget": project.get("initial_budget", 0),
            "total_income": to_float(totals["total_income"]),
            "total_expense": to_float(totals["total_expense"]),
            "balance": to_float(totals["balance"])
        }
        return result

    async def summarize(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """Ephemeral income / expense / net summary over a filtered set"""
        pipeline = [
            {"$match": query},
            {
                "$group": {
                    "_id": "$type",
                    "total_cents": {"$sum": "$amount_cents"},
                    "count": {"$sum": 1}
                }
            }
        ]
        groups = await self.transactions.aggregate(pipeline).to_list(length=None)

        totals = {INCOME: Decimal('0'), EXPENSE: Decimal('0')}
        count = 0
        for group in groups:
            if group["_id"] in totals:
                totals[group["_id"]] += from_cents(group["total_cents"])
            count += group["count"]

        return {
            "total_income": to_float(totals[INCOME]),
            "total_expense": to_float(totals[EXPENSE]),
            "net_amount": to_float(totals[INCOME] - totals[EXPENSE]),
            "total_transactions": count
        }

    async def _attach_references(self, transactions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Embed a short project and party view in each transaction (read-only)"""
        if not transactions:
            return transactions

        party_ids = {tx["party_id"] for tx in transactions if ObjectId.is_valid(tx.get("party_id"))}
        project_ids = {tx["project_id"] for tx in transactions if ObjectId.is_valid(tx.get("project_id"))}

        parties = await self.parties.find(
            {"_id": {"$in": [ObjectId(pid) for pid in party_ids]}},
            {"name": 1, "party_type": 1}
        ).to_list(length=None)
        projects = await self.projects.find(
            {"_id": {"$in": [ObjectId(pid) for pid in project_ids]}},
            {"title": 1, "code": 1}
        ).to_list(length=None)

        party_map = {str(p["_id"]): p for p in parties}
        project_map = {str(p["_id"]): p for p in projects}

        populated = []
        for tx in transactions:
            tx = dict(tx)
            party = party_map.get(tx.get("party_id"))
            project = project_map.get(tx.get("project_id"))
            tx["party"] = (
                {"id": tx["party_id"], "name": party.get("name"), "party_type": party.get("party_type")}
                if party else None
            )
            tx["project"] = (
                {"id": tx["project_id"], "title": project.get("title"), "code": project.get("code")}
                if project else None
            )
            populated.append(tx)
        return populated

    async def _audit(
        self,
        action_type: str,
        transaction: Dict[str, Any],
        user_id: str,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ):
        if self.audit_service is None:
            return
        await self.audit_service.log_action(
            module_name="LEDGER",
            entity_type="TRANSACTION",
            entity_id=str(transaction["_id"]),
            action_type=action_type,
            user_id=user_id,
            project_id=transaction.get("project_id"),
            old_value=old_value,
            new_value=new_value
        )
