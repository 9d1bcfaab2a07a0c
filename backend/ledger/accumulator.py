"""
LEDGER: PROJECT ACCUMULATOR

The only code path that writes a project's running totals.

Totals are persisted as whole cents and moved with a single atomic relative
increment on the project document:

    $inc: {total_income_cents: dI, total_expense_cents: dE, balance_cents: dI - dE}

so two concurrent writers never clobber each other (no read-compute-write
window), and integer addition on the server keeps every total exact.
Callers describe their change as a LedgerDelta; swapping this routine for a
compare-and-swap loop later needs no call-site changes.

Readers never see the cents fields: with_totals() turns them into the
total_income / total_expense / balance amounts served by the API.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from decimal import Decimal
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from ledger.financial_precision import to_decimal, round_financial, to_float, to_cents, from_cents
from ledger.party_policy import INCOME, EXPENSE
from ledger.errors import NotFoundError, InvalidInputError

logger = logging.getLogger(__name__)

# Public total -> persisted cents field
CENTS_FIELDS = {
    "total_income": "total_income_cents",
    "total_expense": "total_expense_cents",
    "balance": "balance_cents",
}


def zero_totals() -> Dict[str, int]:
    """Accumulator fields of a freshly created project"""
    return {cents_field: 0 for cents_field in CENTS_FIELDS.values()}


def stored_totals(project: Dict[str, Any]) -> Dict[str, Decimal]:
    """A project's persisted accumulators as 2-place Decimals"""
    return {
        field: from_cents(project.get(cents_field))
        for field, cents_field in CENTS_FIELDS.items()
    }


def with_totals(project: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of a project document with its cents fields replaced by amounts"""
    if project is None:
        return None
    view = {key: value for key, value in project.items() if key not in CENTS_FIELDS.values()}
    for field, amount in stored_totals(project).items():
        view[field] = to_float(amount)
    return view


class LedgerDelta:
    """Signed change to a project's income and expense accumulators"""

    __slots__ = ("income", "expense")

    def __init__(self, income=Decimal('0'), expense=Decimal('0')):
        self.income = round_financial(income)
        self.expense = round_financial(expense)

    @classmethod
    def for_entry(cls, transaction_type: str, amount, sign: int = 1) -> "LedgerDelta":
        """Delta contributed by one transaction (sign=-1 reverses it)"""
        value = to_decimal(amount) * sign
        if transaction_type == INCOME:
            return cls(income=value)
        if transaction_type == EXPENSE:
            return cls(expense=value)
        raise InvalidInputError("Type must be either 'income' or 'expense'")

    @classmethod
    def replace(cls, old_type: str, old_amount, new_type: str, new_amount) -> "LedgerDelta":
        """Reverse the old entry and re-apply the new one, as one delta"""
        return cls.for_entry(old_type, old_amount, sign=-1) + cls.for_entry(new_type, new_amount)

    def __add__(self, other: "LedgerDelta") -> "LedgerDelta":
        return LedgerDelta(self.income + other.income, self.expense + other.expense)

    def __neg__(self) -> "LedgerDelta":
        return LedgerDelta(-self.income, -self.expense)

    def __eq__(self, other) -> bool:
        return (
            isinstance(other, LedgerDelta)
            and self.income == other.income
            and self.expense == other.expense
        )

    def __repr__(self) -> str:
        return f"LedgerDelta(income={self.income}, expense={self.expense})"

    @property
    def balance(self) -> Decimal:
        return self.income - self.expense

    @property
    def is_zero(self) -> bool:
        return self.income == Decimal('0') and self.expense == Decimal('0')

    def as_dict(self) -> Dict[str, int]:
        """$inc document, in cents"""
        return {
            CENTS_FIELDS["total_income"]: to_cents(self.income),
            CENTS_FIELDS["total_expense"]: to_cents(self.expense),
            CENTS_FIELDS["balance"]: to_cents(self.balance)
        }


class ProjectAccumulator:
    """Applies LedgerDeltas to project documents"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.projects = db["projects"]

    async def apply_delta(
        self,
        project_oid,
        delta: LedgerDelta,
        session=None
    ) -> Dict[str, Any]:
        """
        Atomically add the delta to the project's accumulators.

        Returns the updated project document. Raises NotFoundError if the project
        vanished between resolution and write.
        """
        project = await self.projects.find_one_and_update(
            {"_id": project_oid},
            {
                "$inc": delta.as_dict(),
                "$set": {"updated_at": datetime.utcnow()}
            },
            return_document=ReturnDocument.AFTER,
            session=session
        )

        if not project:
            raise NotFoundError("Project not found")

        totals = stored_totals(project)
        logger.info(
            f"[LEDGER] Totals updated: project={project_oid} delta={delta} -> "
            f"income={totals['total_income']}, expense={totals['total_expense']}, "
            f"balance={totals['balance']}"
        )
        return project

    async def overwrite_totals(
        self,
        project_oid,
        total_income,
        total_expense,
        session=None
    ) -> Optional[Dict[str, Any]]:
        """
        Set absolute totals. Used only by reconciliation, never by transaction writes.
        Clears the out-of-sync flag.
        """
        income = round_financial(total_income)
        expense = round_financial(total_expense)
        return await self.projects.find_one_and_update(
            {"_id": project_oid},
            {
                "$set": {
                    CENTS_FIELDS["total_income"]: to_cents(income),
                    CENTS_FIELDS["total_expense"]: to_cents(expense),
                    CENTS_FIELDS["balance"]: to_cents(income - expense),
                    "ledger_out_of_sync": False,
                    "updated_at": datetime.utcnow()
                }
            },
            return_document=ReturnDocument.AFTER,
            session=session
        )

    async def flag_out_of_sync(self, project_oid, reason: str) -> None:
        """Mark a project whose totals and transaction records may disagree"""
        try:
            await self.projects.update_one(
                {"_id": project_oid},
                {
                    "$set": {
                        "ledger_out_of_sync": True,
                        "ledger_out_of_sync_reason": reason,
                        "ledger_out_of_sync_at": datetime.utcnow()
                    }
                }
            )
        except Exception as e:
            logger.error(f"[LEDGER] Could not flag project {project_oid} as out of sync: {str(e)}")
