"""
LEDGER INTEGRITY JOB

Verifies that project accumulators match the transaction records.

For each project:
1. Recalculate total_income from non-deleted income transactions
2. Recalculate total_expense from non-deleted expense transactions
3. Compare with stored accumulators and the balance identity
4. Log mismatches (NO auto-fix in run())

reconcile_project() is the explicit fix: it overwrites the accumulators with
the recalculated values and clears ledger_out_of_sync.

Usage:
    job = LedgerIntegrityJob(db)
    report = await job.run()
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime
from typing import Dict, Any, List, Optional
import logging

from ledger.accumulator import ProjectAccumulator, stored_totals
from ledger.financial_precision import to_float, from_cents, totals_match
from ledger.party_policy import INCOME, EXPENSE
from ledger.errors import NotFoundError

logger = logging.getLogger(__name__)


class LedgerIntegrityJob:
    """
    Compares stored project accumulators against values recalculated from
    the transactions collection.

    Reports mismatches but does NOT auto-fix.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.projects = db["projects"]
        self.transactions = db["transactions"]
        self.accumulator = ProjectAccumulator(db)
        self.mismatches: List[Dict[str, Any]] = []
        self.checked_count = 0
        self.mismatch_count = 0

    async def run(self, owner_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Run the integrity check over all projects (or one owner's projects).

        Returns:
            Report with check results and any mismatches found
        """
        start_time = datetime.utcnow()
        self.mismatches = []
        self.checked_count = 0
        self.mismatch_count = 0

        logger.info("[INTEGRITY_JOB] Starting ledger integrity check...")

        query = {"created_by": owner_id} if owner_id else {}
        async for project in self.projects.find(query):
            result = await self.check_project(project)
            self.checked_count += 1
            if not result["consistent"]:
                self.mismatch_count += 1
                self.mismatches.append(result)

        end_time = datetime.utcnow()
        duration_ms = (end_time - start_time).total_seconds() * 1000

        report = {
            "job_name": "LedgerIntegrityJob",
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round(duration_ms, 2),
            "aggregates_checked": self.checked_count,
            "mismatches_found": self.mismatch_count,
            "mismatches": self.mismatches
        }

        if self.mismatch_count > 0:
            logger.warning(
                f"[INTEGRITY_JOB] Completed with {self.mismatch_count} mismatches "
                f"out of {self.checked_count} projects"
            )
        else:
            logger.info(
                f"[INTEGRITY_JOB] Completed successfully. "
                f"All {self.checked_count} projects verified."
            )

        return report

    async def recalculate_totals(self, project_id: str) -> Dict[str, Decimal]:
        """Sum non-deleted transactions of a project per type"""
        pipeline = [
            {"$match": {"project_id": project_id, "is_deleted": False}},
            {"$group": {"_id": "$type", "total_cents": {"$sum": "$amount_cents"}}}
        ]
        groups = await self.transactions.aggregate(pipeline).to_list(length=None)

        totals = {INCOME: Decimal('0'), EXPENSE: Decimal('0')}
        for group in groups:
            if group["_id"] in totals:
                totals[group["_id"]] = from_cents(group["total_cents"])
        return totals

    async def check_project(self, project: Dict[str, Any]) -> Dict[str, Any]:
        """Check a single project's accumulators against its transactions."""
        project_id = str(project["_id"])
        totals = await self.recalculate_totals(project_id)

        stored = stored_totals(project)
        stored_income = stored["total_income"]
        stored_expense = stored["total_expense"]
        stored_balance = stored["balance"]

        issues = []
        if not totals_match(stored_income, totals[INCOME]):
            issues.append("TOTAL_INCOME_MISMATCH")
        if not totals_match(stored_expense, totals[EXPENSE]):
            issues.append("TOTAL_EXPENSE_MISMATCH")
        if not totals_match(stored_balance, stored_income - stored_expense):
            issues.append("BALANCE_IDENTITY_BROKEN")

        if issues:
            logger.warning(f"[INTEGRITY_JOB] Project {project_id}: {', '.join(issues)}")

        return {
            "project_id": project_id,
            "code": project.get("code"),
            "consistent": not issues,
            "issues": issues,
            "ledger_out_of_sync": project.get("ledger_out_of_sync", False),
            "stored": {
                "total_income": to_float(stored_income),
                "total_expense": to_float(stored_expense),
                "balance": to_float(stored_balance)
            },
            "expected": {
                "total_income": to_float(totals[INCOME]),
                "total_expense": to_float(totals[EXPENSE]),
                "balance": to_float(totals[INCOME] - totals[EXPENSE])
            }
        }

    async def reconcile_project(self, project: Dict[str, Any]) -> Dict[str, Any]:
        """Overwrite a project's accumulators with recalculated values"""
        project_id = str(project["_id"])
        totals = await self.recalculate_totals(project_id)

        updated = await self.accumulator.overwrite_totals(
            project["_id"], totals[INCOME], totals[EXPENSE]
        )
        if not updated:
            raise NotFoundError("Project not found")

        reconciled = stored_totals(updated)
        logger.info(
            f"[INTEGRITY_JOB] Reconciled project {project_id}: "
            f"income={reconciled['total_income']}, expense={reconciled['total_expense']}, "
            f"balance={reconciled['balance']}"
        )
        return updated
