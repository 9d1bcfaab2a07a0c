"""
PROJECT API ROUTES

Projects are owned by the user who creates them. Accumulators
(total_income / total_expense / balance) are read-only here: they move
through the ledger engine, or through an explicit reconcile.
"""

from fastapi import APIRouter, HTTPException, status, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime, timezone
from typing import Optional
import logging

from models import ProjectCreate, ProjectUpdate, ProjectStatusUpdate, ProjectStatus, PartyType
from permissions import get_authenticated_user
from database import get_db
from dependencies import get_access_layer, get_audit_service, get_integrity_job
from audit_service import AuditService
from serialization import serialize_doc, serialize_docs
from ledger import (
    TransactionAccessLayer, LedgerIntegrityJob, ConflictError,
    stored_totals, with_totals, zero_totals, to_float
)

logger = logging.getLogger(__name__)

project_router = APIRouter(prefix="/api/projects", tags=["Projects"])


def _format_code(code: str) -> str:
    formatted = code.strip().upper()
    if not formatted:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Project code is required"
        )
    return formatted


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive UTC datetimes
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _check_dates(start_date: Optional[datetime], end_date: Optional[datetime]):
    if start_date and end_date and end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="End date cannot be before start date"
        )


def _financial_summary(project: dict) -> dict:
    initial_budget = project.get("initial_budget", 0) or 0
    totals = stored_totals(project)
    return {
        "total_income": to_float(totals["total_income"]),
        "total_expense": to_float(totals["total_expense"]),
        "balance": to_float(totals["balance"]),
        "net_profit": to_float(totals["balance"]),
        "initial_budget": initial_budget,
        "remaining_budget": round(initial_budget - float(totals["total_expense"]), 2)
    }


def _project_out(project: dict) -> dict:
    return serialize_doc(with_totals(project))


async def _ensure_code_available(db, user_id: str, code: str, exclude_id=None):
    query = {"created_by": user_id, "code": code}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if await db["projects"].find_one(query):
        raise ConflictError(f"Project code '{code}' already exists")


@project_router.post("", status_code=status.HTTP_201_CREATED)
async def create_project(
    project_data: ProjectCreate,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Create a project with zeroed accumulators"""
    code = _format_code(project_data.code)
    start_date = _naive_utc(project_data.start_date)
    end_date = _naive_utc(project_data.end_date)
    _check_dates(start_date, end_date)
    await _ensure_code_available(db, user["user_id"], code)

    now = datetime.utcnow()
    project_dict = {
        "title": project_data.title.strip(),
        "code": code,
        "description": project_data.description.strip() if project_data.description else None,
        "initial_budget": project_data.initial_budget,
        **zero_totals(),
        "status": project_data.status.value,
        "start_date": start_date or now,
        "end_date": end_date,
        "created_by": user["user_id"],
        "ledger_out_of_sync": False,
        "created_at": now,
        "updated_at": now
    }

    result = await db["projects"].insert_one(project_dict)
    project_dict["_id"] = result.inserted_id
    project_id = str(result.inserted_id)

    await audit_service.log_action(
        module_name="PROJECT_MANAGEMENT",
        entity_type="PROJECT",
        entity_id=project_id,
        action_type="CREATE",
        user_id=user["user_id"],
        project_id=project_id,
        new_value={"title": project_dict["title"], "code": code}
    )

    return {
        "success": True,
        "message": "Project created successfully",
        "data": _project_out(project_dict)
    }


@project_router.get("")
async def list_projects(
    status_filter: Optional[ProjectStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """List the user's projects with party counts"""
    query = {"created_by": user["user_id"]}
    if status_filter:
        query["status"] = status_filter.value

    skip = (page - 1) * limit
    total = await db["projects"].count_documents(query)
    projects = await db["projects"].find(query).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)

    for project in projects:
        project_id = str(project["_id"])
        clients = await db["parties"].count_documents({"project_id": project_id, "party_type": PartyType.CLIENT.value})
        vendors = await db["parties"].count_documents({"project_id": project_id, "party_type": PartyType.VENDOR.value})
        project["parties_summary"] = {"total": clients + vendors, "clients": clients, "vendors": vendors}

    return {
        "success": True,
        "data": [_project_out(p) for p in projects],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit
        }
    }


@project_router.get("/stats")
async def project_statistics(
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Portfolio statistics over the user's projects (reads persisted accumulators)"""
    projects = await db["projects"].find({"created_by": user["user_id"]}).to_list(length=None)

    by_status = {s.value: 0 for s in ProjectStatus}
    budget_total = 0.0
    totals = {"total_income": Decimal('0'), "total_expense": Decimal('0'), "total_balance": Decimal('0')}
    overdue = 0
    now = datetime.utcnow()

    for project in projects:
        project_status = project.get("status", ProjectStatus.ACTIVE.value)
        by_status[project_status] = by_status.get(project_status, 0) + 1
        budget_total += project.get("initial_budget", 0) or 0
        project_totals = stored_totals(project)
        totals["total_income"] += project_totals["total_income"]
        totals["total_expense"] += project_totals["total_expense"]
        totals["total_balance"] += project_totals["balance"]
        end_date = project.get("end_date")
        if project_status == ProjectStatus.ACTIVE.value and end_date and end_date < now:
            overdue += 1

    total_projects = len(projects)
    project_ids = [str(p["_id"]) for p in projects]
    party_groups = await db["parties"].aggregate([
        {"$match": {"project_id": {"$in": project_ids}}},
        {"$group": {"_id": "$party_type", "count": {"$sum": 1}}}
    ]).to_list(length=None)
    party_counts = {group["_id"]: group["count"] for group in party_groups}

    stats = {
        "total_projects": total_projects,
        "total_budget": round(budget_total, 2),
        **{key: to_float(value) for key, value in totals.items()},
        "projects_by_status": by_status,
        "overdue_projects": overdue,
        "budget_utilization": round(float(totals["total_expense"]) / budget_total, 4) if budget_total else 0,
        "average_budget": round(budget_total / total_projects, 2) if total_projects else 0
    }
    parties = {
        "total_parties": sum(party_counts.values()),
        "total_clients": party_counts.get(PartyType.CLIENT.value, 0),
        "total_vendors": party_counts.get(PartyType.VENDOR.value, 0)
    }

    return {"success": True, "data": {"projects": stats, "parties": parties}}


@project_router.get("/code/{code}")
async def get_project_by_code(
    code: str,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    project = await db["projects"].find_one({"created_by": user["user_id"], "code": code.strip().upper()})
    if not project:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")

    project["financial"] = _financial_summary(project)
    return {"success": True, "data": _project_out(project)}


@project_router.get("/{project_id}")
async def get_project(
    project_id: str,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer)
):
    """Project detail with its parties and financial summary"""
    project = await access.resolve_owned_project(user["user_id"], project_id)
    key = str(project["_id"])

    parties = await db["parties"].find({"project_id": key}).sort("created_at", -1).to_list(length=None)
    clients = [p for p in parties if p.get("party_type") == PartyType.CLIENT.value]
    vendors = [p for p in parties if p.get("party_type") == PartyType.VENDOR.value]

    project["parties"] = {"clients": serialize_docs(clients), "vendors": serialize_docs(vendors)}
    project["counts"] = {"total": len(parties), "clients": len(clients), "vendors": len(vendors)}
    project["financial"] = _financial_summary(project)

    return {"success": True, "data": _project_out(project)}


@project_router.put("/{project_id}")
async def update_project(
    project_id: str,
    updates: ProjectUpdate,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Update descriptive project fields"""
    project = await access.resolve_owned_project(user["user_id"], project_id)
    changes = updates.dict(exclude_unset=True)
    update_fields = {}

    if "title" in changes:
        if not changes["title"] or not changes["title"].strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title cannot be empty")
        update_fields["title"] = changes["title"].strip()

    if changes.get("code") is not None:
        code = _format_code(changes["code"])
        if code != project.get("code"):
            await _ensure_code_available(db, user["user_id"], code, exclude_id=project["_id"])
            update_fields["code"] = code

    if "description" in changes:
        update_fields["description"] = (changes["description"] or "").strip() or None

    if changes.get("initial_budget") is not None:
        update_fields["initial_budget"] = changes["initial_budget"]

    if changes.get("status") is not None:
        update_fields["status"] = ProjectStatus(changes["status"]).value

    if changes.get("start_date") is not None:
        update_fields["start_date"] = _naive_utc(changes["start_date"])

    if "end_date" in changes:
        update_fields["end_date"] = _naive_utc(changes["end_date"])

    _check_dates(
        update_fields.get("start_date", project.get("start_date")),
        update_fields.get("end_date", project.get("end_date"))
    )

    update_fields["updated_at"] = datetime.utcnow()
    await db["projects"].update_one({"_id": project["_id"]}, {"$set": update_fields})
    updated = await db["projects"].find_one({"_id": project["_id"]})

    await audit_service.log_action(
        module_name="PROJECT_MANAGEMENT",
        entity_type="PROJECT",
        entity_id=str(project["_id"]),
        action_type="UPDATE",
        user_id=user["user_id"],
        project_id=str(project["_id"]),
        old_value={k: project.get(k) for k in update_fields if k != "updated_at"},
        new_value={k: v for k, v in update_fields.items() if k != "updated_at"}
    )

    return {"success": True, "message": "Project updated successfully", "data": _project_out(updated)}


@project_router.patch("/{project_id}/status")
async def update_project_status(
    project_id: str,
    status_data: ProjectStatusUpdate,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer)
):
    project = await access.resolve_owned_project(user["user_id"], project_id)
    await db["projects"].update_one(
        {"_id": project["_id"]},
        {"$set": {"status": status_data.status.value, "updated_at": datetime.utcnow()}}
    )
    updated = await db["projects"].find_one({"_id": project["_id"]})
    return {"success": True, "message": "Project status updated successfully", "data": _project_out(updated)}


@project_router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Delete a project that has no parties"""
    project = await access.resolve_owned_project(user["user_id"], project_id)
    key = str(project["_id"])

    parties_count = await db["parties"].count_documents({"project_id": key})
    if parties_count > 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot delete project. It has {parties_count} associated parties. "
                   f"Delete parties first or use force delete."
        )

    await db["projects"].delete_one({"_id": project["_id"]})
    await audit_service.log_action(
        module_name="PROJECT_MANAGEMENT",
        entity_type="PROJECT",
        entity_id=key,
        action_type="DELETE",
        user_id=user["user_id"],
        project_id=key,
        old_value={"title": project.get("title"), "code": project.get("code")}
    )

    return {
        "success": True,
        "message": "Project deleted successfully",
        "data": {"id": key, "title": project.get("title"), "code": project.get("code")}
    }


@project_router.delete("/{project_id}/force")
async def force_delete_project(
    project_id: str,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer),
    audit_service: AuditService = Depends(get_audit_service)
):
    """
    Delete a project and all of its parties.
    Transaction records are left in place; they stop being reachable through
    the ownership chain once the project is gone.
    """
    project = await access.resolve_owned_project(user["user_id"], project_id)
    key = str(project["_id"])

    delete_result = await db["parties"].delete_many({"project_id": key})
    await db["projects"].delete_one({"_id": project["_id"]})

    logger.info(f"Force deleted project {key} with {delete_result.deleted_count} parties")
    await audit_service.log_action(
        module_name="PROJECT_MANAGEMENT",
        entity_type="PROJECT",
        entity_id=key,
        action_type="DELETE",
        user_id=user["user_id"],
        project_id=key,
        old_value={"title": project.get("title"), "code": project.get("code")},
        new_value={"parties_deleted": delete_result.deleted_count, "force": True}
    )

    return {
        "success": True,
        "message": "Project and all associated parties deleted successfully",
        "data": {
            "project": {"id": key, "title": project.get("title"), "code": project.get("code")},
            "parties_deleted": delete_result.deleted_count
        }
    }


@project_router.get("/{project_id}/ledger-check")
async def check_project_ledger(
    project_id: str,
    user: dict = Depends(get_authenticated_user),
    access: TransactionAccessLayer = Depends(get_access_layer),
    job: LedgerIntegrityJob = Depends(get_integrity_job)
):
    """Compare persisted totals with the sum of active transactions (no fix)"""
    project = await access.resolve_owned_project(user["user_id"], project_id)
    result = await job.check_project(project)
    return {"success": True, "data": result}


@project_router.post("/{project_id}/reconcile")
async def reconcile_project_ledger(
    project_id: str,
    user: dict = Depends(get_authenticated_user),
    access: TransactionAccessLayer = Depends(get_access_layer),
    job: LedgerIntegrityJob = Depends(get_integrity_job),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Rebuild the project's totals from its active transactions"""
    project = await access.resolve_owned_project(user["user_id"], project_id)
    before = await job.check_project(project)
    updated = await job.reconcile_project(project)

    await audit_service.log_action(
        module_name="LEDGER",
        entity_type="PROJECT",
        entity_id=str(project["_id"]),
        action_type="RECONCILE",
        user_id=user["user_id"],
        project_id=str(project["_id"]),
        old_value=before["stored"],
        new_value=before["expected"]
    )

    return {
        "success": True,
        "message": "Project ledger reconciled",
        "data": {
            "was_consistent": before["consistent"],
            "issues": before["issues"],
            "project": _project_out(updated)
        }
    }


@project_router.get("/{project_id}/activity")
async def project_activity(
    project_id: str,
    action_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_authenticated_user),
    access: TransactionAccessLayer = Depends(get_access_layer),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Activity log of a project (projects, parties, transactions)"""
    project = await access.resolve_owned_project(user["user_id"], project_id)
    logs = await audit_service.get_audit_logs(
        project_id=str(project["_id"]),
        action_type=action_type.upper() if action_type else None,
        limit=limit
    )
    return {"success": True, "data": serialize_docs(logs)}
