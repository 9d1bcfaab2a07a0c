"""
PARTY API ROUTES

Parties (clients and vendors) live inside a project. A party's type fixes
which kind of transaction may reference it, so the type is frozen once the
party has active transactions.
"""

from fastapi import APIRouter, HTTPException, status, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional
import logging

from models import PartyCreate, PartyUpdate, PartyType
from permissions import get_authenticated_user
from database import get_db
from dependencies import get_access_layer, get_audit_service
from audit_service import AuditService
from serialization import serialize_doc, serialize_docs
from ledger import TransactionAccessLayer, ConflictError, InvalidStateError

logger = logging.getLogger(__name__)

party_router = APIRouter(prefix="/api/projects", tags=["Parties"])


def _clean_contact(contact: Optional[dict]) -> dict:
    contact = contact or {}
    email = contact.get("email")
    return {
        "email": email.strip().lower() if email else None,
        "phone": contact.get("phone").strip() if contact.get("phone") else None,
        "address": contact.get("address").strip() if contact.get("address") else None
    }


async def _ensure_name_available(db, project_id: str, name: str, exclude_id=None):
    query = {"project_id": project_id, "name": name}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if await db["parties"].find_one(query):
        raise ConflictError(f"Party '{name}' already exists in this project")


@party_router.post("/{project_id}/parties", status_code=status.HTTP_201_CREATED)
async def create_party(
    project_id: str,
    party_data: PartyCreate,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Add a client or vendor to a project"""
    project = await access.resolve_owned_project(user["user_id"], project_id)
    key = str(project["_id"])

    name = party_data.name.strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Party name is required")
    await _ensure_name_available(db, key, name)

    now = datetime.utcnow()
    party_dict = {
        "project_id": key,
        "name": name,
        "party_type": party_data.party_type.value,
        "description": party_data.description.strip() if party_data.description else None,
        "profile_image": party_data.profile_image,
        "contact": _clean_contact(party_data.contact.dict() if party_data.contact else None),
        "created_at": now,
        "updated_at": now
    }

    result = await db["parties"].insert_one(party_dict)
    party_dict["_id"] = result.inserted_id
    party_id = str(result.inserted_id)

    await audit_service.log_action(
        module_name="PARTY_MANAGEMENT",
        entity_type="PARTY",
        entity_id=party_id,
        action_type="CREATE",
        user_id=user["user_id"],
        project_id=key,
        new_value={"name": name, "party_type": party_dict["party_type"]}
    )

    return {
        "success": True,
        "message": "Party created successfully",
        "data": serialize_doc(party_dict)
    }


@party_router.get("/{project_id}/parties")
async def list_parties(
    project_id: str,
    party_type: Optional[PartyType] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer)
):
    project = await access.resolve_owned_project(user["user_id"], project_id)
    key = str(project["_id"])

    query = {"project_id": key}
    if party_type:
        query["party_type"] = party_type.value
    if search:
        query["name"] = {"$regex": search.strip(), "$options": "i"}

    skip = (page - 1) * limit
    total = await db["parties"].count_documents(query)
    parties = await db["parties"].find(query).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)

    return {
        "success": True,
        "data": serialize_docs(parties),
        "project": {"id": key, "title": project.get("title"), "code": project.get("code")},
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit
        }
    }


@party_router.get("/{project_id}/parties-stats")
async def party_statistics(
    project_id: str,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer)
):
    """Party counts of a project by type"""
    project = await access.resolve_owned_project(user["user_id"], project_id)
    key = str(project["_id"])

    groups = await db["parties"].aggregate([
        {"$match": {"project_id": key}},
        {"$group": {"_id": "$party_type", "count": {"$sum": 1}}}
    ]).to_list(length=None)
    counts = {group["_id"]: group["count"] for group in groups}

    return {
        "success": True,
        "data": {
            "total_parties": sum(counts.values()),
            "total_clients": counts.get(PartyType.CLIENT.value, 0),
            "total_vendors": counts.get(PartyType.VENDOR.value, 0)
        }
    }


@party_router.get("/{project_id}/parties/{party_id}")
async def get_party(
    project_id: str,
    party_id: str,
    user: dict = Depends(get_authenticated_user),
    access: TransactionAccessLayer = Depends(get_access_layer)
):
    project = await access.resolve_owned_project(user["user_id"], project_id)
    party = await access.resolve_project_party(str(project["_id"]), party_id)
    party["project"] = {"id": str(project["_id"]), "title": project.get("title"), "code": project.get("code")}
    return {"success": True, "data": serialize_doc(party)}


@party_router.put("/{project_id}/parties/{party_id}")
async def update_party(
    project_id: str,
    party_id: str,
    updates: PartyUpdate,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer),
    audit_service: AuditService = Depends(get_audit_service)
):
    """
    Update a party.

    Contact fields are merged one by one. Changing party_type is refused while
    the party still has active transactions.
    """
    project = await access.resolve_owned_project(user["user_id"], project_id)
    key = str(project["_id"])
    party = await access.resolve_project_party(key, party_id)
    changes = updates.dict(exclude_unset=True)
    update_fields = {}

    if changes.get("name") is not None:
        name = changes["name"].strip()
        if not name:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Party name cannot be empty")
        if name != party.get("name"):
            await _ensure_name_available(db, key, name, exclude_id=party["_id"])
            update_fields["name"] = name

    if changes.get("party_type") is not None:
        new_type = PartyType(changes["party_type"]).value
        if new_type != party.get("party_type"):
            active = await db["transactions"].count_documents({
                "party_id": str(party["_id"]),
                "is_deleted": False
            })
            if active > 0:
                raise InvalidStateError(
                    f"Cannot change party type. Party has {active} active transactions",
                    details={"party_id": str(party["_id"]), "active_transactions": active}
                )
            update_fields["party_type"] = new_type

    if "description" in changes:
        update_fields["description"] = (changes["description"] or "").strip() or None

    if "profile_image" in changes:
        update_fields["profile_image"] = changes["profile_image"]

    if changes.get("contact") is not None:
        contact = dict(party.get("contact") or {})
        for field, value in changes["contact"].items():
            if value is not None:
                contact[field] = value
        update_fields["contact"] = _clean_contact(contact)

    update_fields["updated_at"] = datetime.utcnow()
    await db["parties"].update_one({"_id": party["_id"]}, {"$set": update_fields})
    updated = await db["parties"].find_one({"_id": party["_id"]})

    await audit_service.log_action(
        module_name="PARTY_MANAGEMENT",
        entity_type="PARTY",
        entity_id=str(party["_id"]),
        action_type="UPDATE",
        user_id=user["user_id"],
        project_id=key,
        old_value={k: party.get(k) for k in update_fields if k != "updated_at"},
        new_value={k: v for k, v in update_fields.items() if k != "updated_at"}
    )

    return {"success": True, "message": "Party updated successfully", "data": serialize_doc(updated)}


@party_router.delete("/{project_id}/parties/{party_id}")
async def delete_party(
    project_id: str,
    party_id: str,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    access: TransactionAccessLayer = Depends(get_access_layer),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Delete a party; its transactions and the project totals are untouched"""
    project = await access.resolve_owned_project(user["user_id"], project_id)
    key = str(project["_id"])
    party = await access.resolve_project_party(key, party_id)

    await db["parties"].delete_one({"_id": party["_id"]})
    logger.info(f"Party {party['_id']} deleted from project {key}")

    await audit_service.log_action(
        module_name="PARTY_MANAGEMENT",
        entity_type="PARTY",
        entity_id=str(party["_id"]),
        action_type="DELETE",
        user_id=user["user_id"],
        project_id=key,
        old_value={"name": party.get("name"), "party_type": party.get("party_type")}
    )

    return {
        "success": True,
        "message": "Party deleted successfully",
        "data": {"id": str(party["_id"]), "name": party.get("name"), "party_type": party.get("party_type")}
    }
