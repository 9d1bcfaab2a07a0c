from fastapi import APIRouter, HTTPException, status, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional
import logging

from models import UserUpdate, UserResponse, UserRole, AdminUserCreate, AdminUserUpdate
from permissions import get_authenticated_user, require_admin
from database import get_db
from dependencies import get_audit_service
from audit_service import AuditService
from auth import hash_password
from ledger import parse_object_id, ConflictError

logger = logging.getLogger(__name__)

user_router = APIRouter(prefix="/api/users", tags=["Users"])


def to_user_response(user: dict) -> UserResponse:
    return UserResponse(
        user_id=user.get("user_id") or str(user["_id"]),
        name=user["name"],
        email=user["email"],
        role=user.get("role", UserRole.AGENT.value),
        phone=user.get("phone"),
        active_status=user.get("active_status", False),
        created_at=user["created_at"],
        updated_at=user["updated_at"]
    )


async def _find_user(db: AsyncIOMotorDatabase, user_id: str) -> dict:
    target = await db["users"].find_one({"_id": parse_object_id(user_id, "user ID")})
    if not target:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return target


async def _ensure_email_available(db: AsyncIOMotorDatabase, email: str, exclude_id=None):
    query = {"email": email}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if await db["users"].find_one(query):
        raise ConflictError("Email already registered")


@user_router.get("/me", response_model=UserResponse)
async def get_me(user: dict = Depends(get_authenticated_user)):
    return to_user_response(user)


@user_router.put("/me", response_model=UserResponse)
async def update_me(
    updates: UserUpdate,
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Update own name / phone"""
    update_fields = {k: v for k, v in updates.dict(exclude_unset=True).items() if v is not None}
    if "name" in update_fields:
        update_fields["name"] = update_fields["name"].strip()

    update_fields["updated_at"] = datetime.utcnow()
    user_oid = parse_object_id(user["user_id"], "user ID")
    await db["users"].update_one({"_id": user_oid}, {"$set": update_fields})

    updated = await db["users"].find_one({"_id": user_oid})
    return to_user_response(updated)


@user_router.get("")
async def list_users(
    role: Optional[UserRole] = None,
    active_status: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """List users (admin only)"""
    query = {}
    if role:
        query["role"] = role.value
    if active_status is not None:
        query["active_status"] = active_status

    skip = (page - 1) * limit
    total = await db["users"].count_documents(query)
    users = await db["users"].find(query).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)

    return {
        "success": True,
        "data": [to_user_response(u).dict() for u in users],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit
        }
    }


@user_router.get("/stats")
async def user_statistics(
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Account counts by status and role (admin only)"""
    users = db["users"]
    total_users = await users.count_documents({})
    active_users = await users.count_documents({"active_status": True})
    total_admins = await users.count_documents({"role": UserRole.ADMIN.value})

    return {
        "success": True,
        "data": {
            "total_users": total_users,
            "active_users": active_users,
            "inactive_users": total_users - active_users,
            "total_admins": total_admins,
            "total_agents": await users.count_documents({"role": UserRole.AGENT.value}),
            "users_with_phone": await users.count_documents({"phone": {"$nin": [None, ""]}})
        }
    }


@user_router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: AdminUserCreate,
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Create an account with an explicit role (admin only)"""
    email = user_data.email.lower()
    await _ensure_email_available(db, email)

    now = datetime.utcnow()
    user_dict = {
        "name": user_data.name.strip(),
        "email": email,
        "hashed_password": hash_password(user_data.password),
        "role": user_data.role.value,
        "phone": user_data.phone,
        "active_status": user_data.active_status,
        "created_at": now,
        "updated_at": now
    }
    result = await db["users"].insert_one(user_dict)
    user_dict["_id"] = result.inserted_id

    await audit_service.log_action(
        module_name="USER_MANAGEMENT",
        entity_type="USER",
        entity_id=str(result.inserted_id),
        action_type="CREATE",
        user_id=admin["user_id"],
        new_value={"email": email, "role": user_dict["role"]}
    )

    return {
        "success": True,
        "message": "User created successfully",
        "data": to_user_response(user_dict).dict()
    }


@user_router.get("/{user_id}")
async def get_user(
    user_id: str,
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    target = await _find_user(db, user_id)
    return {"success": True, "data": to_user_response(target).dict()}


@user_router.put("/{user_id}")
async def update_user(
    user_id: str,
    updates: AdminUserUpdate,
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Edit another account's profile, role or status (admin only)"""
    target = await _find_user(db, user_id)
    changes = updates.dict(exclude_unset=True)

    if user_id == admin["user_id"] and ("role" in changes or "active_status" in changes):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot change your own role or status"
        )

    update_fields = {}
    if changes.get("name") is not None:
        update_fields["name"] = changes["name"].strip()

    if changes.get("email") is not None:
        email = changes["email"].lower()
        if email != target["email"]:
            await _ensure_email_available(db, email, exclude_id=target["_id"])
            update_fields["email"] = email

    if "phone" in changes:
        update_fields["phone"] = changes["phone"] or None

    if changes.get("role") is not None:
        update_fields["role"] = changes["role"].value

    if changes.get("active_status") is not None:
        update_fields["active_status"] = changes["active_status"]

    update_fields["updated_at"] = datetime.utcnow()
    await db["users"].update_one({"_id": target["_id"]}, {"$set": update_fields})
    updated = await db["users"].find_one({"_id": target["_id"]})

    await audit_service.log_action(
        module_name="USER_MANAGEMENT",
        entity_type="USER",
        entity_id=user_id,
        action_type="UPDATE",
        user_id=admin["user_id"],
        old_value={k: target.get(k) for k in update_fields if k != "updated_at"},
        new_value={k: v for k, v in update_fields.items() if k != "updated_at"}
    )

    return {
        "success": True,
        "message": "User updated successfully",
        "data": to_user_response(updated).dict()
    }


@user_router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db),
    audit_service: AuditService = Depends(get_audit_service)
):
    """
    Remove an account (admin only).
    Its refresh tokens are revoked; projects it owns are left untouched.
    """
    target = await _find_user(db, user_id)
    if user_id == admin["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot delete your own account"
        )

    await db["users"].delete_one({"_id": target["_id"]})
    await db["refresh_tokens"].update_many({"user_id": user_id}, {"$set": {"is_revoked": True}})
    logger.info(f"User {user_id} deleted by admin {admin['user_id']}")

    await audit_service.log_action(
        module_name="USER_MANAGEMENT",
        entity_type="USER",
        entity_id=user_id,
        action_type="DELETE",
        user_id=admin["user_id"],
        old_value={"email": target["email"], "role": target.get("role")}
    )

    return {
        "success": True,
        "message": "User deleted successfully",
        "data": {"id": user_id, "name": target["name"], "email": target["email"]}
    }


@user_router.patch("/{user_id}/toggle-status")
async def toggle_user_status(
    user_id: str,
    admin: dict = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db),
    audit_service: AuditService = Depends(get_audit_service)
):
    """Activate / deactivate a user account (admin only)"""
    target = await _find_user(db, user_id)
    user_oid = target["_id"]

    if user_id == admin["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot change your own status"
        )

    new_status = not target.get("active_status", False)
    await db["users"].update_one(
        {"_id": user_oid},
        {"$set": {"active_status": new_status, "updated_at": datetime.utcnow()}}
    )
    updated = await db["users"].find_one({"_id": user_oid})

    await audit_service.log_action(
        module_name="USER_MANAGEMENT",
        entity_type="USER",
        entity_id=user_id,
        action_type="UPDATE",
        user_id=admin["user_id"],
        old_value={"active_status": target.get("active_status", False)},
        new_value={"active_status": new_status}
    )

    return {
        "success": True,
        "message": f"User {'activated' if new_status else 'deactivated'} successfully",
        "data": to_user_response(updated).dict()
    }
