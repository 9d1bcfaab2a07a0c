from fastapi import HTTPException, status, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from auth import get_current_user
from database import get_db
from ledger import UnauthorizedError
import logging

logger = logging.getLogger(__name__)

class PermissionChecker:
    """
    Permission enforcement.

    RULES:
    1. User must be authenticated
    2. User must have active_status = TRUE
    3. Projects are visible only to the user who created them
    4. User administration requires the admin role
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_authenticated_user(self, current_user: dict):
        """Get and validate authenticated user"""
        user_id = current_user.get("user_id")

        if not ObjectId.is_valid(user_id):
            raise UnauthorizedError("Invalid authentication credentials")

        user = await self.db["users"].find_one({"_id": ObjectId(user_id)})

        if not user:
            raise UnauthorizedError("User not found")

        if not user.get("active_status", False):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User account is inactive"
            )

        # Convert _id to user_id for consistency
        user["user_id"] = str(user.pop("_id"))
        user.pop("hashed_password", None)

        return user

    async def check_admin_role(self, user: dict):
        """Check if user has admin role"""
        if user.get("role") != "admin":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access denied. Insufficient permissions."
            )
        return True


async def get_authenticated_user(
    current_user: dict = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
) -> dict:
    """Dependency: active user behind the bearer token"""
    return await PermissionChecker(db).get_authenticated_user(current_user)


async def require_admin(
    user: dict = Depends(get_authenticated_user),
    db: AsyncIOMotorDatabase = Depends(get_db)
) -> dict:
    await PermissionChecker(db).check_admin_role(user)
    return user
