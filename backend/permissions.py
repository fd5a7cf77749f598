from fastapi import HTTPException, status, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
import logging

from auth import get_current_user
from core.mongo_utils import to_object_id

logger = logging.getLogger(__name__)


class PermissionChecker:
    """
    Request-level access checks.

    RULES:
    1. User must be authenticated
    2. User must have active_status = TRUE
    3. The user's tenant must still exist; every business call is scoped to it
    4. Destructive maintenance operations require the Admin role
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_authenticated_user(self, current_user: dict = Depends(get_current_user)):
        """Load the caller and confirm the token's tenant still matches"""
        oid = to_object_id(current_user.get("user_id"))
        user = await self.db.users.find_one({"_id": oid}) if oid else None

        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found"
            )

        if not user.get("active_status", False):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User account is inactive"
            )

        if user.get("tenant_id") != current_user.get("tenant_id"):
            logger.warning(f"Token tenant mismatch for user:{current_user.get('user_id')}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Token does not match the user's company"
            )

        tenant_oid = to_object_id(user["tenant_id"])
        if not tenant_oid or not await self.db.tenants.find_one({"_id": tenant_oid}, {"_id": 1}):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Company account no longer exists"
            )

        user["user_id"] = str(user.pop("_id"))
        user.pop("hashed_password", None)
        return user

    async def check_admin_role(self, user: dict):
        if user.get("role") != "Admin":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin role required for this operation"
            )
        return True
