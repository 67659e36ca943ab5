from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

# Roles that may verify, approve, reject and recall payment applications
REVIEWER_ROLES = {"Admin", "ProjectManager"}


def _id_filter(value: str) -> dict:
    return {"_id": ObjectId(value)} if ObjectId.is_valid(value) else {"_id": value}


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def actor_context(user: Dict[str, Any]) -> Dict[str, Any]:
    """The explicit credentials handed to the billing engine."""
    return {
        "user_id": user["user_id"],
        "role": user.get("role"),
        "name": user.get("name")
    }


class PermissionChecker:
    """
    Who may do what to a payment application.

    - the caller must map to an active user record
    - outside Admin, access is per project through user_project_map
    - reading an application needs read access to its project; anything that
      changes it, or the contract's catalog, needs write access
    - verification, approval, rejection, recall and change orders need a
      reviewer role
    The role stored on the user record wins over any role claim in the token.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def load_user(self, current_user: Dict[str, Any]) -> Dict[str, Any]:
        user = await self.db.users.find_one(_id_filter(current_user.get("user_id")))
        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unknown user"
            )
        if not user.get("active_status", False):
            raise _forbidden("User account is inactive")

        user["user_id"] = str(user.pop("_id"))
        return user

    async def _project_mapping(self, user: Dict[str, Any], project_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.user_project_map.find_one({
            "user_id": user["user_id"],
            "project_id": project_id
        })

    async def can_read_project(self, user: Dict[str, Any], project_id: str) -> bool:
        if user.get("role") == "Admin":
            return True
        mapping = await self._project_mapping(user, project_id)
        return bool(mapping) and mapping.get("read_access", True)

    async def check_project_access(
        self,
        user: Dict[str, Any],
        project_id: str,
        require_write: bool = False
    ) -> None:
        if user.get("role") == "Admin":
            return

        mapping = await self._project_mapping(user, project_id)
        if not mapping:
            raise _forbidden(f"No access to project {project_id}")
        if require_write and not mapping.get("write_access", False):
            raise _forbidden(f"Read-only access to project {project_id}")
        if not mapping.get("read_access", True):
            raise _forbidden(f"No read access to project {project_id}")

    async def require_reviewer(self, current_user: Dict[str, Any]) -> Dict[str, Any]:
        user = await self.load_user(current_user)
        if user.get("role") not in REVIEWER_ROLES:
            logger.warning(
                f"[BILLING] User {user['user_id']} ({user.get('role')}) attempted a reviewer action"
            )
            raise _forbidden("Project manager or admin role required")
        return user
