"""Role-based access control (RBAC) for marketplace actors."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel

from tripcomposer.errors import ForbiddenError
from tripcomposer.logging_config import get_logger

logger = get_logger(__name__)


class Role(StrEnum):
    """Marketplace roles. USER is the traveler."""

    USER = "USER"
    AGENT = "AGENT"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class Permission(StrEnum):
    """Granular permissions in ``resource:action`` form."""

    USER_READ_SELF = "user:read:self"
    USER_UPDATE_SELF = "user:update:self"
    USER_DELETE_SELF = "user:delete:self"

    AGENT_SUBMIT_VERIFICATION = "agent:submit:verification"
    AGENT_READ_PROFILE = "agent:read:profile"
    AGENT_UPDATE_PROFILE = "agent:update:profile"

    REQUEST_CREATE = "request:create"
    WISHLIST_MANAGE = "wishlist:manage"
    BOOKING_CREATE = "booking:create"
    DISPUTE_CREATE = "dispute:create"
    REVIEW_SUBMIT = "review:submit"

    MATCHING_RESPOND = "matching:respond"
    DISPUTE_RESPOND = "dispute:respond"
    WORKLOAD_UPDATE_SELF = "workload:update:self"
    BOOKING_CONFIRM = "booking:confirm"

    ADMIN_READ_USERS = "admin:read:users"
    ADMIN_UPDATE_USER_STATUS = "admin:update:user:status"
    ADMIN_REVIEW_VERIFICATION = "admin:review:verification"
    ADMIN_SUSPEND_ACCOUNT = "admin:suspend:account"
    ADMIN_REACTIVATE_ACCOUNT = "admin:reactivate:account"
    ADMIN_MATCHING_OVERRIDE = "admin:matching:override"
    ADMIN_DISPUTE_ARBITRATE = "admin:dispute:arbitrate"
    ADMIN_REVIEW_MODERATE = "admin:review:moderate"
    ADMIN_WORKLOAD_MANAGE = "admin:workload:manage"
    ADMIN_TRUST_MANAGE = "admin:trust:manage"
    ADMIN_REQUEST_MANAGE = "admin:request:manage"
    ADMIN_BOOKING_MANAGE = "admin:booking:manage"


_SELF_SERVICE = {
    Permission.USER_READ_SELF,
    Permission.USER_UPDATE_SELF,
    Permission.USER_DELETE_SELF,
}

ROLE_PERMISSIONS: dict[Role, set[Permission]] = {
    Role.USER: _SELF_SERVICE | {
        Permission.REQUEST_CREATE,
        Permission.WISHLIST_MANAGE,
        Permission.BOOKING_CREATE,
        Permission.DISPUTE_CREATE,
        Permission.REVIEW_SUBMIT,
    },
    Role.AGENT: _SELF_SERVICE | {
        Permission.AGENT_SUBMIT_VERIFICATION,
        Permission.AGENT_READ_PROFILE,
        Permission.AGENT_UPDATE_PROFILE,
        Permission.MATCHING_RESPOND,
        Permission.DISPUTE_RESPOND,
        Permission.WORKLOAD_UPDATE_SELF,
        Permission.BOOKING_CONFIRM,
    },
    Role.ADMIN: set(Permission),
    Role.SYSTEM: set(Permission),
}


class UserIdentity(BaseModel):
    """Represents an authenticated actor with their role."""

    user_id: str
    role: Role = Role.USER
    display_name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SYSTEM)

    def has_permission(self, permission: Permission) -> bool:
        """Check if the actor's role grants the given permission."""
        return permission in ROLE_PERMISSIONS.get(self.role, set())

    def require_permission(self, permission: Permission) -> None:
        """Raise if the actor lacks the required permission."""
        if not self.has_permission(permission):
            logger.warning(
                "permission_denied",
                user_id=self.user_id,
                role=self.role,
                permission=permission,
            )
            raise ForbiddenError(
                f"User '{self.user_id}' with role '{self.role}' lacks permission '{permission}'",
                code="IDENTITY_INSUFFICIENT_PERMISSIONS",
            )
