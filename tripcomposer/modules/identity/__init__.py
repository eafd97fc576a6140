"""Identity module: accounts, status lifecycle and agent verification."""

from tripcomposer.modules.identity.models import (
    AccountStatus,
    AdminActionContext,
    AgentProfile,
    AgentVerificationStatus,
    IdentityContext,
    User,
)
from tripcomposer.modules.identity.service import IdentityService

__all__ = [
    "AccountStatus",
    "AdminActionContext",
    "AgentProfile",
    "AgentVerificationStatus",
    "IdentityContext",
    "IdentityService",
    "User",
]
