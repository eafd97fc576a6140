"""Database models and status lifecycles for users and agent profiles."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text

from tripcomposer.database import Base
from tripcomposer.security.rbac import Role


class AccountStatus(StrEnum):
    """Account lifecycle states."""

    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DEACTIVATED = "DEACTIVATED"


ACCOUNT_STATUS_TRANSITIONS: dict[AccountStatus, tuple[AccountStatus, ...]] = {
    AccountStatus.PENDING_VERIFICATION: (AccountStatus.ACTIVE, AccountStatus.DEACTIVATED),
    AccountStatus.ACTIVE: (AccountStatus.SUSPENDED, AccountStatus.DEACTIVATED),
    AccountStatus.SUSPENDED: (AccountStatus.ACTIVE, AccountStatus.DEACTIVATED),
    AccountStatus.DEACTIVATED: (),
}


class AgentVerificationStatus(StrEnum):
    """Agents must be VERIFIED before they can receive requests."""

    NOT_SUBMITTED = "NOT_SUBMITTED"
    PENDING_REVIEW = "PENDING_REVIEW"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"


AGENT_VERIFICATION_TRANSITIONS: dict[AgentVerificationStatus, tuple[AgentVerificationStatus, ...]] = {
    AgentVerificationStatus.NOT_SUBMITTED: (AgentVerificationStatus.PENDING_REVIEW,),
    AgentVerificationStatus.PENDING_REVIEW: (
        AgentVerificationStatus.VERIFIED,
        AgentVerificationStatus.REJECTED,
    ),
    AgentVerificationStatus.VERIFIED: (AgentVerificationStatus.REVOKED,),
    AgentVerificationStatus.REJECTED: (AgentVerificationStatus.PENDING_REVIEW,),
    AgentVerificationStatus.REVOKED: (),
}


class IdentityErrorCode(StrEnum):
    INVALID_TOKEN = "IDENTITY_INVALID_TOKEN"
    TOKEN_EXPIRED = "IDENTITY_TOKEN_EXPIRED"
    INSUFFICIENT_PERMISSIONS = "IDENTITY_INSUFFICIENT_PERMISSIONS"
    ACCOUNT_SUSPENDED = "IDENTITY_ACCOUNT_SUSPENDED"
    ACCOUNT_NOT_VERIFIED = "IDENTITY_ACCOUNT_NOT_VERIFIED"
    AGENT_NOT_VERIFIED = "IDENTITY_AGENT_NOT_VERIFIED"
    INVALID_STATUS_TRANSITION = "IDENTITY_INVALID_STATUS_TRANSITION"
    ADMIN_REASON_REQUIRED = "IDENTITY_ADMIN_REASON_REQUIRED"
    USER_NOT_FOUND = "IDENTITY_USER_NOT_FOUND"
    AGENT_PROFILE_NOT_FOUND = "IDENTITY_AGENT_PROFILE_NOT_FOUND"
    EMAIL_TAKEN = "IDENTITY_EMAIL_TAKEN"


def can_transition_account(current: AccountStatus, target: AccountStatus) -> bool:
    return target in ACCOUNT_STATUS_TRANSITIONS[current]


def can_transition_verification(current: AgentVerificationStatus, target: AgentVerificationStatus) -> bool:
    return target in AGENT_VERIFICATION_TRANSITIONS[current]


class User(Base):
    """A traveler, agent or admin account."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    email = Column(String(320), nullable=False, unique=True, index=True)
    role = Column(String(16), nullable=False, default=Role.USER.value)
    status = Column(String(32), nullable=False, default=AccountStatus.PENDING_VERIFICATION.value, index=True)
    first_name = Column(String(128), nullable=False)
    last_name = Column(String(128), nullable=False, default="")
    photo_url = Column(String(1024), nullable=True)
    email_verified_at = Column(DateTime, nullable=True)
    status_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)
    updated_at = Column(
        DateTime,
        default=lambda: dt.datetime.now(dt.UTC),
        onupdate=lambda: dt.datetime.now(dt.UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role={self.role}, status={self.status})>"


class AgentProfile(Base):
    """Agent-only profile data, keyed by user id."""

    __tablename__ = "agent_profiles"

    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    verification_status = Column(
        String(32), nullable=False, default=AgentVerificationStatus.NOT_SUBMITTED.value, index=True
    )
    verification_submitted_at = Column(DateTime, nullable=True)
    verification_completed_at = Column(DateTime, nullable=True)
    verification_rejected_reason = Column(Text, nullable=True)
    business_name = Column(String(256), nullable=True)
    bio = Column(Text, nullable=True)
    specialties = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=lambda: dt.datetime.now(dt.UTC), nullable=False)
    updated_at = Column(
        DateTime,
        default=lambda: dt.datetime.now(dt.UTC),
        onupdate=lambda: dt.datetime.now(dt.UTC),
        nullable=False,
    )


# =============================================================================
# Pydantic schemas
# =============================================================================


class IdentityContext(BaseModel):
    """Claims carried in an access token."""

    sub: str
    role: Role
    status: AccountStatus
    agent_verification_status: Optional[AgentVerificationStatus] = None


class PublicAgentIdentity(BaseModel):
    """What a traveler may see before the agent confirms a booking."""

    first_name: str
    photo_url: Optional[str] = None


class FullAgentIdentity(PublicAgentIdentity):
    """Revealed after agent confirmation and payment."""

    last_name: str
    email: str
    business_name: Optional[str] = None
    bio: Optional[str] = None
    specialties: list[str] = Field(default_factory=list)


class AdminActionContext(BaseModel):
    """Every admin action needs a reason and is audit logged."""

    admin_id: str
    reason: str = Field(..., min_length=10, max_length=1000)
    reference_id: Optional[str] = None
