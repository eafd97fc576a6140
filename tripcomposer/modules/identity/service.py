"""Identity service: accounts, status lifecycle and agent verification."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tripcomposer.clock import utcnow
from tripcomposer.database import session_scope
from tripcomposer.errors import ConflictError, InvalidTransitionError, NotFoundError
from tripcomposer.events import ActorType, EventBus, EventMetadata, EventType, get_event_bus
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.identity.models import (
    ACCOUNT_STATUS_TRANSITIONS,
    AGENT_VERIFICATION_TRANSITIONS,
    AccountStatus,
    AdminActionContext,
    AgentProfile,
    AgentVerificationStatus,
    FullAgentIdentity,
    IdentityContext,
    IdentityErrorCode,
    PublicAgentIdentity,
    User,
    can_transition_account,
    can_transition_verification,
)
from tripcomposer.security.audit import log_action
from tripcomposer.security.rbac import Role

logger = get_logger(__name__)

_SOURCE = "identity"

# Event payload "change" values keyed by target status.
_STATUS_CHANGE_NAMES = {
    AccountStatus.ACTIVE: "reactivated",
    AccountStatus.SUSPENDED: "suspended",
    AccountStatus.DEACTIVATED: "deactivated",
}


class IdentityService:
    """Manages users, account status transitions and agent verification."""

    def __init__(self, session: Optional[AsyncSession] = None, event_bus: Optional[EventBus] = None) -> None:
        self._session = session
        self._bus = event_bus or get_event_bus()

    # ── Accounts ─────────────────────────────────────────────────────

    async def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str = "",
        role: Role = Role.USER,
        photo_url: Optional[str] = None,
    ) -> User:
        """Create an account; agents also get an empty agent profile.

        Raises:
            ConflictError: If the email is already registered.
        """
        email = email.strip().lower()
        async with session_scope(self._session) as session:
            existing = await session.execute(select(User).where(User.email == email))
            if existing.scalar_one_or_none() is not None:
                raise ConflictError("Email is already registered", code=IdentityErrorCode.EMAIL_TAKEN)

            user = User(
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=Role(role).value,
                photo_url=photo_url,
                status=AccountStatus.PENDING_VERIFICATION.value,
            )
            session.add(user)
            await session.flush()
            if user.role == Role.AGENT:
                session.add(AgentProfile(user_id=user.id, specialties=[]))
                await session.flush()

        logger.info("user_created", user_id=user.id, role=user.role)
        return user

    async def get_user(self, user_id: str) -> User:
        async with session_scope(self._session) as session:
            user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", code=IdentityErrorCode.USER_NOT_FOUND)
        return user

    async def get_agent_profile(self, agent_id: str) -> AgentProfile:
        async with session_scope(self._session) as session:
            profile = await session.get(AgentProfile, agent_id)
        if profile is None:
            raise NotFoundError(
                f"Agent profile {agent_id} not found", code=IdentityErrorCode.AGENT_PROFILE_NOT_FOUND
            )
        return profile

    async def verify_email(self, user_id: str) -> User:
        """Mark the email verified and activate a pending account."""
        async with session_scope(self._session) as session:
            user = await self._load_user(session, user_id)
            if user.status != AccountStatus.PENDING_VERIFICATION:
                raise InvalidTransitionError(
                    f"Account {user_id} is {user.status}, not awaiting verification",
                    code=IdentityErrorCode.INVALID_STATUS_TRANSITION,
                )
            user.status = AccountStatus.ACTIVE.value
            user.email_verified_at = utcnow()
        await self._publish_status_change(user, AccountStatus.PENDING_VERIFICATION, "activated",
                                          EventMetadata(actor_id=user_id, actor_type=ActorType.USER, source=_SOURCE))
        logger.info("account_activated", user_id=user_id)
        return user

    async def suspend(self, user_id: str, ctx: AdminActionContext) -> User:
        return await self._admin_status_change(user_id, AccountStatus.SUSPENDED, ctx)

    async def reactivate(self, user_id: str, ctx: AdminActionContext) -> User:
        return await self._admin_status_change(user_id, AccountStatus.ACTIVE, ctx)

    async def deactivate(self, user_id: str, ctx: AdminActionContext) -> User:
        return await self._admin_status_change(user_id, AccountStatus.DEACTIVATED, ctx)

    async def _admin_status_change(
        self, user_id: str, target: AccountStatus, ctx: AdminActionContext
    ) -> User:
        async with session_scope(self._session) as session:
            user = await self._load_user(session, user_id)
            previous = AccountStatus(user.status)
            self._assert_account_transition(user, target)
            user.status = target.value
            user.status_reason = ctx.reason
            await log_action(
                ctx.admin_id,
                f"account_{_STATUS_CHANGE_NAMES[target]}",
                _SOURCE,
                details={"from": previous.value, "to": target.value, "reason": ctx.reason,
                         "reference_id": ctx.reference_id},
                actor_type=ActorType.ADMIN.value,
                entity_type="user",
                entity_id=user_id,
                session=session,
            )

        metadata = EventMetadata(actor_id=ctx.admin_id, actor_type=ActorType.ADMIN, source=_SOURCE, reason=ctx.reason)
        await self._publish_status_change(user, previous, _STATUS_CHANGE_NAMES[target], metadata)
        logger.info("account_status_changed", user_id=user_id, status=target.value, admin_id=ctx.admin_id)
        return user

    @staticmethod
    def _assert_account_transition(user: User, target: AccountStatus) -> None:
        current = AccountStatus(user.status)
        if not can_transition_account(current, target):
            allowed = ", ".join(s.value for s in ACCOUNT_STATUS_TRANSITIONS[current]) or "none"
            raise InvalidTransitionError(
                f"Cannot change account status from {current.value} to {target.value}. Allowed: {allowed}",
                code=IdentityErrorCode.INVALID_STATUS_TRANSITION,
            )

    async def _publish_status_change(
        self, user: User, previous: AccountStatus, change: str, metadata: EventMetadata
    ) -> None:
        await self._bus.publish(
            EventType.ACCOUNT_STATUS_CHANGED,
            {"user_id": user.id, "from": previous.value, "to": user.status, "change": change},
            metadata,
            aggregate_type="User",
            aggregate_id=user.id,
        )

    # ── Agent verification ───────────────────────────────────────────

    async def submit_verification(
        self,
        agent_id: str,
        business_name: Optional[str] = None,
        bio: Optional[str] = None,
        specialties: Optional[list[str]] = None,
    ) -> AgentProfile:
        """Submit (or resubmit after rejection) verification documents."""
        async with session_scope(self._session) as session:
            profile = await self._load_profile(session, agent_id)
            previous = self._move_verification(profile, AgentVerificationStatus.PENDING_REVIEW)
            profile.verification_submitted_at = utcnow()
            profile.verification_rejected_reason = None
            if business_name is not None:
                profile.business_name = business_name
            if bio is not None:
                profile.bio = bio
            if specialties is not None:
                profile.specialties = list(specialties)

        await self._publish_verification(profile, previous,
                                         EventMetadata(actor_id=agent_id, actor_type=ActorType.AGENT, source=_SOURCE))
        logger.info("verification_submitted", agent_id=agent_id)
        return profile

    async def review_verification(self, agent_id: str, approve: bool, ctx: AdminActionContext) -> AgentProfile:
        """Approve or reject a pending verification."""
        target = AgentVerificationStatus.VERIFIED if approve else AgentVerificationStatus.REJECTED
        return await self._admin_verification_change(agent_id, target, ctx)

    async def revoke_verification(self, agent_id: str, ctx: AdminActionContext) -> AgentProfile:
        return await self._admin_verification_change(agent_id, AgentVerificationStatus.REVOKED, ctx)

    async def _admin_verification_change(
        self, agent_id: str, target: AgentVerificationStatus, ctx: AdminActionContext
    ) -> AgentProfile:
        async with session_scope(self._session) as session:
            profile = await self._load_profile(session, agent_id)
            previous = self._move_verification(profile, target)
            profile.verification_completed_at = utcnow()
            if target == AgentVerificationStatus.REJECTED:
                profile.verification_rejected_reason = ctx.reason
            await log_action(
                ctx.admin_id,
                f"verification_{target.value.lower()}",
                _SOURCE,
                details={"from": previous.value, "to": target.value, "reason": ctx.reason},
                actor_type=ActorType.ADMIN.value,
                entity_type="agent_profile",
                entity_id=agent_id,
                session=session,
            )

        metadata = EventMetadata(actor_id=ctx.admin_id, actor_type=ActorType.ADMIN, source=_SOURCE, reason=ctx.reason)
        await self._publish_verification(profile, previous, metadata)
        logger.info("verification_changed", agent_id=agent_id, status=target.value)
        return profile

    @staticmethod
    def _move_verification(profile: AgentProfile, target: AgentVerificationStatus) -> AgentVerificationStatus:
        current = AgentVerificationStatus(profile.verification_status)
        if not can_transition_verification(current, target):
            allowed = ", ".join(s.value for s in AGENT_VERIFICATION_TRANSITIONS[current]) or "none"
            raise InvalidTransitionError(
                f"Cannot change verification from {current.value} to {target.value}. Allowed: {allowed}",
                code=IdentityErrorCode.INVALID_STATUS_TRANSITION,
            )
        profile.verification_status = target.value
        return current

    async def _publish_verification(
        self, profile: AgentProfile, previous: AgentVerificationStatus, metadata: EventMetadata
    ) -> None:
        await self._bus.publish(
            EventType.AGENT_VERIFICATION_CHANGED,
            {"agent_id": profile.user_id, "from": previous.value, "to": profile.verification_status},
            metadata,
            aggregate_type="AgentProfile",
            aggregate_id=profile.user_id,
        )

    # ── Tokens & disclosure ──────────────────────────────────────────

    async def build_identity_context(self, user_id: str) -> IdentityContext:
        """Collect the claims needed to mint an access token for ``user_id``."""
        async with session_scope(self._session) as session:
            user = await self._load_user(session, user_id)
            verification = None
            if user.role == Role.AGENT:
                profile = await session.get(AgentProfile, user_id)
                if profile is not None:
                    verification = AgentVerificationStatus(profile.verification_status)
        return IdentityContext(
            sub=user.id,
            role=Role(user.role),
            status=AccountStatus(user.status),
            agent_verification_status=verification,
        )

    async def get_agent_identity(
        self, agent_id: str, reveal_full: bool = False
    ) -> PublicAgentIdentity | FullAgentIdentity:
        """Return first name and photo, or everything once the booking is confirmed."""
        async with session_scope(self._session) as session:
            user = await self._load_user(session, agent_id)
            profile = await session.get(AgentProfile, agent_id)
        if not reveal_full:
            return PublicAgentIdentity(first_name=user.first_name, photo_url=user.photo_url)
        return FullAgentIdentity(
            first_name=user.first_name,
            photo_url=user.photo_url,
            last_name=user.last_name,
            email=user.email,
            business_name=profile.business_name if profile else None,
            bio=profile.bio if profile else None,
            specialties=list(profile.specialties or []) if profile else [],
        )

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    async def _load_user(session: AsyncSession, user_id: str) -> User:
        user = await session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", code=IdentityErrorCode.USER_NOT_FOUND)
        return user

    @staticmethod
    async def _load_profile(session: AsyncSession, agent_id: str) -> AgentProfile:
        profile = await session.get(AgentProfile, agent_id)
        if profile is None:
            raise NotFoundError(
                f"Agent profile {agent_id} not found", code=IdentityErrorCode.AGENT_PROFILE_NOT_FOUND
            )
        return profile
