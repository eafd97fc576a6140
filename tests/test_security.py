"""Tests for access tokens, RBAC and the audit log."""

from __future__ import annotations

import datetime as dt

import pytest
from jose import jwt

from tripcomposer.config import get_settings
from tripcomposer.errors import ForbiddenError
from tripcomposer.modules.identity.models import (
    AccountStatus,
    AgentVerificationStatus,
    IdentityContext,
    IdentityErrorCode,
)
from tripcomposer.security.audit import list_audit_entries, log_action
from tripcomposer.security.rbac import ROLE_PERMISSIONS, Permission, Role, UserIdentity
from tripcomposer.security.tokens import TokenError, create_access_token, decode_access_token


def _agent_identity() -> IdentityContext:
    return IdentityContext(
        sub="agent-1",
        role=Role.AGENT,
        status=AccountStatus.ACTIVE,
        agent_verification_status=AgentVerificationStatus.VERIFIED,
    )


class TestTokens:
    """Tests for JWT encoding and verification."""

    def test_round_trip_preserves_claims(self) -> None:
        identity = _agent_identity()
        decoded = decode_access_token(create_access_token(identity))
        assert decoded == identity

    def test_expired_token_rejected(self) -> None:
        token = create_access_token(_agent_identity(), expires_delta=dt.timedelta(seconds=-5))
        with pytest.raises(TokenError) as exc_info:
            decode_access_token(token)
        assert exc_info.value.code == IdentityErrorCode.TOKEN_EXPIRED
        assert exc_info.value.status_code == 401

    def test_wrong_audience_rejected(self) -> None:
        settings = get_settings()
        token = jwt.encode(
            {
                "sub": "u1",
                "role": "USER",
                "status": "ACTIVE",
                "aud": "someone-else",
                "iss": settings.jwt_issuer,
                "exp": int((dt.datetime.now(dt.UTC) + dt.timedelta(minutes=5)).timestamp()),
            },
            settings.tripcomposer_secret_key,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(TokenError) as exc_info:
            decode_access_token(token)
        assert exc_info.value.code == IdentityErrorCode.INVALID_TOKEN

    def test_bad_signature_rejected(self) -> None:
        token = create_access_token(_agent_identity())
        with pytest.raises(TokenError):
            decode_access_token(token[:-4] + "abcd")

    def test_missing_claims_rejected(self) -> None:
        settings = get_settings()
        token = jwt.encode(
            {
                "sub": "u1",
                "aud": settings.jwt_audience,
                "iss": settings.jwt_issuer,
                "exp": int((dt.datetime.now(dt.UTC) + dt.timedelta(minutes=5)).timestamp()),
            },
            settings.tripcomposer_secret_key,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(TokenError, match="missing required claims"):
            decode_access_token(token)


class TestRBAC:
    """Tests for role-based permissions."""

    def test_admin_has_every_permission(self) -> None:
        admin = UserIdentity(user_id="admin-1", role=Role.ADMIN)
        assert admin.is_admin
        assert all(admin.has_permission(p) for p in Permission)

    def test_traveler_cannot_arbitrate(self) -> None:
        traveler = UserIdentity(user_id="u1", role=Role.USER)
        assert traveler.has_permission(Permission.DISPUTE_CREATE)
        with pytest.raises(ForbiddenError) as exc_info:
            traveler.require_permission(Permission.ADMIN_DISPUTE_ARBITRATE)
        assert exc_info.value.status_code == 403

    def test_agent_permissions(self) -> None:
        agent_perms = ROLE_PERMISSIONS[Role.AGENT]
        assert Permission.MATCHING_RESPOND in agent_perms
        assert Permission.REQUEST_CREATE not in agent_perms
        assert Permission.REVIEW_SUBMIT not in agent_perms


class TestAuditLog:
    """Tests for audit entries."""

    @pytest.mark.asyncio
    async def test_log_action_persists_entry(self, db_session) -> None:
        await log_action(
            "admin-1",
            "review_hidden",
            "trust",
            details={"reason": "spam"},
            actor_type="admin",
            entity_type="review",
            entity_id="r1",
            session=db_session,
        )
        entries = await list_audit_entries(entity_type="review", entity_id="r1", session=db_session)
        assert len(entries) == 1
        assert entries[0].actor_id == "admin-1"
        assert entries[0].details == {"reason": "spam"}
        assert entries[0].status == "success"
