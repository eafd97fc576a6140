"""JWT access tokens carrying the identity context."""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from tripcomposer.config import get_settings
from tripcomposer.errors import TripComposerError
from tripcomposer.logging_config import get_logger
from tripcomposer.modules.identity.models import IdentityContext, IdentityErrorCode

logger = get_logger(__name__)


class TokenError(TripComposerError):
    status_code = 401
    default_code = IdentityErrorCode.INVALID_TOKEN


def create_access_token(identity: IdentityContext, expires_delta: Optional[dt.timedelta] = None) -> str:
    """Sign a token for ``identity`` with issuer, audience and expiry claims."""
    settings = get_settings()
    now = dt.datetime.now(dt.UTC)
    expire = now + (expires_delta or dt.timedelta(minutes=settings.jwt_expire_minutes))
    claims: dict[str, Any] = {
        "sub": identity.sub,
        "role": identity.role.value,
        "status": identity.status.value,
        "agent_verification_status": (
            identity.agent_verification_status.value if identity.agent_verification_status else None
        ),
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
    }
    return jwt.encode(claims, settings.tripcomposer_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> IdentityContext:
    """Verify ``token`` and return its identity context.

    Raises:
        TokenError: If the token is expired, malformed or has bad claims.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.tripcomposer_secret_key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
    except ExpiredSignatureError as exc:
        raise TokenError("Token has expired", code=IdentityErrorCode.TOKEN_EXPIRED) from exc
    except JWTError as exc:
        logger.warning("token_rejected", error=str(exc))
        raise TokenError("Invalid token") from exc

    try:
        return IdentityContext(
            sub=payload["sub"],
            role=payload["role"],
            status=payload["status"],
            agent_verification_status=payload.get("agent_verification_status"),
        )
    except (KeyError, ValueError) as exc:
        raise TokenError("Token is missing required claims") from exc
