"""Security utilities for JWT session tokens."""

from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from helpdesk.core.config import settings


# =============================================================================
# Session Token (JWT in cookie, header or query)
# =============================================================================

def create_session_token(
    user_id: UUID,
    role: str,
    token_version: int,
    act_as: UUID | None = None,
) -> str:
    """
    Create signed session JWT.

    Always signs with current secret (JWT_SECRET). act_as requests
    impersonation of another user; it is only honored for superadmins when
    the session is built.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "token_version": token_version,
        "iat": now,
        "exp": now + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    if act_as is not None:
        payload["act_as"] = str(act_as)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore
