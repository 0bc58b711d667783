"""FastAPI dependencies for authentication, authorization, and database access."""

from typing import Generator
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from helpdesk.core.security import decode_session_token
from helpdesk.db.enums import Role
from helpdesk.db.models import User
from helpdesk.db.session import SessionLocal
from helpdesk.schemas.auth import TokenPayload, UserSession


# Cookie name for browser clients
COOKIE_NAME = "helpdesk_session"


class AuthError(Exception):
    """Authentication failed; carries the HTTP status and a client-safe reason."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _token_from_request(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.query_params.get("token") or request.cookies.get(COOKIE_NAME)


def build_session(db: Session, token: str) -> UserSession:
    """
    Validate a session token and build the session context.

    Validates:
    - JWT is valid and not expired
    - User exists and is active
    - Token version matches (for revocation support)
    - Role is a known enum value
    - act_as (impersonation) only for superadmins, and only of active users

    Raises:
        AuthError: 401 for authentication failures, 403 for forbidden act_as
    """
    try:
        claims = TokenPayload.model_validate(decode_session_token(token))
    except (jwt.InvalidTokenError, ValidationError):
        raise AuthError(401, "Invalid session")

    user = db.query(User).filter(User.id == claims.sub).first()
    if not user:
        raise AuthError(401, "User not found")
    if not user.is_active:
        raise AuthError(401, "Account disabled")
    if user.token_version != claims.token_version:
        raise AuthError(401, "Session revoked")
    if not Role.has_value(user.role):
        raise AuthError(403, f"Unknown role '{user.role}'. Contact administrator.")

    role = Role(user.role)
    effective_user = user
    impersonating = False

    if claims.act_as:
        if role != Role.SUPERADMIN:
            raise AuthError(403, "Impersonation not allowed")
        target = db.query(User).filter(User.id == claims.act_as, User.is_active.is_(True)).first()
        if not target or not Role.has_value(target.role):
            raise AuthError(403, "Impersonation target not found")
        effective_user = target
        impersonating = True

    return UserSession(
        user_id=user.id,
        role=role,
        email=user.email,
        display_name=effective_user.full_name,
        avatar_url=effective_user.avatar_url,
        effective_user_id=effective_user.id,
        effective_roles=frozenset({Role(effective_user.role)}),
        impersonating=impersonating,
    )


def get_current_session(
    request: Request,
    db: Session = Depends(get_db),
) -> UserSession:
    """
    Get full session context for the request.

    This is the PRIMARY auth dependency for most endpoints. The token is read
    from the Authorization bearer header, the ``token`` query parameter or the
    session cookie, in that order.

    Raises:
        HTTPException 401: Not authenticated
        HTTPException 403: Unknown role or forbidden impersonation
    """
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return build_session(db, token)
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)


def require_staff(session: UserSession = Depends(get_current_session)) -> UserSession:
    """Only admins, supervisors and superadmins."""
    if not session.is_staff:
        raise HTTPException(status_code=403, detail="Staff only")
    return session


def load_visible_ticket(db: Session, ticket_id: UUID, session: UserSession):
    """
    Fetch a ticket the session may view.

    Raises:
        HTTPException 404: Ticket not found
        HTTPException 403: Not a participant and not staff
    """
    from helpdesk.core.policies import can_view_ticket
    from helpdesk.services.ticket_service import get_ticket

    ticket = get_ticket(db, ticket_id)
    if not ticket:
        raise HTTPException(status_code=404, detail="Ticket not found")
    if not can_view_ticket(session, ticket):
        raise HTTPException(status_code=403, detail="Not authorized to view this ticket")
    return ticket
