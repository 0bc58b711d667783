"""Pydantic schemas for identity and session context."""

from uuid import UUID

from pydantic import BaseModel

from helpdesk.db.enums import STAFF_ROLES, Role


class TokenPayload(BaseModel):
    """Decoded session JWT claims."""
    sub: UUID
    role: str
    token_version: int
    # Impersonation target (honored for superadmins only)
    act_as: UUID | None = None


class UserSession(BaseModel):
    """
    Session context for an authenticated request or websocket connection.

    Built once by get_current_session and passed explicitly to every service
    that needs identity. When impersonating, effective_* describe the target
    user while user_id/role keep the real caller for auditing.
    """
    user_id: UUID
    role: Role
    email: str
    display_name: str
    avatar_url: str | None = None
    effective_user_id: UUID
    effective_roles: frozenset[Role]
    impersonating: bool = False

    @property
    def is_staff(self) -> bool:
        return bool(self.effective_roles & STAFF_ROLES)

    @property
    def profile_snapshot(self) -> dict:
        return {"full_name": self.display_name, "avatar_url": self.avatar_url}

    def has_role(self, *roles: Role) -> bool:
        return any(role in self.effective_roles for role in roles)
