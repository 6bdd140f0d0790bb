from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated identity extracted from a validated JWT.

    Carried through the request via FastAPI's dependency system.
    Endpoints receive this instead of a raw token.

        user_id: subject from JWT
        roles: platform roles (admin, user)
        org_id: organization claim; the tenant every write is scoped to
                unless the event names one itself
    """

    user_id: str
    roles: frozenset[str]
    org_id: str | None = None

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def is_platform_admin(self) -> bool:
        return "admin" in self.roles
