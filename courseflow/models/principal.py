from __future__ import annotations

from dataclasses import dataclass

ADMIN = "admin"
INSTRUCTOR = "instructor"
LEARNER = "learner"

# Roles allowed to author courses and see authoring views.
AUTHOR_ROLES = frozenset({ADMIN, INSTRUCTOR})


@dataclass(frozen=True, slots=True)
class Principal:
    """Acting identity extracted from a validated JWT.

    Carried through the request via FastAPI's dependency system and
    handed to the engines as the ``actor`` of every operation.

        user_id: subject from JWT
        roles:   platform roles (admin, instructor, learner)
        name:    display name, recorded on reviewer feedback
    """

    user_id: str
    roles: frozenset[str]
    name: str = ""

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: frozenset[str] | set[str]) -> bool:
        return bool(self.roles & roles)

    def is_admin(self) -> bool:
        return ADMIN in self.roles

    @property
    def primary_role(self) -> str:
        """Role recorded on workflow history entries."""
        if self.is_admin():
            return ADMIN
        if INSTRUCTOR in self.roles:
            return INSTRUCTOR
        return min(self.roles, default="user")
