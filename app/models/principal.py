from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated identity extracted from a validated JWT.

    Carried through the request via FastAPI's dependency system.
    user_id is the JWT subject; for students and admins it is the
    numeric users.id rendered as a string.
    """

    user_id: str
    roles: frozenset[str]

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def numeric_id(self) -> int | None:
        """users.id for this principal, or None when the subject is not numeric."""
        try:
            return int(self.user_id)
        except ValueError:
            return None
