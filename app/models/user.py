from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class User:
    """Platform user as the enrollment core sees it (read-only reference)."""

    id: int
    email: str
    name: str = ""
    role: str = "student"  # student|admin
    is_active: bool = True

    @property
    def is_student(self) -> bool:
        return self.role == "student"
