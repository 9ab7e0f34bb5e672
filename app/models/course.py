from __future__ import annotations

from dataclasses import dataclass

OPEN_STATUSES = ("published", "active")


@dataclass(frozen=True, slots=True)
class Course:
    id: int
    title: str
    status: str = "draft"  # draft|published|active|retired
    is_public: bool = False  # students may enroll without a request

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES
