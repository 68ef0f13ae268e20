from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List


class Role(str, Enum):
    """Static capability labels an account can hold."""

    USER = "USER"
    ARTIST = "ARTIST"
    ADMIN = "ADMIN"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_roles(roles) -> List[Role]:
    """Coerce role names into a de-duplicated, ordered list of ``Role`` values.

    Raises ``ValueError`` for unknown role names or an empty set.
    """
    result: List[Role] = []
    for raw in roles or []:
        role = raw if isinstance(raw, Role) else Role(str(raw).upper())
        if role not in result:
            result.append(role)
    if not result:
        raise ValueError("at least one role is required")
    return result


@dataclass
class Account:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    roles: List[Role] = field(default_factory=lambda: [Role.USER])
    is_verified: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email
