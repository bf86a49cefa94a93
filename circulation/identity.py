from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class Role(str, enum.Enum):
    MEMBER = "Member"
    ADMIN = "Admin"


@dataclass(frozen=True)
class Caller:
    """The authenticated identity a request runs as.

    ``member_id`` is the caller's own member profile; admins usually have none.
    """

    user_id: int
    role: Role
    member_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
