"""
Identity assertion – the opaque {userId, role} produced upstream.

Credential issuance and verification happen in the gateway; by the time
a request reaches the worker it carries trusted headers that this module
turns into an Identity.
"""

import enum
from typing import Mapping, Optional

from pydantic import BaseModel

USER_ID_HEADER = "x-user-id"
USER_ROLE_HEADER = "x-user-role"
USER_NAME_HEADER = "x-user-name"


class Role(str, enum.Enum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"


class Identity(BaseModel):
    user_id: str
    role: Role
    name: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.TEACHER, Role.ADMIN)


def identity_from_headers(headers: Mapping[str, str]) -> Optional[Identity]:
    user_id = headers.get(USER_ID_HEADER)
    role = (headers.get(USER_ROLE_HEADER) or "").upper()
    if not user_id or role not in Role.__members__:
        return None
    return Identity(user_id=user_id, role=Role(role), name=headers.get(USER_NAME_HEADER))
