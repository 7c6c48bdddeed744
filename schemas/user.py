from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Role(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


class Principal(BaseModel):
    """Authenticated caller as supplied by the identity provider."""

    user_id: str
    role: Role = Role.STUDENT
    display_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
