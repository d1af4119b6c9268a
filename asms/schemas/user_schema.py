"""Identity records resolved from the external user directory."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    EMPLOYEE = "EMPLOYEE"
    ADMIN = "ADMIN"


class UserRecord(BaseModel):
    """Minimal view of a user, as returned by resolve_user."""

    id: int
    username: str
    role: Role
    display_name: str
    email: Optional[str] = None
