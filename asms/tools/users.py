"""
In-memory user directory.

In production this would call the user-management service that owns
credentials and profiles. The core only needs identity resolution for
ownership checks and the admin roster for broadcast fan-out.
"""

import itertools
import logging
import threading
from typing import Optional, Protocol, Union

from asms.errors import NotFoundError
from asms.schemas.user_schema import Role, UserRecord

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    """Identity lookup consumed by the core."""

    def resolve_user(self, id_or_username: Union[int, str]) -> UserRecord: ...

    def list_admins(self) -> list[UserRecord]: ...


class InMemoryUserDirectory:
    """Thread-safe dict-backed directory keyed by id, with a username index."""

    def __init__(self, users: Optional[list[UserRecord]] = None) -> None:
        self._users: dict[int, UserRecord] = {}
        self._by_username: dict[str, int] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        for user in users or []:
            self._store(user)

    def _store(self, user: UserRecord) -> UserRecord:
        with self._lock:
            self._users[user.id] = user
            self._by_username[user.username.lower()] = user.id
            self._ids = itertools.count(max(self._users) + 1)
        return user

    def add_user(
        self,
        username: str,
        role: Role,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> UserRecord:
        """Create a new user record with the next free id."""
        with self._lock:
            user_id = next(self._ids)
        user = UserRecord(
            id=user_id,
            username=username,
            role=role,
            display_name=display_name or username,
            email=email,
        )
        self._store(user)
        logger.info("User created: %s (%s, id=%s)", username, role.value, user_id)
        return user

    def resolve_user(self, id_or_username: Union[int, str]) -> UserRecord:
        """Look up a user by numeric id or username. Raises NotFoundError."""
        with self._lock:
            if isinstance(id_or_username, int):
                user = self._users.get(id_or_username)
            else:
                user_id = self._by_username.get(str(id_or_username).strip().lower())
                user = self._users.get(user_id) if user_id is not None else None
        if user is None:
            raise NotFoundError("User", id_or_username)
        return user

    def list_admins(self) -> list[UserRecord]:
        with self._lock:
            return [u for u in self._users.values() if u.role == Role.ADMIN]
