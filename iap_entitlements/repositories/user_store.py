"""User store - in-memory storage for the user tier view.

Stands in for the account repository owned by the wider application;
this subsystem only reads users and writes their tier.
"""

import threading
from typing import Dict, Optional

from iap_entitlements.models.user import User


class UserNotFoundError(Exception):
    """Raised when a user is not found in the store."""

    pass


class UserStore:
    """Thread-safe in-memory user storage."""

    def __init__(self):
        self._users: Dict[str, User] = {}
        self._lock = threading.RLock()

    def add(self, user: User) -> None:
        """Add a user.

        Raises:
            ValueError: If the user ID already exists
        """
        with self._lock:
            if user.id in self._users:
                raise ValueError(f"User '{user.id}' already exists")
            self._users[user.id] = user.model_copy(deep=True)

    def find(self, user_id: str) -> Optional[User]:
        """Find a user by ID (None if not found)."""
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user is not None else None

    def get(self, user_id: str) -> User:
        """Get a user by ID.

        Raises:
            UserNotFoundError: If user_id not found
        """
        user = self.find(user_id)
        if user is None:
            raise UserNotFoundError(f"User not found: {user_id}")
        return user

    def update(self, user: User) -> None:
        """Persist a user's current state.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        with self._lock:
            if user.id not in self._users:
                raise UserNotFoundError(f"User not found: {user.id}")
            self._users[user.id] = user.model_copy(deep=True)

    def delete(self, user_id: str) -> bool:
        """Delete a user (account removal). Returns True if deleted."""
        with self._lock:
            return self._users.pop(user_id, None) is not None

    def count(self) -> int:
        with self._lock:
            return len(self._users)

    def clear(self) -> None:
        with self._lock:
            self._users.clear()

    def __repr__(self) -> str:
        return f"UserStore(users={self.count()})"
