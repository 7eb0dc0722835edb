"""
Capability interfaces every backend connector implements.

A connector that can list group members implements ``Service``. A connector
whose groups can also be modified, and which can work out a user's identity
from the identities the user holds on other backends, implements ``Target``.
"""

import enum
import time
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, List, Optional

from groupsync.errors import DeadlineExceeded
from groupsync.users import Identity, User

logger = logging.getLogger(__name__)


class Capability(enum.Enum):
    SERVICE = 'service'
    TARGET = 'target'


class Deadline:
    """
    Absolute point in time after which network calls must not start.

    Operations accept ``deadline=None`` to mean "no deadline".
    """

    def __init__(self, expires_at: float):
        self.expires_at = expires_at

    @classmethod
    def after(cls, seconds: float) -> 'Deadline':
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self, operation: str = 'operation') -> None:
        """Raise ``DeadlineExceeded`` if the deadline has passed."""
        if self.expired():
            raise DeadlineExceeded(f"Deadline exceeded before {operation}")

    def timeout(self, default: Optional[float] = None) -> Optional[float]:
        """Socket timeout to use: the smaller of ``default`` and the time left."""
        remaining = self.remaining()
        if default is None:
            return remaining
        return min(default, remaining)

    def __repr__(self):
        return f"Deadline(remaining={self.remaining():.1f}s)"


def check_deadline(deadline: Optional[Deadline], operation: str) -> None:
    if deadline is not None:
        deadline.check(operation)


class Service(ABC):
    """
    A backend holding groups whose members can be listed.

    ``name`` is the backend name the connector was registered under. Users
    returned by ``group_members`` carry their identity under that name.
    """

    kind = None
    capabilities: FrozenSet[Capability] = frozenset({Capability.SERVICE})

    def __init__(self, name: str, config: Optional[Dict[str, Any]] = None):
        self.name = name
        self.config = config or {}

    @abstractmethod
    def group_members(self, group: str, deadline: Optional[Deadline] = None) -> List[User]:
        """
        Get every member of ``group``.

        Raises:
            GroupNotFoundError: If the group does not exist
            ConnectorError: If the backend call fails
        """
        pass

    def close(self) -> None:
        """Release any held connections. Connectors without state need not override."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class Target(Service):
    """A backend whose group memberships can be changed."""

    capabilities: FrozenSet[Capability] = frozenset({Capability.SERVICE, Capability.TARGET})

    @abstractmethod
    def add_members(self, group: str, users: List[User], deadline: Optional[Deadline] = None) -> None:
        pass

    @abstractmethod
    def remove_members(self, group: str, users: List[User], deadline: Optional[Deadline] = None) -> None:
        pass

    @abstractmethod
    def acquire_identity(self, user: User, deadline: Optional[Deadline] = None) -> Identity:
        """
        Work out this backend's identity for ``user``.

        ``user`` holds at least one identity from another backend. Returns
        ``NO_IDENTITY`` or raises an ``IdentityResolutionError`` when no
        correspondence exists; the error's ``fatal`` flag decides whether the
        whole diff is aborted.
        """
        pass

    @abstractmethod
    def identity_from_uid(self, uid: str, deadline: Optional[Deadline] = None) -> Identity:
        """
        Look up a user directly by this backend's user identifier.

        Raises:
            IdentityResolutionError: If the identifier does not resolve
        """
        pass
