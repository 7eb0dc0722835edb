"""
Cross-service user model.

A ``User`` is a bundle of per-backend identities. Connectors create users
holding only their own identity; the identity resolver adds identities for
other backends as they are discovered.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional


class NoIdentityError(RuntimeError):
    """Raised when the unique ID of the absent identity is requested."""
    pass


class Identity(ABC):
    """A backend-scoped value uniquely identifying a user within that backend."""

    kind = None

    @abstractmethod
    def unique_id(self) -> str:
        pass


class NoIdentity(Identity):
    """Marks a user as having no correspondence on a backend."""

    kind = 'none'

    def unique_id(self) -> str:
        raise NoIdentityError("unique_id() called on the absent identity")

    def __eq__(self, other):
        return isinstance(other, NoIdentity)

    def __hash__(self):
        return hash(NoIdentity)

    def __repr__(self):
        return 'NoIdentity()'

    def __str__(self):
        return 'none'


NO_IDENTITY = NoIdentity()


class User:
    """
    A person as a set of identities, at most one per backend name.

    Users are compared by object identity. Two users holding the same
    identities are still two users until the diff engine matches them by
    unique ID.
    """

    def __init__(self, identities: Optional[Dict[str, Identity]] = None):
        self._identities = dict(identities or {})
        self.lock = threading.RLock()

    @classmethod
    def with_identity(cls, backend: str, identity: Identity) -> 'User':
        user = cls()
        user.add_identity(backend, identity)
        return user

    def add_identity(self, backend: str, identity: Identity) -> None:
        """Store ``identity`` for ``backend``, replacing any previous one."""
        if not isinstance(identity, Identity):
            raise TypeError(f"expected an Identity, got {type(identity).__name__}")
        self._identities[backend] = identity

    def identity(self, backend: str) -> Optional[Identity]:
        return self._identities.get(backend)

    def has_identity(self, backend: str) -> bool:
        return backend in self._identities

    def backends(self) -> List[str]:
        return list(self._identities)

    def identities(self) -> Dict[str, Identity]:
        return dict(self._identities)

    def __str__(self):
        if not self._identities:
            return 'user{}'
        parts = ', '.join(f"{backend}: {identity}" for backend, identity in self._identities.items())
        return f"user{{{parts}}}"

    def __repr__(self):
        return f"User({self._identities!r})"
