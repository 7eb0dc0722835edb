"""
In-memory backends.

``MockService`` serves fixed group memberships; ``MockTarget`` additionally
records the changes it is asked to make. Both are configured from plain
dictionaries, so they can stand in for real backends in tests and dry runs::

    mock:
      kind: mock_target
      groups:
        devs: ["1", "2"]
      correspondence:
        ldap:
          alice: "1"
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from groupsync.cache import PaginatedMappingCache
from groupsync.errors import GroupNotFoundError, RecoverableIdentityError, FatalIdentityError, MappingCacheError
from groupsync.services.base import Deadline, Service, Target, check_deadline
from groupsync.users import Identity, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MockIdentity(Identity):
    """Identity on a mock backend."""

    uid: str

    kind = 'mock'

    def unique_id(self) -> str:
        return self.uid

    def __str__(self):
        return f"mockidentity{{uid: {self.uid}}}"


class MockService(Service):
    """Read-only backend serving ``config['groups']``: group name to list of uids."""

    kind = 'mock'

    def __init__(self, name: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(name, config)
        self.groups: Dict[str, List[str]] = {
            group: [str(uid) for uid in uids]
            for group, uids in (self.config.get('groups') or {}).items()
        }
        self.group_member_calls = 0

    def group_members(self, group: str, deadline: Optional[Deadline] = None) -> List[User]:
        check_deadline(deadline, f"listing {self.name}:{group}")
        self.group_member_calls += 1

        if group not in self.groups:
            raise GroupNotFoundError(f"Cannot find {self.name} group called \"{group}\"")

        return [User.with_identity(self.name, MockIdentity(uid)) for uid in self.groups[group]]


class MockTarget(MockService, Target):
    """
    Writable mock backend.

    Identities are acquired from ``config['correspondence']``: for each other
    backend name, a table of that backend's unique IDs to uids here. If a
    ``mapping_source`` callable is given instead, it is wrapped in a
    ``PaginatedMappingCache`` the same way a real backend would page through
    its identity-provider listing.
    """

    kind = 'mock_target'

    def __init__(self, name: str, config: Optional[Dict[str, Any]] = None, mapping_source=None):
        super().__init__(name, config)
        self.correspondence: Dict[str, Dict[str, str]] = {
            backend: {str(key): str(value) for key, value in table.items()}
            for backend, table in (self.config.get('correspondence') or {}).items()
        }
        self.known_uids = set(str(uid) for uid in self.config.get('known_uids') or [])
        for uids in self.groups.values():
            self.known_uids.update(uids)

        self.identity_source = self.config.get('identity_source')
        self.mapping_cache = None
        if mapping_source is not None:
            self.mapping_cache = PaginatedMappingCache(
                mapping_source,
                key_func=lambda entry: entry[0],
                description=f"{name} identity mappings",
            )

        self.fail_add: Optional[Exception] = None
        self.fail_remove: Optional[Exception] = None
        self.calls: List[tuple] = []

    def add_members(self, group: str, users: List[User], deadline: Optional[Deadline] = None) -> None:
        check_deadline(deadline, f"adding to {self.name}:{group}")
        self.calls.append(('add', group, list(users)))
        if self.fail_add is not None:
            raise self.fail_add

        members = self.groups.setdefault(group, [])
        for user in users:
            members.append(user.identity(self.name).unique_id())

    def remove_members(self, group: str, users: List[User], deadline: Optional[Deadline] = None) -> None:
        check_deadline(deadline, f"removing from {self.name}:{group}")
        self.calls.append(('remove', group, list(users)))
        if self.fail_remove is not None:
            raise self.fail_remove

        stale = {user.identity(self.name).unique_id() for user in users}
        self.groups[group] = [uid for uid in self.groups.get(group, []) if uid not in stale]

    def acquire_identity(self, user: User, deadline: Optional[Deadline] = None) -> Identity:
        if self.mapping_cache is not None:
            return self._acquire_from_cache(user, deadline)

        for backend, table in self.correspondence.items():
            identity = user.identity(backend)
            if identity is None or identity.kind == 'none':
                continue
            uid = table.get(identity.unique_id())
            if uid is not None:
                return MockIdentity(uid)

        raise RecoverableIdentityError(f"no {self.name} identity found for user {user}")

    def _acquire_from_cache(self, user: User, deadline: Optional[Deadline]) -> Identity:
        source = user.identity(self.identity_source) if self.identity_source else None
        if source is None:
            raise RecoverableIdentityError(
                f"user {user} has no {self.identity_source} identity to look up in {self.name}"
            )

        try:
            entry = self.mapping_cache.lookup(source.unique_id(), deadline)
        except MappingCacheError as e:
            raise FatalIdentityError(f"couldn't acquire identity mappings from {self.name}: {e}") from e

        if entry is None:
            raise RecoverableIdentityError(f"no {self.name} mapping found for user {user}")
        return MockIdentity(entry[1])

    def identity_from_uid(self, uid: str, deadline: Optional[Deadline] = None) -> Identity:
        check_deadline(deadline, f"looking up {uid} in {self.name}")
        if uid not in self.known_uids:
            raise RecoverableIdentityError(f"user ID {uid} not found in {self.name}")
        return MockIdentity(uid)
