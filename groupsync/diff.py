"""
Membership diff between a flattened source group and a target group.

Users from different backends share no common key, so both sides are first
resolved to their identity on the target backend; the diff is then a plain
set difference over the identities' unique IDs.
"""

import logging
from typing import Dict, List, Optional

from groupsync.errors import IdentityResolutionError, SourceGroupEmptyError
from groupsync.resolver import IdentityResolver
from groupsync.services.base import Deadline
from groupsync.users import NoIdentity, User

logger = logging.getLogger(__name__)


class DiffResult:
    """Users to add to and remove from the target group."""

    def __init__(self, add: Optional[List[User]] = None, rem: Optional[List[User]] = None):
        self.add = list(add or [])
        self.rem = list(rem or [])

    def is_empty(self) -> bool:
        return not self.add and not self.rem

    def __repr__(self):
        return f"DiffResult(add={len(self.add)}, rem={len(self.rem)})"


def _index_by_unique_id(users: List[User], backend: str, resolver: IdentityResolver,
                        side: str, deadline: Optional[Deadline]) -> Dict[str, User]:
    """
    Map unique ID on ``backend`` to user.

    Users whose identity cannot be resolved, or resolves to the absent
    identity, are left out. Fatal resolution errors propagate.
    """
    index = {}

    for user in users:
        try:
            identity = resolver.resolve(user, backend, deadline)
        except IdentityResolutionError as e:
            if e.fatal:
                raise
            logger.warning(f"Skipping {side} user {user}: {e}")
            continue

        if isinstance(identity, NoIdentity):
            logger.info(f"Skipping {side} user {user}: no {backend} identity")
            continue

        index[identity.unique_id()] = user

    return index


def diff(source: List[User], target: List[User], target_backend: str,
         resolver: IdentityResolver, deadline: Optional[Deadline] = None) -> DiffResult:
    """
    Compute who has to be added to and removed from the target group.

    Args:
        source: Flattened members of the source group(s)
        target: Current members of the target group
        target_backend: Backend name the comparison happens on
        resolver: Identity resolver used to map users onto the target backend
        deadline: Optional deadline for identity lookups

    Returns:
        DiffResult; ordering within ``add`` and ``rem`` is not meaningful

    Raises:
        SourceGroupEmptyError: If ``source`` is empty
        IdentityResolutionError: If a fatal identity resolution error occurs
    """
    if not source:
        raise SourceGroupEmptyError(target_backend)

    source_index = _index_by_unique_id(source, target_backend, resolver, 'source', deadline)
    target_index = _index_by_unique_id(target, target_backend, resolver, 'target', deadline)

    common = source_index.keys() & target_index.keys()
    for uid in common:
        del source_index[uid]
        del target_index[uid]

    result = DiffResult(add=list(source_index.values()), rem=list(target_index.values()))
    logger.debug(f"Diff on {target_backend}: {len(result.add)} to add, "
                 f"{len(result.rem)} to remove, {len(common)} unchanged")
    return result
