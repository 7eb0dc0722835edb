"""
Lazy, memoizing identity resolution.
"""

import logging
from typing import Optional

from groupsync.services.base import Deadline
from groupsync.users import Identity, User

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Finds a user's identity on a backend, asking the backend's connector only
    when the user does not hold one yet.

    Acquired identities are stored on the user, so a user's identity set only
    grows during a run and each backend is asked at most once per user.
    """

    def __init__(self, registry):
        self.registry = registry

    def resolve(self, user: User, backend: str, deadline: Optional[Deadline] = None) -> Identity:
        """
        Return ``user``'s identity on ``backend``.

        Raises:
            IdentityResolutionError: If the connector cannot find a correspondence;
                its ``fatal`` flag says whether the caller must abort
            ServiceNotDefined, TargetNotDefined: If ``backend`` cannot resolve identities
        """
        identity = user.identity(backend)
        if identity is not None:
            return identity

        with user.lock:
            identity = user.identity(backend)
            if identity is not None:
                return identity

            target = self.registry.target_from_name(backend)
            identity = target.acquire_identity(user, deadline)
            user.add_identity(backend, identity)
            logger.debug(f"Resolved {backend} identity {identity} for {user}")
            return identity
