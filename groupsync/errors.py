"""
Exception hierarchy shared by the reconciliation engine and its connectors.
"""


class GroupsyncError(Exception):
    """Base exception for all groupsync errors."""
    pass


class ConfigurationError(GroupsyncError):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ServiceNotDefined(GroupsyncError):
    """Raised when a backend name does not resolve to a configured connector."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service `{name}` is not defined")


class TargetNotDefined(GroupsyncError):
    """Raised when a backend exists but cannot be used as a sync target."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service `{name}` cannot be used as a target")


class ConnectorError(GroupsyncError):
    """Raised when a backend call fails."""
    pass


class ConnectorAPIError(ConnectorError):
    """Raised when an HTTP backend answers with an error status."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class GroupNotFoundError(ConnectorError):
    """Raised when the requested group does not exist in the backend."""
    pass


class AmbiguousGroupError(ConnectorError):
    """Raised when a group name matches more than one group in the backend."""
    pass


class DeadlineExceeded(ConnectorError):
    """Raised when an operation is attempted after its deadline passed."""
    pass


class IdentityResolutionError(GroupsyncError):
    """
    Raised when a user's identity on a backend cannot be determined.

    The ``fatal`` flag decides how the diff engine reacts: fatal errors abort
    the whole diff, non-fatal errors only exclude the affected user.
    """

    fatal = False

    def __init__(self, message: str, fatal: bool = None):
        if fatal is not None:
            self.fatal = fatal
        super().__init__(message)


class FatalIdentityError(IdentityResolutionError):
    """Identity resolution failed in a way that invalidates the whole run."""

    fatal = True


class RecoverableIdentityError(IdentityResolutionError):
    """A single user has no identity on the backend."""

    fatal = False


class MappingCacheError(GroupsyncError):
    """Raised when a bulk identity mapping table cannot be fetched."""
    pass


class EmptyMappingError(MappingCacheError):
    """Raised when a bulk identity mapping table has no entries at all."""
    pass


class SourceGroupEmptyError(GroupsyncError):
    """
    Raised when a diff is requested with no source members.

    Syncing an empty source would remove every member of the target, which
    almost always means an upstream lookup went wrong.
    """

    def __init__(self, target: str = None):
        self.target = target
        message = "Source group(s) are empty"
        if target:
            message += f"; refusing to empty target `{target}`"
        super().__init__(message)


class MappingError(GroupsyncError):
    """Raised when a mapping definition cannot be parsed."""
    pass


class CommitError(GroupsyncError):
    """
    Raised when applying a diff to the target fails.

    ``add_applied`` tells whether members were already added before the
    failure, i.e. whether the target was left partially updated.
    """

    add_applied = False

    def __init__(self, message: str, cause: Exception = None):
        self.cause = cause
        super().__init__(message)


class PartialCommitError(CommitError):
    """Members were added but removing stale members failed."""

    add_applied = True
