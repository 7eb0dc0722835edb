"""
Mappings of source groups onto a target group.

A mapping is built from CLI arguments (``backend:group`` strings) or from a
record of a YAML mapping file, computes its diff on demand and applies it to
the target in a separate, explicit step.
"""

import logging
from typing import Any, List, Optional

import yaml

from groupsync.diff import DiffResult, diff as compute_diff
from groupsync.errors import (
    CommitError,
    ConnectorError,
    DeadlineExceeded,
    IdentityResolutionError,
    MappingError,
    PartialCommitError,
)
from groupsync.resolver import IdentityResolver
from groupsync.services.base import Deadline
from groupsync.users import NoIdentity, User

logger = logging.getLogger(__name__)


class GroupIdent:
    """A (backend, group name) reference with lazily fetched members."""

    def __init__(self, backend: str, name: str):
        self.backend = backend
        self.name = name
        self._members: Optional[List[User]] = None

    def members(self, registry, deadline: Optional[Deadline] = None) -> List[User]:
        """Return the group's members, fetching them on first call only."""
        if self._members is None:
            connector = registry.connector_from_name(self.backend)
            members = connector.group_members(self.name, deadline)
            logger.info(f"Fetched {len(members)} members of {self}")
            self._members = members
        return self._members

    @property
    def fetched(self) -> bool:
        return self._members is not None

    def invalidate(self) -> None:
        self._members = None

    def __eq__(self, other):
        if not isinstance(other, GroupIdent):
            return NotImplemented
        return (self.backend, self.name) == (other.backend, other.name)

    def __hash__(self):
        return hash((self.backend, self.name))

    def __str__(self):
        return f"{self.backend}:{self.name}"

    def __repr__(self):
        return f"GroupIdent({self.backend!r}, {self.name!r})"


def parse_group_ident(value: str) -> GroupIdent:
    """
    Parse a ``backend:group`` string. Only the first colon separates.

    Raises:
        MappingError: If the string does not follow the format
    """
    logger.debug(f"Parsing group ident: {value}")

    backend, sep, name = str(value).partition(':')
    if not sep or not backend or not name:
        raise MappingError(f"string `{value}` should follow the `service:group` format")

    return GroupIdent(backend, name)


class Mapping:
    """
    Source group(s), plus optional raw target user IDs, reconciled against
    one target group.
    """

    def __init__(self, sources: List[GroupIdent], target: GroupIdent, users: Optional[List[str]] = None):
        self.sources = list(sources)
        self.target = target
        self.users = list(users or [])
        self._diff: Optional[DiffResult] = None

    @property
    def diff_result(self) -> Optional[DiffResult]:
        return self._diff

    def diff(self, registry, deadline: Optional[Deadline] = None) -> DiffResult:
        """
        Compute (once) the changes needed on the target group.

        Raises:
            SourceGroupEmptyError: If all sources together have no members
            IdentityResolutionError: On fatal identity resolution errors
            ServiceNotDefined, TargetNotDefined, ConnectorError: On backend failures
        """
        if self._diff is not None:
            return self._diff

        flattened: List[User] = []
        for source in self.sources:
            flattened.extend(source.members(registry, deadline))

        if self.users:
            flattened.extend(self._raw_users(registry, deadline))

        target_members = self.target.members(registry, deadline)

        result = compute_diff(
            flattened, target_members, self.target.backend,
            IdentityResolver(registry), deadline
        )
        # Cached only once computed without error
        self._diff = result
        return result

    def _raw_users(self, registry, deadline: Optional[Deadline]) -> List[User]:
        """Resolve the mapping's raw target user IDs into users."""
        target = registry.target_from_name(self.target.backend)
        users = []

        for uid in self.users:
            try:
                identity = target.identity_from_uid(uid, deadline)
            except IdentityResolutionError as e:
                if e.fatal:
                    raise
                logger.error(f"Error finding user ID {uid} in {self.target.backend}: {e}")
                continue
            except DeadlineExceeded:
                raise
            except ConnectorError as e:
                logger.error(f"Error looking up user ID {uid} in {self.target.backend}: {e}")
                continue

            if isinstance(identity, NoIdentity):
                logger.error(f"User ID {uid} not found in {self.target.backend}")
                continue

            users.append(User.with_identity(self.target.backend, identity))

        return users

    def commit_changes(self, registry, dry_run: bool = False,
                       deadline: Optional[Deadline] = None) -> DiffResult:
        """
        Apply the diff to the target group: add first, then remove.

        With ``dry_run`` the diff is computed (or reused) and returned without
        touching the target.

        Raises:
            CommitError: If adding members fails; nothing was changed by this call
            PartialCommitError: If members were added but removing failed
        """
        result = self.diff(registry, deadline)

        if dry_run:
            logger.info(f"Dry run: not committing changes to {self.target}")
            return result

        target = registry.target_from_name(self.target.backend)

        if result.add:
            try:
                target.add_members(self.target.name, result.add, deadline)
            except Exception as e:
                raise CommitError(f"Failed to add members to {self.target}: {e}", e) from e
            logger.info(f"Added {len(result.add)} members to {self.target}")

        if result.rem:
            try:
                target.remove_members(self.target.name, result.rem, deadline)
            except Exception as e:
                if result.add:
                    raise PartialCommitError(
                        f"Added {len(result.add)} members to {self.target} "
                        f"but failed to remove {len(result.rem)}: {e}", e
                    ) from e
                raise CommitError(f"Failed to remove members from {self.target}: {e}", e) from e
            logger.info(f"Removed {len(result.rem)} members from {self.target}")

        return result

    def describe(self) -> str:
        """Plain text rendering of the mapping and, once computed, its diff."""
        lines = ["Sources:"]
        lines.extend(f"- {source}" for source in self.sources)

        if self.users:
            lines.append(f"{self.target.backend} users:")
            lines.extend(f"- {uid}" for uid in self.users)

        lines.append("Target:")
        lines.append(f"- {self.target}")

        if self._diff is not None:
            lines.append("Rem:")
            lines.extend(f"- {user}" for user in self._diff.rem)
            lines.append("Add:")
            lines.extend(f"- {user}" for user in self._diff.add)

        return "\n".join(lines)

    def __eq__(self, other):
        if not isinstance(other, Mapping):
            return NotImplemented
        return (self.sources, self.target, self.users) == (other.sources, other.target, other.users)

    __hash__ = None

    def __repr__(self):
        return f"Mapping(sources={self.sources!r}, target={self.target!r}, users={self.users!r})"


def parse_cli_mapping(args: List[str]) -> Mapping:
    """
    Build a mapping from ``source... target`` arguments.

    Raises:
        MappingError: If fewer than two arguments are given or one is malformed
    """
    if len(args) < 2:
        raise MappingError("sync requires at least one source and a target")

    sources = [parse_group_ident(arg) for arg in args[:-1]]
    target = parse_group_ident(args[-1])
    return Mapping(sources, target)


def _group_ident_from_record(record: Any, where: str) -> GroupIdent:
    if not isinstance(record, dict):
        raise MappingError(f"{where} must be a mapping with `service` and `group`")

    service = record.get('service')
    group = record.get('group')
    if not service or not group:
        raise MappingError(f"{where} needs both `service` and `group`")

    return GroupIdent(str(service), str(group))


def parse_mapping_records(data: Any) -> List[Mapping]:
    """
    Build mappings from parsed YAML data: a list of records with
    ``sources``, optional ``users`` and ``target``.

    Raises:
        MappingError: If a record is malformed or has neither sources nor users
    """
    if data is None:
        return []
    if not isinstance(data, list):
        raise MappingError("mapping file must contain a list of mappings")

    mappings = []
    for index, record in enumerate(data):
        where = f"mapping #{index + 1}"
        if not isinstance(record, dict):
            raise MappingError(f"{where} must be a mapping")

        raw_sources = record.get('sources') or []
        raw_users = record.get('users') or []
        if not isinstance(raw_sources, list) or not isinstance(raw_users, list):
            raise MappingError(f"{where}: `sources` and `users` must be lists")

        if not raw_sources and not raw_users:
            raise MappingError(f"{where} has no sources and no users")

        if 'target' not in record:
            raise MappingError(f"{where} has no target")

        sources = [
            _group_ident_from_record(source, f"{where} source #{i + 1}")
            for i, source in enumerate(raw_sources)
        ]
        target = _group_ident_from_record(record['target'], f"{where} target")
        mappings.append(Mapping(sources, target, [str(uid) for uid in raw_users]))

    return mappings


def load_mapping_file(path: str) -> List[Mapping]:
    """
    Read mappings from a YAML file.

    Raises:
        MappingError: If the file cannot be read or parsed
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise MappingError(f"Cannot read mapping file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise MappingError(f"Invalid YAML in mapping file {path}: {e}") from e

    mappings = parse_mapping_records(data)
    logger.info(f"Loaded {len(mappings)} mappings from {path}")
    return mappings
