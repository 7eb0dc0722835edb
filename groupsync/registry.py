"""
Connector registry.

Maps backend names to connector instances. Each name is backed by a
configuration section whose ``kind`` (defaulting to the section name) picks a
row of the capability table below. Instances are built on first use and kept
for the life of the registry, so connector-level caches survive between
lookups.
"""

import logging
import threading
from typing import Any, Callable, Dict, FrozenSet, List, NamedTuple, Optional

from groupsync.config import backend_sections
from groupsync.errors import ConfigurationError, ServiceNotDefined, TargetNotDefined
from groupsync.services.base import Capability, Service, Target

logger = logging.getLogger(__name__)


class ConnectorKind(NamedTuple):
    """One row of the capability table."""

    kind: str
    factory: Callable[[str, Dict[str, Any]], Service]
    capabilities: FrozenSet[Capability]

    @property
    def is_target(self) -> bool:
        return Capability.TARGET in self.capabilities


def _ldap_factory(name, config):
    from groupsync.services.ldap import LDAPService
    return LDAPService(name, config)


def _github_factory(name, config):
    from groupsync.services.github import GitHubTarget
    return GitHubTarget(name, config)


def _app_store_connect_factory(name, config):
    from groupsync.services.app_store_connect import AppStoreConnectService
    return AppStoreConnectService(name, config)


def _mock_factory(name, config):
    from groupsync.services.mock import MockService
    return MockService(name, config)


def _mock_target_factory(name, config):
    from groupsync.services.mock import MockTarget
    return MockTarget(name, config)


READ_ONLY = frozenset({Capability.SERVICE})
READ_WRITE = frozenset({Capability.SERVICE, Capability.TARGET})

DEFAULT_KINDS = {
    'ldap': ConnectorKind('ldap', _ldap_factory, READ_ONLY),
    'github': ConnectorKind('github', _github_factory, READ_WRITE),
    'app_store_connect': ConnectorKind('app_store_connect', _app_store_connect_factory, READ_ONLY),
    'mock': ConnectorKind('mock', _mock_factory, READ_ONLY),
    'mock_target': ConnectorKind('mock_target', _mock_target_factory, READ_WRITE),
}


class ConnectorRegistry:
    """
    Resolves backend names to live connectors.

    Args:
        config: Loaded configuration; every non-reserved section names a backend
        kinds: Capability table to use instead of ``DEFAULT_KINDS``
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 kinds: Optional[Dict[str, ConnectorKind]] = None):
        self.config = config or {}
        self.kinds = dict(DEFAULT_KINDS if kinds is None else kinds)
        self._sections = dict(backend_sections(self.config))
        self._name_kinds: Dict[str, ConnectorKind] = {}
        self._instances: Dict[str, Service] = {}
        self._lock = threading.Lock()

    def register(self, name: str, kind: ConnectorKind, config: Optional[Dict[str, Any]] = None) -> None:
        """
        Add a backend name backed by ``kind``, replacing any existing definition.

        The capability row only applies to ``name``; other backends of the same
        kind keep the row from the table.
        """
        with self._lock:
            self._name_kinds[name] = kind
            section = dict(config or self._sections.get(name) or {})
            section['kind'] = kind.kind
            self._sections[name] = section
            self._instances.pop(name, None)

    def names(self) -> List[str]:
        return sorted(self._sections)

    def kind_of(self, name: str) -> ConnectorKind:
        """
        Return the capability row for a backend name.

        Raises:
            ServiceNotDefined: If the name is not configured or its kind is unknown
        """
        section = self._sections.get(name)
        if section is None:
            raise ServiceNotDefined(name)

        kind = self._name_kinds.get(name) or self.kinds.get(section.get('kind', name))
        if kind is None:
            raise ServiceNotDefined(name)
        return kind

    def connector_from_name(self, name: str) -> Service:
        """
        Return the connector for ``name``, building it on first use.

        Raises:
            ServiceNotDefined: If the name is unknown
            ConfigurationError: If the connector cannot be built from its section
        """
        instance = self._instances.get(name)
        if instance is not None:
            return instance

        kind = self.kind_of(name)

        with self._lock:
            instance = self._instances.get(name)
            if instance is None:
                section = dict(self._sections[name])
                section.setdefault('error_handling', self.config.get('error_handling') or {})
                logger.debug(f"Initializing {kind.kind} connector `{name}`")
                try:
                    instance = kind.factory(name, section)
                except ConfigurationError:
                    raise
                except (KeyError, TypeError, ValueError) as e:
                    raise ConfigurationError(f"Invalid configuration for `{name}`: {e}") from e
                self._instances[name] = instance
            return instance

    def target_from_name(self, name: str) -> Target:
        """
        Return the connector for ``name`` if it can act as a sync target.

        Raises:
            ServiceNotDefined: If the name is unknown
            TargetNotDefined: If the backend only supports reading
        """
        kind = self.kind_of(name)
        if not kind.is_target:
            raise TargetNotDefined(name)
        return self.connector_from_name(name)

    def close(self) -> None:
        """Close every connector built so far."""
        with self._lock:
            instances = list(self._instances.items())
            self._instances.clear()

        for name, instance in instances:
            try:
                instance.close()
            except Exception as e:
                logger.warning(f"Error closing connector `{name}`: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
