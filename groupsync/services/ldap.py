"""
LDAP directory groups as a sync source.

Each ``group_members`` call opens and binds its own connection and always
unbinds it afterwards, even when the query fails.
"""

import ssl
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ldap3 import Server, Connection, SUBTREE, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from groupsync.errors import AmbiguousGroupError, ConfigurationError, ConnectorError, GroupNotFoundError
from groupsync.services.base import Deadline, Service, check_deadline
from groupsync.users import Identity, User

logger = logging.getLogger(__name__)

PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'


@dataclass(frozen=True)
class LDAPIdentity(Identity):
    """A directory entry. The username attribute is the unique ID."""

    dn: str
    username: str
    email: Optional[str] = None

    kind = 'ldap'

    def unique_id(self) -> str:
        return self.username

    def __str__(self):
        if self.email:
            return f"ldap{{username: {self.username}, email: {self.email}}}"
        return f"ldap{{username: {self.username}}}"


class LDAPService(Service):
    """
    LDAP connector.

    Config keys:
        server, port, ssl, start_tls, skip_verify, ca_cert_file: connection
        bind_user, bind_password: credentials
        user_base_dn, group_base_dn, user_class, group_class,
        group_name_attribute, search_attribute, username_attribute,
        email_attribute: directory schema
        page_size, connection_timeout, receive_timeout: query tuning
    """

    kind = 'ldap'

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)

        self.server_host = self.config.get('server')
        if not self.server_host:
            raise ConfigurationError(f"LDAP backend `{name}` needs `server`")

        self.use_ssl = bool(self.config.get('ssl', False))
        self.port = int(self.config.get('port', 636 if self.use_ssl else 389))
        self.start_tls = bool(self.config.get('start_tls', False))
        self.skip_verify = bool(self.config.get('skip_verify', False))
        self.ca_cert_file = self.config.get('ca_cert_file')

        self.bind_user = self.config.get('bind_user')
        self.bind_password = self.config.get('bind_password')

        self.user_base_dn = self.config.get('user_base_dn', '')
        self.group_base_dn = self.config.get('group_base_dn', self.user_base_dn)
        self.user_class = self.config.get('user_class', 'person')
        self.group_class = self.config.get('group_class')
        self.group_name_attribute = self.config.get('group_name_attribute', 'cn')
        self.search_attribute = self.config.get('search_attribute', 'memberOf')
        self.username_attribute = self.config.get('username_attribute', 'uid')
        self.email_attribute = self.config.get('email_attribute')

        self.page_size = int(self.config.get('page_size', 500))
        self.connection_timeout = int(self.config.get('connection_timeout', 10))
        self.receive_timeout = int(self.config.get('receive_timeout', 30))

        if not self.username_attribute:
            raise ConfigurationError(f"LDAP backend `{name}` needs `username_attribute`")

        logger.debug(f"Configured LDAP connector `{name}` for {self.server_host}:{self.port}")

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_NONE if self.skip_verify else ssl.CERT_REQUIRED}
        if self.skip_verify:
            logger.warning(f"SSL certificate verification disabled for {self.name}")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise ConnectorError(f"Failed to create TLS configuration: {e}") from e

    @contextmanager
    def session(self, deadline: Optional[Deadline] = None):
        """Open and bind a connection, unbinding it on exit whatever happens."""
        check_deadline(deadline, f"connecting to {self.server_host}")

        receive_timeout = self.receive_timeout
        if deadline is not None:
            receive_timeout = max(1, int(deadline.timeout(self.receive_timeout)))

        server = Server(
            self.server_host,
            port=self.port,
            use_ssl=self.use_ssl,
            tls=self._create_tls_config(),
            connect_timeout=self.connection_timeout,
        )
        connection = Connection(
            server,
            user=self.bind_user,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=receive_timeout,
        )

        try:
            try:
                if not connection.open():
                    raise ConnectorError(f"Failed to open connection: {connection.result}")
                if self.start_tls and not self.use_ssl and not connection.start_tls():
                    raise ConnectorError(f"Failed to start TLS: {connection.result}")
                if not connection.bind():
                    raise ConnectorError(f"Bind failed: {connection.result}")
            except LDAPException as e:
                raise ConnectorError(f"Error when connecting to {self.server_host}:{self.port}: {e}") from e

            logger.debug(f"Bound to LDAP server {self.server_host}:{self.port}")
            yield connection
        finally:
            try:
                connection.unbind()
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")

    def group_members(self, group: str, deadline: Optional[Deadline] = None) -> List[User]:
        try:
            with self.session(deadline) as connection:
                group_dn = self._find_group_dn(connection, group)
                entries = self._search_members(connection, group_dn, deadline)
        except LDAPException as e:
            raise ConnectorError(f"LDAP query for group {group} failed: {e}") from e

        members = [User.with_identity(self.name, self._identity_from_entry(entry)) for entry in entries]
        logger.debug(f"LDAP group {group} has {len(members)} members")
        return members

    def _find_group_dn(self, connection, group: str) -> str:
        """Look up the DN of ``group``; the name must match exactly one entry."""
        name_filter = f"({self.group_name_attribute}={escape_filter_chars(group)})"
        if self.group_class:
            name_filter = f"(&(objectClass={self.group_class}){name_filter})"

        if not connection.search(
            search_base=self.group_base_dn,
            search_filter=name_filter,
            search_scope=SUBTREE,
            attributes=[],
        ) and connection.result.get('description') not in ('success', 'noSuchObject'):
            raise ConnectorError(f"Group search failed: {connection.result}")

        dns = [entry.entry_dn for entry in connection.entries]
        if not dns:
            raise GroupNotFoundError(f"Cannot find LDAP group called \"{group}\"")
        if len(dns) > 1:
            raise AmbiguousGroupError(f"multiple groups found for {group}: {', '.join(dns)}")
        return dns[0]

    def _search_members(self, connection, group_dn: str, deadline: Optional[Deadline]) -> list:
        """Paged search for users whose search attribute points at ``group_dn``."""
        search_filter = (
            f"(&(objectClass={self.user_class})"
            f"({self.search_attribute}={escape_filter_chars(group_dn)}))"
        )
        attributes = [attr for attr in (self.username_attribute, self.email_attribute) if attr]

        logger.debug(f"Searching with filter: {search_filter} in base: {self.user_base_dn}")

        entries = []
        cookie = None
        page_count = 0

        while True:
            check_deadline(deadline, f"fetching page {page_count + 1} of {group_dn}")

            success = connection.search(
                search_base=self.user_base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes,
                paged_size=self.page_size,
                paged_cookie=cookie,
            )
            if not success and connection.result.get('description') != 'success':
                raise ConnectorError(f"Member search failed on page {page_count + 1}: {connection.result}")

            page_count += 1
            entries.extend(connection.entries)

            cookie = self._next_cookie(connection)
            if not cookie:
                break

        logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages")
        return entries

    @staticmethod
    def _next_cookie(connection):
        controls = (connection.result or {}).get('controls') or {}
        control = controls.get(PAGED_RESULTS_CONTROL)
        if not control:
            return None
        return (control.get('value') or {}).get('cookie')

    def _identity_from_entry(self, entry) -> LDAPIdentity:
        username = self._attribute_value(entry, self.username_attribute)
        if not username:
            raise ConnectorError(f"Failed to get username ({self.username_attribute}) for {entry.entry_dn}")

        email = None
        if self.email_attribute:
            email = self._attribute_value(entry, self.email_attribute)
            if not email:
                raise ConnectorError(f"Failed to get e-mail ({self.email_attribute}) for {entry.entry_dn}")

        return LDAPIdentity(str(entry.entry_dn), str(username), str(email) if email else None)

    @staticmethod
    def _attribute_value(entry, attribute: str):
        if attribute not in entry:
            return None
        value = entry[attribute].value
        if isinstance(value, list):
            value = value[0] if value else None
        return value
