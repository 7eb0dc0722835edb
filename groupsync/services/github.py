"""
GitHub organization teams as a sync source and target.

Team membership is read through the GraphQL API and changed through the REST
API. Users coming from other backends are matched to GitHub accounts through
the organization's SAML identity provider: the complete list of external
identities is fetched once (it is only available as a paginated listing) and
kept for the life of the connector.

Identity resolution policy:
    * the SAML listing cannot be fetched, or is empty: fatal
    * a user has no identity on the configured source backend: recoverable
    * a user's source identity has no SAML mapping: recoverable
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlparse

from groupsync.cache import Page, PaginatedMappingCache
from groupsync.errors import (
    ConfigurationError,
    ConnectorError,
    FatalIdentityError,
    GroupNotFoundError,
    MappingCacheError,
    RecoverableIdentityError,
)
from groupsync.services.base import Deadline, Target
from groupsync.services.http import HTTPConnectorBase
from groupsync.users import Identity, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GitHubIdentity(Identity):
    """A GitHub account: GraphQL node ID and login."""

    id: str
    login: str

    kind = 'github'

    def unique_id(self) -> str:
        return self.id

    def __str__(self):
        return f"github{{uid: {self.id}, login: {self.login}}}"


class GraphQLError(ConnectorError):
    """Raised when a GraphQL response carries errors."""

    def __init__(self, message: str, error_types: Optional[List[str]] = None):
        self.error_types = error_types or []
        super().__init__(message)

    @property
    def not_found(self) -> bool:
        return bool(self.error_types) and all(t == 'NOT_FOUND' for t in self.error_types)


TEAM_MEMBERS_QUERY = """
query($org: String!, $team: String!, $first: Int!, $cursor: String) {
  organization(login: $org) {
    team(slug: $team) {
      name
      members(first: $first, after: $cursor, membership: IMMEDIATE) {
        nodes { id login }
        pageInfo { endCursor hasNextPage }
      }
    }
  }
}
"""

SAML_IDENTITIES_QUERY = """
query($org: String!, $first: Int!, $cursor: String) {
  organization(login: $org) {
    samlIdentityProvider {
      externalIdentities(first: $first, after: $cursor) {
        edges {
          node {
            samlIdentity { nameId }
            user { id login name email }
          }
        }
        pageInfo { endCursor hasNextPage }
      }
    }
  }
}
"""

USER_QUERY = """
query($login: String!) {
  user(login: $login) { id login }
}
"""


class GitHubTarget(HTTPConnectorBase, Target):
    """
    GitHub connector.

    Config keys:
        token: API token with read:org and team write access
        org: Organization login
        api_url: REST API root (default https://api.github.com)
        graphql_url: GraphQL endpoint, a path or an absolute URL on the api_url host (default /graphql)
        identity_source: Backend whose identities are matched against SAML name IDs (default ldap)
        match_attribute: Attribute of that identity compared with the name ID (default username)
        page_size: Page size for paginated queries (default 20, at most 100)
    """

    kind = 'github'
    default_base_url = 'https://api.github.com'

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)

        self.token = self.config.get('token')
        self.org = self.config.get('org')
        if not self.token or not self.org:
            raise ConfigurationError(f"GitHub backend `{name}` needs `token` and `org`")

        self._setup_http()
        self.graphql_path = self._graphql_path(self.config.get('graphql_url') or '/graphql')
        self.identity_source = self.config.get('identity_source', 'ldap')
        self.match_attribute = self.config.get('match_attribute', 'username')
        self.page_size = max(1, min(int(self.config.get('page_size', 20)), 100))

        self.saml_mappings = PaginatedMappingCache(
            self._fetch_saml_page,
            key_func=self._saml_key,
            description=f"GitHub SAML identities for org {self.org}",
        )

        logger.info(f"Initialized GitHub connector `{name}` for org {self.org}")

    def auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"bearer {self.token}"}

    def graphql(self, query: str, variables: Dict[str, Any], deadline: Optional[Deadline] = None) -> Dict[str, Any]:
        """
        Run a GraphQL query and return its ``data``.

        Raises:
            GraphQLError: If the response contains errors
        """
        response = self.request('POST', self.graphql_path, body={'query': query, 'variables': variables},
                                deadline=deadline)

        errors = response.get('errors')
        if errors:
            messages = '; '.join(str(error.get('message', error)) for error in errors)
            raise GraphQLError(f"GitHub GraphQL error: {messages}",
                               [error.get('type') for error in errors if isinstance(error, dict)])

        return response.get('data') or {}

    # Service

    def group_members(self, group: str, deadline: Optional[Deadline] = None) -> List[User]:
        members = []
        cursor = None

        while True:
            data = self.graphql(TEAM_MEMBERS_QUERY, {
                'org': self.org,
                'team': group,
                'first': 100,
                'cursor': cursor,
            }, deadline)

            team = (data.get('organization') or {}).get('team')
            if not team:
                raise GroupNotFoundError(f"Cannot find GitHub team called \"{group}\" in org {self.org}")

            try:
                connection = team['members']
                for node in connection.get('nodes') or []:
                    members.append(User.with_identity(self.name, GitHubIdentity(node['id'], node['login'])))
            except (KeyError, TypeError, AttributeError) as e:
                raise ConnectorError(f"Malformed team members response for GitHub team {group}: {e!r}") from e

            page_info = connection.get('pageInfo') or {}
            if not page_info.get('hasNextPage'):
                break
            cursor = page_info.get('endCursor')

        logger.debug(f"GitHub team {group} has {len(members)} members")
        return members

    # Target

    def add_members(self, group: str, users: List[User], deadline: Optional[Deadline] = None) -> None:
        for user in users:
            login = self._login_of(user)
            logger.info(f"Adding {login} to GitHub team {group}")
            self.request('PUT', self._membership_path(group, login), body={'role': 'member'}, deadline=deadline)

    def remove_members(self, group: str, users: List[User], deadline: Optional[Deadline] = None) -> None:
        for user in users:
            login = self._login_of(user)
            logger.info(f"Removing {login} from GitHub team {group}")
            self.request('DELETE', self._membership_path(group, login), deadline=deadline)

    def acquire_identity(self, user: User, deadline: Optional[Deadline] = None) -> Identity:
        source = user.identity(self.identity_source)
        if source is None or source.kind == 'none':
            raise RecoverableIdentityError(
                f"couldn't acquire github identity for user {user}: no {self.identity_source} identity"
            )

        try:
            mappings = self.saml_mappings.get(deadline)
        except MappingCacheError as e:
            raise FatalIdentityError(f"couldn't acquire SAML user data from GitHub: {e}") from e

        key = self._match_value(source)
        if key is None:
            raise RecoverableIdentityError(
                f"couldn't acquire github identity for user {user}: "
                f"{self.identity_source} identity has no {self.match_attribute}"
            )

        mapping = mappings.get(key.lower())
        if mapping is None:
            raise RecoverableIdentityError(f"no github SAML mapping found for user {user}")

        return self._identity_from_account(mapping['user'])

    def identity_from_uid(self, uid: str, deadline: Optional[Deadline] = None) -> Identity:
        try:
            data = self.graphql(USER_QUERY, {'login': uid}, deadline)
        except GraphQLError as e:
            if e.not_found:
                raise RecoverableIdentityError(f"GitHub user {uid} not found") from e
            raise

        account = data.get('user')
        if not account:
            raise RecoverableIdentityError(f"GitHub user {uid} not found")
        return self._identity_from_account(account)

    # Helpers

    def _fetch_saml_page(self, cursor: Optional[str], deadline: Optional[Deadline]) -> Page:
        data = self.graphql(SAML_IDENTITIES_QUERY, {
            'org': self.org,
            'first': self.page_size,
            'cursor': cursor,
        }, deadline)

        organization = data.get('organization')
        if not organization:
            raise ConnectorError(f"GitHub org {self.org} not found")

        provider = organization.get('samlIdentityProvider')
        if not provider:
            raise ConnectorError(f"GitHub org {self.org} has no SAML identity provider")

        try:
            identities = provider['externalIdentities']
            entries = [edge['node'] for edge in identities.get('edges') or []]
            page_info = identities.get('pageInfo') or {}
        except (KeyError, TypeError, AttributeError) as e:
            raise ConnectorError(f"Malformed SAML identities response for GitHub org {self.org}: {e!r}") from e
        if not all(isinstance(entry, dict) for entry in entries):
            raise ConnectorError(f"Malformed SAML identity entry for GitHub org {self.org}")
        next_cursor = page_info.get('endCursor') if page_info.get('hasNextPage') else None
        return Page(entries, next_cursor)

    def _graphql_path(self, url: str) -> str:
        if not (url.startswith('http://') or url.startswith('https://')):
            return url
        parsed = urlparse(url)
        if parsed.netloc != self.host:
            raise ConfigurationError(
                f"GitHub backend `{self.name}`: graphql_url {url} is not on the api_url host {self.host}"
            )
        return parsed.path or '/graphql'

    def _identity_from_account(self, account: Dict[str, Any]) -> GitHubIdentity:
        try:
            return GitHubIdentity(account['id'], account['login'])
        except (KeyError, TypeError) as e:
            raise ConnectorError(f"Malformed GitHub account in response: {e!r}") from e

    @staticmethod
    def _saml_key(node: Dict[str, Any]) -> Optional[str]:
        # External identities not linked to an account cannot be matched
        if not node.get('user'):
            return None
        name_id = (node.get('samlIdentity') or {}).get('nameId')
        return name_id.lower() if name_id else None

    def _match_value(self, identity: Identity) -> Optional[str]:
        value = getattr(identity, self.match_attribute, None)
        return str(value) if value else None

    def _login_of(self, user: User) -> str:
        identity = user.identity(self.name)
        if not isinstance(identity, GitHubIdentity):
            raise ConnectorError(f"user {user} has no GitHub identity")
        return identity.login

    def _membership_path(self, group: str, login: str) -> str:
        return f"/orgs/{quote(self.org)}/teams/{quote(group)}/memberships/{quote(login)}"
