"""
App Store Connect team roles as a read-only sync source.

A "group" here is a user role (ADMIN, DEVELOPER, APP_MANAGER, ...). Requests
are authorized with short-lived ES256 tokens signed by an API key.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import jwt
from cryptography.hazmat.primitives import serialization

from groupsync.errors import ConfigurationError, ConnectorAPIError, ConnectorError, GroupNotFoundError
from groupsync.services.base import Deadline, Service
from groupsync.services.http import HTTPConnectorBase
from groupsync.users import Identity, User

logger = logging.getLogger(__name__)

TOKEN_AUDIENCE = 'appstoreconnect-v1'
MAX_TOKEN_TTL_MINUTES = 20
TOKEN_REFRESH_MARGIN = 60


@dataclass(frozen=True)
class AppStoreConnectIdentity(Identity):
    id: str
    username: str

    kind = 'app_store_connect'

    def unique_id(self) -> str:
        return self.id

    def __str__(self):
        return f"appstoreconnect{{uid: {self.id}, username: {self.username}}}"


class AppStoreConnectService(HTTPConnectorBase, Service):
    """
    App Store Connect connector.

    Config keys:
        key_id: API key ID, sent as the token's ``kid`` header
        issuer: Issuer ID of the API key
        private_key: PEM encoded private key (or private_key_file: path to it)
        api_url: API root (default https://api.appstoreconnect.apple.com)
        token_ttl_minutes: Token lifetime, at most 20 (default 20)
        page_size: Users per page (default 200)
    """

    kind = 'app_store_connect'
    default_base_url = 'https://api.appstoreconnect.apple.com'

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)

        self.key_id = self.config.get('key_id')
        self.issuer = self.config.get('issuer')
        if not self.key_id or not self.issuer:
            raise ConfigurationError(f"App Store Connect backend `{name}` needs `key_id` and `issuer`")

        self.private_key = self._load_private_key()
        self.token_ttl = 60 * min(int(self.config.get('token_ttl_minutes', MAX_TOKEN_TTL_MINUTES)),
                                  MAX_TOKEN_TTL_MINUTES)
        if self.token_ttl <= 0:
            raise ConfigurationError(f"`token_ttl_minutes` must be positive for `{name}`")
        self.page_size = int(self.config.get('page_size', 200))

        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

        self._setup_http()
        logger.info(f"Initialized App Store Connect connector `{name}` with key {self.key_id}")

    def _load_private_key(self):
        pem = self.config.get('private_key')
        key_file = self.config.get('private_key_file')

        if not pem and key_file:
            try:
                with open(key_file, 'r') as f:
                    pem = f.read()
            except OSError as e:
                raise ConfigurationError(f"Cannot read private key file {key_file}: {e}") from e

        if not pem:
            raise ConfigurationError(f"App Store Connect backend `{self.name}` needs `private_key` or `private_key_file`")

        try:
            return serialization.load_pem_private_key(pem.encode('utf-8'), password=None)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid private key for `{self.name}`: {e}") from e

    def token(self) -> str:
        """Return a signed API token, reusing the current one until shortly before it expires."""
        with self._token_lock:
            now = time.time()
            if self._token is None or now >= self._token_expires_at - TOKEN_REFRESH_MARGIN:
                expires_at = int(now) + self.token_ttl
                payload = {
                    'iss': self.issuer,
                    'exp': expires_at,
                    'aud': TOKEN_AUDIENCE,
                }
                self._token = jwt.encode(payload, self.private_key, algorithm='ES256',
                                         headers={'kid': self.key_id})
                self._token_expires_at = expires_at
                logger.debug(f"Generated App Store Connect token valid for {self.token_ttl}s")
            return self._token

    def auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self.token()}"}

    def group_members(self, group: str, deadline: Optional[Deadline] = None) -> List[User]:
        role = group.upper()
        members = []

        try:
            response = self.request('GET', '/v1/users', params={
                'filter[roles]': role,
                'limit': self.page_size,
            }, deadline=deadline)

            while True:
                try:
                    for record in response.get('data') or []:
                        attributes = record.get('attributes') or {}
                        identity = AppStoreConnectIdentity(record['id'], attributes.get('username', ''))
                        members.append(User.with_identity(self.name, identity))
                    next_url = (response.get('links') or {}).get('next')
                except (KeyError, TypeError, AttributeError) as e:
                    raise ConnectorError(f"Malformed users response for App Store Connect role {role}: {e!r}") from e

                if not next_url:
                    break
                response = self.request('GET', next_url, deadline=deadline)
        except ConnectorAPIError as e:
            if e.status_code in (400, 404):
                raise GroupNotFoundError(f"Cannot find App Store Connect role \"{group}\": {e}") from e
            raise

        logger.debug(f"App Store Connect role {role} has {len(members)} members")
        return members
