"""
Common HTTP client functionality for JSON API backends.

Connectors talking to REST or GraphQL APIs inherit from
``HTTPConnectorBase``, which handles SSL setup, authorization headers,
JSON encoding, error mapping and retries of transient failures.
"""

import json
import ssl
import logging
from typing import Any, Dict, Optional, Union
from urllib.parse import urlencode, urljoin, urlparse
from http.client import HTTPConnection, HTTPException, HTTPSConnection

from groupsync.errors import ConnectorAPIError, ConnectorError
from groupsync.retry import MaxRetriesExceeded, RetryableError, create_retry_callback, is_retryable_error, retry_call
from groupsync.services.base import Deadline, check_deadline

logger = logging.getLogger(__name__)


class ConnectorConnectionError(ConnectorError, RetryableError):
    """Raised when the backend cannot be reached; retried like any transient failure."""
    pass


class HTTPConnectorBase:
    """
    Mixin providing a JSON-over-HTTP client for a backend connector.

    Expects ``self.name`` and ``self.config`` to be set (as ``Service`` does)
    before ``_setup_http`` is called.
    """

    default_base_url = None

    def _setup_http(self, base_url: Optional[str] = None):
        self.base_url = base_url or self.config.get('api_url') or self.default_base_url
        if not self.base_url:
            raise ValueError(f"no API URL configured for {self.name}")

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')
        self.verify_ssl = self.config.get('verify_ssl', True)
        self.timeout = float(self.config.get('timeout', 30))

        error_config = self.config.get('error_handling') or {}
        self.max_retries = int(error_config.get('max_retries', self.config.get('max_retries', 2)))
        self.retry_wait = float(error_config.get('retry_wait_seconds', self.config.get('retry_wait_seconds', 2)))

        self.connection = None
        self.ssl_context = None
        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
            except (OSError, ssl.SSLError) as e:
                raise ValueError(f"cannot load CA certificates {ca_cert_file}: {e}")
            logger.info(f"Loaded CA certificates for {self.name}: {ca_cert_file}")

    def auth_headers(self) -> Dict[str, str]:
        """Authorization headers for the next request. Connectors override this."""
        return {}

    def _get_connection(self, timeout: Optional[float]) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection is None:
            if self.parsed_url.scheme == 'https':
                self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=timeout)
            else:
                self.connection = HTTPConnection(self.host, timeout=timeout)
        else:
            self.connection.timeout = timeout
            if self.connection.sock is not None:
                self.connection.sock.settimeout(timeout)
        return self.connection

    def request(self, method: str, path: str, body: Optional[Any] = None,
                params: Optional[Dict[str, Any]] = None,
                headers: Optional[Dict[str, str]] = None,
                deadline: Optional[Deadline] = None) -> Any:
        """
        Make HTTP request to the backend API, retrying transient failures.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: Endpoint path relative to the base URL, or an absolute URL on the same host
            body: JSON-serializable request body
            params: Query string parameters
            headers: Additional headers
            deadline: Optional deadline bounding the whole call

        Returns:
            Parsed JSON response, or an empty dict for empty responses

        Raises:
            ConnectorAPIError: If the backend answers with an error status
            ConnectorError: If the request cannot be made
        """
        if path.startswith('http://') or path.startswith('https://'):
            parsed = urlparse(path)
            if parsed.netloc != self.host:
                raise ConnectorError(f"{self.name} cannot request {path}: not on host {self.host}")
            full_path = parsed.path + (f"?{parsed.query}" if parsed.query else '')
        else:
            full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        if params:
            full_path += ('&' if '?' in full_path else '?') + urlencode(params)

        try:
            return retry_call(
                self._send,
                (method, full_path, body, headers, deadline),
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                backoff=2.0,
                exceptions=(ConnectorError,),
                should_retry=is_retryable_error,
                on_retry=create_retry_callback(f"{method} {self.host}{full_path}"),
                deadline=deadline
            )
        except MaxRetriesExceeded as e:
            raise e.last_exception

    def _send(self, method: str, full_path: str, body: Optional[Any],
              headers: Optional[Dict[str, str]], deadline: Optional[Deadline]) -> Any:
        check_deadline(deadline, f"{method} {self.host}{full_path}")
        timeout = deadline.timeout(self.timeout) if deadline is not None else self.timeout

        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.auth_headers())
        if headers:
            request_headers.update(headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection(timeout)
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError, HTTPException) as e:
            self.close()
            raise ConnectorConnectionError(f"Connection error to {self.name}: {e}") from e

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status >= 400:
            raise ConnectorAPIError(
                f"{self.name} returned HTTP {response.status} {response.reason} for {method} {full_path}",
                status_code=response.status
            )

        if not response_data:
            return {}

        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise ConnectorError(f"Invalid JSON response from {self.name}: {e}") from e

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None
