"""
REST client for the remote directory service.

Users, groups, memberships and group settings are exchanged as JSON. The
client handles TLS settings and Basic, Bearer and OAuth2 client-credentials
authentication; it does not retry failed calls.
"""

import json
import ssl
import time
import base64
import logging
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urljoin, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection

logger = logging.getLogger(__name__)


class DirectoryAPIError(Exception):
    """Base exception for directory API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when authentication to the directory API fails."""
    pass


class DirectoryNotFoundError(DirectoryAPIError):
    """Raised when the directory reports that an object does not exist."""
    pass


class DirectoryClient:
    """
    Client for the remote directory service REST API.

    Provides the user, group, membership and group settings operations used
    by the sync workflow.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory API client.

        Args:
            config: ``directory`` configuration section
        """
        self.config = config
        self.name = config.get('name', 'directory')
        self.base_url = config['base_url']
        self.auth_config = config['auth']
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        self.page_size = config.get('page_size', 200)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None

        self.auth_headers = {}
        self._token_expires_at = None

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            try:
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")
            except (OSError, ssl.SSLError) as e:
                logger.error(f"Failed to load truststore {truststore_file}: {e}")
                raise DirectoryAPIError(f"Truststore loading failed: {e}")

        keystore_file = self.config.get('keystore_file')
        if keystore_file:
            try:
                self.ssl_context.load_cert_chain(keystore_file, password=self.config.get('keystore_password'))
                logger.info(f"Loaded PEM client certificate: {keystore_file}")
            except (OSError, ssl.SSLError) as e:
                logger.error(f"Failed to load client certificate {keystore_file}: {e}")
                raise DirectoryAPIError(f"Client certificate loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
                logger.debug(f"Configured Basic authentication for {self.name}")
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method == 'oauth2':
            required = ('client_id', 'client_secret', 'token_url')
            if not all(self.auth_config.get(field) for field in required):
                logger.error(f"OAuth2 auth configured but missing required fields "
                             f"(client_id, client_secret, token_url) for {self.name}")
            else:
                logger.debug(f"OAuth2 authentication configured for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _oauth2_get_token(self) -> bool:
        """
        Retrieve OAuth2 access token using client credentials flow.

        Returns:
            True if token was successfully obtained
        """
        client_id = self.auth_config.get('client_id')
        client_secret = self.auth_config.get('client_secret')
        token_url = self.auth_config.get('token_url')
        scope = self.auth_config.get('scope', '')

        if not all([client_id, client_secret, token_url]):
            logger.error(f"OAuth2 configuration incomplete for {self.name}")
            return False

        parsed_token_url = urlparse(token_url)
        if parsed_token_url.scheme == 'https':
            token_conn = HTTPSConnection(parsed_token_url.netloc, context=self.ssl_context, timeout=self.timeout)
        else:
            token_conn = HTTPConnection(parsed_token_url.netloc, timeout=self.timeout)

        token_data = {
            'grant_type': 'client_credentials',
            'client_id': client_id,
            'client_secret': client_secret
        }
        if scope:
            token_data['scope'] = scope

        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', parsed_token_url.path or '/', urlencode(token_data), token_headers)

            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')

            if response.status != 200:
                logger.error(f"OAuth2 token request failed for {self.name}: {response.status} {response.reason}")
                return False

            token_response = json.loads(response_data)
            access_token = token_response.get('access_token')
            if not access_token:
                logger.error(f"OAuth2 response missing access_token for {self.name}")
                return False

            self.auth_headers['Authorization'] = f"Bearer {access_token}"

            expires_in = token_response.get('expires_in')
            if expires_in:
                self._token_expires_at = time.time() + int(expires_in) - 60  # 60 second buffer

            logger.info(f"Successfully obtained OAuth2 token for {self.name}")
            return True

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")
            return False
        except (ConnectionError, OSError) as e:
            logger.error(f"OAuth2 token request error for {self.name}: {e}")
            return False
        finally:
            token_conn.close()

    def _is_oauth2_token_valid(self) -> bool:
        return self._token_expires_at is not None and time.time() < self._token_expires_at

    def authenticate(self) -> bool:
        """
        Perform any additional authentication steps (OAuth2 token retrieval).

        Returns:
            True if authentication successful
        """
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'oauth2':
            if self._is_oauth2_token_valid():
                logger.debug(f"OAuth2 token still valid for {self.name}")
                return True
            return self._oauth2_get_token()

        if auth_method in ('basic', 'token', 'bearer', 'mtls', 'mutual_tls', ''):
            return True

        logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")
        return False

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make HTTP request to the directory API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API endpoint path (relative to base_url)
            body: Request body data
            params: Query string parameters

        Returns:
            Parsed response data (empty dict for empty responses)

        Raises:
            DirectoryNotFoundError: On HTTP 404
            DirectoryAuthenticationError: On HTTP 401 after a token refresh
            DirectoryAPIError: If the request fails
        """
        full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        if params:
            full_path += '?' + urlencode({k: v for k, v in params.items() if v is not None})

        request_headers = dict(self.auth_headers)
        request_headers['Accept'] = 'application/json'

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        max_auth_retries = 1
        for auth_attempt in range(max_auth_retries + 1):
            try:
                conn = self._get_connection()

                logger.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, request_body, request_headers)

                response = conn.getresponse()
                response_data = response.read().decode('utf-8')

                logger.debug(f"Response status: {response.status} {response.reason}")
            except (ConnectionError, OSError) as e:
                self.close_connection()
                raise DirectoryAPIError(f"Connection error to {self.name}: {e}")

            if response.status == 401:
                auth_method = self.auth_config.get('method', '').lower()
                if auth_method == 'oauth2' and auth_attempt < max_auth_retries:
                    logger.info(f"401 error received, attempting to refresh OAuth2 token for {self.name}")
                    if self._oauth2_get_token():
                        request_headers.update(self.auth_headers)
                        continue
                raise DirectoryAuthenticationError(f"Authentication failed for {self.name}", 401)

            if response.status == 404:
                raise DirectoryNotFoundError(f"{method} {path}: not found", 404)

            if response.status >= 400:
                raise DirectoryAPIError(f"HTTP {response.status}: {response.reason}", response.status)

            try:
                return json.loads(response_data) if response_data else {}
            except json.JSONDecodeError as e:
                raise DirectoryAPIError(f"Invalid JSON response from {self.name}: {e}")

        raise DirectoryAPIError(f"Request failed after {max_auth_retries + 1} attempts")

    def _paged(self, path: str, collection: str) -> List[Dict[str, Any]]:
        """Follow ``nextPageToken`` links and concatenate ``collection`` items."""
        items = []
        page_token = None
        while True:
            response = self.request('GET', path, params={'maxResults': self.page_size, 'pageToken': page_token})
            items.extend(response.get(collection, []))
            page_token = response.get('nextPageToken')
            if not page_token:
                return items

    @staticmethod
    def _key(key: str) -> str:
        return quote(key, safe='@')

    # Users

    def retrieve_all_users(self) -> List[Dict[str, Any]]:
        users = self._paged('/users', 'users')
        logger.info(f"Retrieved {len(users)} users from {self.name}")
        return users

    def retrieve_user(self, user_key: str) -> Optional[Dict[str, Any]]:
        """Fetch a user by primary address. Returns None if it does not exist."""
        try:
            return self.request('GET', f'/users/{self._key(user_key)}')
        except DirectoryNotFoundError:
            return None

    def add_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return self.request('POST', '/users', body=user)

    # Groups

    def retrieve_all_groups(self) -> List[Dict[str, Any]]:
        groups = self._paged('/groups', 'groups')
        logger.info(f"Retrieved {len(groups)} groups from {self.name}")
        return groups

    def retrieve_group(self, group_key: str) -> Optional[Dict[str, Any]]:
        """Fetch a group by primary address. Returns None if it does not exist."""
        try:
            return self.request('GET', f'/groups/{self._key(group_key)}')
        except DirectoryNotFoundError:
            return None

    def add_group(self, group: Dict[str, Any]) -> Dict[str, Any]:
        return self.request('POST', '/groups', body=group)

    def update_group(self, group_key: str, group: Dict[str, Any]) -> Dict[str, Any]:
        return self.request('PUT', f'/groups/{self._key(group_key)}', body=group)

    def remove_group(self, group_key: str) -> None:
        self.request('DELETE', f'/groups/{self._key(group_key)}')

    # Memberships

    def add_group_member(self, group_key: str, member: Dict[str, Any]) -> Dict[str, Any]:
        return self.request('POST', f'/groups/{self._key(group_key)}/members', body=member)

    def remove_group_member(self, group_key: str, member_key: str) -> None:
        self.request('DELETE', f'/groups/{self._key(group_key)}/members/{self._key(member_key)}')

    def retrieve_group_members(self, group_key: str) -> List[Dict[str, Any]]:
        return self._paged(f'/groups/{self._key(group_key)}/members', 'members')

    # Group settings

    def retrieve_group_settings(self, group_key: str) -> Dict[str, Any]:
        return self.request('GET', f'/groups/{self._key(group_key)}/settings')

    def update_group_settings(self, group_key: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        return self.request('PUT', f'/groups/{self._key(group_key)}/settings', body=settings)

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
