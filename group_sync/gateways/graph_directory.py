"""
Microsoft Graph gateway for the cloud directory.

Talks to the Graph v1.0 REST API over HTTPS using the OAuth2 client
credentials flow. Group references are group object ids and native identity
keys are user object ids.
"""

import json
import ssl
import time
import logging
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection

from group_sync.gateways.base import (
    ApplyError,
    DirectoryConnectionError,
    DirectoryError,
    DirectoryGateway,
    DirectoryUnavailableError,
)
from group_sync.models import ContractError, Identity, MembershipSnapshot, Outcome

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://graph.microsoft.com/v1.0'
DEFAULT_AUTHORITY = 'https://login.microsoftonline.com'
DEFAULT_SCOPE = 'https://graph.microsoft.com/.default'


def _query(params: Dict[str, Any]) -> str:
    """Encode OData query options, keeping '$', ',' and quotes readable."""
    return urlencode(params, safe="$,'", quote_via=quote)


class GraphAPIError(DirectoryError):
    """Raised when Graph answers with an HTTP error."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RemoteDirectory(DirectoryGateway):
    """
    Gateway for the cloud directory.

    The correlation attribute decides which user property local mapping
    values refer to. It defaults to the object id; any filterable user
    property (onPremisesImmutableId, employeeId, ...) can be used instead.
    """

    side = 'remote'

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Graph gateway.

        Args:
            config: remote_directory configuration dictionary
        """
        super().__init__(config)
        self.tenant_id = config['tenant_id']
        self.client_id = config['client_id']
        self.client_secret = config['client_secret']
        self.base_url = config.get('base_url', DEFAULT_BASE_URL).rstrip('/')
        self.authority = config.get('authority', DEFAULT_AUTHORITY).rstrip('/')
        self.scope = config.get('scope', DEFAULT_SCOPE)
        self.correlation_attribute = config.get('correlation_attribute', 'id')
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        self.page_size = config.get('page_size', 999)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = self._create_ssl_context()
        self.auth_headers = {}
        self._token_expires_at = 0.0

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.verify_ssl:
            logger.warning(f"SSL verification disabled for {self.name}")
            return ssl._create_unverified_context()

        context = ssl.create_default_context()
        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            context.load_verify_locations(cafile=ca_cert_file)
            logger.debug(f"Using CA certificate file: {ca_cert_file}")
        return context

    def _select_fields(self) -> str:
        fields = ['id', 'displayName', 'userPrincipalName', 'mail']
        if self.correlation_attribute not in fields:
            fields.append(self.correlation_attribute)
        return ','.join(fields)

    def _open(self, netloc: str, scheme: str) -> Union[HTTPSConnection, HTTPConnection]:
        if scheme == 'https':
            return HTTPSConnection(netloc, context=self.ssl_context, timeout=self.timeout)
        return HTTPConnection(netloc, timeout=self.timeout)

    def connect(self) -> bool:
        """
        Acquire an access token.

        Raises:
            DirectoryConnectionError: If the token request fails
        """
        if self._is_token_valid():
            logger.debug(f"OAuth2 token still valid for {self.name}")
            return True
        return self._get_token()

    def _is_token_valid(self) -> bool:
        return bool(self.auth_headers) and time.time() < self._token_expires_at

    def _get_token(self) -> bool:
        """Retrieve an access token using the client credentials flow."""
        token_url = urlparse(f"{self.authority}/{self.tenant_id}/oauth2/v2.0/token")
        token_body = urlencode({
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'scope': self.scope,
        })
        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        token_conn = self._open(token_url.netloc, token_url.scheme)
        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', token_url.path, token_body, token_headers)
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError) as e:
            raise DirectoryConnectionError(f"OAuth2 token request error for {self.name}: {e}")
        finally:
            token_conn.close()

        if response.status != 200:
            raise DirectoryConnectionError(
                f"OAuth2 token request failed for {self.name}: {response.status} {response.reason}"
            )

        try:
            token_response = json.loads(response_data)
        except json.JSONDecodeError as e:
            raise DirectoryConnectionError(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")

        access_token = token_response.get('access_token')
        if not access_token:
            raise DirectoryConnectionError(f"OAuth2 response missing access_token for {self.name}")

        self.auth_headers = {'Authorization': f"Bearer {access_token}"}
        # 60 second buffer before expiry
        self._token_expires_at = time.time() + int(token_response.get('expires_in', 3600)) - 60
        logger.info(f"Obtained OAuth2 token for {self.name}")
        return True

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        if self.connection is None:
            self.connection = self._open(self.host, self.parsed_url.scheme)
        return self.connection

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                headers: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make an HTTP request to Graph.

        Args:
            method: HTTP method
            path: Path relative to base_url, or an absolute nextLink URL
            body: JSON request body
            headers: Additional headers

        Returns:
            Parsed JSON response ({} for empty bodies)

        Raises:
            GraphAPIError: If Graph answers with an error status
            DirectoryError: If the request cannot be made
        """
        if not self._is_token_valid():
            self.connect()

        if path.startswith('https://') or path.startswith('http://'):
            parsed = urlparse(path)
            full_path = parsed.path + (f"?{parsed.query}" if parsed.query else '')
        else:
            full_path = self.base_path + '/' + path.lstrip('/')

        request_body = json.dumps(body) if body is not None else None

        # One token refresh on 401
        for auth_attempt in range(2):
            request_headers = {'Accept': 'application/json'}
            request_headers.update(self.auth_headers)
            if request_body is not None:
                request_headers['Content-Type'] = 'application/json'
            if headers:
                request_headers.update(headers)

            try:
                conn = self._get_connection()
                logger.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, request_body, request_headers)
                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
            except (ConnectionError, OSError) as e:
                self.close()
                raise DirectoryUnavailableError(f"Connection error to {self.name}: {e}")

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt == 0:
                logger.info(f"401 received, refreshing OAuth2 token for {self.name}")
                self.auth_headers = {}
                self._get_token()
                continue

            if response.status >= 400:
                raise self._error_from_response(response.status, response.reason, response_data)

            if not response_data:
                return {}
            try:
                return json.loads(response_data)
            except json.JSONDecodeError as e:
                raise GraphAPIError(f"Invalid JSON response from {self.name}: {e}")

        raise GraphAPIError(f"Authentication failed for {self.name}", status_code=401)

    def _error_from_response(self, status: int, reason: str, response_data: str) -> GraphAPIError:
        error_code = None
        message = reason
        try:
            error = json.loads(response_data).get('error', {})
            error_code = error.get('code')
            message = error.get('message') or reason
        except (json.JSONDecodeError, AttributeError):
            pass
        return GraphAPIError(f"HTTP {status}: {message}", status_code=status, error_code=error_code)

    def _user_to_identity(self, user: Dict[str, Any]) -> Identity:
        correlation = user.get(self.correlation_attribute)
        attributes = {}
        for name in ('userPrincipalName', 'mail'):
            if user.get(name):
                attributes[name] = user[name]
        return Identity(
            key=user.get('id'),
            remote_key=str(correlation) if correlation else None,
            display_name=user.get('displayName'),
            attributes=attributes
        )

    def _paged(self, path: str) -> List[Dict[str, Any]]:
        items = []
        next_link = path
        while next_link:
            response = self.request('GET', next_link)
            items.extend(response.get('value', []))
            next_link = response.get('@odata.nextLink')
        return items

    def list_members(self, group_ref: str) -> MembershipSnapshot:
        """
        Retrieve user members of a cloud group.

        Args:
            group_ref: Group object id

        Returns:
            Snapshot keyed by user object id
        """
        logger.info(f"Retrieving members of cloud group: {group_ref}")
        query = _query({'$select': self._select_fields(), '$top': self.page_size})
        path = f"/groups/{quote(group_ref)}/members/microsoft.graph.user?{query}"

        members = []
        for user in self._paged(path):
            identity = self._user_to_identity(user)
            if not identity.remote_key:
                logger.warning(f"Cloud user {identity.key} has no {self.correlation_attribute}, skipping")
                continue
            members.append(identity)

        logger.info(f"Retrieved {len(members)} members of {group_ref}")
        return MembershipSnapshot(members, group_ref=group_ref)

    def resolve_identity(self, key: str) -> Optional[Identity]:
        """
        Find the cloud user a local mapping value refers to.

        Args:
            key: Value of the correlation attribute

        Returns:
            Matching identity or None

        Raises:
            ContractError: If more than one user carries the value
        """
        select = _query({'$select': self._select_fields()})
        if self.correlation_attribute == 'id':
            try:
                user = self.request('GET', f"/users/{quote(key)}?{select}")
            except GraphAPIError as e:
                if e.status_code in (400, 404):
                    logger.debug(f"No cloud user with id {key}: {e}")
                    return None
                raise
            return self._user_to_identity(user)

        escaped = key.replace("'", "''")
        query = _query({'$filter': f"{self.correlation_attribute} eq '{escaped}'"})
        users = self.request('GET', f"/users?{query}&{select}").get('value', [])
        if not users:
            logger.debug(f"No cloud user carries {self.correlation_attribute}={key}")
            return None
        if len(users) > 1:
            raise ContractError(
                f"Mapping value {key!r} is carried by more than one cloud user: "
                f"{', '.join(user.get('id', '?') for user in users)}"
            )
        return self._user_to_identity(users[0])

    def add_member(self, group_ref: str, identity_key: str) -> Outcome:
        """Add a user to a cloud group."""
        body = {'@odata.id': f"{self.base_url}/directoryObjects/{identity_key}"}
        try:
            self.request('POST', f"/groups/{quote(group_ref)}/members/$ref", body=body)
        except GraphAPIError as e:
            if e.status_code == 400 and 'already exist' in str(e).lower():
                logger.debug(f"{identity_key} is already a member of {group_ref}")
                return Outcome.ALREADY_MEMBER
            raise self._as_apply_error(e)
        return Outcome.ADDED

    def remove_member(self, group_ref: str, identity_key: str) -> Outcome:
        """Remove a user from a cloud group."""
        try:
            self.request('DELETE', f"/groups/{quote(group_ref)}/members/{quote(identity_key)}/$ref")
        except GraphAPIError as e:
            if e.status_code == 404:
                logger.debug(f"{identity_key} is not a member of {group_ref}")
                return Outcome.NOT_MEMBER
            raise self._as_apply_error(e)
        return Outcome.REMOVED

    def _as_apply_error(self, error: GraphAPIError) -> GraphAPIError:
        # Throttling and server errors keep their status so they are retried
        if error.status_code is None or error.status_code == 429 or error.status_code >= 500:
            return error
        return GraphApplyError(str(error), status_code=error.status_code, error_code=error.error_code)


class GraphApplyError(GraphAPIError, ApplyError):
    """Raised when Graph rejects a membership change."""
    pass
