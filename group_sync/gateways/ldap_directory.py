"""
LDAP / Active Directory gateway.

Reads group membership from an LDAP group, resolves users by the configured
mapping attribute, and changes membership by modifying the group's member
attribute.
"""

import logging
import ssl
import time
from typing import Dict, List, Any, Optional

from ldap3 import Server, Connection, Tls, SUBTREE, BASE, ALL, MODIFY_ADD, MODIFY_DELETE
from ldap3.core.exceptions import LDAPException, LDAPCommunicationError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from group_sync.gateways.base import (
    ApplyError,
    DirectoryConnectionError,
    DirectoryError,
    DirectoryGateway,
    DirectoryUnavailableError,
)
from group_sync.models import ContractError, Identity, MembershipSnapshot, Outcome

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# Result descriptions meaning the membership is already in the wanted state
ALREADY_MEMBER_RESULTS = ('attributeOrValueExists', 'entryAlreadyExists')
NOT_MEMBER_RESULTS = ('noSuchAttribute',)
TRANSIENT_RESULTS = ('busy', 'unavailable', 'timeLimitExceeded', 'adminLimitExceeded')

# Base reads of a member DN that did not return a user
SKIPPED_MEMBER_RESULTS = ('success', 'noSuchObject')

# AD answers unwillingToPerform with ERROR_MEMBER_NOT_IN_GROUP when deleting an absent value
AD_MEMBER_NOT_IN_GROUP = '00000561'


class LocalDirectory(DirectoryGateway):
    """
    Gateway for the on-premises LDAP directory.

    Group references are group DNs and native identity keys are user DNs.
    The mapping attribute (for example an AD extensionAttribute) carries the
    cloud directory's identifier for each user.
    """

    side = 'local'

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP gateway with configuration.

        Args:
            config: local_directory configuration dictionary
        """
        super().__init__(config)
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.mapping_attribute = config.get('mapping_attribute', 'extensionAttribute1')
        self.member_lookup = config.get('member_lookup', 'member')
        self.attributes = self._build_attribute_list(config.get('attributes', []))

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)
        self.max_retries = max(1, config.get('max_retries', 3))
        self.retry_wait = config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def _build_attribute_list(self, extra: List[str]) -> List[str]:
        attributes = ['cn', 'displayName', 'mail', 'sAMAccountName', 'uid', self.mapping_attribute]
        for name in extra:
            if name not in attributes:
                attributes.append(name)
        return attributes

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            DirectoryConnectionError: If connection fails after all retries
        """
        if self._connected:
            return True

        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait or self.retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPCommunicationError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPCommunicationError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Connected and bound to LDAP server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._drop_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise DirectoryConnectionError(error_msg)

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind error on failed connection: {e}")
            self.connection = None

    def close(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _require_connection(self):
        if not self._connected:
            raise DirectoryConnectionError("Not connected to LDAP server")

    def _search(self, search_base: str, search_filter: str, scope=SUBTREE, **kwargs) -> bool:
        try:
            return self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=self.attributes,
                **kwargs
            )
        except LDAPCommunicationError as e:
            raise DirectoryUnavailableError(f"LDAP search failed: {e}")
        except LDAPException as e:
            raise DirectoryError(f"LDAP search failed: {e}")

    def list_members(self, group_ref: str) -> MembershipSnapshot:
        """
        Retrieve user members of an LDAP group.

        Args:
            group_ref: Distinguished name of the group

        Returns:
            Snapshot keyed by user DN

        Raises:
            DirectoryError: If the query fails
        """
        self._require_connection()
        logger.info(f"Retrieving members of LDAP group: {group_ref}")

        if self.member_lookup.lower() == 'memberof':
            members = self._get_members_by_memberof(group_ref)
        else:
            members = self._get_members_by_group_attribute(group_ref)

        logger.info(f"Retrieved {len(members)} members of {group_ref}")
        return MembershipSnapshot(members, group_ref=group_ref)

    def _get_members_by_group_attribute(self, group_dn: str) -> List[Identity]:
        """Read the group's member attribute, then fetch each user entry."""
        try:
            success = self.connection.search(
                search_base=group_dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['member']
            )
        except LDAPCommunicationError as e:
            raise DirectoryUnavailableError(f"LDAP search failed: {e}")
        except LDAPException as e:
            raise DirectoryError(f"LDAP search failed: {e}")

        if not success or not self.connection.entries:
            raise DirectoryError(f"Group not found: {group_dn}")

        group_attributes = self.connection.entries[0].entry_attributes_as_dict
        member_dns = group_attributes.get('member', [])
        logger.debug(f"Group {group_dn} lists {len(member_dns)} member entries")

        members = []
        for member_dn in member_dns:
            if self._search(member_dn, self.user_filter, scope=BASE) and self.connection.entries:
                members.append(self._entry_to_identity(self.connection.entries[0]))
                continue

            # Nested groups and non-user objects do not match the user filter
            result = self.connection.result or {}
            if result.get('description') not in SKIPPED_MEMBER_RESULTS:
                raise self._search_failure(f"Lookup of member {member_dn} of {group_dn} failed", result)
            logger.debug(f"Skipping non-user member {member_dn}")
        return members

    def _get_members_by_memberof(self, group_dn: str) -> List[Identity]:
        """Search users by memberOf (Active Directory style), paging through results."""
        search_filter = f"(&{self.user_filter}(memberOf={escape_filter_chars(group_dn)}))"
        search_base = self._get_user_base()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        members = []
        cookie = None
        page_count = 0
        while True:
            kwargs = {'paged_size': self.page_size}
            if cookie:
                kwargs['paged_cookie'] = cookie

            if not self._search(search_base, search_filter, **kwargs):
                result = self.connection.result or {}
                # An empty final page; any other result leaves the membership incomplete
                if result.get('description') == 'success':
                    break
                raise self._search_failure(f"Search for members of {group_dn} failed on page {page_count + 1}", result)

            page_count += 1
            page = [self._entry_to_identity(entry) for entry in self.connection.entries]
            members.extend(page)
            logger.debug(f"Page {page_count}: Retrieved {len(page)} members")

            cookie = self._next_page_cookie()
            if not cookie:
                break

        return members

    def _search_failure(self, message: str, result: Dict[str, Any]) -> DirectoryError:
        """Build the error for a search that did not complete; busy servers are retryable."""
        description = result.get('description', 'unknown')
        message = f"{message}: {description} {result.get('message', '')}".strip()
        if description in TRANSIENT_RESULTS:
            return DirectoryUnavailableError(message)
        return DirectoryError(message)

    def _next_page_cookie(self) -> Optional[bytes]:
        controls = (self.connection.result or {}).get('controls') or {}
        paged = controls.get(PAGED_RESULTS_OID)
        if not paged:
            return None
        return paged.get('value', {}).get('cookie') or None

    def _get_user_base(self) -> str:
        """Return the user search base, derived from the bind DN when not configured."""
        if self.user_base_dn:
            return self.user_base_dn

        parts = [part.strip() for part in self.bind_dn.split(',')]
        dc_parts = [part for part in parts if part.upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise DirectoryError("Cannot determine user search base")

    def _entry_to_identity(self, entry) -> Identity:
        """Convert an ldap3 entry into an Identity."""
        values = entry.entry_attributes_as_dict

        def first(name):
            found = values.get(name) or []
            return str(found[0]) if found else None

        attributes = {}
        for name in ('mail', 'sAMAccountName', 'uid'):
            value = first(name)
            if value:
                attributes[name] = value

        return Identity(
            key=str(entry.entry_dn),
            mapping_value=first(self.mapping_attribute),
            display_name=first('displayName') or first('cn'),
            attributes=attributes
        )

    def resolve_identity(self, key: str) -> Optional[Identity]:
        """
        Find the user whose mapping attribute equals a cloud identifier.

        Args:
            key: Cloud directory identifier

        Returns:
            Matching identity or None

        Raises:
            ContractError: If more than one user carries the identifier
        """
        self._require_connection()
        search_filter = f"(&{self.user_filter}({self.mapping_attribute}={escape_filter_chars(key)}))"
        self._search(self._get_user_base(), search_filter, size_limit=2)

        entries = list(self.connection.entries)
        if not entries:
            logger.debug(f"No LDAP user carries {self.mapping_attribute}={key}")
            return None
        if len(entries) > 1:
            raise ContractError(
                f"Mapping value {key!r} is carried by more than one LDAP user: "
                f"{', '.join(str(entry.entry_dn) for entry in entries)}"
            )
        return self._entry_to_identity(entries[0])

    def add_member(self, group_ref: str, identity_key: str) -> Outcome:
        """Add a user DN to the group's member attribute."""
        if self._modify_members(group_ref, identity_key, MODIFY_ADD, ALREADY_MEMBER_RESULTS):
            return Outcome.ADDED
        logger.debug(f"{identity_key} is already a member of {group_ref}")
        return Outcome.ALREADY_MEMBER

    def remove_member(self, group_ref: str, identity_key: str) -> Outcome:
        """Remove a user DN from the group's member attribute."""
        if self._modify_members(group_ref, identity_key, MODIFY_DELETE, NOT_MEMBER_RESULTS):
            return Outcome.REMOVED
        logger.debug(f"{identity_key} is not a member of {group_ref}")
        return Outcome.NOT_MEMBER

    def _modify_members(self, group_dn: str, member_dn: str, operation, benign_results) -> bool:
        """
        Apply a member attribute change.

        Returns:
            True if the directory changed, False if it was already in the wanted state

        Raises:
            ApplyError: If the directory rejected the change
        """
        self._require_connection()
        try:
            changed = self.connection.modify(group_dn, {'member': [(operation, [member_dn])]})
        except LDAPCommunicationError as e:
            raise DirectoryUnavailableError(f"LDAP modify of {group_dn} failed: {e}")
        except LDAPException as e:
            raise ApplyError(f"LDAP modify of {group_dn} failed: {e}")

        if changed:
            return True

        result = self.connection.result or {}
        description = result.get('description', 'unknown')
        if description in benign_results:
            return False
        if (operation == MODIFY_DELETE and description == 'unwillingToPerform'
                and AD_MEMBER_NOT_IN_GROUP in result.get('message', '')):
            return False

        message = f"LDAP modify of {group_dn} for {member_dn} failed: {description} {result.get('message', '')}".strip()
        if description in TRANSIENT_RESULTS:
            raise DirectoryUnavailableError(message)
        raise ApplyError(message)
